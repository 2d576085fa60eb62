import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_db
from utils.badges import assign_seller_badges
from utils.guards import assert_self_or_admin, parse_object_id
from utils.reputation import compute_seller_reputation
from utils.risk import recompute_all_risk_tiers
from utils.security import get_current_user, require_cron_or_admin
from utils.trust import compute_trust_score

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/functions/v1",
    tags=["Reputation"]
)


# ======================================================
# SCHEMAS
# ======================================================

class SellerRequest(BaseModel):
    seller_id: str = Field(..., min_length=1)


class UserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


# ======================================================
# RISK TIERS (SCHEDULED)
# ======================================================

@router.post("/calculate-risk-tiers")
async def calculate_risk_tiers(caller=Depends(require_cron_or_admin)):
    db = get_db()

    updated = await recompute_all_risk_tiers(db)

    logger.info("RISK_TIERS_RECALCULATED by=%s sellers=%s", caller.get("role"), updated)
    return {
        "success": True,
        "sellers_processed": updated,
    }


# ======================================================
# PER-SELLER / PER-USER SCORES
# ======================================================

@router.post("/calculate-seller-reputation")
async def calculate_seller_reputation(
    data: SellerRequest,
    user=Depends(get_current_user),
):
    seller_id = parse_object_id(data.seller_id, "seller ID")
    assert_self_or_admin(user, seller_id)

    return await compute_seller_reputation(get_db(), seller_id)


@router.post("/calculate-seller-badges")
async def calculate_seller_badges(
    data: SellerRequest,
    user=Depends(get_current_user),
):
    seller_id = parse_object_id(data.seller_id, "seller ID")
    assert_self_or_admin(user, seller_id)

    return await assign_seller_badges(get_db(), seller_id)


@router.post("/calculate-trust-score")
async def calculate_trust_score(
    data: UserRequest,
    user=Depends(get_current_user),
):
    user_id = parse_object_id(data.user_id, "user ID")
    assert_self_or_admin(user, user_id)

    return await compute_trust_score(get_db(), user_id)
