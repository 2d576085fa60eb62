import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from config.constants import MAX_ITEM_PRICE, MAX_SHIPPING_COST
from database import get_db
from utils.fees import calculate_fees, resolve_fee_context
from utils.guards import parse_object_id

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/functions/v1",
    tags=["Fees"]
)


class FeeCalculationRequest(BaseModel):
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    item_price: float = Field(..., gt=0, le=MAX_ITEM_PRICE)
    currency: str = Field("GBP", min_length=3, max_length=3)
    instant_payout: bool = False
    protection_addon: bool = False
    shipping_cost: float = Field(0, ge=0, le=MAX_SHIPPING_COST)
    wholesale_shipping_cost: float = Field(0, ge=0, le=MAX_SHIPPING_COST)
    # Anonymous price preview, no membership lookups
    preview_only: bool = False


@router.post("/calculate-fees")
async def calculate_fees_endpoint(data: FeeCalculationRequest):
    context = {}

    if not data.preview_only and (data.buyer_id or data.seller_id):
        context = await resolve_fee_context(
            get_db(),
            buyer_id=parse_object_id(data.buyer_id, "buyer ID") if data.buyer_id else None,
            seller_id=parse_object_id(data.seller_id, "seller ID") if data.seller_id else None,
        )

    breakdown = calculate_fees(
        item_price=data.item_price,
        currency=data.currency,
        instant_payout=data.instant_payout,
        protection_addon=data.protection_addon,
        shipping_cost=data.shipping_cost,
        wholesale_shipping_cost=data.wholesale_shipping_cost,
        **context,
    )

    logger.info(
        "FEES_CALCULATED price=%s buyer_pays=%s seller_receives=%s net_revenue=%s",
        breakdown["item_price"],
        breakdown["total_buyer_pays"],
        breakdown["total_seller_receives"],
        breakdown["net_platform_revenue"],
    )
    return breakdown
