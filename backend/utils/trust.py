from datetime import datetime
from typing import Dict, Any, Iterable, Optional

from fastapi import HTTPException

from utils.audit import log_audit

# ============================================================
# TRUST ENGINE (Authoritative Policy Layer)
# ============================================================
# Trust score 0-100 stored on the profile, built from:
# - Ratings received
# - Dispute ratio
# - Paid orders
# - Open reports
# - Account age
# - Verifications (+ payout onboarding)
# ============================================================

TRUST_BASE_SCORE = 50

VERIFICATION_POINTS = {
    "email": 5,
    "phone": 5,
    "id": 15,
    "business": 10,
}

PAYOUT_ONBOARDING_POINTS = 10
OPEN_REPORT_PENALTY = 10
OPEN_REPORT_STATUSES = {"pending", "under_review"}


# ============================================================
# TRUST SCORE (PURE FUNCTION)
# ============================================================

def calculate_trust_score(
    *,
    ratings: Iterable[float] = (),
    dispute_count: int = 0,
    order_count: int = 0,
    open_reports: int = 0,
    account_age_months: Optional[float] = None,
    verification_types: Iterable[str] = (),
    payout_onboarded: bool = False,
) -> int:
    score = float(TRUST_BASE_SCORE)

    ratings = list(ratings)
    if ratings:
        avg = sum(ratings) / len(ratings)
        score += ((avg - 3) / 2) * 30

    if order_count > 0:
        score -= (dispute_count / order_count) * 20

    score += min(order_count * 2, 20)
    score -= open_reports * OPEN_REPORT_PENALTY

    if account_age_months is not None:
        if account_age_months >= 12:
            score += 10
        elif account_age_months >= 6:
            score += 5

    for kind in set(verification_types):
        score += VERIFICATION_POINTS.get(kind, 0)

    if payout_onboarded:
        score += PAYOUT_ONBOARDING_POINTS

    return max(0, min(100, round(score)))


# ============================================================
# FULL TRUST RECOMPUTATION
# ============================================================

async def compute_trust_score(db, user_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    profile = await db.profiles.find_one({"_id": user_id})
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")

    ratings = await db.ratings.find({"reviewee_id": user_id}, {"rating": 1}).to_list(None)

    verifications = await db.seller_verifications.find(
        {"seller_id": user_id, "status": "verified"},
        {"verification_type": 1},
    ).to_list(None)

    dispute_count = await db.disputes.count_documents({"seller_id": user_id})
    order_count = await db.orders.count_documents({"seller_id": user_id, "status": "paid"})

    open_reports = await db.reports.count_documents({
        "reported_user_id": user_id,
        "status": {"$in": sorted(OPEN_REPORT_STATUSES)},
    })

    account_age_months = None
    if profile.get("created_at"):
        account_age_months = (now - profile["created_at"]).total_seconds() / (86400 * 30)

    score = calculate_trust_score(
        ratings=[r.get("rating", 0) for r in ratings],
        dispute_count=dispute_count,
        order_count=order_count,
        open_reports=open_reports,
        account_age_months=account_age_months,
        verification_types=[v.get("verification_type") for v in verifications],
        payout_onboarded=bool(profile.get("stripe_onboarding_complete")),
    )

    await db.profiles.update_one(
        {"_id": user_id},
        {"$set": {"trust_score": score, "trust_updated_at": now}},
    )

    await log_audit(
        db=db,
        actor_id="system",
        actor_role="system",
        action="TRUST_SCORE_UPDATED",
        metadata={"user_id": str(user_id), "trust_score": score},
    )

    return {
        "success": True,
        "trust_score": score,
        "breakdown": {
            "ratings_count": len(ratings),
            "disputes_count": dispute_count,
            "orders_count": order_count,
            "reports_count": open_reports,
            "verifications_count": len(verifications),
        },
    }
