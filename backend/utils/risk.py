import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config.constants import (
    RISK_LOOKBACK_DAYS,
    RISK_TIER_B_SCORE,
    RISK_TIER_C_SCORE,
)
from utils.fees import round_half_up

logger = logging.getLogger(__name__)


@dataclass
class SellerRiskMetrics:
    cancellation_rate: float = 0.0
    avg_shipping_days: float = 0.0
    dispute_ratio: float = 0.0
    rating_average: float = 5.0
    volume_last_30_days: int = 0


# ============================================================
# RISK SCORE (PURE)
# ============================================================

def calculate_risk_score(metrics: SellerRiskMetrics) -> int:
    score = 0

    # Cancellations (0-30)
    if metrics.cancellation_rate > 0.15:
        score += 30
    elif metrics.cancellation_rate > 0.10:
        score += 20
    elif metrics.cancellation_rate > 0.05:
        score += 10

    # Shipping delay (0-25)
    if metrics.avg_shipping_days > 7:
        score += 25
    elif metrics.avg_shipping_days > 5:
        score += 15
    elif metrics.avg_shipping_days > 3:
        score += 5

    # Disputes (0-30)
    if metrics.dispute_ratio > 0.10:
        score += 30
    elif metrics.dispute_ratio > 0.05:
        score += 20
    elif metrics.dispute_ratio > 0.02:
        score += 10

    # Ratings (0-15)
    if metrics.rating_average < 3.5:
        score += 15
    elif metrics.rating_average < 4.0:
        score += 10
    elif metrics.rating_average < 4.5:
        score += 5

    # Volume bonus, only for sellers already below 30
    if score < 30:
        if metrics.volume_last_30_days > 50:
            score -= 10
        elif metrics.volume_last_30_days > 20:
            score -= 5

    return max(0, score)


def risk_tier_for_score(score: int) -> str:
    if score >= RISK_TIER_C_SCORE:
        return "C"
    if score >= RISK_TIER_B_SCORE:
        return "B"
    return "A"


def calculate_risk_tier(metrics: SellerRiskMetrics) -> str:
    return risk_tier_for_score(calculate_risk_score(metrics))


# ============================================================
# AGGREGATES (DB)
# ============================================================

async def collect_seller_risk_metrics(db, seller_id, now: Optional[datetime] = None) -> SellerRiskMetrics:
    now = now or datetime.utcnow()
    since = now - timedelta(days=RISK_LOOKBACK_DAYS)

    orders = await db.orders.find(
        {"seller_id": seller_id, "created_at": {"$gte": since}},
        {"status": 1, "created_at": 1, "shipped_at": 1},
    ).to_list(None)

    total = len(orders)
    if total == 0:
        return SellerRiskMetrics()

    cancelled = sum(1 for o in orders if o.get("status") == "cancelled")

    shipped = [o for o in orders if o.get("shipped_at") and o.get("created_at")]
    avg_shipping_days = 0
    if shipped:
        total_days = sum(
            (o["shipped_at"] - o["created_at"]).total_seconds() / 86400
            for o in shipped
        )
        avg_shipping_days = round_half_up(total_days / len(shipped))

    disputes = await db.disputes.count_documents({
        "seller_id": seller_id,
        "created_at": {"$gte": since},
    })

    ratings = await db.ratings.find(
        {
            "reviewee_id": seller_id,
            "review_type": "seller",
            "created_at": {"$gte": since},
        },
        {"rating": 1},
    ).to_list(None)

    rating_average = 5.0
    if ratings:
        rating_average = sum(r.get("rating", 0) for r in ratings) / len(ratings)

    return SellerRiskMetrics(
        cancellation_rate=cancelled / total,
        avg_shipping_days=avg_shipping_days,
        dispute_ratio=disputes / total,
        rating_average=rating_average,
        volume_last_30_days=total,
    )


# ============================================================
# RECOMPUTE + UPSERT
# ============================================================

async def recompute_seller_risk_tier(db, seller_id, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()

    metrics = await collect_seller_risk_metrics(db, seller_id, now)
    score = calculate_risk_score(metrics)
    tier = risk_tier_for_score(score)

    rating = {
        "seller_id": seller_id,
        "risk_tier": tier,
        "risk_score": score,
        "cancellation_rate": metrics.cancellation_rate,
        "avg_shipping_days": metrics.avg_shipping_days,
        "dispute_ratio": metrics.dispute_ratio,
        "rating_average": metrics.rating_average,
        "volume_last_30_days": metrics.volume_last_30_days,
        "last_calculated_at": now,
    }

    await db.seller_risk_ratings.update_one(
        {"seller_id": seller_id},
        {"$set": rating},
        upsert=True,
    )

    logger.info("RISK_TIER_UPDATED seller=%s score=%s tier=%s", seller_id, score, tier)
    return rating


async def recompute_all_risk_tiers(db, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    updated = 0

    cursor = db.profiles.find({}, {"_id": 1})

    async for seller in cursor:
        try:
            await recompute_seller_risk_tier(db, seller["_id"], now)
            updated += 1
        except Exception:
            # One broken seller must not stop the nightly run
            logger.exception("RISK_TIER_ERROR seller=%s", seller.get("_id"))

    logger.info("RISK_TIERS_COMPLETE updated=%s", updated)
    return updated
