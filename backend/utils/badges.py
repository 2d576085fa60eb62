import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)

NEW_SELLER_DAYS = 30
FAST_SHIPPER_DAYS = 2
EXCELLENT_RATING = 4.5
EXCELLENT_RATING_MIN_COUNT = 5
TOP_SELLER_ORDERS = 50
POWER_SELLER_ORDERS = 100
TRUSTED_SELLER_SCORE = 75


def profile_badges(profile: dict, stats: Dict[str, Any], now: Optional[datetime] = None) -> List[Dict[str, str]]:
    now = now or datetime.utcnow()
    badges = []

    if profile.get("email_verified") or profile.get("phone_verified") or profile.get("id_verified"):
        badges.append({
            "type": "verified_seller",
            "name": "Verified Seller",
            "description": "Identity verified",
        })

    created_at = profile.get("created_at")
    if created_at and (now - created_at).total_seconds() / 86400 < NEW_SELLER_DAYS:
        badges.append({
            "type": "new_seller",
            "name": "New Seller",
            "description": "Recently joined the marketplace",
        })

    avg_shipping = stats.get("avg_shipping_days")
    if avg_shipping is not None and avg_shipping < FAST_SHIPPER_DAYS:
        badges.append({
            "type": "fast_shipper",
            "name": "Fast Shipper",
            "description": f"Average shipping time: {avg_shipping:.1f} days",
        })

    avg_rating = stats.get("avg_rating", 0)
    if avg_rating >= EXCELLENT_RATING and stats.get("rating_count", 0) >= EXCELLENT_RATING_MIN_COUNT:
        badges.append({
            "type": "excellent_rating",
            "name": "Excellent Rating",
            "description": f"{avg_rating:.1f} star average",
        })

    completed = stats.get("completed_orders", 0)
    if completed >= TOP_SELLER_ORDERS:
        badges.append({
            "type": "top_seller",
            "name": "Top Seller",
            "description": f"{completed} completed orders",
        })

    trust_score = profile.get("trust_score") or 0
    if trust_score >= TRUSTED_SELLER_SCORE:
        badges.append({
            "type": "trusted_seller",
            "name": "Trusted Seller",
            "description": f"Trust score: {trust_score}",
        })

    if completed >= POWER_SELLER_ORDERS:
        badges.append({
            "type": "power_seller",
            "name": "Power Seller",
            "description": f"{completed} completed orders",
        })

    if profile.get("business_verified"):
        badges.append({
            "type": "verified_business",
            "name": "Verified Business",
            "description": "Business registration verified",
        })

    return badges


async def collect_badge_stats(db, seller_id) -> Dict[str, Any]:
    orders = await db.orders.find(
        {"seller_id": seller_id},
        {"status": 1, "created_at": 1, "shipped_at": 1},
    ).to_list(None)

    delivered = [o for o in orders if o.get("status") == "delivered"]

    ratings = await db.ratings.find({"reviewee_id": seller_id}, {"rating": 1}).to_list(None)
    avg_rating = (
        sum(r.get("rating") or 0 for r in ratings) / len(ratings)
        if ratings else 0
    )

    shipping_days = [
        (o["shipped_at"] - o["created_at"]).total_seconds() / 86400
        for o in delivered
        if o.get("shipped_at") and o.get("created_at")
    ]
    avg_shipping_days = sum(shipping_days) / len(shipping_days) if shipping_days else None

    return {
        "total_orders": len(orders),
        "completed_orders": len(delivered),
        "avg_rating": avg_rating,
        "rating_count": len(ratings),
        "avg_shipping_days": avg_shipping_days,
    }


async def assign_seller_badges(db, seller_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    profile = await db.profiles.find_one({"_id": seller_id})
    if not profile:
        raise HTTPException(status_code=404, detail="Seller not found")

    stats = await collect_badge_stats(db, seller_id)
    assigned = []

    for badge in profile_badges(profile, stats, now):
        await db.seller_badges.update_one(
            {"seller_id": seller_id, "badge_type": badge["type"]},
            {
                "$set": {
                    "badge_name": badge["name"],
                    "description": badge["description"],
                    "is_active": True,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        assigned.append({
            "badge_type": badge["type"],
            "badge_name": badge["name"],
            "description": badge["description"],
        })

    logger.info("SELLER_BADGES_ASSIGNED seller=%s count=%s", seller_id, len(assigned))

    return {
        "success": True,
        "badges": assigned,
        "stats": {
            **stats,
            "trust_score": profile.get("trust_score"),
        },
    }
