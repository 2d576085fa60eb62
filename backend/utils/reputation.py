import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config.constants import (
    REPUTATION_BASE_SCORE,
    REPUTATION_MIN_SCORE,
    REPUTATION_MAX_SCORE,
    ON_TIME_SHIPPING_HOURS,
)
from utils.fees import round_half_up, round_money

logger = logging.getLogger(__name__)

# Caps absurd counts so rates stay finite
MAX_COUNTED_SALES = 1_000_000


@dataclass
class ReputationInputs:
    total_sales: float = 0
    average_rating: float = 0.0
    total_reviews: float = 0
    response_rate: float = 0.0          # percent, 0-100
    avg_response_time_hours: float = 0.0
    response_count: float = 0
    disputes_won: float = 0
    disputes_lost: float = 0
    on_time_shipments: float = 0


def _clean(value, low: float = 0.0, high: float = math.inf) -> float:
    """NaN -> low, then clamp. Keeps the score arithmetic finite."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return low
    if math.isnan(value):
        return low
    return max(low, min(high, value))


# ============================================================
# REPUTATION SCORE (PURE)
# ============================================================

def calculate_reputation_score(inputs: ReputationInputs) -> int:
    sales = _clean(inputs.total_sales, 0, MAX_COUNTED_SALES)
    rating = _clean(inputs.average_rating, 0, 5)
    response_rate = _clean(inputs.response_rate, 0, 100)
    response_hours = _clean(inputs.avg_response_time_hours)
    won = _clean(inputs.disputes_won, 0, REPUTATION_MAX_SCORE)
    lost = _clean(inputs.disputes_lost, 0, REPUTATION_MAX_SCORE)
    on_time = _clean(inputs.on_time_shipments, 0, sales)

    score = REPUTATION_BASE_SCORE

    # Sales (up to +200)
    score += min(sales * 2, 200)

    # Rating (up to +200)
    score += round_half_up(rating * 40)

    # Response rate (up to +100)
    score += round_half_up(response_rate)

    # Response time (+50 .. -20)
    if response_hours < 2:
        score += 50
    elif response_hours < 6:
        score += 30
    elif response_hours < 24:
        score += 10
    else:
        score -= 20

    # Disputes
    score -= lost * 20
    score += won * 10

    # On-time shipping (up to +50)
    on_time_rate = (on_time / sales) * 100 if sales > 0 else 0
    score += round_half_up(on_time_rate / 2)

    return int(max(REPUTATION_MIN_SCORE, min(REPUTATION_MAX_SCORE, score)))


def verification_level(score: int, total_sales: float, average_rating: float) -> str:
    if score >= 900 and total_sales >= 100 and average_rating >= 4.8:
        return "top_seller"
    if score >= 750 and total_sales >= 50 and average_rating >= 4.5:
        return "trusted_seller"
    if score >= 600 and total_sales >= 10 and average_rating >= 4.0:
        return "verified_seller"
    return "unverified"


VERIFICATION_BADGES = {
    "top_seller": ("Top Seller", "Elite seller with exceptional performance"),
    "trusted_seller": ("Trusted Seller", "Trusted seller with proven track record"),
    "verified_seller": ("Verified Seller", "Verified seller with good standing"),
}


def reputation_badges(inputs: ReputationInputs, level: str) -> List[Dict[str, str]]:
    badges = []

    if inputs.total_sales >= 1:
        badges.append({
            "badge_type": "milestone",
            "badge_name": "First Sale",
            "description": "Completed their first sale",
        })

    if inputs.avg_response_time_hours < 2 and inputs.response_count >= 10:
        badges.append({
            "badge_type": "service",
            "badge_name": "Fast Responder",
            "description": "Responds to messages within 2 hours",
        })

    if inputs.average_rating >= 4.9 and inputs.total_reviews >= 20:
        badges.append({
            "badge_type": "quality",
            "badge_name": "Perfect Rating",
            "description": "Maintains near-perfect customer ratings",
        })

    if level in VERIFICATION_BADGES:
        name, description = VERIFICATION_BADGES[level]
        badges.append({
            "badge_type": "verification",
            "badge_name": name,
            "description": description,
        })

    if inputs.total_sales >= 100:
        badges.append({
            "badge_type": "milestone",
            "badge_name": "100 Sales",
            "description": "Reached 100 successful sales",
        })

    return badges


# ============================================================
# CONVERSATION RESPONSE TIMES
# ============================================================

def response_stats(conversations: list, seller_id) -> Dict[str, float]:
    """
    A response is a seller message directly after a non-seller message.
    Returns count, average hours (rounded) and rate per conversation (%).
    """
    total_seconds = 0.0
    count = 0

    for conv in conversations:
        messages = conv.get("messages") or []
        for prev, msg in zip(messages, messages[1:]):
            if msg.get("sender_id") == seller_id and prev.get("sender_id") != seller_id:
                total_seconds += (msg["created_at"] - prev["created_at"]).total_seconds()
                count += 1

    avg_hours = round_half_up(total_seconds / count / 3600) if count else 0
    rate = min(100.0, count / len(conversations) * 100) if conversations else 0.0

    return {"count": count, "avg_hours": avg_hours, "rate": rate}


# ============================================================
# FULL RECOMPUTE (DB)
# ============================================================

async def compute_seller_reputation(db, seller_id, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()

    orders = await db.orders.find(
        {"seller_id": seller_id, "status": "completed"},
        {"total_amount": 1, "created_at": 1, "shipped_at": 1},
    ).to_list(None)

    cancelled = await db.orders.count_documents({"seller_id": seller_id, "status": "cancelled"})
    ratings = await db.ratings.find({"reviewee_id": seller_id}, {"rating": 1}).to_list(None)
    disputes = await db.disputes.find(
        {"seller_id": seller_id},
        {"ai_recommended_outcome": 1},
    ).to_list(None)
    conversations = await db.conversations.find(
        {"seller_id": seller_id},
        {"messages": 1},
    ).to_list(None)

    total_sales = len(orders)
    total_revenue = sum(float(o.get("total_amount") or 0) for o in orders)
    total_reviews = len(ratings)
    average_rating = (
        sum(r.get("rating", 0) for r in ratings) / total_reviews
        if total_reviews else 0
    )

    disputes_won = sum(1 for d in disputes if d.get("ai_recommended_outcome") == "seller_favor")
    disputes_lost = sum(1 for d in disputes if d.get("ai_recommended_outcome") == "buyer_favor")

    on_time_window = timedelta(hours=ON_TIME_SHIPPING_HOURS)
    on_time = sum(
        1 for o in orders
        if o.get("shipped_at") and o.get("created_at")
        and o["shipped_at"] - o["created_at"] <= on_time_window
    )

    responses = response_stats(conversations, seller_id)

    inputs = ReputationInputs(
        total_sales=total_sales,
        average_rating=average_rating,
        total_reviews=total_reviews,
        response_rate=responses["rate"],
        avg_response_time_hours=responses["avg_hours"],
        response_count=responses["count"],
        disputes_won=disputes_won,
        disputes_lost=disputes_lost,
        on_time_shipments=on_time,
    )

    score = calculate_reputation_score(inputs)
    level = verification_level(score, total_sales, average_rating)

    closed_orders = total_sales + cancelled
    await db.seller_reputation.update_one(
        {"seller_id": seller_id},
        {
            "$set": {
                "seller_id": seller_id,
                "reputation_score": score,
                "verification_level": level,
                "total_sales": total_sales,
                "total_revenue": round_money(total_revenue),
                "average_rating": average_rating,
                "total_reviews": total_reviews,
                "response_rate": responses["rate"],
                "avg_response_time_hours": responses["avg_hours"],
                "disputes_won": disputes_won,
                "disputes_lost": disputes_lost,
                "on_time_shipments": on_time,
                "late_shipments": total_sales - on_time,
                "cancellation_rate": (cancelled / closed_orders) * 100 if closed_orders else 0,
                "last_calculated_at": now,
            }
        },
        upsert=True,
    )

    badges = reputation_badges(inputs, level)
    awarded = 0
    for badge in badges:
        existing = await db.seller_badges.find_one({
            "seller_id": seller_id,
            "badge_name": badge["badge_name"],
        })
        if existing:
            continue

        await db.seller_badges.insert_one({
            "seller_id": seller_id,
            **badge,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        })
        awarded += 1

    logger.info(
        "REPUTATION_UPDATED seller=%s score=%s level=%s new_badges=%s",
        seller_id,
        score,
        level,
        awarded,
    )

    return {
        "success": True,
        "reputation_score": score,
        "verification_level": level,
        "badges_awarded": awarded,
    }
