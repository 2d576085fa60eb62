import re
from datetime import datetime
from statistics import mean, median
from typing import Any, Dict, List, Optional

from config.env import SITE_URL


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else None


# -------------------------------
# Query building
# -------------------------------

def build_search_query(query: str, filters: Optional[dict] = None) -> dict:
    """Agents only ever see active listings whose seller opted in to AI visibility."""
    q: Dict[str, Any] = {
        "status": "active",
        "ai_answer_engines_enabled": True,
    }

    if query:
        pattern = {"$regex": re.escape(query), "$options": "i"}
        q["$or"] = [
            {"title": pattern},
            {"description": pattern},
            {"set_code": pattern},
        ]

    filters = filters or {}
    if filters.get("condition"):
        q["condition"] = filters["condition"]
    if filters.get("rarity"):
        q["rarity"] = filters["rarity"]
    if filters.get("set"):
        q["set_code"] = filters["set"]

    price = {}
    if filters.get("min_price") is not None:
        price["$gte"] = filters["min_price"]
    if filters.get("max_price") is not None:
        price["$lte"] = filters["max_price"]
    if price:
        q["seller_price"] = price

    return q


# -------------------------------
# Serializers
# -------------------------------

def serialize_search_result(listing: dict, seller_name: Optional[str] = None) -> dict:
    images = listing.get("images") or []
    return {
        "id": str(listing["_id"]),
        "title": listing.get("title"),
        "price": float(listing.get("seller_price") or 0),
        "condition": listing.get("condition") or "Unknown",
        "set": listing.get("set_code") or "",
        "rarity": listing.get("rarity") or "",
        "seller": seller_name or "Anonymous",
        "images": images[:1],
    }


def shipping_cost(listing: dict) -> float:
    return 0.0 if listing.get("free_shipping") else float(listing.get("shipping_cost_uk") or 0)


def serialize_listing_detail(listing: dict, seller: Optional[dict] = None) -> dict:
    seller = seller or {}
    grading = None
    if listing.get("grading_service") and listing.get("grading_score"):
        grading = {
            "service": listing["grading_service"],
            "score": listing["grading_score"],
        }

    return {
        "id": str(listing["_id"]),
        "title": listing.get("title"),
        "description": listing.get("description") or "",
        "price": float(listing.get("seller_price") or 0),
        "condition": listing.get("condition") or "Unknown",
        "set": listing.get("set_code") or "",
        "rarity": listing.get("rarity") or "",
        "grading": grading,
        "images": listing.get("images") or [],
        "video": listing.get("video_url"),
        "seller": {
            "id": str(listing["seller_id"]),
            "name": seller.get("full_name") or "Anonymous",
            "trust_score": seller.get("trust_score", 50),
        },
        "trade_enabled": bool(listing.get("trade_enabled")),
        "shipping": {
            "cost": shipping_cost(listing),
            "free": bool(listing.get("free_shipping")),
        },
        "created_at": _iso(listing.get("created_at")),
        "updated_at": _iso(listing.get("updated_at")),
    }


def serialize_inventory_item(listing: dict) -> dict:
    return {
        "id": str(listing["_id"]),
        "title": listing.get("title"),
        "price": float(listing.get("seller_price") or 0),
        "status": listing.get("status"),
        "condition": listing.get("condition"),
        "ai_answer_engines_enabled": bool(listing.get("ai_answer_engines_enabled")),
        "created_at": _iso(listing.get("created_at")),
    }


def listing_url(listing_id) -> str:
    return f"{SITE_URL.rstrip('/')}/listing/{listing_id}"


async def seller_names(db, listings: List[dict]) -> Dict[Any, str]:
    ids = list({listing["seller_id"] for listing in listings})
    if not ids:
        return {}
    profiles = await db.profiles.find({"_id": {"$in": ids}}, {"full_name": 1}).to_list(None)
    return {p["_id"]: p.get("full_name") for p in profiles}


# -------------------------------
# Price evaluation (comps)
# -------------------------------

TREND_MIN_COMPS = 4
TREND_THRESHOLD = 0.05


def price_trend(comps: List[dict]) -> Optional[str]:
    """Compares the newer half of the sales to the older half."""
    if len(comps) < TREND_MIN_COMPS:
        return None

    ordered = sorted(comps, key=lambda c: c["date_sold"])
    half = len(ordered) // 2
    older = mean(c["price"] for c in ordered[:half])
    newer = mean(c["price"] for c in ordered[half:])

    if older <= 0:
        return None
    change = (newer - older) / older
    if change > TREND_THRESHOLD:
        return "rising"
    if change < -TREND_THRESHOLD:
        return "falling"
    return "stable"


def price_confidence(sample_size: int) -> float:
    if sample_size == 0:
        return 0.0
    return round(min(0.95, 0.3 + 0.065 * sample_size), 2)


def evaluate_comps(comps: List[dict], currency: str = "GBP") -> Dict[str, Any]:
    comps = [c for c in comps if c.get("price") is not None and c.get("date_sold")]
    prices = [float(c["price"]) for c in comps]

    if not prices:
        return {
            "suggested_price": None,
            "currency": currency,
            "market_analysis": {
                "average_price": None,
                "median_price": None,
                "low_price": None,
                "high_price": None,
                "sample_size": 0,
            },
            "recent_sales": [],
            "trend": None,
            "confidence": 0.0,
        }

    recent = sorted(comps, key=lambda c: c["date_sold"], reverse=True)[:10]

    return {
        "suggested_price": round(median(prices), 2),
        "currency": currency,
        "market_analysis": {
            "average_price": round(mean(prices), 2),
            "median_price": round(median(prices), 2),
            "low_price": round(min(prices), 2),
            "high_price": round(max(prices), 2),
            "sample_size": len(prices),
        },
        "recent_sales": [
            {
                "sold_date": _iso(c.get("date_sold")),
                "sold_price": float(c["price"]),
                "condition": c.get("condition"),
                "marketplace": c.get("source"),
            }
            for c in recent
        ],
        "trend": price_trend(comps),
        "confidence": price_confidence(len(prices)),
    }
