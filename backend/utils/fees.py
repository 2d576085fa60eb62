import logging
from datetime import datetime
from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from config.constants import (
    BUYER_FEE_BASE,
    BUYER_FEE_PERCENT,
    PRO_FREE_GMV_LIMIT,
    PRO_BUYER_FEE_DISCOUNT,
    SELLER_COMMISSION_BY_RISK_TIER,
    INSTANT_PAYOUT_PERCENT,
    PROTECTION_ADDON_FEE,
    PROCESSING_COSTS,
)

logger = logging.getLogger(__name__)

# ============================================================
# FEE ENGINE
# ============================================================
# Controls:
# - Buyer protection fee (membership + monthly GMV)
# - Seller commission (risk tier)
# - Instant payout fee (seller membership)
# - Shipping margin / protection add-on
# - Platform revenue after processing cost
# ============================================================


@dataclass
class FeeBreakdown:
    item_price: float
    currency: str

    buyer_protection_fee: float
    seller_commission_fee: float
    seller_commission_percentage: float
    instant_payout_fee: float
    instant_payout_percentage: float
    shipping_margin: float
    protection_addon_fee: float

    total_buyer_pays: float
    total_seller_receives: float

    platform_revenue: float
    processing_cost: float
    net_platform_revenue: float

    buyer_tier: str
    seller_tier: str
    seller_risk_tier: str
    buyer_gmv_at_purchase: float


def round_money(value: float) -> float:
    """Half-up rounding to 2 decimals (pence/cents)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_half_up(value: float) -> int:
    """Whole-number rounding where .5 always goes up (2.5 -> 3)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================
# MEMBERSHIP RESOLUTION (PURE)
# ============================================================

def effective_membership_tier(membership: Optional[dict], now: Optional[datetime] = None) -> str:
    """
    Promo users count as pro until their promo expires.
    No membership row means free.
    """
    if not membership:
        return "free"

    now = now or datetime.utcnow()
    promo_expiry = membership.get("promo_expiry")

    if membership.get("promo_user") and promo_expiry and promo_expiry > now:
        return "pro"

    return "pro" if membership.get("tier") == "pro" else "free"


# ============================================================
# FEE COMPONENTS (PURE)
# ============================================================

def buyer_protection_fee(item_price: float, buyer_tier: str = "free", monthly_gmv: float = 0) -> float:
    standard = BUYER_FEE_BASE + item_price * BUYER_FEE_PERCENT / 100

    if buyer_tier != "pro":
        return standard

    if monthly_gmv < PRO_FREE_GMV_LIMIT:
        return 0.0

    return standard * PRO_BUYER_FEE_DISCOUNT


def seller_commission_percent(risk_tier: str) -> float:
    # Unknown tiers are charged like the riskiest one
    return SELLER_COMMISSION_BY_RISK_TIER.get(
        (risk_tier or "").upper(),
        SELLER_COMMISSION_BY_RISK_TIER["C"],
    )


def instant_payout_percent(seller_tier: str) -> float:
    return INSTANT_PAYOUT_PERCENT.get(seller_tier, INSTANT_PAYOUT_PERCENT["free"])


def shipping_margin(shipping_cost: float, wholesale_shipping_cost: float) -> float:
    if shipping_cost <= 0:
        return 0.0
    return shipping_cost - wholesale_shipping_cost


def estimate_processing_cost(total_amount: float, currency: str) -> float:
    costs = PROCESSING_COSTS.get((currency or "").upper(), PROCESSING_COSTS["GBP"])
    return costs["fixed"] + total_amount * costs["percent"] / 100


# ============================================================
# FULL BREAKDOWN (PURE)
# ============================================================

def calculate_fees(
    *,
    item_price: float,
    currency: str = "GBP",
    buyer_tier: str = "free",
    seller_tier: str = "free",
    seller_risk_tier: str = "A",
    buyer_monthly_gmv: float = 0,
    instant_payout: bool = False,
    protection_addon: bool = False,
    shipping_cost: float = 0,
    wholesale_shipping_cost: float = 0,
) -> Dict[str, Any]:
    currency = (currency or "GBP").upper()

    buyer_fee = buyer_protection_fee(item_price, buyer_tier, buyer_monthly_gmv)

    commission_percent = seller_commission_percent(seller_risk_tier)
    commission = item_price * commission_percent / 100

    payout_percent = instant_payout_percent(seller_tier) if instant_payout else 0.0
    payout_fee = item_price * payout_percent / 100

    margin = shipping_margin(shipping_cost, wholesale_shipping_cost)
    addon_fee = PROTECTION_ADDON_FEE if protection_addon else 0.0

    total_buyer_pays = item_price + buyer_fee + shipping_cost + addon_fee
    total_seller_receives = item_price - commission - payout_fee

    platform_revenue = buyer_fee + commission + payout_fee + margin
    processing_cost = estimate_processing_cost(total_buyer_pays, currency)

    breakdown = FeeBreakdown(
        item_price=round_money(item_price),
        currency=currency,

        buyer_protection_fee=round_money(buyer_fee),
        seller_commission_fee=round_money(commission),
        seller_commission_percentage=commission_percent,
        instant_payout_fee=round_money(payout_fee),
        instant_payout_percentage=payout_percent,
        shipping_margin=round_money(margin),
        protection_addon_fee=addon_fee,

        total_buyer_pays=round_money(total_buyer_pays),
        total_seller_receives=round_money(total_seller_receives),

        platform_revenue=round_money(platform_revenue),
        processing_cost=round_money(processing_cost),
        net_platform_revenue=round_money(platform_revenue - processing_cost),

        buyer_tier=buyer_tier,
        seller_tier=seller_tier,
        seller_risk_tier=seller_risk_tier,
        buyer_gmv_at_purchase=buyer_monthly_gmv,
    )
    # Orders and sessions store the breakdown as a plain document
    return asdict(breakdown)


# ============================================================
# DB CONTEXT (TIERS / GMV)
# ============================================================

async def resolve_fee_context(db, *, buyer_id=None, seller_id=None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    context = {
        "buyer_tier": "free",
        "seller_tier": "free",
        "seller_risk_tier": "A",
        "buyer_monthly_gmv": 0,
    }

    if buyer_id is not None:
        membership = await db.user_memberships.find_one({"user_id": buyer_id})
        context["buyer_tier"] = effective_membership_tier(membership, now)
        context["buyer_monthly_gmv"] = (membership or {}).get("monthly_gmv_counter", 0) or 0

    if seller_id is not None:
        membership = await db.user_memberships.find_one({"user_id": seller_id})
        context["seller_tier"] = effective_membership_tier(membership, now)

        risk = await db.seller_risk_ratings.find_one({"seller_id": seller_id})
        context["seller_risk_tier"] = (risk or {}).get("risk_tier") or "A"

    logger.info(
        "FEE_CONTEXT buyer=%s seller=%s buyer_tier=%s seller_tier=%s risk_tier=%s gmv=%s",
        buyer_id,
        seller_id,
        context["buyer_tier"],
        context["seller_tier"],
        context["seller_risk_tier"],
        context["buyer_monthly_gmv"],
    )
    return context


async def quote_listing_purchase(db, *, listing: dict, buyer_id, currency: str = "GBP") -> Dict[str, Any]:
    """Fee breakdown for buying a listing as-is (shipping from the listing)."""
    context = await resolve_fee_context(db, buyer_id=buyer_id, seller_id=listing["seller_id"])

    shipping = 0.0 if listing.get("free_shipping") else float(listing.get("shipping_cost_uk") or 0)

    return calculate_fees(
        item_price=float(listing.get("seller_price") or 0),
        currency=currency,
        shipping_cost=shipping,
        **context,
    )
