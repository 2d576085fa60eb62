import logging
from datetime import datetime

from pymongo import ReturnDocument

from utils.audit import log_audit
from utils.fees import quote_listing_purchase
from utils.wallet_service import (
    get_wallet_balance,
    settle_wallet_purchase,
    to_minor,
)

logger = logging.getLogger(__name__)


class PurchaseError(Exception):
    """
    reason: not_found | not_available | ai_disabled | self_purchase | insufficient_funds
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


# ============================================================
# STEPS
# ============================================================

async def load_purchasable_listing(db, listing_id, buyer_id, *, require_ai_visible: bool = True) -> dict:
    listing = await db.listings.find_one({"_id": listing_id})
    if not listing:
        raise PurchaseError("not_found", "Listing not found")

    if listing.get("status") != "active":
        raise PurchaseError("not_available", "Listing is no longer available")

    if require_ai_visible and not listing.get("ai_answer_engines_enabled"):
        raise PurchaseError("ai_disabled", "Listing is not available to AI agents")

    if listing.get("seller_id") == buyer_id:
        raise PurchaseError("self_purchase", "Cannot purchase your own listing")

    return listing


async def claim_listing(db, listing_id, buyer_id) -> dict:
    """active -> sold exactly once; a second caller gets not_available."""
    now = datetime.utcnow()
    claimed = await db.listings.find_one_and_update(
        {"_id": listing_id, "status": "active"},
        {"$set": {"status": "sold", "sold_at": now, "buyer_id": buyer_id, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        raise PurchaseError("not_available", "Listing is no longer available")
    return claimed


async def release_listing(db, listing_id, buyer_id):
    """Undo claim_listing when the order could not be written."""
    await db.listings.update_one(
        {"_id": listing_id, "status": "sold", "buyer_id": buyer_id},
        {
            "$set": {"status": "active", "updated_at": datetime.utcnow()},
            "$unset": {"sold_at": "", "buyer_id": ""},
        },
    )


async def create_order(
    db,
    *,
    listing: dict,
    buyer_id,
    fees: dict,
    shipping_address: dict,
    payment_method: str,
    status: str = "paid",
) -> dict:
    now = datetime.utcnow()
    order = {
        "buyer_id": buyer_id,
        "seller_id": listing["seller_id"],
        "listing_id": listing["_id"],
        "status": status,
        "total_amount": fees["total_buyer_pays"],
        "item_price": fees["item_price"],
        "fees": fees,
        "payment_method": payment_method,
        "shipping_address": shipping_address,
        "delivered_at": None,
        "created_at": now,
        "updated_at": now,
    }
    result = await db.orders.insert_one(order)
    order["_id"] = result.inserted_id
    return order


async def record_buyer_gmv(db, buyer_id, amount: float):
    await db.user_memberships.update_one(
        {"user_id": buyer_id},
        {
            "$inc": {"monthly_gmv_counter": amount},
            "$setOnInsert": {"tier": "free"},
        },
        upsert=True,
    )


# ============================================================
# WALLET PURCHASE (ONE SHOT)
# ============================================================

async def purchase_listing_with_wallet(
    db,
    *,
    listing_id,
    buyer_id,
    shipping_address: dict,
    payment_method: str = "wallet",
    actor_role: str = "agent",
    currency: str = "GBP",
) -> dict:
    listing = await load_purchasable_listing(db, listing_id, buyer_id)
    fees = await quote_listing_purchase(db, listing=listing, buyer_id=buyer_id, currency=currency)

    # Check then debit, not one atomic step: concurrent purchases of
    # different listings can each pass this check against the same balance.
    balance = await get_wallet_balance(db, buyer_id)
    if balance < to_minor(fees["total_buyer_pays"]):
        raise PurchaseError("insufficient_funds", "Insufficient wallet balance")

    await claim_listing(db, listing_id, buyer_id)

    try:
        order = await create_order(
            db,
            listing=listing,
            buyer_id=buyer_id,
            fees=fees,
            shipping_address=shipping_address,
            payment_method=payment_method,
        )
    except Exception:
        logger.exception("ORDER_CREATE_FAILED listing=%s buyer=%s", listing_id, buyer_id)
        await release_listing(db, listing_id, buyer_id)
        raise

    await settle_wallet_purchase(
        db,
        buyer_id=buyer_id,
        seller_id=listing["seller_id"],
        order_id=order["_id"],
        buyer_total=fees["total_buyer_pays"],
        seller_receives=fees["total_seller_receives"],
    )
    await record_buyer_gmv(db, buyer_id, fees["item_price"])

    await log_audit(
        db=db,
        actor_id=str(buyer_id),
        actor_role=actor_role,
        action="ORDER_PAID_WALLET",
        metadata={
            "order_id": str(order["_id"]),
            "listing_id": str(listing_id),
            "total": fees["total_buyer_pays"],
        },
    )

    logger.info("ORDER_CREATED order=%s listing=%s buyer=%s", order["_id"], listing_id, buyer_id)
    return order
