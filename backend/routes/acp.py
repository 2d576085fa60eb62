import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from bson import ObjectId
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument

from config.constants import ACP_SESSION_MINUTES, DEFAULT_DELIVERY_DAYS
from config.env import DEFAULT_CURRENCY
from database import get_db
from models.acp import AcpCheckoutRequest, AcpSessionRequest
from utils.api_keys import (
    ApiKeyError,
    check_rate_limit,
    log_api_key_usage,
    validate_api_key,
)
from utils.audit import log_audit
from utils.fees import quote_listing_purchase
from utils.listings import shipping_cost
from utils.orders import (
    PurchaseError,
    claim_listing,
    create_order,
    load_purchasable_listing,
    record_buyer_gmv,
    release_listing,
)
from utils.wallet_service import (
    credit_pending_sale,
    debit_purchase,
    get_wallet_balance,
    refund_purchase,
    to_major,
    to_minor,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions/v1/acp", tags=["ACP"])


class ACPError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    def to_response(self) -> JSONResponse:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details

        headers = None
        if self.code == "ACP_RATE_LIMIT" and isinstance(self.details, dict):
            headers = {"Retry-After": str(self.details.get("retry_after", 3600))}

        return JSONResponse(body, status_code=self.status_code, headers=headers)


PURCHASE_ERRORS = {
    "not_found": (404, "ACP_NOT_FOUND"),
    # Hidden listings look missing to agents
    "ai_disabled": (404, "ACP_NOT_FOUND"),
    "not_available": (409, "ACP_NOT_AVAILABLE"),
    "self_purchase": (400, "ACP_SELF_PURCHASE"),
    "insufficient_funds": (402, "ACP_INSUFFICIENT_FUNDS"),
}


def _purchase_error(e: PurchaseError) -> ACPError:
    status_code, code = PURCHASE_ERRORS.get(e.reason, (400, "ACP_INVALID_STATE"))
    return ACPError(status_code, code, e.message)


def _object_id(value: str, name: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ACPError(400, "ACP_INVALID_REQUEST", f"Invalid {name}")
    return ObjectId(value)


# ======================================================
# REQUEST PIPELINE (AUTH / RATE LIMIT / USAGE LOG)
# ======================================================

async def _run(
    request: Request,
    authorization: Optional[str],
    scope: str,
    endpoint: str,
    action: Callable[[Any, dict], Awaitable[dict]],
) -> JSONResponse:
    started = time.monotonic()
    db = get_db()
    api_key = None
    status_code = 200

    try:
        try:
            api_key = await validate_api_key(db, authorization, [scope])
            await check_rate_limit(db, api_key)
        except ApiKeyError as e:
            if e.status_code == 429:
                raise ACPError(429, "ACP_RATE_LIMIT", e.message, {"retry_after": e.retry_after})
            raise ACPError(e.status_code, "ACP_AUTH_ERROR", e.message)

        result = await action(db, api_key)
        return JSONResponse(result)

    except ACPError as e:
        status_code = e.status_code
        return e.to_response()

    except Exception as e:
        status_code = 500
        logger.exception("ACP_INTERNAL_ERROR endpoint=%s", endpoint)
        return ACPError(500, "ACP_INTERNAL_ERROR", "Internal server error", str(e)).to_response()

    finally:
        if api_key is not None:
            try:
                await log_api_key_usage(
                    db,
                    api_key_id=api_key["_id"],
                    endpoint=endpoint,
                    method=request.method,
                    status_code=status_code,
                    response_time_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception:
                logger.exception("ACP_USAGE_LOG_ERROR key=%s", api_key.get("_id"))


async def _load_session(db, session_id: str, agent_id) -> dict:
    session = await db.acp_sessions.find_one({
        "_id": _object_id(session_id, "session_id"),
        "agent_id": agent_id,
    })
    if not session:
        raise ACPError(404, "ACP_SESSION_NOT_FOUND", "Session not found")
    return session


# ======================================================
# PRODUCT
# ======================================================

@router.get("/product/{product_id}")
async def get_product(
    product_id: str,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    async def action(db, api_key):
        started = time.monotonic()
        not_found = ACPError(
            404,
            "ACP_NOT_FOUND",
            "Product not found or not available via ACP",
            "This listing may not be enabled for AI agents, or it does not exist.",
        )

        if not ObjectId.is_valid(product_id):
            raise not_found

        listing = await db.listings.find_one({
            "_id": ObjectId(product_id),
            "ai_answer_engines_enabled": True,
        })
        if not listing:
            raise not_found
        if listing.get("status") != "active":
            raise ACPError(404, "ACP_NOT_AVAILABLE", "Product is not active")

        seller = await db.profiles.find_one(
            {"_id": listing["seller_id"]},
            {"full_name": 1, "trust_score": 1},
        ) or {}
        reputation = await db.seller_reputation.find_one({"seller_id": listing["seller_id"]})

        comps_query = {"set_code": listing.get("set_code")}
        if listing.get("card_number"):
            comps_query["card_number"] = listing["card_number"]
        comps = await db.pricing_comps.find(comps_query).sort("date_sold", -1).to_list(10)

        set_data = None
        if listing.get("set_code"):
            set_data = {"code": listing["set_code"], "number": listing.get("card_number") or ""}

        grading = None
        if listing.get("grading_service") and listing.get("grading_score"):
            grading = {"service": listing["grading_service"], "score": listing["grading_score"]}

        product = {
            "id": str(listing["_id"]),
            "title": listing.get("title"),
            "description": listing.get("description") or "",
            "condition": listing.get("condition") or "Unknown",
            "set_data": set_data,
            "rarity": listing.get("rarity") or "",
            "grading": grading,
            "price": float(listing.get("seller_price") or 0),
            "currency": DEFAULT_CURRENCY,
            "images": listing.get("images") or [],
            "video": listing.get("video_url"),
            "seller": {
                "id": str(listing["seller_id"]),
                "name": seller.get("full_name") or "Anonymous",
                "trust_score": seller.get("trust_score", 50),
                "reputation": {
                    "reputation_score": reputation.get("reputation_score"),
                    "verification_level": reputation.get("verification_level"),
                    "total_sales": reputation.get("total_sales", 0),
                    "average_rating": reputation.get("average_rating"),
                } if reputation else None,
            },
            "stock": 1,
            "trade_enabled": bool(listing.get("trade_enabled")),
            "shipping_options": [
                {
                    "carrier": "Royal Mail",
                    "cost": shipping_cost(listing),
                    "estimated_days": listing.get("estimated_delivery_days") or DEFAULT_DELIVERY_DAYS,
                    "region": "UK",
                },
            ],
            "comparable_sales": [
                {
                    "price": float(c.get("price") or 0),
                    "condition": c.get("condition"),
                    "date_sold": c["date_sold"].isoformat() if isinstance(c.get("date_sold"), datetime) else None,
                    "source": c.get("source"),
                }
                for c in comps
            ],
            "created_at": listing["created_at"].isoformat() if listing.get("created_at") else None,
            "updated_at": listing["updated_at"].isoformat() if listing.get("updated_at") else None,
        }

        return {
            "product": product,
            "meta": {"execution_time_ms": int((time.monotonic() - started) * 1000)},
        }

    return await _run(request, authorization, "acp_read", "/acp/product", action)


# ======================================================
# CHECKOUT
# ======================================================

@router.post("/checkout")
async def create_checkout(
    data: AcpCheckoutRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    async def action(db, api_key):
        buyer_id = api_key["user_id"]
        listing_id = _object_id(data.listing_id, "listing_id")

        try:
            listing = await load_purchasable_listing(db, listing_id, buyer_id)
        except PurchaseError as e:
            raise _purchase_error(e)

        fees = await quote_listing_purchase(db, listing=listing, buyer_id=buyer_id, currency=DEFAULT_CURRENCY)

        now = datetime.utcnow()
        expires_at = now + timedelta(minutes=ACP_SESSION_MINUTES)

        session = {
            "agent_id": buyer_id,
            "api_key_id": api_key["_id"],
            "cart_items": [{
                "listing_id": listing_id,
                "seller_id": listing["seller_id"],
                "title": listing.get("title"),
                "price": fees["item_price"],
                "quantity": 1,
            }],
            "total_amount": fees["total_buyer_pays"],
            "fees": fees,
            "shipping_address": data.shipping_address.model_dump(),
            "status": "active",
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        result = await db.acp_sessions.insert_one(session)

        logger.info("ACP_SESSION_CREATED session=%s listing=%s agent=%s", result.inserted_id, listing_id, buyer_id)

        return {
            "session_id": str(result.inserted_id),
            "status": "active",
            "cart_items": [{
                "listing_id": str(listing_id),
                "title": listing.get("title"),
                "price": fees["item_price"],
                "quantity": 1,
            }],
            "fees": {
                "buyer_protection_fee": fees["buyer_protection_fee"],
                "shipping": shipping_cost(listing),
            },
            "total_amount": fees["total_buyer_pays"],
            "currency": DEFAULT_CURRENCY,
            "expires_at": expires_at.isoformat(),
        }

    return await _run(request, authorization, "acp_purchase", "/acp/checkout", action)


# ======================================================
# PAYMENT (WALLET)
# ======================================================

@router.post("/payment")
async def pay_session(
    data: AcpSessionRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    async def action(db, api_key):
        buyer_id = api_key["user_id"]
        session = await _load_session(db, data.session_id, buyer_id)

        if session.get("status") != "active":
            raise ACPError(409, "ACP_INVALID_STATE", "Session is not active")

        now = datetime.utcnow()
        if session.get("expires_at") and session["expires_at"] < now:
            await db.acp_sessions.update_one(
                {"_id": session["_id"], "status": "active"},
                {"$set": {"status": "expired", "updated_at": now}},
            )
            raise ACPError(400, "ACP_SESSION_EXPIRED", "Session has expired")

        total = float(session.get("total_amount") or 0)
        balance = await get_wallet_balance(db, buyer_id)
        if balance < to_minor(total):
            raise ACPError(
                402,
                "ACP_INSUFFICIENT_FUNDS",
                "Insufficient wallet balance",
                {"required": total, "available": to_major(balance)},
            )

        paid = await db.acp_sessions.find_one_and_update(
            {"_id": session["_id"], "status": "active"},
            {"$set": {"status": "payment_completed", "paid_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not paid:
            raise ACPError(409, "ACP_INVALID_STATE", "Session is not active")

        await debit_purchase(db, buyer_id, session["_id"], total)

        # Another payment may have spent the same balance since the check above
        after = await get_wallet_balance(db, buyer_id)
        if after < 0:
            await refund_purchase(db, buyer_id, session["_id"], total)
            await db.acp_sessions.update_one(
                {"_id": session["_id"], "status": "payment_completed"},
                {"$set": {"status": "active", "paid_at": None, "updated_at": datetime.utcnow()}},
            )
            logger.warning("ACP_PAYMENT_OVERDRAWN session=%s agent=%s", session["_id"], buyer_id)
            raise ACPError(
                402,
                "ACP_INSUFFICIENT_FUNDS",
                "Insufficient wallet balance",
                {"required": total, "available": to_major(after + to_minor(total))},
            )

        logger.info("ACP_PAYMENT_COMPLETED session=%s agent=%s amount=%s", session["_id"], buyer_id, total)

        return {
            "success": True,
            "session_id": data.session_id,
            "payment_confirmed": True,
            "amount_charged": total,
            "new_balance": to_major(balance - to_minor(total)),
        }

    return await _run(request, authorization, "acp_purchase", "/acp/payment", action)


# ======================================================
# CONFIRM
# ======================================================

def _confirmation(order_id) -> dict:
    return {
        "success": True,
        "order_id": str(order_id),
        "status": "confirmed",
        "tracking_number": None,
        "message": "Order confirmed successfully",
    }


@router.post("/confirm")
async def confirm_session(
    data: AcpSessionRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    async def action(db, api_key):
        buyer_id = api_key["user_id"]
        session = await _load_session(db, data.session_id, buyer_id)

        if session.get("status") == "completed" and session.get("order_id"):
            return _confirmation(session["order_id"])

        now = datetime.utcnow()
        locked = await db.acp_sessions.find_one_and_update(
            {"_id": session["_id"], "status": "payment_completed"},
            {"$set": {"status": "confirming", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not locked:
            raise ACPError(409, "ACP_INVALID_STATE", "Payment must be completed before confirming order")

        item = locked["cart_items"][0]
        total = float(locked.get("total_amount") or 0)

        try:
            listing = await claim_listing(db, item["listing_id"], buyer_id)
        except PurchaseError:
            await refund_purchase(db, buyer_id, locked["_id"], total)
            await db.acp_sessions.update_one(
                {"_id": locked["_id"]},
                {"$set": {"status": "refunded", "updated_at": datetime.utcnow()}},
            )
            logger.warning("ACP_CONFIRM_REFUNDED session=%s listing=%s", locked["_id"], item["listing_id"])
            raise ACPError(
                409,
                "ACP_NOT_AVAILABLE",
                "Listing is no longer available",
                "Payment has been refunded to your wallet",
            )

        fees = locked["fees"]
        try:
            order = await create_order(
                db,
                listing=listing,
                buyer_id=buyer_id,
                fees=fees,
                shipping_address=locked.get("shipping_address") or {},
                payment_method="acp",
                status="confirmed",
            )
        except Exception:
            # Paid but no order: reopen so the confirm can be retried
            logger.exception("ACP_CONFIRM_ORDER_FAILED session=%s listing=%s", locked["_id"], item["listing_id"])
            await release_listing(db, item["listing_id"], buyer_id)
            await db.acp_sessions.update_one(
                {"_id": locked["_id"], "status": "confirming"},
                {"$set": {"status": "payment_completed", "updated_at": datetime.utcnow()}},
            )
            raise

        await credit_pending_sale(db, listing["seller_id"], order["_id"], fees["total_seller_receives"])
        await record_buyer_gmv(db, buyer_id, fees["item_price"])

        await db.acp_sessions.update_one(
            {"_id": locked["_id"]},
            {"$set": {"status": "completed", "order_id": order["_id"], "updated_at": datetime.utcnow()}},
        )

        await log_audit(
            db=db,
            actor_id=str(buyer_id),
            actor_role="agent",
            action="ACP_ORDER_CONFIRMED",
            metadata={
                "order_id": str(order["_id"]),
                "session_id": str(locked["_id"]),
                "listing_id": str(item["listing_id"]),
            },
        )

        logger.info("ACP_ORDER_CONFIRMED order=%s session=%s", order["_id"], locked["_id"])
        return _confirmation(order["_id"])

    return await _run(request, authorization, "acp_purchase", "/acp/confirm", action)
