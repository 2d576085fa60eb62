import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo import ReturnDocument

from database import get_db
from utils.audit import log_audit
from utils.guards import parse_object_id
from utils.security import get_current_user
from utils.wallet_service import release_pending_sale, to_major

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/functions/v1",
    tags=["Orders"]
)


class MarkDeliveredRequest(BaseModel):
    order_id: str


# ======================================================
# BUYER CONFIRMS DELIVERY -> SELLER FUNDS RELEASED
# ======================================================

@router.post("/mark-order-delivered")
async def mark_order_delivered(
    data: MarkDeliveredRequest,
    buyer=Depends(get_current_user),
):
    db = get_db()
    order_oid = parse_object_id(data.order_id, "order ID")

    order = await db.orders.find_one({"_id": order_oid})
    if not order:
        raise HTTPException(404, "Order not found")

    if order.get("buyer_id") != buyer["_id"]:
        raise HTTPException(403, "You are not the buyer of this order")

    if order.get("status") in ("cancelled", "refunded"):
        raise HTTPException(400, "Order cannot be marked as delivered")

    now = datetime.utcnow()
    delivered = await db.orders.find_one_and_update(
        {"_id": order_oid, "delivered_at": None},
        {
            "$set": {
                "delivered_at": now,
                "shipping_status": "delivered",
                "status": "completed",
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not delivered:
        return {
            "success": True,
            "message": "Order already marked as delivered",
            "already_delivered": True,
        }

    released = await release_pending_sale(db, order["seller_id"], order_oid)

    await log_audit(
        db=db,
        actor_id=str(buyer["_id"]),
        actor_role=buyer.get("role", "user"),
        action="ORDER_DELIVERED",
        metadata={"order_id": data.order_id, "released": to_major(released)},
    )

    logger.info("ORDER_DELIVERED order=%s seller=%s released=%s", order_oid, order["seller_id"], released)

    return {
        "success": True,
        "message": "Order marked as delivered. Seller funds released.",
        "released_amount": to_major(released),
    }
