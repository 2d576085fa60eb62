from datetime import datetime

from fastapi import HTTPException

# ==============================
# Ledger entry types (ENUM-LIKE)
# ==============================

ENTRY_DEPOSIT = "DEPOSIT"
ENTRY_WITHDRAWAL = "WITHDRAWAL"
ENTRY_PURCHASE_DEBIT = "PURCHASE_DEBIT"
ENTRY_PURCHASE_REFUND = "PURCHASE_REFUND"
ENTRY_SALE_PENDING = "SALE_PENDING"   # held until delivery
ENTRY_SALE_RELEASE = "SALE_RELEASE"

MAX_WALLET_OPERATION = 10_000


def to_minor(amount: float) -> int:
    return int(round(float(amount) * 100))


def to_major(amount: int) -> float:
    return round(amount / 100, 2)


# ==============================
# Core: Append-only ledger write
# ==============================

async def add_ledger_entry(
    db,
    user_id,
    entry_type: str,
    credit: int = 0,
    debit: int = 0,
    order_id=None,
    reason_code: str | None = None,
    pending: bool = False,
):
    if credit < 0 or debit < 0:
        raise ValueError("Credit/Debit cannot be negative")

    entry = {
        "user_id": user_id,
        "order_id": order_id,
        "entry_type": entry_type,
        "credit": credit,
        "debit": debit,
        "pending": pending,
        "reason_code": reason_code,
        "created_at": datetime.utcnow(),
    }

    await db.wallet_ledger.insert_one(entry)


# ==============================
# Balances (derived only)
# ==============================

async def _sum_ledger(db, match: dict) -> int:
    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": None,
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    result = await db.wallet_ledger.aggregate(pipeline).to_list(1)
    if not result:
        return 0

    return result[0]["credit"] - result[0]["debit"]


async def get_wallet_balance(db, user_id) -> int:
    return await _sum_ledger(db, {"user_id": user_id, "pending": {"$ne": True}})


async def get_pending_balance(db, user_id) -> int:
    return await _sum_ledger(db, {"user_id": user_id, "pending": True})


# ==============================
# Deposits / withdrawals
# ==============================

def _validate_amount(amount: float) -> int:
    minor = to_minor(amount)
    if minor <= 0:
        raise HTTPException(status_code=400, detail="Amount must be positive")
    if minor > to_minor(MAX_WALLET_OPERATION):
        raise HTTPException(status_code=400, detail="Amount exceeds wallet operation limit")
    return minor


async def deposit(db, user_id, amount: float) -> int:
    minor = _validate_amount(amount)
    await add_ledger_entry(
        db,
        user_id,
        ENTRY_DEPOSIT,
        credit=minor,
        reason_code="WALLET_DEPOSIT",
    )
    return await get_wallet_balance(db, user_id)


async def withdraw(db, user_id, amount: float) -> int:
    minor = _validate_amount(amount)

    balance = await get_wallet_balance(db, user_id)
    if balance < minor:
        raise HTTPException(status_code=400, detail="Insufficient wallet balance")

    await add_ledger_entry(
        db,
        user_id,
        ENTRY_WITHDRAWAL,
        debit=minor,
        reason_code="WALLET_WITHDRAWAL",
    )
    return balance - minor


# ==============================
# Purchase settlement
# ==============================

async def debit_purchase(db, buyer_id, order_id, amount: float):
    await add_ledger_entry(
        db,
        buyer_id,
        ENTRY_PURCHASE_DEBIT,
        debit=to_minor(amount),
        order_id=order_id,
        reason_code="ORDER_PAID_WALLET",
    )


async def refund_purchase(db, buyer_id, order_id, amount: float):
    await add_ledger_entry(
        db,
        buyer_id,
        ENTRY_PURCHASE_REFUND,
        credit=to_minor(amount),
        order_id=order_id,
        reason_code="ORDER_REFUND_WALLET",
    )


async def credit_pending_sale(db, seller_id, order_id, amount: float):
    # Held until delivery
    await add_ledger_entry(
        db,
        seller_id,
        ENTRY_SALE_PENDING,
        credit=to_minor(amount),
        order_id=order_id,
        reason_code="ORDER_SALE_PENDING",
        pending=True,
    )


async def release_pending_sale(db, seller_id, order_id) -> int:
    """
    Moves whatever is still pending for this order into the
    available balance. Returns the amount released (minor units).
    """
    held = await _sum_ledger(db, {"user_id": seller_id, "order_id": order_id, "pending": True})
    if held <= 0:
        return 0

    await add_ledger_entry(
        db,
        seller_id,
        ENTRY_SALE_RELEASE,
        debit=held,
        order_id=order_id,
        reason_code="ORDER_SALE_RELEASED",
        pending=True,
    )
    await add_ledger_entry(
        db,
        seller_id,
        ENTRY_SALE_RELEASE,
        credit=held,
        order_id=order_id,
        reason_code="ORDER_SALE_RELEASED",
    )
    return held


async def settle_wallet_purchase(
    db,
    *,
    buyer_id,
    seller_id,
    order_id,
    buyer_total: float,
    seller_receives: float,
):
    """
    Buyer pays from available balance now,
    seller is credited as pending until delivery.
    """
    await debit_purchase(db, buyer_id, order_id, buyer_total)
    await credit_pending_sale(db, seller_id, order_id, seller_receives)
