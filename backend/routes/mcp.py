import logging
import re
import time
from datetime import datetime
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config.constants import (
    DEFAULT_LISTING_CATEGORY,
    DEFAULT_SHIPPING_COST,
    DEFAULT_DELIVERY_DAYS,
)
from config.env import DEFAULT_CURRENCY
from database import get_db
from models.mcp import (
    NoParams,
    SearchListingsParams,
    GetListingParams,
    CreateListingParams,
    UpdateListingParams,
    ListInventoryParams,
    EvaluatePriceParams,
    PurchaseItemParams,
    WalletParams,
    WalletAmountParams,
)
from utils.api_keys import (
    ApiKeyError,
    assert_scopes,
    check_rate_limit,
    log_api_key_usage,
    validate_api_key,
)
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)
from utils.listings import (
    build_search_query,
    evaluate_comps,
    listing_url,
    seller_names,
    serialize_inventory_item,
    serialize_listing_detail,
    serialize_search_result,
)
from utils.mcp import (
    MCPError,
    ToolRegistry,
    AUTH_ERROR,
    RATE_LIMIT,
    PARSE_ERROR,
    INVALID_PARAMS,
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    FORBIDDEN,
    NOT_FOUND,
    INVALID_STATE,
    AI_VISIBILITY_DISABLED,
    SELF_TRADE,
    parse_envelope,
    rpc_error,
    rpc_result,
    server_info,
)
from utils.fees import round_money
from utils.orders import PurchaseError, purchase_listing_with_wallet
from utils.wallet_service import (
    deposit as wallet_deposit,
    withdraw as wallet_withdraw,
    get_wallet_balance,
    get_pending_balance,
    to_major,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions/v1/mcp", tags=["MCP"])

tools = ToolRegistry()

PURCHASE_ERROR_CODES = {
    "not_found": NOT_FOUND,
    "not_available": INVALID_STATE,
    "ai_disabled": AI_VISIBILITY_DISABLED,
    "self_purchase": SELF_TRADE,
    "insufficient_funds": INVALID_STATE,
}


def _object_id(value: str, name: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise MCPError(INVALID_PARAMS, "Invalid params", data=f"Invalid {name}")
    return ObjectId(value)


# ======================================================
# DISCOVERY
# ======================================================

@tools.tool(
    "tools/list",
    description="List the tools this server exposes",
    endpoint="server",
    params=NoParams,
    listed=False,
)
async def list_tools(db, api_key, params: NoParams):
    return {
        "tools": tools.describe(),
        "server": server_info(len(tools)),
        "capabilities": {
            "scopes": api_key.get("scopes", []),
            "rate_limit_per_hour": api_key.get("rate_limit_per_hour"),
            "rate_limit_per_day": api_key.get("rate_limit_per_day"),
        },
    }


@tools.tool(
    "server/info",
    description="Server name, version and capabilities",
    endpoint="server",
    params=NoParams,
    listed=False,
)
async def get_server_info(db, api_key, params: NoParams):
    return server_info(len(tools))


# ======================================================
# SEARCH / READ
# ======================================================

@tools.tool(
    "search_listings",
    description="Search active trading card listings that are visible to AI agents",
    endpoint="search",
    params=SearchListingsParams,
    scopes=["mcp_search"],
)
async def search_listings(db, api_key, params: SearchListingsParams):
    filters = params.filters.model_dump() if params.filters else None
    query = build_search_query(params.query, filters)

    listings = await db.listings.find(query).sort("created_at", -1).limit(params.limit).to_list(params.limit)
    total = await db.listings.count_documents(query)
    names = await seller_names(db, listings)

    return {
        "results": [serialize_search_result(l, names.get(l["seller_id"])) for l in listings],
        "total": total,
    }


@tools.tool(
    "get_listing",
    description="Full details of one listing",
    endpoint="get-listing",
    params=GetListingParams,
    scopes=["mcp_search"],
)
async def get_listing(db, api_key, params: GetListingParams):
    listing = await db.listings.find_one({"_id": _object_id(params.listing_id, "listing_id")})
    if not listing:
        raise MCPError(NOT_FOUND, "Listing not found")

    if not listing.get("ai_answer_engines_enabled"):
        raise MCPError(AI_VISIBILITY_DISABLED, "Listing is not visible to AI agents")

    if listing.get("status") != "active":
        raise MCPError(INVALID_STATE, "Listing is not active")

    seller = await db.profiles.find_one(
        {"_id": listing["seller_id"]},
        {"full_name": 1, "trust_score": 1},
    )
    return {"listing": serialize_listing_detail(listing, seller)}


@tools.tool(
    "evaluate_price",
    description="Suggest a price from recent comparable sales",
    endpoint="evaluate-price",
    params=EvaluatePriceParams,
    scopes=["mcp_search"],
)
async def evaluate_price(db, api_key, params: EvaluatePriceParams):
    card = params.card_data
    query = {
        "card_name": {"$regex": f"^{re.escape(card.name)}$", "$options": "i"},
        "set_code": card.set,
    }
    if card.card_number:
        query["card_number"] = card.card_number

    comps = await db.pricing_comps.find({**query, "condition": card.condition}).sort("date_sold", -1).to_list(50)
    if not comps:
        # No sales in this condition yet, fall back to every condition
        comps = await db.pricing_comps.find(query).sort("date_sold", -1).to_list(50)

    return evaluate_comps(comps, DEFAULT_CURRENCY)


# ======================================================
# SELLING
# ======================================================

@tools.tool(
    "create_listing",
    description="Create a listing for the key owner (hidden from AI agents until enabled)",
    endpoint="create-listing",
    params=CreateListingParams,
    scopes=["mcp_listing"],
)
async def create_listing(db, api_key, params: CreateListingParams):
    card = params.card_data
    now = datetime.utcnow()

    listing = {
        "seller_id": api_key["user_id"],
        "title": f"{card.name} - {card.set} - {card.condition}",
        "description": params.description or f"Listing for {card.name} from {card.set}",
        "category": DEFAULT_LISTING_CATEGORY,
        "set_code": card.set,
        "card_number": card.card_number,
        "rarity": card.rarity,
        "condition": card.condition,
        "seller_price": params.price,
        "status": "active",
        "trade_enabled": params.trade_enabled,
        # Opt-in only, from the app
        "ai_answer_engines_enabled": False,
        "images": [str(url) for url in params.images or []],
        "shipping_cost_uk": DEFAULT_SHIPPING_COST,
        "free_shipping": False,
        "estimated_delivery_days": DEFAULT_DELIVERY_DAYS,
        "published_at": now,
        "created_at": now,
        "updated_at": now,
    }

    result = await db.listings.insert_one(listing)
    listing_id = str(result.inserted_id)

    logger.info("MCP_LISTING_CREATED listing=%s seller=%s", listing_id, api_key["user_id"])

    return {
        "listing_id": listing_id,
        "listing_url": listing_url(listing_id),
        "status": "active",
        "ai_answer_engines_enabled": False,
        "note": "AI visibility is off by default. Enable it in the app to expose this listing to agents.",
    }


@tools.tool(
    "update_listing",
    description="Update price, description, condition, status or AI visibility of an owned listing",
    endpoint="update-listing",
    params=UpdateListingParams,
    scopes=["mcp_listing"],
)
async def update_listing(db, api_key, params: UpdateListingParams):
    listing_id = _object_id(params.listing_id, "listing_id")

    listing = await db.listings.find_one({"_id": listing_id}, {"seller_id": 1})
    if not listing:
        raise MCPError(NOT_FOUND, "Listing not found")
    if listing["seller_id"] != api_key["user_id"]:
        raise MCPError(FORBIDDEN, "You can only update your own listings")

    updates = params.updates.model_dump(exclude_none=True)
    if not updates:
        raise MCPError(INVALID_PARAMS, "Invalid params", data="No updates provided")

    fields = dict(updates)
    if "price" in fields:
        fields["seller_price"] = fields.pop("price")

    now = datetime.utcnow()
    fields["updated_at"] = now

    await db.listings.update_one({"_id": listing_id}, {"$set": fields})

    return {
        "listing_id": params.listing_id,
        "updated_fields": sorted(updates.keys()),
        "updated_at": now.isoformat(),
    }


@tools.tool(
    "list_inventory",
    description="List the key owner's listings",
    endpoint="list-inventory",
    params=ListInventoryParams,
    scopes=["mcp_listing"],
)
async def list_inventory(db, api_key, params: ListInventoryParams):
    query = {"seller_id": api_key["user_id"]}
    if params.status != "all":
        query["status"] = params.status

    listings = await db.listings.find(query).sort("created_at", -1).limit(params.limit).to_list(params.limit)

    return {
        "items": [serialize_inventory_item(l) for l in listings],
        "total": len(listings),
    }


# ======================================================
# BUYING
# ======================================================

@tools.tool(
    "purchase_item",
    description="Buy a listing with the key owner's wallet balance",
    endpoint="buy",
    params=PurchaseItemParams,
    scopes=["mcp_purchase"],
)
async def purchase_item(db, api_key, params: PurchaseItemParams):
    if params.payment_method != "wallet":
        raise MCPError(INVALID_PARAMS, "Invalid params", data="Only wallet payments are supported for agents")

    listing_id = _object_id(params.listing_id, "listing_id")
    buyer_id = api_key["user_id"]

    scope = f"mcp_purchase:{buyer_id}"
    if params.idempotency_key:
        cached = await reserve_idempotency_key(db=db, key=params.idempotency_key, scope=scope)
        if cached is not None:
            return cached

    try:
        order = await purchase_listing_with_wallet(
            db,
            listing_id=listing_id,
            buyer_id=buyer_id,
            shipping_address=params.shipping_address.model_dump(),
            currency=DEFAULT_CURRENCY,
        )
    except PurchaseError as e:
        if params.idempotency_key:
            await fail_idempotency_key(db=db, key=params.idempotency_key, scope=scope, error=e.reason)
        raise MCPError(PURCHASE_ERROR_CODES.get(e.reason, INVALID_STATE), e.message)
    except Exception as e:
        if params.idempotency_key:
            await fail_idempotency_key(db=db, key=params.idempotency_key, scope=scope, error=str(e))
        raise

    response = {
        "order_id": str(order["_id"]),
        "status": order["status"],
        "total_amount": order["total_amount"],
        "fees": {
            "buyer_protection_fee": order["fees"]["buyer_protection_fee"],
            "shipping": round_money(order["total_amount"] - order["item_price"] - order["fees"]["buyer_protection_fee"]),
        },
        "tracking_number": None,
        "message": "Order placed and paid from wallet",
    }

    if params.idempotency_key:
        await complete_idempotency_key(db=db, key=params.idempotency_key, scope=scope, response=response)

    return response


# ======================================================
# WALLET
# ======================================================

async def _balance_payload(db, user_id) -> dict:
    return {
        "balance": to_major(await get_wallet_balance(db, user_id)),
        "pending_balance": to_major(await get_pending_balance(db, user_id)),
        "currency": DEFAULT_CURRENCY,
    }


@tools.tool(
    "get_wallet_balance",
    description="Available and pending wallet balance",
    endpoint="wallet",
    params=WalletParams,
    scopes=["mcp_wallet"],
)
async def wallet_balance(db, api_key, params: WalletParams):
    return await _balance_payload(db, api_key["user_id"])


async def _wallet_operation(operation, db, user_id, amount: float) -> dict:
    try:
        new_balance = await operation(db, user_id, amount)
    except HTTPException as e:
        raise MCPError(INVALID_STATE, e.detail)
    return to_major(new_balance)


@tools.tool(
    "deposit",
    description="Add funds to the wallet",
    endpoint="wallet",
    params=WalletAmountParams,
    scopes=["mcp_wallet"],
)
async def deposit(db, api_key, params: WalletAmountParams):
    new_balance = await _wallet_operation(wallet_deposit, db, api_key["user_id"], params.amount)
    return {
        "operation": "deposit",
        "amount": params.amount,
        "new_balance": new_balance,
        "currency": params.currency.upper(),
    }


@tools.tool(
    "withdraw",
    description="Withdraw available funds from the wallet",
    endpoint="wallet",
    params=WalletAmountParams,
    scopes=["mcp_wallet"],
)
async def withdraw(db, api_key, params: WalletAmountParams):
    new_balance = await _wallet_operation(wallet_withdraw, db, api_key["user_id"], params.amount)
    return {
        "operation": "withdraw",
        "amount": params.amount,
        "new_balance": new_balance,
        "currency": params.currency.upper(),
    }


# ======================================================
# JSON-RPC DISPATCH
# ======================================================

async def handle_rpc(request: Request, endpoint: str, authorization: Optional[str]) -> JSONResponse:
    started = time.monotonic()
    db = get_db()

    request_id = None
    api_key = None
    status_code = 200

    try:
        try:
            api_key = await validate_api_key(db, authorization)
            await check_rate_limit(db, api_key)
        except ApiKeyError as e:
            code = RATE_LIMIT if e.status_code == 429 else AUTH_ERROR
            data = {"retry_after": e.retry_after} if e.retry_after else None
            raise MCPError(code, e.message, data=data, status_code=e.status_code)

        try:
            body = await request.json()
        except ValueError:
            raise MCPError(PARSE_ERROR, "Parse error")

        request_id, method, raw_params = parse_envelope(body)

        if endpoint and endpoint not in tools.endpoints():
            raise MCPError(METHOD_NOT_FOUND, "Method not found", status_code=404)
        tool = tools.resolve(method, endpoint)

        try:
            assert_scopes(api_key, tool.scopes)
        except ApiKeyError as e:
            raise MCPError(AUTH_ERROR, e.message, status_code=e.status_code)

        try:
            params = tool.params_model.model_validate(raw_params)
        except ValidationError as e:
            raise MCPError(INVALID_PARAMS, "Invalid params", data=e.errors(include_url=False, include_context=False))

        result = await tool.handler(db, api_key, params)
        result = {**result, "execution_time_ms": int((time.monotonic() - started) * 1000)}
        return JSONResponse(rpc_result(request_id, result))

    except MCPError as e:
        status_code = e.status_code
        return JSONResponse(rpc_error(request_id, e.code, e.message, e.data), status_code=status_code)

    except Exception as e:
        status_code = 500
        logger.exception("MCP_INTERNAL_ERROR endpoint=%s", endpoint)
        return JSONResponse(
            rpc_error(request_id, INTERNAL_ERROR, "Internal error", str(e)),
            status_code=status_code,
        )

    finally:
        if api_key is not None:
            try:
                await log_api_key_usage(
                    db,
                    api_key_id=api_key["_id"],
                    endpoint=f"/mcp/{endpoint}".rstrip("/"),
                    method=request.method,
                    status_code=status_code,
                    response_time_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception:
                logger.exception("MCP_USAGE_LOG_ERROR key=%s", api_key.get("_id"))


@router.post("")
async def mcp_root(request: Request, authorization: Optional[str] = Header(default=None)):
    return await handle_rpc(request, "", authorization)


@router.post("/{endpoint}")
async def mcp_endpoint(endpoint: str, request: Request, authorization: Optional[str] = Header(default=None)):
    return await handle_rpc(request, endpoint, authorization)
