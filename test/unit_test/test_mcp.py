from datetime import datetime
from unittest.mock import patch

import pytest
from bson import ObjectId

from models.mcp import NoParams
from routes.mcp import tools
from utils.mcp import (
    AI_VISIBILITY_DISABLED,
    AUTH_ERROR,
    FORBIDDEN,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    INVALID_STATE,
    METHOD_NOT_FOUND,
    NOT_FOUND,
    PARSE_ERROR,
    RATE_LIMIT,
    SELF_TRADE,
    MCPError,
    ToolRegistry,
    parse_envelope,
    rpc_error,
    rpc_result,
)


def rpc(method, params=None, request_id=1):
    body = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        body["params"] = params
    return body


# ==========================================================
# ENVELOPE / REGISTRY
# ==========================================================

class TestEnvelope:
    def test_result_and_error_shapes(self):
        assert rpc_result(7, {"ok": True}) == {"jsonrpc": "2.0", "id": 7, "result": {"ok": True}}
        assert rpc_error(7, -32601, "Method not found") == {
            "jsonrpc": "2.0",
            "id": 7,
            "error": {"code": -32601, "message": "Method not found"},
        }
        assert rpc_error(None, -32602, "Invalid params", "x")["error"]["data"] == "x"

    def test_parse(self):
        assert parse_envelope(rpc("search_listings", {"query": "x"}, "abc")) == ("abc", "search_listings", {"query": "x"})

    def test_missing_params_is_empty_object(self):
        assert parse_envelope(rpc("tools/list"))[2] == {}

    @pytest.mark.parametrize(
        "body",
        [
            [],
            "text",
            {"id": 1, "method": "x"},
            {"jsonrpc": "1.0", "id": 1, "method": "x"},
            {"jsonrpc": "2.0", "id": 1},
            {"jsonrpc": "2.0", "id": 1, "method": ""},
        ],
    )
    def test_invalid_request(self, body):
        with pytest.raises(MCPError) as exc:
            parse_envelope(body)
        assert exc.value.code == INVALID_REQUEST
        assert exc.value.status_code == 400

    def test_params_must_be_object(self):
        with pytest.raises(MCPError) as exc:
            parse_envelope({"jsonrpc": "2.0", "id": 1, "method": "x", "params": [1, 2]})
        assert exc.value.code == INVALID_PARAMS

    @pytest.mark.parametrize(
        "code, status",
        [(AUTH_ERROR, 401), (RATE_LIMIT, 429), (FORBIDDEN, 403), (NOT_FOUND, 404), (INTERNAL_ERROR, 500), (SELF_TRADE, 400)],
    )
    def test_http_status_per_code(self, code, status):
        assert MCPError(code, "x").status_code == status


class TestRegistry:
    def make_registry(self):
        registry = ToolRegistry()

        @registry.tool("ping", description="Ping", endpoint="ping", params=NoParams)
        async def ping(db, api_key, params):
            return {"pong": True}

        @registry.tool("hidden", description="Hidden", endpoint="server", params=NoParams, listed=False)
        async def hidden(db, api_key, params):
            return {}

        return registry

    def test_specific_endpoint_only_accepts_its_methods(self):
        registry = self.make_registry()

        assert registry.resolve("ping", "ping").name == "ping"
        with pytest.raises(MCPError) as exc:
            registry.resolve("hidden", "ping")
        assert exc.value.code == METHOD_NOT_FOUND

    @pytest.mark.parametrize("endpoint", ["", "server"])
    def test_open_endpoints_dispatch_anything(self, endpoint):
        registry = self.make_registry()
        assert registry.resolve("ping", endpoint).name == "ping"

    def test_unknown_method(self):
        with pytest.raises(MCPError):
            self.make_registry().resolve("nope")

    def test_unlisted_tools_are_hidden_from_listing(self):
        registry = self.make_registry()

        assert [t["name"] for t in registry.describe()] == ["ping"]
        assert len(registry) == 1
        assert registry.resolve("hidden").name == "hidden"
        assert registry.endpoints() == ["ping", "server"]

    def test_descriptions_carry_json_schema(self):
        described = {t["name"]: t for t in tools.describe()}
        schema = described["search_listings"]["inputSchema"]

        assert schema["type"] == "object"
        assert "query" in schema["required"]


class TestMarketplaceTools:
    def test_tool_endpoints(self):
        expected = {
            "search_listings": "search",
            "get_listing": "get-listing",
            "create_listing": "create-listing",
            "update_listing": "update-listing",
            "list_inventory": "list-inventory",
            "evaluate_price": "evaluate-price",
            "purchase_item": "buy",
            "get_wallet_balance": "wallet",
            "deposit": "wallet",
            "withdraw": "wallet",
            "tools/list": "server",
            "server/info": "server",
        }
        for name, endpoint in expected.items():
            assert tools.resolve(name, endpoint).endpoint == endpoint

    def test_scopes(self):
        assert tools.resolve("search_listings").scopes == ["mcp_search"]
        assert tools.resolve("create_listing").scopes == ["mcp_listing"]
        assert tools.resolve("purchase_item").scopes == ["mcp_purchase"]
        assert tools.resolve("deposit").scopes == ["mcp_wallet"]
        assert tools.resolve("tools/list").scopes == []


# ==========================================================
# HTTP DISPATCH
# ==========================================================

@pytest.fixture
def mcp_db(db):
    with patch("routes.mcp.get_db", return_value=db):
        yield db


def active_listing(seller_id=None, **overrides):
    listing = {
        "_id": ObjectId(),
        "seller_id": seller_id or ObjectId(),
        "title": "Charizard ex - SV3 - Near Mint",
        "description": "Pack fresh",
        "seller_price": 10.0,
        "condition": "Near Mint",
        "set_code": "SV3",
        "rarity": "Double Rare",
        "status": "active",
        "ai_answer_engines_enabled": True,
        "shipping_cost_uk": 2.99,
        "free_shipping": False,
        "images": ["https://img.example/1.jpg", "https://img.example/2.jpg"],
        "created_at": datetime(2026, 1, 1),
        "updated_at": datetime(2026, 1, 2),
    }
    listing.update(overrides)
    return listing


class TestDispatchErrors:
    async def test_missing_api_key(self, client, mcp_db):
        response = await client.post("/functions/v1/mcp/server", json=rpc("tools/list"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == AUTH_ERROR
        mcp_db.api_key_usage_logs.insert_one.assert_not_awaited()

    async def test_unknown_api_key(self, client, mcp_db, auth_headers):
        response = await client.post("/functions/v1/mcp/server", json=rpc("tools/list"), headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    async def test_rate_limited(self, client, mcp_db, api_key_record, auth_headers):
        mcp_db.api_key_usage_logs.count_documents.return_value = 1000

        response = await client.post("/functions/v1/mcp/server", json=rpc("tools/list"), headers=auth_headers)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == RATE_LIMIT
        assert error["data"] == {"retry_after": 3600}

    async def test_parse_error(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp",
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["id"] is None
        assert body["error"]["code"] == PARSE_ERROR
        mcp_db.api_key_usage_logs.insert_one.assert_awaited_once()

    async def test_unknown_method(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp", json=rpc("drop_tables", request_id=9), headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {
            "jsonrpc": "2.0",
            "id": 9,
            "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"},
        }

    async def test_method_on_wrong_endpoint(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp/search", json=rpc("deposit", {"amount": 5}), headers=auth_headers)

        assert response.json()["error"]["code"] == METHOD_NOT_FOUND

    async def test_unknown_endpoint(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp/nowhere", json=rpc("tools/list"), headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == METHOD_NOT_FOUND

    async def test_missing_scope(self, client, mcp_db, api_key_record, auth_headers):
        api_key_record["scopes"] = ["mcp_search"]

        response = await client.post(
            "/functions/v1/mcp/wallet",
            json=rpc("get_wallet_balance"),
            headers=auth_headers,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == AUTH_ERROR

    async def test_invalid_params(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp/search",
            json=rpc("search_listings", {"query": "", "limit": 500}),
            headers=auth_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == INVALID_PARAMS
        assert {tuple(e["loc"]) for e in error["data"]} == {("query",), ("limit",)}


class TestDiscoveryTools:
    async def test_tools_list(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp/server", json=rpc("tools/list"), headers=auth_headers)

        assert response.status_code == 200
        result = response.json()["result"]
        names = {t["name"] for t in result["tools"]}
        assert "purchase_item" in names
        assert "tools/list" not in names
        assert result["server"]["capabilities"]["tools"] == len(names)
        assert "execution_time_ms" in result

        usage = mcp_db.api_key_usage_logs.insert_one.call_args.args[0]
        assert usage["endpoint"] == "/mcp/server"
        assert usage["status_code"] == 200

    async def test_server_info_on_root(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp", json=rpc("server/info"), headers=auth_headers)

        assert response.json()["result"]["name"] == "cardmarket-mcp"


class TestListingTools:
    async def test_search(self, client, mcp_db, api_key_record, auth_headers):
        seller_id = ObjectId()
        mcp_db.listings.find.return_value = mcp_db.cursor([active_listing(seller_id)])
        mcp_db.listings.count_documents.return_value = 1
        mcp_db.profiles.find.return_value = mcp_db.cursor([{"_id": seller_id, "full_name": "Ash"}])

        response = await client.post(
            "/functions/v1/mcp/search",
            json=rpc("search_listings", {"query": "charizard", "filters": {"max_price": 20}}),
            headers=auth_headers,
        )

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["total"] == 1
        assert result["results"][0]["seller"] == "Ash"
        assert result["results"][0]["images"] == ["https://img.example/1.jpg"]

        query = mcp_db.listings.find.call_args.args[0]
        assert query["status"] == "active"
        assert query["ai_answer_engines_enabled"] is True
        assert query["seller_price"] == {"$lte": 20}

    async def test_get_listing_hidden_from_agents(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing(ai_answer_engines_enabled=False)
        mcp_db.listings.find_one.return_value = listing

        response = await client.post(
            "/functions/v1/mcp/get-listing",
            json=rpc("get_listing", {"listing_id": str(listing["_id"])}),
            headers=auth_headers,
        )

        assert response.json()["error"]["code"] == AI_VISIBILITY_DISABLED

    async def test_get_listing_sold(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing(status="sold")
        mcp_db.listings.find_one.return_value = listing

        response = await client.post(
            "/functions/v1/mcp/get-listing",
            json=rpc("get_listing", {"listing_id": str(listing["_id"])}),
            headers=auth_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == INVALID_STATE
        assert error["message"] == "Listing is not active"
        assert "result" not in response.json()

    async def test_get_listing_bad_id(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp/get-listing",
            json=rpc("get_listing", {"listing_id": "123"}),
            headers=auth_headers,
        )

        assert response.json()["error"]["code"] == INVALID_PARAMS

    async def test_get_listing_not_found(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp/get-listing",
            json=rpc("get_listing", {"listing_id": str(ObjectId())}),
            headers=auth_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == NOT_FOUND

    async def test_create_listing_is_hidden_by_default(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp/create-listing",
            json=rpc("create_listing", {
                "card_data": {"name": "Pikachu", "set": "SV1", "condition": "Near Mint"},
                "price": 4.5,
                "images": ["https://img.example/p.jpg"],
            }),
            headers=auth_headers,
        )

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["ai_answer_engines_enabled"] is False

        stored = mcp_db.listings.insert_one.call_args.args[0]
        assert stored["seller_id"] == api_key_record["user_id"]
        assert stored["title"] == "Pikachu - SV1 - Near Mint"
        assert stored["shipping_cost_uk"] == 2.99
        assert stored["images"] == ["https://img.example/p.jpg"]
        assert stored["ai_answer_engines_enabled"] is False

    async def test_update_listing_owner_only(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing()
        mcp_db.listings.find_one.return_value = {"_id": listing["_id"], "seller_id": ObjectId()}

        response = await client.post(
            "/functions/v1/mcp/update-listing",
            json=rpc("update_listing", {"listing_id": str(listing["_id"]), "updates": {"price": 12}}),
            headers=auth_headers,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == FORBIDDEN
        mcp_db.listings.update_one.assert_not_awaited()

    async def test_update_listing(self, client, mcp_db, api_key_record, auth_headers):
        listing_id = ObjectId()
        mcp_db.listings.find_one.return_value = {"_id": listing_id, "seller_id": api_key_record["user_id"]}

        response = await client.post(
            "/functions/v1/mcp/update-listing",
            json=rpc("update_listing", {
                "listing_id": str(listing_id),
                "updates": {"price": 12, "ai_answer_engines_enabled": True},
            }),
            headers=auth_headers,
        )

        assert response.json()["result"]["updated_fields"] == ["ai_answer_engines_enabled", "price"]
        changes = mcp_db.listings.update_one.call_args.args[1]["$set"]
        assert changes["seller_price"] == 12
        assert "price" not in changes

    async def test_list_inventory_filters_by_owner(self, client, mcp_db, api_key_record, auth_headers):
        mcp_db.listings.find.return_value = mcp_db.cursor([active_listing(api_key_record["user_id"])])

        response = await client.post(
            "/functions/v1/mcp/list-inventory",
            json=rpc("list_inventory", {"status": "active"}),
            headers=auth_headers,
        )

        assert response.json()["result"]["total"] == 1
        assert mcp_db.listings.find.call_args.args[0] == {
            "seller_id": api_key_record["user_id"],
            "status": "active",
        }

    async def test_evaluate_price_falls_back_to_any_condition(self, client, mcp_db, api_key_record, auth_headers):
        comps = [
            {"price": p, "date_sold": datetime(2026, 1, d), "condition": "Played", "source": "ebay"}
            for d, p in [(1, 10), (2, 10), (3, 14), (4, 14)]
        ]
        mcp_db.pricing_comps.find.side_effect = [mcp_db.cursor([]), mcp_db.cursor(comps)]

        response = await client.post(
            "/functions/v1/mcp/evaluate-price",
            json=rpc("evaluate_price", {"card_data": {"name": "Mew", "set": "SV4a", "condition": "Mint"}}),
            headers=auth_headers,
        )

        result = response.json()["result"]
        assert result["suggested_price"] == 12
        assert result["market_analysis"]["sample_size"] == 4
        assert result["trend"] == "rising"
        assert "condition" not in mcp_db.pricing_comps.find.call_args_list[1].args[0]


class TestPurchaseTool:
    def params(self, listing_id, **extra):
        return {
            "listing_id": str(listing_id),
            "shipping_address": {
                "name": "Ash Ketchum",
                "line1": "1 Route",
                "city": "Pallet",
                "postal_code": "PA1 1ET",
            },
            **extra,
        }

    async def test_self_purchase(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing(api_key_record["user_id"])
        mcp_db.listings.find_one.return_value = listing

        response = await client.post("/functions/v1/mcp/buy", json=rpc("purchase_item", self.params(listing["_id"])), headers=auth_headers)

        assert response.json()["error"]["code"] == SELF_TRADE

    async def test_insufficient_balance(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing()
        mcp_db.listings.find_one.return_value = listing
        mcp_db.set_wallet(500)

        response = await client.post("/functions/v1/mcp/buy", json=rpc("purchase_item", self.params(listing["_id"])), headers=auth_headers)

        assert response.json()["error"]["code"] == INVALID_STATE
        mcp_db.listings.find_one_and_update.assert_not_awaited()

    async def test_listing_already_sold(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing(status="sold")
        mcp_db.listings.find_one.return_value = listing

        response = await client.post("/functions/v1/mcp/buy", json=rpc("purchase_item", self.params(listing["_id"])), headers=auth_headers)

        assert response.json()["error"]["code"] == INVALID_STATE

    async def test_stripe_not_supported_for_agents(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post(
            "/functions/v1/mcp/buy",
            json=rpc("purchase_item", self.params(ObjectId(), payment_method="stripe")),
            headers=auth_headers,
        )

        assert response.json()["error"]["code"] == INVALID_PARAMS

    async def test_wallet_purchase(self, client, mcp_db, api_key_record, auth_headers):
        listing = active_listing()
        mcp_db.listings.find_one.return_value = listing
        mcp_db.listings.find_one_and_update.return_value = {**listing, "status": "sold"}
        mcp_db.set_wallet(10_000)

        response = await client.post("/functions/v1/mcp/buy", json=rpc("purchase_item", self.params(listing["_id"])), headers=auth_headers)

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["status"] == "paid"
        assert result["total_amount"] == 13.79
        assert result["fees"] == {"buyer_protection_fee": 0.80, "shipping": 2.99}

        claim_filter = mcp_db.listings.find_one_and_update.call_args.args[0]
        assert claim_filter == {"_id": listing["_id"], "status": "active"}

        ledger = [c.args[0] for c in mcp_db.wallet_ledger.insert_one.call_args_list]
        assert [(e["entry_type"], e["debit"], e["credit"], e["pending"]) for e in ledger] == [
            ("PURCHASE_DEBIT", 1379, 0, False),
            ("SALE_PENDING", 0, 1000, True),
        ]

    async def test_idempotent_replay(self, client, mcp_db, api_key_record, auth_headers):
        cached = {"order_id": "abc", "status": "paid"}
        mcp_db.idempotency_keys.find_one.return_value = {"_id": ObjectId(), "status": "completed", "response": cached}

        response = await client.post(
            "/functions/v1/mcp/buy",
            json=rpc("purchase_item", self.params(ObjectId(), idempotency_key="order-1")),
            headers=auth_headers,
        )

        assert response.json()["result"]["order_id"] == "abc"
        mcp_db.listings.find_one.assert_not_awaited()


class TestWalletTools:
    async def test_balance(self, client, mcp_db, api_key_record, auth_headers):
        mcp_db.set_wallet(2550, 50)

        response = await client.post("/functions/v1/mcp/wallet", json=rpc("get_wallet_balance"), headers=auth_headers)

        result = response.json()["result"]
        assert result["balance"] == 25.0
        assert result["currency"] == "GBP"

    async def test_withdraw_more_than_balance(self, client, mcp_db, api_key_record, auth_headers):
        mcp_db.set_wallet(100)

        response = await client.post("/functions/v1/mcp/wallet", json=rpc("withdraw", {"amount": 5}), headers=auth_headers)

        error = response.json()["error"]
        assert error["code"] == INVALID_STATE
        assert error["message"] == "Insufficient wallet balance"

    async def test_deposit(self, client, mcp_db, api_key_record, auth_headers):
        mcp_db.set_wallet(1500)

        response = await client.post("/functions/v1/mcp/wallet", json=rpc("deposit", {"amount": 15}), headers=auth_headers)

        result = response.json()["result"]
        assert result["operation"] == "deposit"
        assert result["new_balance"] == 15.0
        entry = mcp_db.wallet_ledger.insert_one.call_args.args[0]
        assert entry["credit"] == 1500

    async def test_deposit_requires_positive_amount(self, client, mcp_db, api_key_record, auth_headers):
        response = await client.post("/functions/v1/mcp/wallet", json=rpc("deposit", {"amount": -1}), headers=auth_headers)

        assert response.json()["error"]["code"] == INVALID_PARAMS
