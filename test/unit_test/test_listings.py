import re
from datetime import datetime

import pytest
from bson import ObjectId

from utils.listings import (
    build_search_query,
    evaluate_comps,
    listing_url,
    price_confidence,
    price_trend,
    seller_names,
    serialize_listing_detail,
    shipping_cost,
)


def comps(*prices):
    return [
        {"price": price, "date_sold": datetime(2026, 1, day + 1), "condition": "Near Mint", "source": "ebay"}
        for day, price in enumerate(prices)
    ]


class TestSearchQuery:
    def test_only_active_ai_visible(self):
        query = build_search_query("")

        assert query == {"status": "active", "ai_answer_engines_enabled": True}

    def test_text_is_escaped(self):
        query = build_search_query("Mew (Promo) .*")

        pattern = query["$or"][0]["title"]
        assert re.fullmatch(pattern["$regex"], "Mew (Promo) .*")
        assert not re.fullmatch(pattern["$regex"], "Mew (Promo) xyz")
        assert pattern["$options"] == "i"
        assert {next(iter(clause)) for clause in query["$or"]} == {"title", "description", "set_code"}

    def test_filters(self):
        query = build_search_query("x", {
            "condition": "Near Mint",
            "rarity": "Rare Holo",
            "set": "BS",
            "min_price": 0,
            "max_price": 50,
        })

        assert query["condition"] == "Near Mint"
        assert query["rarity"] == "Rare Holo"
        assert query["set_code"] == "BS"
        assert query["seller_price"] == {"$gte": 0, "$lte": 50}

    def test_empty_filters_ignored(self):
        query = build_search_query("x", {"condition": None, "min_price": None, "max_price": None})

        assert "condition" not in query
        assert "seller_price" not in query


class TestSerializers:
    def test_free_shipping_wins(self):
        assert shipping_cost({"free_shipping": True, "shipping_cost_uk": 3}) == 0
        assert shipping_cost({"shipping_cost_uk": 3}) == 3
        assert shipping_cost({}) == 0

    def test_detail_defaults(self):
        listing = {"_id": ObjectId(), "seller_id": ObjectId(), "title": "Eevee"}

        detail = serialize_listing_detail(listing)

        assert detail["seller"]["name"] == "Anonymous"
        assert detail["seller"]["trust_score"] == 50
        assert detail["grading"] is None
        assert detail["created_at"] is None

    def test_grading_needs_service_and_score(self):
        listing = {"_id": ObjectId(), "seller_id": ObjectId(), "grading_service": "PSA", "grading_score": 10}
        assert serialize_listing_detail(listing)["grading"] == {"service": "PSA", "score": 10}

    def test_listing_url(self):
        assert listing_url("abc").endswith("/listing/abc")

    async def test_seller_names_single_lookup(self, db):
        seller = ObjectId()
        db.profiles.find.return_value = db.cursor([{"_id": seller, "full_name": "Brock"}])

        names = await seller_names(db, [{"seller_id": seller}, {"seller_id": seller}])

        assert names == {seller: "Brock"}
        assert db.profiles.find.call_args.args[0] == {"_id": {"$in": [seller]}}

    async def test_seller_names_empty(self, db):
        assert await seller_names(db, []) == {}
        db.profiles.find.assert_not_called()


class TestPriceEvaluation:
    def test_no_comps(self):
        result = evaluate_comps([])

        assert result["suggested_price"] is None
        assert result["market_analysis"]["sample_size"] == 0
        assert result["confidence"] == 0.0
        assert result["trend"] is None

    def test_median_is_suggested(self):
        result = evaluate_comps(comps(5, 6, 100))

        assert result["suggested_price"] == 6
        assert result["market_analysis"]["average_price"] == 37
        assert result["market_analysis"]["low_price"] == 5
        assert result["market_analysis"]["high_price"] == 100

    def test_recent_sales_newest_first(self):
        result = evaluate_comps(comps(*range(1, 13)))

        sales = result["recent_sales"]
        assert len(sales) == 10
        assert sales[0]["sold_price"] == 12
        assert sales[0]["marketplace"] == "ebay"

    def test_incomplete_comps_ignored(self):
        rows = comps(10) + [{"price": None, "date_sold": datetime(2026, 1, 1)}, {"price": 3}]
        assert evaluate_comps(rows)["market_analysis"]["sample_size"] == 1

    @pytest.mark.parametrize(
        "prices, trend",
        [
            ((10, 10, 10, 10), "stable"),
            ((10, 10, 11, 11), "rising"),
            ((10, 10, 9, 9), "falling"),
            ((10, 10, 10.4, 10.4), "stable"),
            ((10, 20, 30), None),
        ],
    )
    def test_trend(self, prices, trend):
        assert price_trend(comps(*prices)) == trend

    @pytest.mark.parametrize("size, confidence", [(0, 0.0), (2, 0.43), (4, 0.56), (10, 0.95), (50, 0.95)])
    def test_confidence_grows_with_sample(self, size, confidence):
        assert price_confidence(size) == confidence
