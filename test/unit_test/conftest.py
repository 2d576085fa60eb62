from datetime import datetime, timedelta
from typing import AsyncGenerator, Iterable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from jose import jwt

from config.env import JWT_ALGORITHM, JWT_SECRET
from utils.api_keys import hash_api_key

TEST_API_KEY = "cm_" + "a" * 48


def make_cursor(docs: Optional[Iterable[dict]] = None) -> MagicMock:
    """Chainable motor cursor stand-in (sort/limit/to_list/async for)."""
    docs = list(docs or [])
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    cursor.__aiter__.return_value = docs
    return cursor


def make_collection() -> MagicMock:
    collection = MagicMock()
    for name in (
        "find_one",
        "insert_one",
        "update_one",
        "update_many",
        "count_documents",
        "find_one_and_update",
        "delete_one",
        "delete_many",
        "distinct",
    ):
        setattr(collection, name, AsyncMock())

    collection.find_one.return_value = None
    collection.find_one_and_update.return_value = None
    collection.count_documents.return_value = 0
    collection.distinct.return_value = []
    collection.insert_one.return_value = MagicMock(inserted_id=ObjectId())
    collection.update_one.return_value = MagicMock(matched_count=1, modified_count=1)
    collection.update_many.return_value = MagicMock(matched_count=0, modified_count=0)
    collection.find.return_value = make_cursor()
    collection.aggregate.return_value = make_cursor()
    return collection


class FakeDB:
    """Collections are created on first access and then reused."""

    def __init__(self):
        self._collections = {}
        self.command = AsyncMock(return_value={"ok": 1})

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = make_collection()
        return self._collections[name]

    @staticmethod
    def cursor(docs=None) -> MagicMock:
        return make_cursor(docs)

    def set_wallet(self, credit_minor: int, debit_minor: int = 0):
        self.wallet_ledger.aggregate.return_value = make_cursor(
            [{"_id": None, "credit": credit_minor, "debit": debit_minor}]
        )


@pytest.fixture
def db() -> FakeDB:
    return FakeDB()


@pytest.fixture
def user_id() -> ObjectId:
    return ObjectId()


@pytest.fixture
def api_key_record(db, user_id):
    """Every MCP/ACP scope; individual tests narrow it."""
    record = {
        "_id": ObjectId(),
        "user_id": user_id,
        "key_hash": hash_api_key(TEST_API_KEY),
        "label": "test agent",
        "scopes": [
            "mcp_search",
            "mcp_listing",
            "mcp_purchase",
            "mcp_wallet",
            "acp_read",
            "acp_purchase",
        ],
        "rate_limit_per_hour": 1000,
        "rate_limit_per_day": 10000,
        "is_active": True,
        "expires_at": None,
    }
    db.api_keys.find_one.return_value = record
    return record


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {TEST_API_KEY}"}


@pytest.fixture
def issue_token():
    """Signs a user token the way the account service does."""
    def _issue(user_id, role: str = "user") -> str:
        now = datetime.utcnow()
        payload = {"sub": str(user_id), "role": role, "iat": now, "exp": now + timedelta(minutes=60)}
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

    return _issue


@pytest.fixture
def app():
    from main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
