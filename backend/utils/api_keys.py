import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Iterable, Optional

from config.constants import (
    API_KEY_PREFIX,
    API_KEY_LENGTH,
    DEFAULT_RATE_LIMIT_PER_HOUR,
    DEFAULT_RATE_LIMIT_PER_DAY,
)

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_letters + string.digits


class ApiKeyError(Exception):
    """Authentication/authorization failure for an agent API key."""

    def __init__(self, message: str, status_code: int = 401, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after


# ============================================================
# KEY MATERIAL
# ============================================================

def generate_api_key() -> str:
    return API_KEY_PREFIX + "".join(secrets.choice(_ALPHABET) for _ in range(API_KEY_LENGTH))


def hash_api_key(api_key: str) -> str:
    # Only the hash is stored; the plain key is shown once at creation
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise ApiKeyError("Missing or invalid Authorization header. Expected: Bearer <api_key>")

    token = authorization[len("Bearer "):].strip()
    if not token:
        raise ApiKeyError("API key is required")
    return token


# ============================================================
# VALIDATION
# ============================================================

def assert_scopes(api_key: dict, required_scopes: Iterable[str]):
    required = list(required_scopes)
    scopes = api_key.get("scopes") or []
    if required and not all(scope in scopes for scope in required):
        raise ApiKeyError(
            f"Insufficient permissions. Required scopes: {', '.join(required)}",
            status_code=403,
        )


async def validate_api_key(
    db,
    authorization: Optional[str],
    required_scopes: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.utcnow()
    token = extract_bearer(authorization)

    record = await db.api_keys.find_one({
        "key_hash": hash_api_key(token),
        "is_active": True,
    })
    if not record:
        raise ApiKeyError("Invalid API key")

    expires_at = record.get("expires_at")
    if expires_at and expires_at < now:
        raise ApiKeyError("API key has expired")

    assert_scopes(record, required_scopes)

    await db.api_keys.update_one(
        {"_id": record["_id"]},
        {"$set": {"last_used_at": now}},
    )

    record.setdefault("rate_limit_per_hour", DEFAULT_RATE_LIMIT_PER_HOUR)
    record.setdefault("rate_limit_per_day", DEFAULT_RATE_LIMIT_PER_DAY)
    return record


# ============================================================
# RATE LIMIT (USAGE-LOG WINDOW)
# ============================================================

async def check_rate_limit(db, api_key: dict, now: Optional[datetime] = None):
    now = now or datetime.utcnow()

    windows = (
        (timedelta(hours=1), api_key.get("rate_limit_per_hour") or DEFAULT_RATE_LIMIT_PER_HOUR, 3600),
        (timedelta(days=1), api_key.get("rate_limit_per_day") or DEFAULT_RATE_LIMIT_PER_DAY, 86400),
    )

    for window, limit, retry_after in windows:
        used = await db.api_key_usage_logs.count_documents({
            "api_key_id": api_key["_id"],
            "created_at": {"$gte": now - window},
        })
        if used >= limit:
            logger.warning("API_KEY_RATE_LIMITED key=%s used=%s limit=%s", api_key["_id"], used, limit)
            raise ApiKeyError("Rate limit exceeded", status_code=429, retry_after=retry_after)


async def log_api_key_usage(
    db,
    *,
    api_key_id,
    endpoint: str,
    method: str,
    status_code: int,
    response_time_ms: int,
):
    await db.api_key_usage_logs.insert_one({
        "api_key_id": api_key_id,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "response_time_ms": response_time_ms,
        "created_at": datetime.utcnow(),
    })


def serialize_api_key(record: dict) -> dict:
    return {
        "id": str(record["_id"]),
        "label": record.get("label"),
        "scopes": record.get("scopes", []),
        "rate_limit_per_hour": record.get("rate_limit_per_hour"),
        "rate_limit_per_day": record.get("rate_limit_per_day"),
        "is_active": record.get("is_active", False),
        "expires_at": record["expires_at"].isoformat() if record.get("expires_at") else None,
        "last_used_at": record["last_used_at"].isoformat() if record.get("last_used_at") else None,
        "created_at": record["created_at"].isoformat() if record.get("created_at") else None,
    }
