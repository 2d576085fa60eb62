import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from pymongo import ReturnDocument

from config.constants import (
    API_KEY_SCOPES,
    DEFAULT_API_KEY_SCOPES,
    DEFAULT_RATE_LIMIT_PER_HOUR,
    DEFAULT_RATE_LIMIT_PER_DAY,
)
from database import get_db
from utils.api_keys import generate_api_key, hash_api_key, serialize_api_key
from utils.audit import log_audit
from utils.guards import parse_object_id
from utils.security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/functions/v1/api-keys",
    tags=["API Keys"]
)


def _known_scopes(scopes: List[str]) -> List[str]:
    unknown = [s for s in scopes if s not in API_KEY_SCOPES]
    if unknown:
        raise ValueError(f"Unknown scopes: {', '.join(unknown)}")
    if not scopes:
        raise ValueError("At least one scope is required")
    return sorted(set(scopes))


class ApiKeyCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_API_KEY_SCOPES))
    rate_limit_per_hour: int = Field(DEFAULT_RATE_LIMIT_PER_HOUR, ge=1, le=10_000)
    rate_limit_per_day: int = Field(DEFAULT_RATE_LIMIT_PER_DAY, ge=1, le=100_000)
    expires_in_days: Optional[int] = Field(None, ge=1, le=365)

    @field_validator("scopes")
    @classmethod
    def known_scopes(cls, scopes):
        return _known_scopes(scopes)


class ApiKeyUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=100)
    scopes: Optional[List[str]] = None
    rate_limit_per_hour: Optional[int] = Field(None, ge=1, le=10_000)
    rate_limit_per_day: Optional[int] = Field(None, ge=1, le=100_000)

    @field_validator("scopes")
    @classmethod
    def known_scopes(cls, scopes):
        return _known_scopes(scopes) if scopes is not None else scopes


# ----------------------------------------
# CREATE (PLAIN KEY SHOWN ONCE)
# ----------------------------------------

@router.post("")
async def create_api_key(
    data: ApiKeyCreate,
    user=Depends(get_current_user),
):
    db = get_db()
    now = datetime.utcnow()

    plain_key = generate_api_key()
    record = {
        "user_id": user["_id"],
        "key_hash": hash_api_key(plain_key),
        "label": data.label,
        "scopes": data.scopes,
        "rate_limit_per_hour": data.rate_limit_per_hour,
        "rate_limit_per_day": data.rate_limit_per_day,
        "expires_at": now + timedelta(days=data.expires_in_days) if data.expires_in_days else None,
        "is_active": True,
        "last_used_at": None,
        "created_at": now,
    }
    result = await db.api_keys.insert_one(record)
    record["_id"] = result.inserted_id

    await log_audit(
        db=db,
        actor_id=str(user["_id"]),
        actor_role=user.get("role", "user"),
        action="API_KEY_CREATED",
        metadata={"api_key_id": str(result.inserted_id), "scopes": data.scopes},
    )

    return {
        "api_key": plain_key,
        "key": serialize_api_key(record),
        "warning": "Store this key securely. It will not be shown again.",
    }


# ----------------------------------------
# LIST
# ----------------------------------------

@router.get("")
async def list_api_keys(user=Depends(get_current_user)):
    db = get_db()

    keys = await db.api_keys.find(
        {"user_id": user["_id"]},
        {"key_hash": 0},
    ).sort("created_at", -1).to_list(100)

    return {"keys": [serialize_api_key(k) for k in keys]}


# ----------------------------------------
# REVOKE
# ----------------------------------------

@router.delete("/{key_id}")
async def revoke_api_key(
    key_id: str,
    user=Depends(get_current_user),
):
    db = get_db()
    oid = parse_object_id(key_id, "API key ID")

    result = await db.api_keys.update_one(
        {"_id": oid, "user_id": user["_id"], "is_active": True},
        {"$set": {"is_active": False, "revoked_at": datetime.utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="API key not found")

    await log_audit(
        db=db,
        actor_id=str(user["_id"]),
        actor_role=user.get("role", "user"),
        action="API_KEY_REVOKED",
        metadata={"api_key_id": key_id},
    )

    return {"success": True}


# ----------------------------------------
# UPDATE
# ----------------------------------------

@router.put("/{key_id}")
async def update_api_key(
    key_id: str,
    data: ApiKeyUpdate,
    user=Depends(get_current_user),
):
    db = get_db()
    oid = parse_object_id(key_id, "API key ID")

    updates = data.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    updated = await db.api_keys.find_one_and_update(
        {"_id": oid, "user_id": user["_id"]},
        {"$set": {**updates, "updated_at": datetime.utcnow()}},
        projection={"key_hash": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="API key not found")

    await log_audit(
        db=db,
        actor_id=str(user["_id"]),
        actor_role=user.get("role", "user"),
        action="API_KEY_UPDATED",
        metadata={"api_key_id": key_id, "fields": sorted(updates)},
    )

    return {"key": serialize_api_key(updated)}


# ----------------------------------------
# USAGE STATS
# ----------------------------------------

@router.get("/{key_id}/stats")
async def api_key_stats(
    key_id: str,
    user=Depends(get_current_user),
):
    db = get_db()
    oid = parse_object_id(key_id, "API key ID")

    key = await db.api_keys.find_one({"_id": oid, "user_id": user["_id"]}, {"_id": 1})
    if not key:
        raise HTTPException(status_code=404, detail="API key not found")

    now = datetime.utcnow()
    day_ago = now - timedelta(days=1)

    daily = await db.api_key_usage_logs.count_documents({
        "api_key_id": oid,
        "created_at": {"$gte": day_ago},
    })
    hourly = await db.api_key_usage_logs.count_documents({
        "api_key_id": oid,
        "created_at": {"$gte": now - timedelta(hours=1)},
    })

    per_endpoint = await db.api_key_usage_logs.aggregate([
        {"$match": {"api_key_id": oid, "created_at": {"$gte": day_ago}}},
        {"$group": {
            "_id": "$endpoint",
            "total": {"$sum": 1},
            "errors": {"$sum": {"$cond": [{"$gte": ["$status_code", 400]}, 1, 0]}},
        }},
    ]).to_list(None)

    return {
        "daily_usage": daily,
        "hourly_usage": hourly,
        "endpoint_stats": {
            row["_id"]: {"total": row["total"], "errors": row["errors"]}
            for row in per_endpoint
        },
    }
