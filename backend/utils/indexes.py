from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create an index, replacing an existing index on the same keys
    whose options differ (IndexOptionsConflict / IndexKeySpecsConflict).
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Listings (agent search + inventory)
    await _create_index_safe(
        db.listings,
        [("status", ASCENDING), ("ai_answer_engines_enabled", ASCENDING), ("created_at", DESCENDING)],
        name="listings_status_ai_created_idx",
    )
    await _create_index_safe(
        db.listings,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="listings_seller_created_idx",
    )

    # Orders (risk / reputation windows)
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_seller_created_idx",
    )
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_idx",
    )

    # One row per seller
    await _create_index_safe(
        db.seller_risk_ratings,
        [("seller_id", ASCENDING)],
        name="seller_risk_ratings_seller_unique",
        unique=True,
    )
    await _create_index_safe(
        db.seller_reputation,
        [("seller_id", ASCENDING)],
        name="seller_reputation_seller_unique",
        unique=True,
    )
    await _create_index_safe(
        db.seller_badges,
        [("seller_id", ASCENDING), ("badge_name", ASCENDING)],
        name="seller_badges_seller_name_idx",
    )
    await _create_index_safe(
        db.user_memberships,
        [("user_id", ASCENDING)],
        name="user_memberships_user_unique",
        unique=True,
    )

    # Pricing comps
    await _create_index_safe(
        db.pricing_comps,
        [("set_code", ASCENDING), ("card_number", ASCENDING), ("date_sold", DESCENDING)],
        name="pricing_comps_card_sold_idx",
    )

    # API keys
    await _create_index_safe(
        db.api_keys,
        [("key_hash", ASCENDING)],
        name="api_keys_hash_unique",
        unique=True,
    )
    await _create_index_safe(
        db.api_keys,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="api_keys_user_created_idx",
    )
    await _create_index_safe(
        db.api_key_usage_logs,
        [("api_key_id", ASCENDING), ("created_at", DESCENDING)],
        name="api_key_usage_key_created_idx",
    )

    # Wallet ledger
    await _create_index_safe(
        db.wallet_ledger,
        [("user_id", ASCENDING), ("pending", ASCENDING)],
        name="wallet_ledger_user_pending_idx",
    )

    # ACP sessions
    await _create_index_safe(
        db.acp_sessions,
        [("agent_id", ASCENDING), ("status", ASCENDING)],
        name="acp_sessions_agent_status_idx",
    )
    await _create_index_safe(
        db.acp_sessions,
        [("status", ASCENDING), ("expires_at", ASCENDING)],
        name="acp_sessions_status_expires_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("created_at", DESCENDING)],
        name="audit_logs_created_idx",
    )
