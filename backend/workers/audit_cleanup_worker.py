import asyncio
import logging
from datetime import datetime, timedelta
from database import get_db

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
AUDIT_RETENTION_DAYS = 90
# Rate limits only look back one day
USAGE_LOG_RETENTION_DAYS = 30

logger = logging.getLogger(__name__)


async def purge_old_logs(db, now=None) -> dict:
    now = now or datetime.utcnow()

    audit = await db.audit_logs.delete_many({
        "created_at": {"$lt": now - timedelta(days=AUDIT_RETENTION_DAYS)}
    })
    usage = await db.api_key_usage_logs.delete_many({
        "created_at": {"$lt": now - timedelta(days=USAGE_LOG_RETENTION_DAYS)}
    })
    return {
        "audit_logs": audit.deleted_count,
        "api_key_usage_logs": usage.deleted_count,
    }


async def audit_cleanup_worker():
    db = get_db()

    while True:
        try:
            deleted = await purge_old_logs(db)
            logger.info("LOG_CLEANUP_DONE %s", deleted)
        except Exception:
            logger.exception("LOG_CLEANUP_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
