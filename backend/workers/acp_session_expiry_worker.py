import asyncio
import logging
from datetime import datetime

from database import get_db

CHECK_INTERVAL_SECONDS = 60 * 5  # every 5 minutes
logger = logging.getLogger(__name__)


async def expire_acp_sessions(db, now=None) -> int:
    """Unpaid checkout sessions past their expiry; paid ones are left for confirm."""
    now = now or datetime.utcnow()

    result = await db.acp_sessions.update_many(
        {
            "status": "active",
            "expires_at": {"$lte": now},
        },
        {"$set": {"status": "expired", "updated_at": now}},
    )
    return result.modified_count


async def acp_session_expiry_worker():
    db = get_db()

    while True:
        try:
            expired = await expire_acp_sessions(db)
            if expired:
                logger.info("ACP_SESSIONS_EXPIRED count=%s", expired)
        except Exception:
            logger.exception("ACP_SESSION_EXPIRY_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
