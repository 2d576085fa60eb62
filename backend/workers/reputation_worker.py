import asyncio
import logging
from datetime import datetime

from config.env import REPUTATION_INTERVAL_HOURS
from database import get_db
from utils.badges import assign_seller_badges
from utils.reputation import compute_seller_reputation

CHECK_INTERVAL_SECONDS = 60 * 60 * REPUTATION_INTERVAL_HOURS
logger = logging.getLogger(__name__)


async def recalculate_all_reputations(db) -> int:
    """Sellers with at least one order; returns how many were recalculated."""
    now = datetime.utcnow()
    seller_ids = await db.orders.distinct("seller_id")

    processed = 0
    for seller_id in seller_ids:
        try:
            await compute_seller_reputation(db, seller_id, now)
            await assign_seller_badges(db, seller_id, now)
            processed += 1
        except Exception:
            logger.exception("REPUTATION_WORKER_SELLER_ERROR seller=%s", seller_id)

    return processed


async def reputation_worker():
    db = get_db()

    while True:
        try:
            processed = await recalculate_all_reputations(db)
            logger.info("REPUTATION_WORKER_DONE sellers=%s", processed)
        except Exception:
            logger.exception("REPUTATION_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
