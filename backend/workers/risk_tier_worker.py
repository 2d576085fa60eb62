import asyncio
import logging

from config.env import RISK_TIER_INTERVAL_HOURS
from database import get_db
from utils.risk import recompute_all_risk_tiers

CHECK_INTERVAL_SECONDS = 60 * 60 * RISK_TIER_INTERVAL_HOURS
logger = logging.getLogger(__name__)


async def risk_tier_worker():
    db = get_db()

    while True:
        try:
            updated = await recompute_all_risk_tiers(db)
            logger.info("RISK_TIER_WORKER_DONE sellers=%s", updated)
        except Exception:
            logger.exception("RISK_TIER_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
