"""
Schedule worker - fires delayed and recurring deliveries when they come due.
"""
import asyncio
import logging

from eventrelay.config import get_settings
from eventrelay.services.scheduler import fire_due
from eventrelay.workers.heartbeat import record_heartbeat

logger = logging.getLogger(__name__)


async def run_schedule_worker(engine):
    """Main schedule loop. Runs continuously."""
    from eventrelay.database import async_session_factory

    settings = get_settings()
    logger.info("Schedule worker started (every %ss)", settings.schedule_interval_seconds)

    while True:
        try:
            fired = await fire_due(async_session_factory, engine, limit=settings.schedule_batch_size)
            if fired > 0:
                logger.info("Schedule worker fired %d deliveries", fired)
        except Exception as e:
            logger.error("Schedule worker error: %s", str(e), exc_info=True)

        await record_heartbeat("schedule_worker")
        await asyncio.sleep(settings.schedule_interval_seconds)
