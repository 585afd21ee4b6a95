"""
Retry worker - delivers attempt logs that are due (PENDING/RETRYING with
next_retry_at <= now) and returns abandoned claims to the queue.
Runs every few seconds; the claim CAS in the delivery engine keeps replicas
from delivering the same log twice.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update

from eventrelay.config import get_settings
from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.schemas.delivery import DeliveryStatus
from eventrelay.utils.timezone import utcnow
from eventrelay.workers.heartbeat import record_heartbeat

logger = logging.getLogger(__name__)


def _default_factory(session_factory):
    if session_factory is None:
        from eventrelay.database import async_session_factory
        return async_session_factory
    return session_factory


async def process_due_logs(
    engine,
    session_factory: Optional[Callable] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Hand due logs to the engine. Returns how many were attempted."""
    session_factory = _default_factory(session_factory)
    limit = limit or get_settings().retry_batch_size
    now = now or utcnow()

    async with session_factory() as db:
        result = await db.execute(
            select(DeliveryAttemptLog.id)
            .where(
                DeliveryAttemptLog.status.in_(DeliveryStatus.DUE),
                DeliveryAttemptLog.next_retry_at <= now,
                DeliveryAttemptLog.attempt_count < DeliveryAttemptLog.max_retries,
            )
            .order_by(DeliveryAttemptLog.next_retry_at)
            .limit(limit)
        )
        log_ids = list(result.scalars().all())

    if not log_ids:
        return 0
    results = await engine.attempt_many(log_ids)
    for log_id, outcome in zip(log_ids, results):
        if isinstance(outcome, BaseException):
            logger.error("Attempt for log %s raised: %s", str(log_id)[:8], str(outcome))
    return sum(1 for outcome in results if isinstance(outcome, str))


async def reap_stale_claims(
    session_factory: Optional[Callable] = None,
    stale_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Move IN_PROGRESS logs whose claim is older than stale_seconds back to
    RETRYING. The interrupted attempt is not counted.
    """
    session_factory = _default_factory(session_factory)
    stale_seconds = stale_seconds or get_settings().claim_stale_seconds
    now = now or utcnow()

    async with session_factory() as db:
        result = await db.execute(
            update(DeliveryAttemptLog)
            .where(
                DeliveryAttemptLog.status == DeliveryStatus.IN_PROGRESS,
                DeliveryAttemptLog.claimed_at < now - timedelta(seconds=stale_seconds),
            )
            .values(
                status=DeliveryStatus.RETRYING,
                next_retry_at=now,
                claimed_by=None,
                claimed_at=None,
                last_error_message="Delivery interrupted; claim expired",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if result.rowcount:
        logger.warning("Reaped %d stale delivery claims", result.rowcount)
    return result.rowcount


async def run_retry_worker(engine):
    """Main retry worker loop. Runs continuously."""
    settings = get_settings()
    logger.info("Retry worker started (every %ss)", settings.retry_interval_seconds)

    while True:
        try:
            await reap_stale_claims()
            processed = await process_due_logs(engine)
            if processed > 0:
                logger.info("Retry worker attempted %d deliveries", processed)
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)

        await record_heartbeat("retry_worker")
        await asyncio.sleep(settings.retry_interval_seconds)
