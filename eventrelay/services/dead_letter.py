"""
Dead letter queue - the FAILED and ABANDONED attempt logs.

There is no separate DLQ table: a dead letter is an attempt log in a terminal
failure status. Replay resets the same row in place (attempt_count back to 0,
status PENDING, due now) so the normal retry worker picks it up again.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, null, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.schemas.delivery import DeliveryStatus, Trigger
from eventrelay.utils.logging import get_correlation_id
from eventrelay.utils.timezone import utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
MAX_BULK_REPLAY = 500


def _filters(
    tenant_id: str,
    status: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    rule_id=None,
) -> list:
    statuses = [status] if status else list(DeliveryStatus.DEAD_LETTER)
    clauses = [
        DeliveryAttemptLog.tenant_id == tenant_id,
        DeliveryAttemptLog.status.in_(statuses),
    ]
    if category:
        clauses.append(DeliveryAttemptLog.error_category == category)
    if since:
        clauses.append(DeliveryAttemptLog.updated_at >= since)
    if until:
        clauses.append(DeliveryAttemptLog.updated_at < until)
    if rule_id:
        clauses.append(DeliveryAttemptLog.rule_id == rule_id)
    return clauses


async def list_dead_letters(
    db: AsyncSession,
    tenant_id: str,
    status: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    rule_id=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[DeliveryAttemptLog], int]:
    """A page of the tenant's dead letters, newest first, plus the total count."""
    if status and status not in DeliveryStatus.DEAD_LETTER:
        raise ValueError(f"Not a dead letter status: {status}")
    clauses = _filters(tenant_id, status, category, since, until, rule_id)

    total = (await db.execute(
        select(func.count()).select_from(DeliveryAttemptLog).where(*clauses)
    )).scalar_one()

    result = await db.execute(
        select(DeliveryAttemptLog)
        .where(*clauses)
        .order_by(DeliveryAttemptLog.updated_at.desc())
        .limit(min(max(limit, 1), MAX_PAGE_SIZE))
        .offset(max(offset, 0))
    )
    return list(result.scalars().all()), total


def _reset_values() -> dict:
    now = utcnow()
    return {
        "status": DeliveryStatus.PENDING,
        "attempt_count": 0,
        "next_retry_at": now,
        "trigger": Trigger.REPLAY,
        "error_category": None,
        "last_error_message": None,
        "completed_at": None,
        "claimed_by": None,
        "claimed_at": None,
        # Replays re-run the transform against the rule as it is now. Logs
        # created from a script schedule have no source payload and keep
        # the body they were scheduled with.
        "transformed_payload": case(
            (DeliveryAttemptLog.original_payload.is_(None), DeliveryAttemptLog.transformed_payload),
            else_=null(),
        ),
        "correlation_id": get_correlation_id(),
        "updated_at": now,
    }


async def replay_one(db: AsyncSession, tenant_id: str, log_id) -> Optional[bool]:
    """
    Reset one dead letter for delivery.
    Returns None if the log doesn't exist for this tenant, False if it is not
    in a dead letter status, True once reset. The caller commits.
    """
    log = await db.get(DeliveryAttemptLog, log_id)
    if log is None or log.tenant_id != tenant_id:
        return None

    result = await db.execute(
        update(DeliveryAttemptLog)
        .where(
            DeliveryAttemptLog.id == log.id,
            DeliveryAttemptLog.status.in_(DeliveryStatus.DEAD_LETTER),
        )
        .values(**_reset_values())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    logger.info(
        "Dead letter %s queued for replay", str(log.id)[:8],
        extra={"log_id": str(log.id), "tenant_id": tenant_id},
    )
    return True


async def replay_bulk(
    db: AsyncSession,
    tenant_id: str,
    status: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    rule_id=None,
    limit: int = 100,
) -> int:
    """Reset every dead letter matching the filters (up to limit). The caller commits."""
    if status and status not in DeliveryStatus.DEAD_LETTER:
        raise ValueError(f"Not a dead letter status: {status}")
    clauses = _filters(tenant_id, status, category, since, until, rule_id)

    ids = list((await db.execute(
        select(DeliveryAttemptLog.id)
        .where(*clauses)
        .order_by(DeliveryAttemptLog.updated_at)
        .limit(min(max(limit, 1), MAX_BULK_REPLAY))
    )).scalars().all())
    if not ids:
        return 0

    result = await db.execute(
        update(DeliveryAttemptLog)
        .where(
            DeliveryAttemptLog.id.in_(ids),
            DeliveryAttemptLog.status.in_(DeliveryStatus.DEAD_LETTER),
        )
        .values(**_reset_values())
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Queued %d dead letters for replay (tenant=%s)", result.rowcount, tenant_id,
        extra={"tenant_id": tenant_id},
    )
    return result.rowcount
