"""
Idempotent creation of attempt logs and schedules.

Each row is written in its own short transaction. The unique
(rule_id, dedup_key) constraints make a concurrent duplicate insert fail, in
which case the existing row is returned instead.
"""
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.schemas.delivery import DeliveryStatus, Trigger
from eventrelay.schemas.events import RawEvent
from eventrelay.utils.logging import get_correlation_id
from eventrelay.utils.timezone import utcnow

logger = logging.getLogger(__name__)


def event_dedup_key(event: RawEvent) -> str:
    return f"event:{event.tenant_id}:{event.id}"


async def _find(db, model, rule_id, dedup_key):
    result = await db.execute(
        select(model).where(model.rule_id == rule_id, model.dedup_key == dedup_key)
    )
    return result.scalar_one_or_none()


async def insert_once(
    session_factory: Callable,
    model,
    rule_id,
    dedup_key: str,
    values: dict[str, Any],
) -> tuple[Any, bool]:
    """Insert a row unless one exists for (rule_id, dedup_key). Returns (row, created)."""
    async with session_factory() as db:
        existing = await _find(db, model, rule_id, dedup_key)
        if existing is not None:
            return existing, False
        row = model(rule_id=rule_id, dedup_key=dedup_key, **values)
        db.add(row)
        try:
            await db.commit()
            return row, True
        except IntegrityError:
            await db.rollback()

    # Lost the race to another worker
    async with session_factory() as db:
        existing = await _find(db, model, rule_id, dedup_key)
        if existing is None:
            raise RuntimeError(f"Row for {dedup_key} vanished after unique violation")
        return existing, False


def new_log_values(
    rule: DeliveryRule,
    tenant_id: str,
    event_type: str,
    event_id=None,
    trigger: str = Trigger.EVENT,
    original_payload=None,
    transformed_payload=None,
    next_retry_at=None,
) -> dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "rule_version": rule.version,
        "event_id": event_id,
        "event_type": event_type,
        "trigger": trigger,
        "status": DeliveryStatus.PENDING,
        "attempt_count": 0,
        "max_retries": rule.retry_config().max_retries,
        "next_retry_at": next_retry_at or utcnow(),
        "original_payload": original_payload,
        "transformed_payload": transformed_payload,
        "correlation_id": get_correlation_id(),
    }


async def ensure_event_log(
    session_factory: Callable,
    event: RawEvent,
    rule: DeliveryRule,
) -> tuple[DeliveryAttemptLog, bool]:
    """The single attempt log for (event, rule); created PENDING and due now."""
    values = new_log_values(
        rule,
        tenant_id=event.tenant_id,
        event_type=event.event_type,
        event_id=event.id,
        original_payload=event.payload,
    )
    return await insert_once(session_factory, DeliveryAttemptLog, rule.id, event_dedup_key(event), values)
