"""
Time-based scheduler - delayed and recurring deliveries.

Rule-driven schedules are created when a matching event arrives; script
schedules are created when a transform calls schedule_delivery(). A due
schedule is fired by:
  1. creating its attempt log (idempotent, dedup key "schedule:{id}")
  2. compare-and-set PENDING -> FIRED
  3. inserting the next occurrence for recurring series
  4. handing the log to the delivery engine like a live event
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from croniter import croniter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.models.scheduled_delivery import ScheduledDelivery
from eventrelay.schemas.delivery import Trigger
from eventrelay.schemas.events import RawEvent
from eventrelay.schemas.rules import MAX_DELAY_SECONDS, DelayedMode, RecurringMode
from eventrelay.services.attempt_logs import event_dedup_key, insert_once, new_log_values
from eventrelay.utils.paths import MISSING, get_path
from eventrelay.utils.timezone import ensure_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Past timestamps within this window fire immediately instead of being rejected
PAST_GRACE_SECONDS = 60


class ScheduleStatus:
    PENDING = "PENDING"
    FIRED = "FIRED"
    CANCELLED = "CANCELLED"


class ScheduleError(ValueError):
    """A schedule could not be computed (missing/invalid/out-of-range time)."""


def _bounded(when: datetime, now: datetime) -> datetime:
    if when < now - timedelta(seconds=PAST_GRACE_SECONDS):
        raise ScheduleError(f"Scheduled time {when.isoformat()} is in the past")
    if when > now + timedelta(seconds=MAX_DELAY_SECONDS):
        raise ScheduleError(f"Scheduled time {when.isoformat()} is more than a year ahead")
    return max(when, now)


def first_run_at(mode, payload: dict, now: Optional[datetime] = None) -> datetime:
    """When the first occurrence of a delayed/recurring rule fires."""
    now = now or utcnow()
    try:
        return _first_run_at(mode, payload, now)
    except OverflowError as e:
        raise ScheduleError(f"Scheduled time is out of range: {e}") from e


def _first_run_at(mode, payload: dict, now: datetime) -> datetime:
    if isinstance(mode, DelayedMode):
        if mode.delay_seconds is not None:
            return _bounded(now + timedelta(seconds=mode.delay_seconds), now)
        raw = get_path(payload, mode.at_path)
        if raw is MISSING or raw is None:
            raise ScheduleError(f"Payload has no value at {mode.at_path!r}")
        when = parse_timestamp(raw)
        if when is None:
            raise ScheduleError(f"Value at {mode.at_path!r} is not a timestamp: {raw!r}")
        return _bounded(when + timedelta(seconds=mode.offset_seconds), now)
    if isinstance(mode, RecurringMode):
        return now + timedelta(seconds=mode.first_delay_seconds)
    raise ScheduleError(f"Delivery mode {type(mode).__name__} is not scheduled")


def next_run_at(schedule: ScheduledDelivery, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next occurrence after `schedule`, or None when the series is complete."""
    now = now or utcnow()
    if not schedule.is_recurring:
        return None
    if schedule.max_occurrences is not None and schedule.occurrence >= schedule.max_occurrences:
        return None

    previous = ensure_utc(schedule.scheduled_for)
    if schedule.cron:
        nxt = croniter(schedule.cron, max(previous, now)).get_next(datetime)
        nxt = ensure_utc(nxt)
    else:
        # Catch up one occurrence per scan after downtime rather than bursting
        nxt = max(previous + timedelta(seconds=schedule.interval_seconds), now)

    end_at = ensure_utc(schedule.end_at)
    if end_at is not None and nxt > end_at:
        return None
    return nxt


async def schedule_for_rule(
    session_factory: Callable,
    rule: DeliveryRule,
    event: RawEvent,
    now: Optional[datetime] = None,
) -> tuple[ScheduledDelivery, bool]:
    """First occurrence for a delayed/recurring rule. Raises ScheduleError."""
    mode = rule.mode_config()
    when = first_run_at(mode, event.payload, now)
    series_key = event_dedup_key(event)
    values = {
        "tenant_id": event.tenant_id,
        "event_id": event.id,
        "event_type": event.event_type,
        "origin": "rule",
        "series_key": series_key,
        "payload": event.payload,
        "pre_transformed": False,
        "scheduled_for": when,
        "status": ScheduleStatus.PENDING,
        "occurrence": 1,
    }
    if isinstance(mode, RecurringMode):
        values.update({
            "interval_seconds": mode.interval_seconds,
            "cron": mode.cron,
            "max_occurrences": mode.max_occurrences,
            "end_at": mode.end_at,
        })
    schedule, created = await insert_once(
        session_factory, ScheduledDelivery, rule.id, f"{series_key}:1", values,
    )
    if created:
        logger.info(
            "Scheduled rule %s for event %s at %s",
            str(rule.id)[:8], event.reference, when.isoformat(),
            extra={"rule_id": str(rule.id), "tenant_id": event.tenant_id, "event_id": event.id},
        )
    return schedule, created


async def schedule_from_script(
    session_factory: Callable,
    log: DeliveryAttemptLog,
    requests: list[dict],
    default_body,
    now: Optional[datetime] = None,
) -> int:
    """
    Persist schedule_delivery() calls made by a transform script.

    A request with a payload (or a script that also returned a body) stores
    that body as the outbound body. A request without one from a script that
    skipped defers the event: the event payload is stored and the script runs
    again at fire time. Invalid requests are logged and dropped; returns the
    number of schedules created.
    """
    now = now or utcnow()
    created_count = 0
    for index, request in enumerate(requests):
        try:
            if request.get("delay_seconds") is not None:
                delay = float(request["delay_seconds"])
                when = _bounded(now + timedelta(seconds=delay), now)
            else:
                at = parse_timestamp(request.get("at"))
                if at is None:
                    raise ScheduleError(f"Invalid schedule time: {request.get('at')!r}")
                when = _bounded(at, now)
        except (ScheduleError, TypeError, ValueError, OverflowError) as e:
            logger.warning(
                "Dropping script schedule %d for log %s: %s", index, str(log.id)[:8], str(e),
                extra={"log_id": str(log.id), "tenant_id": log.tenant_id},
            )
            continue

        body = request.get("payload")
        pre_transformed = True
        if body is None:
            body = default_body
        if body is None:
            # Deferring the event itself: the script runs again on the event
            # payload when the schedule fires, with trigger "schedule"
            if log.trigger == Trigger.SCHEDULE or log.original_payload is None:
                logger.warning(
                    "Dropping script schedule %d for log %s: a deferral from a scheduled "
                    "delivery must carry a payload", index, str(log.id)[:8],
                    extra={"log_id": str(log.id), "tenant_id": log.tenant_id},
                )
                continue
            body = log.original_payload
            pre_transformed = False

        series_key = f"script:{log.id}:{index}"
        _, created = await insert_once(
            session_factory,
            ScheduledDelivery,
            log.rule_id,
            f"{series_key}:1",
            {
                "tenant_id": log.tenant_id,
                "event_id": log.event_id,
                "event_type": log.event_type,
                "origin": "script",
                "series_key": series_key,
                "payload": body,
                "pre_transformed": pre_transformed,
                "scheduled_for": when,
                "status": ScheduleStatus.PENDING,
                "occurrence": 1,
            },
        )
        if created:
            created_count += 1
    return created_count


async def cancel_schedule(db: AsyncSession, tenant_id: str, schedule_id, reason: str = "cancelled") -> bool:
    """Cancel a pending schedule. False if it is not pending or not the tenant's."""
    result = await db.execute(
        update(ScheduledDelivery)
        .where(
            ScheduledDelivery.id == schedule_id,
            ScheduledDelivery.tenant_id == tenant_id,
            ScheduledDelivery.status == ScheduleStatus.PENDING,
        )
        .values(status=ScheduleStatus.CANCELLED, cancelled_reason=reason)
    )
    return result.rowcount == 1


async def _fire_one(session_factory: Callable, schedule: ScheduledDelivery, now: datetime):
    """Fire one due schedule. Returns the attempt log id to dispatch, or None."""
    async with session_factory() as db:
        rule = await db.get(DeliveryRule, schedule.rule_id)

    if rule is None or not rule.is_active:
        async with session_factory() as db:
            await cancel_schedule(db, schedule.tenant_id, schedule.id, reason="rule inactive")
            await db.commit()
        logger.info("Cancelled schedule %s: rule inactive", str(schedule.id)[:8])
        return None

    log_values = new_log_values(
        rule,
        tenant_id=schedule.tenant_id,
        event_type=schedule.event_type,
        event_id=schedule.event_id,
        trigger=Trigger.SCHEDULE,
        original_payload=None if schedule.pre_transformed else schedule.payload,
        transformed_payload=schedule.payload if schedule.pre_transformed else None,
        next_retry_at=now,
    )
    log, _ = await insert_once(
        session_factory, DeliveryAttemptLog, rule.id, f"schedule:{schedule.id}", log_values,
    )

    async with session_factory() as db:
        result = await db.execute(
            update(ScheduledDelivery)
            .where(
                ScheduledDelivery.id == schedule.id,
                ScheduledDelivery.status == ScheduleStatus.PENDING,
            )
            .values(status=ScheduleStatus.FIRED, fired_at=now, attempt_log_id=log.id)
        )
        await db.commit()
    if result.rowcount != 1:
        return None

    nxt = next_run_at(schedule, now)
    if nxt is not None:
        occurrence = schedule.occurrence + 1
        await insert_once(
            session_factory,
            ScheduledDelivery,
            schedule.rule_id,
            f"{schedule.series_key}:{occurrence}",
            {
                "tenant_id": schedule.tenant_id,
                "event_id": schedule.event_id,
                "event_type": schedule.event_type,
                "origin": schedule.origin,
                "series_key": schedule.series_key,
                "payload": schedule.payload,
                "pre_transformed": schedule.pre_transformed,
                "scheduled_for": nxt,
                "status": ScheduleStatus.PENDING,
                "occurrence": occurrence,
                "max_occurrences": schedule.max_occurrences,
                "interval_seconds": schedule.interval_seconds,
                "cron": schedule.cron,
                "end_at": schedule.end_at,
                "parent_id": schedule.id,
            },
        )

    logger.info(
        "Fired schedule %s occurrence %d -> log %s",
        str(schedule.id)[:8], schedule.occurrence, str(log.id)[:8],
        extra={"schedule_id": str(schedule.id), "log_id": str(log.id), "tenant_id": schedule.tenant_id},
    )
    return log.id


async def fire_due(
    session_factory: Callable,
    engine,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> int:
    """Fire every PENDING schedule due by now (up to limit). Returns count fired."""
    now = now or utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(ScheduledDelivery)
            .where(
                ScheduledDelivery.status == ScheduleStatus.PENDING,
                ScheduledDelivery.scheduled_for <= now,
            )
            .order_by(ScheduledDelivery.scheduled_for)
            .limit(limit)
        )
        due = list(result.scalars().all())

    log_ids = []
    for schedule in due:
        log_id = await _fire_one(session_factory, schedule, now)
        if log_id is not None:
            log_ids.append(log_id)

    if log_ids and engine is not None:
        await engine.attempt_many(log_ids)
    return len(log_ids)
