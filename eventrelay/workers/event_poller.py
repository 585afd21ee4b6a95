"""
Event poller - reads tenant events past the checkpoint and turns each
(event, matching rule) pair into exactly one attempt log or schedule.

Ordering within a tick:
  1. read one batch (id > checkpoint, ascending)
  2. per event: claim the dedup marker, match rules, write logs/schedules
  3. advance the checkpoint to the batch max
  4. deliver the immediate logs created in step 2

A crash before step 3 re-reads the batch; the unique (rule_id, dedup_key)
constraint turns the re-read into no-ops, and any log left PENDING is
picked up by the retry worker.
"""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy import update

from eventrelay.config import get_settings
from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.event_source import EventSourceConfig
from eventrelay.schemas.delivery import DeliveryStatus, ErrorCategory
from eventrelay.schemas.events import ColumnMapping, RawEvent
from eventrelay.schemas.rules import ImmediateMode
from eventrelay.services.attempt_logs import ensure_event_log
from eventrelay.services.event_source import CheckpointStore, SqlEventSource
from eventrelay.services.rules import match_rules
from eventrelay.services.scheduler import ScheduleError, schedule_for_rule
from eventrelay.utils.dedup import claim_event, release_event
from eventrelay.utils.logging import bind_log_context, generate_correlation_id, set_correlation_id
from eventrelay.utils.timezone import utcnow
from eventrelay.workers.heartbeat import record_heartbeat

logger = logging.getLogger(__name__)


class EventPoller:
    def __init__(
        self,
        source: SqlEventSource,
        checkpoints: CheckpointStore,
        worker_id: str,
        engine=None,
        session_factory: Optional[Callable] = None,
        batch_size: Optional[int] = None,
        tick_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        if session_factory is None:
            from eventrelay.database import async_session_factory
            session_factory = async_session_factory
        self.source = source
        self.checkpoints = checkpoints
        self.worker_id = worker_id
        self.engine = engine
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.poll_batch_size
        self.tick_timeout = tick_timeout or settings.poll_tick_timeout_seconds

    async def tick(self) -> int:
        """One poll cycle. Returns the number of events read."""
        try:
            count, log_ids = await asyncio.wait_for(self._collect(), timeout=self.tick_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Poll tick exceeded %ss; checkpoint left in place", self.tick_timeout,
                extra={"worker_id": self.worker_id},
            )
            return 0

        if log_ids and self.engine is not None:
            await self.engine.attempt_many(log_ids)
        return count

    async def _collect(self) -> tuple[int, list]:
        since = await self.checkpoints.load(self.worker_id) or 0
        events, max_id = await self.source.poll(since, self.batch_size)
        if max_id is None:
            return 0, []

        log_ids = []
        for event in events:
            log_ids.extend(await self.dispatch_event(event))

        await self.checkpoints.advance(self.worker_id, max_id)
        logger.debug(
            "Checkpoint %s advanced %d -> %d (%d events)", self.worker_id, since, max_id, len(events),
            extra={"worker_id": self.worker_id},
        )
        return len(events), log_ids

    async def dispatch_event(self, event: RawEvent) -> list:
        """
        Write the durable records for one event. Returns the attempt log ids
        to deliver now (new immediate logs of a freshly claimed event).
        """
        set_correlation_id(generate_correlation_id())
        bind_log_context(tenant_id=event.tenant_id, event_id=event.id)
        settings = get_settings()
        fresh = await claim_event(event.tenant_id, event.id, settings.dedup_ttl_seconds)
        try:
            return await self._write_records(event, fresh)
        except Exception:
            if fresh:
                await release_event(event.tenant_id, event.id)
            raise

    async def _write_records(self, event: RawEvent, fresh: bool) -> list:
        async with self._session_factory() as db:
            rules = await match_rules(db, event)
        if not rules:
            logger.debug("No rules match event %s (%s)", event.reference, event.event_type)
            return []

        to_deliver = []
        for rule in rules:
            mode = rule.mode_config()
            if isinstance(mode, ImmediateMode):
                log, created = await ensure_event_log(self._session_factory, event, rule)
                if fresh and created:
                    to_deliver.append(log.id)
                continue
            try:
                await schedule_for_rule(self._session_factory, rule, event)
            except ScheduleError as e:
                await self._record_schedule_failure(event, rule, str(e))

        logger.info(
            "Event %s (%s) matched %d rule(s)", event.reference, event.event_type, len(rules),
            extra={"tenant_id": event.tenant_id, "event_id": event.id},
        )
        return to_deliver

    async def _record_schedule_failure(self, event: RawEvent, rule, message: str) -> None:
        log, created = await ensure_event_log(self._session_factory, event, rule)
        if not created:
            return
        now = utcnow()
        async with self._session_factory() as db:
            await db.execute(
                update(DeliveryAttemptLog)
                .where(
                    DeliveryAttemptLog.id == log.id,
                    DeliveryAttemptLog.status == DeliveryStatus.PENDING,
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    error_category=ErrorCategory.VALIDATION,
                    last_error_message=message,
                    next_retry_at=None,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.warning(
            "Could not schedule rule %s for event %s: %s", str(rule.id)[:8], event.reference, message,
            extra={"rule_id": str(rule.id), "tenant_id": event.tenant_id, "event_id": event.id},
        )


async def build_poller(engine=None, session_factory: Optional[Callable] = None) -> Optional[EventPoller]:
    """
    Poller for this process's worker_id from its EventSourceConfig row.
    Bootstraps the checkpoint on first start. None if no source is configured.
    """
    from eventrelay.database import async_session_factory, external_session_factory

    settings = get_settings()
    session_factory = session_factory or async_session_factory
    async with session_factory() as db:
        config = await db.get(EventSourceConfig, settings.worker_id)
    if config is None or not config.is_active:
        return None

    source_factory = (
        external_session_factory(config.database_url) if config.database_url else session_factory
    )
    source = SqlEventSource(
        source_factory, config.table_name, ColumnMapping.model_validate(config.column_mapping or {}),
    )
    checkpoints = CheckpointStore(session_factory)

    if await checkpoints.load(settings.worker_id) is None:
        start = await source.latest_id() if config.start_from_latest else 0
        await checkpoints.advance(settings.worker_id, start)
        logger.info(
            "Initialized checkpoint for %s at %d", settings.worker_id, start,
            extra={"worker_id": settings.worker_id},
        )

    return EventPoller(
        source,
        checkpoints,
        settings.worker_id,
        engine=engine,
        session_factory=session_factory,
        batch_size=config.batch_size,
    )


async def run_event_poller(engine=None):
    """Main poller loop. Runs continuously."""
    settings = get_settings()
    logger.info(
        "Event poller started (worker=%s, poll every %ss)",
        settings.worker_id, settings.poll_interval_seconds,
    )

    poller = None
    warned = False
    while True:
        try:
            if poller is None:
                poller = await build_poller(engine)
                if poller is None and not warned:
                    logger.warning("No active event source configured for worker %s", settings.worker_id)
                    warned = True
            if poller is not None:
                processed = await poller.tick()
                if processed > 0:
                    logger.info("Event poller read %d events", processed)
        except Exception as e:
            logger.error("Event poller error: %s", str(e), exc_info=True)

        await record_heartbeat("event_poller")
        await asyncio.sleep(settings.poll_interval_seconds)
