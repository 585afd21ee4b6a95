"""
Event poller tests - checkpointing, exactly-one log per (event, rule),
dedup markers and scheduling failures. The tenant event table lives in the
same SQLite database as the gateway tables.
"""
import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, text

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.event_source import EventSourceConfig
from eventrelay.models.scheduled_delivery import ScheduledDelivery
from eventrelay.schemas.delivery import DeliveryStatus, ErrorCategory
from eventrelay.services.event_source import CheckpointStore, SqlEventSource
from eventrelay.utils.dedup import is_processed
from eventrelay.workers.event_poller import EventPoller, build_poller

CREATE_EVENTS = """
CREATE TABLE tenant_events (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT,
    event_type TEXT,
    payload TEXT,
    created_at TIMESTAMP
)
"""


async def _add_events(session_factory, *rows):
    async with session_factory() as db:
        await db.execute(
            text(
                "INSERT INTO tenant_events (id, tenant_id, event_type, payload) "
                "VALUES (:id, :tenant_id, :event_type, :payload)"
            ),
            [
                {"id": r[0], "tenant_id": r[1], "event_type": r[2], "payload": json.dumps(r[3])}
                for r in rows
            ],
        )
        await db.commit()


async def _logs(session_factory) -> list[DeliveryAttemptLog]:
    async with session_factory() as db:
        result = await db.execute(select(DeliveryAttemptLog).order_by(DeliveryAttemptLog.event_id))
        return list(result.scalars().all())


@pytest.fixture
async def events_table(session_factory):
    async with session_factory() as db:
        await db.execute(text(CREATE_EVENTS))
        await db.commit()


@pytest.fixture
def engine():
    return AsyncMock()


@pytest.fixture
def poller(session_factory, events_table, engine):
    return EventPoller(
        SqlEventSource(session_factory, "tenant_events"),
        CheckpointStore(session_factory),
        "worker-1",
        engine=engine,
        session_factory=session_factory,
        batch_size=10,
        tick_timeout=30,
    )


# ---------------------------------------------------------------------------
# Event source + checkpoint
# ---------------------------------------------------------------------------


class TestSqlEventSource:
    async def test_reads_past_checkpoint_in_order(self, session_factory, events_table):
        await _add_events(
            session_factory,
            (3, "acme", "order.created", {"n": 3}),
            (1, "acme", "order.created", {"n": 1}),
            (2, "globex", "invoice.paid", {"n": 2}),
        )
        source = SqlEventSource(session_factory, "tenant_events")

        events, max_id = await source.poll(1, 10)
        assert [e.id for e in events] == [2, 3]
        assert events[0].tenant_id == "globex"
        assert events[1].payload == {"n": 3}
        assert max_id == 3
        assert await source.latest_id() == 3

    async def test_batch_limit(self, session_factory, events_table):
        await _add_events(session_factory, *[(i, "acme", "order.created", {}) for i in range(1, 6)])
        events, max_id = await SqlEventSource(session_factory, "tenant_events").poll(0, 2)
        assert [e.id for e in events] == [1, 2]
        assert max_id == 2

    async def test_malformed_rows_skipped_but_counted(self, session_factory, events_table):
        await _add_events(session_factory, (1, None, "order.created", {}), (2, "acme", "", {}))
        events, max_id = await SqlEventSource(session_factory, "tenant_events").poll(0, 10)
        assert events == []
        assert max_id == 2

    async def test_empty_source(self, session_factory, events_table):
        assert await SqlEventSource(session_factory, "tenant_events").poll(0, 10) == ([], None)

    def test_rejects_bad_table_name(self, session_factory):
        with pytest.raises(ValueError):
            SqlEventSource(session_factory, "events; DROP TABLE tenants")


class TestCheckpointStore:
    async def test_only_moves_forward(self, session_factory):
        store = CheckpointStore(session_factory)
        assert await store.load("w") is None
        assert await store.advance("w", 10) is True
        assert await store.advance("w", 5) is False
        assert await store.advance("w", 10) is False
        assert await store.advance("w", 11) is True
        assert await store.load("w") == 11


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


class TestTick:
    async def test_creates_logs_advances_checkpoint_and_delivers(
        self, poller, session_factory, tenant, make_rule, engine,
    ):
        rule = await make_rule()
        await _add_events(
            session_factory,
            (1, "acme", "order.created", {"order_id": "o1"}),
            (2, "acme", "order.cancelled", {"order_id": "o1"}),
            (3, "acme", "order.created", {"order_id": "o2"}),
        )

        assert await poller.tick() == 3

        logs = await _logs(session_factory)
        assert [(log.event_id, log.rule_id, log.status) for log in logs] == [
            (1, rule.id, DeliveryStatus.PENDING),
            (3, rule.id, DeliveryStatus.PENDING),
        ]
        assert logs[0].original_payload == {"order_id": "o1"}
        assert await poller.checkpoints.load("worker-1") == 3
        engine.attempt_many.assert_awaited_once_with([logs[0].id, logs[1].id])

    async def test_one_log_per_matching_rule(self, poller, session_factory, tenant, make_rule):
        await make_rule(name="CRM")
        await make_rule(name="Warehouse")
        await _add_events(session_factory, (1, "acme", "order.created", {}))
        await poller.tick()
        assert len(await _logs(session_factory)) == 2

    async def test_condition_error_does_not_stall_checkpoint(self, poller, session_factory, tenant, make_rule):
        rule = await make_rule(condition='payload["total"] / payload["count"] > 1')
        await _add_events(
            session_factory,
            (1, "acme", "order.created", {"count": 0, "total": 5}),
            (2, "acme", "order.created", {"count": 1, "total": 5}),
        )

        assert await poller.tick() == 2

        logs = await _logs(session_factory)
        assert [(log.event_id, log.rule_id) for log in logs] == [(2, rule.id)]
        assert await poller.checkpoints.load("worker-1") == 2

    async def test_no_rules_still_advances(self, poller, session_factory, engine):
        await _add_events(session_factory, (5, "acme", "order.created", {}))
        assert await poller.tick() == 1
        assert await poller.checkpoints.load("worker-1") == 5
        assert await _logs(session_factory) == []
        engine.attempt_many.assert_not_awaited()

    async def test_empty_tick_leaves_checkpoint(self, poller, session_factory):
        assert await poller.tick() == 0
        assert await poller.checkpoints.load("worker-1") is None

    async def test_reread_after_crash_creates_no_duplicates(
        self, poller, session_factory, tenant, make_rule, engine, fake_redis,
    ):
        await make_rule()
        await _add_events(session_factory, (1, "acme", "order.created", {}))
        await poller.tick()

        # Replay the same range as if the checkpoint write had been lost,
        # with and without the dedup marker still present
        second = EventPoller(
            poller.source, CheckpointStore(session_factory), "worker-2",
            engine=engine, session_factory=session_factory,
        )
        await second.tick()
        fake_redis.store.clear()
        third = EventPoller(
            poller.source, CheckpointStore(session_factory), "worker-3",
            engine=engine, session_factory=session_factory,
        )
        await third.tick()

        assert len(await _logs(session_factory)) == 1
        assert engine.attempt_many.await_count == 1

    async def test_timeout_leaves_checkpoint(self, session_factory, events_table):
        async def slow_poll(since_id, limit):
            await asyncio.sleep(5)
            return [], None

        source = AsyncMock()
        source.poll = AsyncMock(side_effect=slow_poll)
        slow = EventPoller(
            source, CheckpointStore(session_factory), "worker-1",
            session_factory=session_factory, tick_timeout=0.05,
        )
        assert await slow.tick() == 0
        assert await slow.checkpoints.load("worker-1") is None


class TestDispatchEvent:
    async def test_duplicate_marker_not_delivered_but_log_exists(
        self, poller, session_factory, tenant, make_rule, make_event,
    ):
        await make_rule()
        event = make_event()

        first = await poller.dispatch_event(event)
        second = await poller.dispatch_event(event)

        assert len(first) == 1
        assert second == []
        assert len(await _logs(session_factory)) == 1

    async def test_failure_releases_marker(self, poller, tenant, make_rule, make_event):
        await make_rule()
        event = make_event()
        with patch("eventrelay.workers.event_poller.ensure_event_log", new=AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                await poller.dispatch_event(event)
        assert not await is_processed(event.tenant_id, event.id)

    async def test_delayed_rule_creates_schedule_not_log(
        self, poller, session_factory, tenant, make_rule, make_event,
    ):
        await make_rule(delivery_mode={"type": "delayed", "delay_seconds": 600})
        assert await poller.dispatch_event(make_event()) == []

        async with session_factory() as db:
            schedules = (await db.execute(select(ScheduledDelivery))).scalars().all()
        assert len(schedules) == 1
        assert await _logs(session_factory) == []

    async def test_schedule_failure_is_failed_validation_log(
        self, poller, session_factory, tenant, make_rule, make_event,
    ):
        await make_rule(delivery_mode={"type": "delayed", "at_path": "ship_by"})
        assert await poller.dispatch_event(make_event()) == []

        [log] = await _logs(session_factory)
        assert log.status == DeliveryStatus.FAILED
        assert log.error_category == ErrorCategory.VALIDATION
        assert "ship_by" in log.last_error_message
        assert log.completed_at is not None


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class TestBuildPoller:
    async def test_none_without_source(self, session_factory):
        assert await build_poller(session_factory=session_factory) is None

    async def test_starts_from_latest(self, session_factory, events_table):
        await _add_events(session_factory, (1, "acme", "a", {}), (7, "acme", "b", {}))
        async with session_factory() as db:
            db.add(EventSourceConfig(worker_id="default", table_name="tenant_events", batch_size=25))
            await db.commit()

        poller = await build_poller(session_factory=session_factory)
        assert poller.batch_size == 25
        assert await poller.checkpoints.load("default") == 7
        assert await poller.tick() == 0

    async def test_starts_from_zero(self, session_factory, events_table):
        await _add_events(session_factory, (1, "acme", "a", {}))
        async with session_factory() as db:
            db.add(EventSourceConfig(worker_id="default", table_name="tenant_events", start_from_latest=False))
            await db.commit()

        poller = await build_poller(session_factory=session_factory)
        assert await poller.checkpoints.load("default") == 0
        assert await poller.tick() == 1
