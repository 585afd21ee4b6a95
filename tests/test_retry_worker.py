"""
Retry worker tests - due selection and stale claim reaping.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
from sqlalchemy import update

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.schemas.delivery import DeliveryStatus
from eventrelay.services.attempt_logs import ensure_event_log
from eventrelay.services.delivery import DeliveryEngine
from eventrelay.utils.timezone import utcnow
from eventrelay.workers.retry_worker import process_due_logs, reap_stale_claims


async def _log(session_factory, rule, event, **values) -> DeliveryAttemptLog:
    log, _ = await ensure_event_log(session_factory, event, rule)
    if values:
        async with session_factory() as db:
            await db.execute(update(DeliveryAttemptLog).where(DeliveryAttemptLog.id == log.id).values(**values))
            await db.commit()
    return log


async def _reload(session_factory, log_id) -> DeliveryAttemptLog:
    async with session_factory() as db:
        return await db.get(DeliveryAttemptLog, log_id)


class TestProcessDueLogs:
    async def test_attempts_only_due_logs(self, session_factory, make_rule, make_event, transport, allow_all):
        rule = await make_rule()
        now = utcnow()
        due = await _log(session_factory, rule, make_event(1), status=DeliveryStatus.RETRYING,
                         attempt_count=1, next_retry_at=now - timedelta(seconds=1))
        later = await _log(session_factory, rule, make_event(2), status=DeliveryStatus.RETRYING,
                           attempt_count=1, next_retry_at=now + timedelta(minutes=5))
        spent = await _log(session_factory, rule, make_event(3), status=DeliveryStatus.RETRYING,
                           attempt_count=3, next_retry_at=now - timedelta(seconds=1))
        done = await _log(session_factory, rule, make_event(4), status=DeliveryStatus.SUCCESS,
                          attempt_count=1, next_retry_at=None)

        recorder = transport(httpx.Response(204))
        engine = DeliveryEngine(
            session_factory=session_factory, http_client=recorder.client(),
            worker_id="retry-test", rate_limiter=allow_all, concurrency=2,
        )
        assert await process_due_logs(engine, session_factory, limit=10, now=now) == 1

        assert len(recorder.requests) == 1
        assert (await _reload(session_factory, due.id)).status == DeliveryStatus.SUCCESS
        assert (await _reload(session_factory, due.id)).attempt_count == 2
        assert (await _reload(session_factory, later.id)).status == DeliveryStatus.RETRYING
        assert (await _reload(session_factory, spent.id)).status == DeliveryStatus.RETRYING
        assert (await _reload(session_factory, done.id)).status == DeliveryStatus.SUCCESS

    async def test_nothing_due(self, session_factory):
        engine = AsyncMock()
        assert await process_due_logs(engine, session_factory, limit=10) == 0
        engine.attempt_many.assert_not_awaited()

    async def test_counts_completed_attempts_only(self, session_factory, make_rule, make_event):
        rule = await make_rule()
        for event_id in (1, 2, 3):
            await _log(session_factory, rule, make_event(event_id))
        engine = AsyncMock()
        engine.attempt_many = AsyncMock(return_value=[DeliveryStatus.SUCCESS, None, RuntimeError("boom")])

        assert await process_due_logs(engine, session_factory, limit=10) == 1
        assert len(engine.attempt_many.await_args.args[0]) == 3


class TestReapStaleClaims:
    async def test_returns_stale_claims_to_queue(self, session_factory, make_rule, make_event):
        rule = await make_rule()
        now = utcnow()
        stale = await _log(session_factory, rule, make_event(1), status=DeliveryStatus.IN_PROGRESS,
                           attempt_count=1, claimed_by="dead-worker", claimed_at=now - timedelta(minutes=20))
        fresh = await _log(session_factory, rule, make_event(2), status=DeliveryStatus.IN_PROGRESS,
                           attempt_count=1, claimed_by="live-worker", claimed_at=now - timedelta(seconds=30))

        assert await reap_stale_claims(session_factory, stale_seconds=600, now=now) == 1

        reaped = await _reload(session_factory, stale.id)
        assert reaped.status == DeliveryStatus.RETRYING
        assert reaped.attempt_count == 1
        assert reaped.claimed_by is None
        assert "claim expired" in reaped.last_error_message
        assert (await _reload(session_factory, fresh.id)).status == DeliveryStatus.IN_PROGRESS
