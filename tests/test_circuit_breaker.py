"""
Per-rule circuit breaker - counting, opening, the half-open trial, and the
engine deferring deliveries while a circuit is open.
"""
from datetime import timedelta

import httpx
import pytest

from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.schemas.delivery import DeliveryOutcome, DeliveryStatus, ErrorCategory
from eventrelay.services.attempt_logs import ensure_event_log
from eventrelay.services.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    check_circuit,
    record_failure,
    record_success,
    trips_circuit,
)
from eventrelay.services.delivery import DeliveryEngine
from eventrelay.utils.timezone import ensure_utc, utcnow

T0 = utcnow().replace(microsecond=0)
POLICY = {"max_retries": 3, "circuit_threshold": 3, "circuit_recovery_seconds": 60}


async def _reload(session_factory, rule_id) -> DeliveryRule:
    async with session_factory() as db:
        return await db.get(DeliveryRule, rule_id)


async def _open(session_factory, rule, at=T0) -> None:
    for _ in range(rule.retry_config().circuit_threshold):
        await record_failure(session_factory, rule, now=at)


class TestTripsCircuit:
    @pytest.mark.parametrize("category", [ErrorCategory.SERVER_ERROR, ErrorCategory.NETWORK, ErrorCategory.TIMEOUT])
    def test_infrastructure_failures_count(self, category):
        assert trips_circuit(category, DeliveryOutcome(http_status=503))

    def test_target_429_counts(self):
        assert trips_circuit(ErrorCategory.RATE_LIMIT, DeliveryOutcome(http_status=429))

    def test_limiter_denial_does_not_count(self):
        assert not trips_circuit(ErrorCategory.RATE_LIMIT, None)

    @pytest.mark.parametrize("category", [
        ErrorCategory.CLIENT_ERROR, ErrorCategory.VALIDATION, ErrorCategory.AUTH, ErrorCategory.TRANSFORM_ERROR,
    ])
    def test_business_failures_do_not_count(self, category):
        assert not trips_circuit(category, DeliveryOutcome(http_status=400))


class TestStateMachine:
    async def test_opens_after_threshold(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)

        states = [await record_failure(session_factory, rule, now=T0) for _ in range(3)]

        assert states == [CLOSED, CLOSED, OPEN]
        stored = await _reload(session_factory, rule.id)
        assert stored.consecutive_failures == 3
        assert ensure_utc(stored.circuit_opened_at) == T0

    async def test_success_resets_the_count(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)
        await record_failure(session_factory, rule, now=T0)
        await record_failure(session_factory, rule, now=T0)
        await record_success(session_factory, rule.id)

        assert await record_failure(session_factory, rule, now=T0) == CLOSED
        assert (await _reload(session_factory, rule.id)).consecutive_failures == 1

    async def test_open_circuit_denies_until_recovery(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)
        await _open(session_factory, rule)

        decision = await check_circuit(session_factory, await _reload(session_factory, rule.id), now=T0 + timedelta(seconds=10))

        assert not decision.allowed
        assert decision.state == OPEN
        assert decision.retry_at == T0 + timedelta(seconds=60)

    async def test_one_caller_wins_the_half_open_trial(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)
        await _open(session_factory, rule)
        first = await _reload(session_factory, rule.id)
        second = await _reload(session_factory, rule.id)
        later = T0 + timedelta(seconds=61)

        winner = await check_circuit(session_factory, first, now=later)
        loser = await check_circuit(session_factory, second, now=later)

        assert (winner.allowed, winner.state) == (True, HALF_OPEN)
        assert (loser.allowed, loser.state) == (False, HALF_OPEN)
        assert (await _reload(session_factory, rule.id)).circuit_state == HALF_OPEN

    async def test_trial_success_closes(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)
        await _open(session_factory, rule)
        await check_circuit(session_factory, await _reload(session_factory, rule.id), now=T0 + timedelta(seconds=61))

        await record_success(session_factory, rule.id)

        stored = await _reload(session_factory, rule.id)
        assert (stored.circuit_state, stored.consecutive_failures, stored.circuit_opened_at) == (CLOSED, 0, None)

    async def test_trial_failure_reopens(self, session_factory, make_rule):
        rule = await make_rule(retry_policy=POLICY)
        await _open(session_factory, rule)
        trial_at = T0 + timedelta(seconds=61)
        half_open = await _reload(session_factory, rule.id)
        await check_circuit(session_factory, half_open, now=trial_at)

        assert await record_failure(session_factory, half_open, now=trial_at) == OPEN
        decision = await check_circuit(session_factory, await _reload(session_factory, rule.id), now=trial_at)
        assert not decision.allowed
        assert decision.retry_at == trial_at + timedelta(seconds=60)

    async def test_threshold_zero_disables(self, session_factory, make_rule):
        rule = await make_rule(retry_policy={"max_retries": 3, "circuit_threshold": 0})
        for _ in range(20):
            assert await record_failure(session_factory, rule, now=T0) == CLOSED
        assert (await check_circuit(session_factory, await _reload(session_factory, rule.id))).allowed


# ---------------------------------------------------------------------------
# Through the delivery engine
# ---------------------------------------------------------------------------


def _engine(session_factory, recorder, rate_limiter):
    return DeliveryEngine(
        session_factory=session_factory,
        http_client=recorder.client(),
        worker_id="test-worker",
        rate_limiter=rate_limiter,
        concurrency=4,
    )


class TestEngineCircuit:
    async def test_server_errors_open_and_defer_without_spending_budget(
        self, session_factory, make_rule, make_event, transport, allow_all,
    ):
        rule = await make_rule(retry_policy={**POLICY, "circuit_threshold": 2})
        recorder = transport(httpx.Response(503))
        engine = _engine(session_factory, recorder, allow_all)
        for event_id in (1, 2):
            log, _ = await ensure_event_log(session_factory, make_event(event_id), rule)
            await engine.attempt(log.id)
        assert (await _reload(session_factory, rule.id)).circuit_state == OPEN

        log, _ = await ensure_event_log(session_factory, make_event(3), rule)
        status = await engine.attempt(log.id)

        assert status == DeliveryStatus.RETRYING
        assert len(recorder.requests) == 2
        async with session_factory() as db:
            stored = await db.get(DeliveryAttemptLog, log.id)
        assert stored.attempt_count == 0
        assert stored.error_category == ErrorCategory.SERVER_ERROR
        assert "Circuit open" in stored.last_error_message
        assert ensure_utc(stored.next_retry_at) > utcnow()
        assert allow_all.await_count == 2

    async def test_client_errors_leave_circuit_closed(
        self, session_factory, make_rule, make_event, transport, allow_all,
    ):
        rule = await make_rule(retry_policy={**POLICY, "circuit_threshold": 1})
        recorder = transport(httpx.Response(404))
        log, _ = await ensure_event_log(session_factory, make_event(1), rule)

        await _engine(session_factory, recorder, allow_all).attempt(log.id)

        stored = await _reload(session_factory, rule.id)
        assert (stored.circuit_state, stored.consecutive_failures) == (CLOSED, 0)

    async def test_successful_trial_closes_circuit(
        self, session_factory, make_rule, make_event, transport, allow_all,
    ):
        rule = await make_rule(retry_policy=POLICY)
        await _open(session_factory, rule, at=utcnow() - timedelta(minutes=5))
        recorder = transport(httpx.Response(200))
        log, _ = await ensure_event_log(session_factory, make_event(1), rule)

        status = await _engine(session_factory, recorder, allow_all).attempt(log.id)

        assert status == DeliveryStatus.SUCCESS
        assert len(recorder.requests) == 1
        stored = await _reload(session_factory, rule.id)
        assert (stored.circuit_state, stored.consecutive_failures) == (CLOSED, 0)

