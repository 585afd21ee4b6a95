"""
Per-rule circuit breaker.

    CLOSED --N consecutive failures--> OPEN --recovery time--> HALF_OPEN
    HALF_OPEN --trial succeeds--> CLOSED
    HALF_OPEN --trial fails-----> OPEN

Only infrastructure failures count (5xx, 429 from the target, network,
timeout). Business failures such as 4xx, auth or transform errors leave the
counter alone. State lives on the delivery_rules row and every change is a
single conditional UPDATE, so replicas agree without a lock. While the
circuit is open, attempts are deferred without spending retry budget.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, case, or_, select, update

from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.schemas.delivery import DeliveryOutcome, ErrorCategory
from eventrelay.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

TRIPPING_CATEGORIES = {ErrorCategory.SERVER_ERROR, ErrorCategory.NETWORK, ErrorCategory.TIMEOUT}


@dataclass
class CircuitDecision:
    allowed: bool
    state: str = CLOSED
    retry_at: Optional[datetime] = None
    reason: Optional[str] = None


def trips_circuit(category: Optional[str], outcome: Optional[DeliveryOutcome] = None) -> bool:
    if category in TRIPPING_CATEGORIES:
        return True
    # A 429 from the target counts; our own limiter's denials never reach here
    return category == ErrorCategory.RATE_LIMIT and outcome is not None and outcome.http_status == 429


async def check_circuit(session_factory: Callable, rule: DeliveryRule, now: Optional[datetime] = None) -> CircuitDecision:
    """
    Whether an attempt for this rule may go out now. When the recovery time
    has passed, exactly one caller wins the move to HALF_OPEN and sends the
    trial request; the others wait for its outcome.
    """
    policy = rule.retry_config()
    if policy.circuit_threshold == 0 or rule.circuit_state == CLOSED:
        return CircuitDecision(allowed=True)

    now = now or utcnow()
    recovery = timedelta(seconds=policy.circuit_recovery_seconds)
    opened_at = ensure_utc(rule.circuit_opened_at) or now
    reopen_at = opened_at + recovery
    if now < reopen_at:
        return CircuitDecision(
            allowed=False,
            state=rule.circuit_state,
            retry_at=reopen_at,
            reason=(
                f"Circuit {rule.circuit_state.lower()} after {rule.consecutive_failures} "
                f"consecutive failures; next trial at {reopen_at.isoformat()}"
            ),
        )

    # HALF_OPEN older than the recovery time means the trial never reported back
    async with session_factory() as db:
        result = await db.execute(
            update(DeliveryRule)
            .where(
                DeliveryRule.id == rule.id,
                DeliveryRule.circuit_state == rule.circuit_state,
                DeliveryRule.circuit_opened_at == rule.circuit_opened_at,
            )
            .values(circuit_state=HALF_OPEN, circuit_opened_at=now, updated_at=DeliveryRule.updated_at)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if result.rowcount != 1:
        return CircuitDecision(
            allowed=False, state=HALF_OPEN, retry_at=now + recovery,
            reason="Circuit half-open; another delivery is testing recovery",
        )
    rule.circuit_state = HALF_OPEN
    rule.circuit_opened_at = now
    logger.info(
        "Circuit for rule %s half-open, sending trial delivery", str(rule.id)[:8],
        extra={"rule_id": str(rule.id)},
    )
    return CircuitDecision(allowed=True, state=HALF_OPEN)


async def record_success(session_factory: Callable, rule_id) -> None:
    async with session_factory() as db:
        result = await db.execute(
            update(DeliveryRule)
            .where(
                DeliveryRule.id == rule_id,
                or_(DeliveryRule.circuit_state != CLOSED, DeliveryRule.consecutive_failures > 0),
            )
            .values(
                circuit_state=CLOSED,
                consecutive_failures=0,
                circuit_opened_at=None,
                updated_at=DeliveryRule.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    if result.rowcount:
        logger.info("Circuit for rule %s closed", str(rule_id)[:8], extra={"rule_id": str(rule_id)})


async def record_failure(session_factory: Callable, rule: DeliveryRule, now: Optional[datetime] = None) -> str:
    """Count one infrastructure failure. Returns the resulting circuit state."""
    threshold = rule.retry_config().circuit_threshold
    if threshold == 0:
        return CLOSED
    now = now or utcnow()
    opens = or_(
        DeliveryRule.circuit_state == HALF_OPEN,
        and_(DeliveryRule.circuit_state == CLOSED, DeliveryRule.consecutive_failures + 1 >= threshold),
    )
    async with session_factory() as db:
        await db.execute(
            update(DeliveryRule)
            .where(DeliveryRule.id == rule.id)
            .values(
                consecutive_failures=DeliveryRule.consecutive_failures + 1,
                circuit_state=case((opens, OPEN), else_=DeliveryRule.circuit_state),
                circuit_opened_at=case((opens, now), else_=DeliveryRule.circuit_opened_at),
                updated_at=DeliveryRule.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        row = (await db.execute(
            select(DeliveryRule.circuit_state, DeliveryRule.consecutive_failures).where(DeliveryRule.id == rule.id)
        )).one_or_none()

    if row is None:
        return CLOSED
    state, failures = row
    if state == OPEN and rule.circuit_state != OPEN:
        logger.warning(
            "Circuit for rule %s opened after %d consecutive failures", str(rule.id)[:8], failures,
            extra={"rule_id": str(rule.id)},
        )
    return state
