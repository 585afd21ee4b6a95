"""
Retry & backoff state machine for delivery attempt logs.

    PENDING -> IN_PROGRESS -> SUCCESS
                           -> SKIPPED                    (script returned None)
                           -> FAILED                     (non-retryable category)
                           -> RETRYING -> IN_PROGRESS    (retryable, budget left)
                           -> ABANDONED                  (retryable, budget spent)

attempt_count counts completed attempts and never exceeds max_retries: a log
is only claimed while attempt_count < max_retries.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Optional

from eventrelay.schemas.delivery import DeliveryOutcome, DeliveryStatus, ErrorCategory
from eventrelay.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ALWAYS_RETRYABLE = {
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.CLIENT_ERROR,
}


@dataclass
class Transition:
    status: str
    next_retry_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status in DeliveryStatus.TERMINAL


def classify(outcome: DeliveryOutcome) -> Optional[str]:
    """Error category for an outcome; None means success."""
    if outcome.ok:
        return None
    status = outcome.http_status
    if status is None:
        return ErrorCategory.TIMEOUT if outcome.timed_out else ErrorCategory.NETWORK
    if status in (401, 403):
        return ErrorCategory.AUTH
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (400, 422):
        return ErrorCategory.VALIDATION
    if status >= 500:
        return ErrorCategory.SERVER_ERROR
    # Remaining 4xx and unfollowed 3xx
    return ErrorCategory.CLIENT_ERROR


def is_retryable(category: str, validation_policy: str = "strict") -> bool:
    if category == ErrorCategory.VALIDATION:
        return validation_policy == "lax"
    return category in ALWAYS_RETRYABLE


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Retry-After header as whole seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    delta = (ensure_utc(when) - (now or utcnow())).total_seconds()
    return max(int(delta + 0.999), 0)


def backoff_seconds(
    attempt: int,
    category: Optional[str] = None,
    retry_after: Optional[int] = None,
    jitter: bool = True,
) -> float:
    """
    Delay before the next attempt after `attempt` attempts have been made.
    base * 2^(attempt-1), capped (lower cap for CLIENT_ERROR), plus jitter.
    RATE_LIMIT with a Retry-After waits exactly that long.
    """
    from eventrelay.config import get_settings
    settings = get_settings()

    if category == ErrorCategory.RATE_LIMIT and retry_after is not None:
        return float(retry_after)

    cap = settings.backoff_max_seconds
    if category == ErrorCategory.CLIENT_ERROR:
        cap = min(cap, settings.backoff_client_error_max_seconds)

    delay = min(settings.backoff_base_seconds * (2 ** max(attempt - 1, 0)), cap)
    if jitter and settings.backoff_jitter_seconds > 0:
        delay += random.uniform(0, settings.backoff_jitter_seconds)
    return delay


def next_transition(
    attempt_count: int,
    max_retries: int,
    category: Optional[str],
    validation_policy: str = "strict",
    retry_after: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Decide the log state after an attempt. attempt_count already includes
    the attempt that just finished.
    """
    if category is None:
        return Transition(DeliveryStatus.SUCCESS)
    if not is_retryable(category, validation_policy):
        return Transition(DeliveryStatus.FAILED)
    if attempt_count >= max_retries:
        return Transition(DeliveryStatus.ABANDONED)
    delay = backoff_seconds(attempt_count, category, retry_after)
    return Transition(DeliveryStatus.RETRYING, (now or utcnow()) + timedelta(seconds=delay))
