"""
Delivery attempt vocabulary - statuses, error categories and the outcome of
one outbound HTTP call.
"""
from typing import Optional
from pydantic import BaseModel


class DeliveryStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RETRYING = "RETRYING"
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    ABANDONED = "ABANDONED"
    FAILED = "FAILED"

    TERMINAL = (SUCCESS, SKIPPED, ABANDONED, FAILED)
    DEAD_LETTER = (ABANDONED, FAILED)
    DUE = (PENDING, RETRYING)


class ErrorCategory:
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    VALIDATION = "VALIDATION"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    TRANSFORM_ERROR = "TRANSFORM_ERROR"

    ALL = (
        NETWORK, TIMEOUT, AUTH, RATE_LIMIT,
        VALIDATION, SERVER_ERROR, CLIENT_ERROR, TRANSFORM_ERROR,
    )


class Trigger:
    EVENT = "event"
    SCHEDULE = "schedule"
    REPLAY = "replay"


class DeliveryOutcome(BaseModel):
    """Result of one outbound call. http_status is None when no response arrived."""
    http_status: Optional[int] = None
    latency_ms: int = 0
    response_snippet: Optional[str] = None
    retry_after: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.http_status is not None and 200 <= self.http_status < 300
