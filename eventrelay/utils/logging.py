"""
Structured logging for the gateway.

Lines are single JSON objects carrying the correlation id plus whatever
delivery context is bound for the current task: the poller binds the event,
the delivery engine binds the attempt log. Fields passed with `extra=` on an
individual call win over bound ones.

Set LOG_FORMAT=text for human-readable output during local development.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
log_context_ctx: ContextVar[dict] = ContextVar("log_context", default={})

CONTEXT_FIELDS = (
    "tenant_id",
    "rule_id",
    "log_id",
    "event_id",
    "schedule_id",
    "worker_id",
    "category",
    "http_status",
    "attempt",
)

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "asyncio")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def bind_log_context(**fields) -> None:
    """
    Attach fields to every line logged from the current task.

    Each asyncio task gets a copy of the context at creation, so binding in
    one delivery never leaks into another. None values unbind.
    """
    merged = {**log_context_ctx.get(), **fields}
    log_context_ctx.set({k: v for k, v in merged.items() if v is not None})


def clear_log_context() -> None:
    log_context_ctx.set({})


def _record_fields(record: logging.LogRecord) -> dict:
    fields = dict(log_context_ctx.get())
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value
    return fields


class StructuredJsonFormatter(logging.Formatter):
    """
    {"timestamp": "...", "level": "INFO", "correlation_id": "...",
     "module": "...", "message": "...", "tenant_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text with the bound fields appended as key=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        cid = get_correlation_id()
        if cid:
            fields["cid"] = cid[:8]
        if fields:
            line += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        return line


def configure_structured_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Install a single stream handler on the root logger. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(ContextTextFormatter() if log_format == "text" else StructuredJsonFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
