"""
Tests for eventrelay/main.py and structured logging - app factory,
correlation middleware, lifespan startup/shutdown.
"""
import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from fastapi import FastAPI

from eventrelay.main import create_app, lifespan
from eventrelay.utils.logging import (
    ContextTextFormatter,
    StructuredJsonFormatter,
    bind_log_context,
    clear_log_context,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _make_mock_settings(**overrides):
    defaults = {
        "app_env": "test",
        "worker_id": "test",
        "log_level": "WARNING",
        "log_format": "json",
        "encryption_key": "",
        "sentry_dsn": "",
        "workers_enabled": False,
        "shutdown_grace_seconds": 1.0,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


class TestCreateApp:
    def test_registers_routes(self):
        with patch("eventrelay.main.get_settings", return_value=_make_mock_settings()):
            application = create_app()
        paths = set(application.openapi()["paths"])
        assert {"/health", "/health/ready", "/dlq", "/dlq/retry", "/dlq/{log_id}/retry"} <= paths

    async def test_correlation_id_header(self):
        with patch("eventrelay.main.get_settings", return_value=_make_mock_settings()):
            application = create_app()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=application), base_url="http://test") as client:
            generated = await client.get("/health")
            echoed = await client.get("/health", headers={"X-Correlation-ID": "abc"})
        assert len(generated.headers["X-Correlation-ID"]) == 32
        assert echoed.headers["X-Correlation-ID"] == "abc"


class TestLifespan:
    async def test_workers_disabled(self):
        with (
            patch("eventrelay.main.get_settings", return_value=_make_mock_settings()),
            patch("eventrelay.utils.dedup.close_redis", new=AsyncMock()) as close_redis,
            patch("eventrelay.database.dispose_engines", new=AsyncMock()) as dispose,
        ):
            application = FastAPI()
            async with lifespan(application):
                assert not hasattr(application.state, "delivery_engine")
        close_redis.assert_awaited_once()
        dispose.assert_awaited_once()

    async def test_workers_started_and_drained(self):
        started = []

        async def fake_loop(engine):
            started.append(engine)
            await asyncio.sleep(3600)

        engine = MagicMock()
        engine.drain = AsyncMock(return_value=True)
        engine.aclose = AsyncMock()

        with (
            patch("eventrelay.main.get_settings", return_value=_make_mock_settings(workers_enabled=True)),
            patch("eventrelay.services.delivery.DeliveryEngine", return_value=engine),
            patch("eventrelay.workers.event_poller.run_event_poller", new=fake_loop),
            patch("eventrelay.workers.retry_worker.run_retry_worker", new=fake_loop),
            patch("eventrelay.workers.schedule_worker.run_schedule_worker", new=fake_loop),
            patch("eventrelay.utils.dedup.close_redis", new=AsyncMock()),
            patch("eventrelay.database.dispose_engines", new=AsyncMock()),
        ):
            application = FastAPI()
            async with lifespan(application):
                await asyncio.sleep(0)
                assert application.state.delivery_engine is engine
            assert started == [engine, engine, engine]

        engine.drain.assert_awaited_once_with(1.0)
        engine.aclose.assert_awaited_once()


class TestStructuredLogging:
    def test_json_line_with_correlation_and_extras(self):
        set_correlation_id("cid-1")
        record = logging.LogRecord("eventrelay.test", logging.INFO, __file__, 1, "sent %s", ("x",), None)
        record.tenant_id = "acme"
        record.http_status = 200

        line = json.loads(StructuredJsonFormatter().format(record))

        assert line["message"] == "sent x"
        assert line["level"] == "INFO"
        assert line["correlation_id"] == "cid-1"
        assert line["tenant_id"] == "acme"
        assert line["http_status"] == 200
        assert get_correlation_id() == "cid-1"

    def test_generated_ids_are_unique_hex(self):
        first, second = generate_correlation_id(), generate_correlation_id()
        assert first != second
        assert len(first) == 32
        int(first, 16)

    def test_bound_context_is_merged_and_extra_wins(self):
        bind_log_context(tenant_id="acme", log_id="abc")
        try:
            record = logging.LogRecord("eventrelay.test", logging.INFO, __file__, 1, "retrying", (), None)
            record.tenant_id = "globex"
            line = json.loads(StructuredJsonFormatter().format(record))
        finally:
            clear_log_context()

        assert line["log_id"] == "abc"
        assert line["tenant_id"] == "globex"

    def test_none_unbinds(self):
        bind_log_context(event_id=7, tenant_id="acme")
        bind_log_context(event_id=None)
        try:
            record = logging.LogRecord("eventrelay.test", logging.INFO, __file__, 1, "x", (), None)
            line = json.loads(StructuredJsonFormatter().format(record))
        finally:
            clear_log_context()

        assert "event_id" not in line
        assert line["tenant_id"] == "acme"

    def test_text_format_appends_fields(self):
        record = logging.LogRecord("eventrelay.test", logging.WARNING, __file__, 1, "slow", (), None)
        record.rule_id = "r1"
        line = ContextTextFormatter().format(record)
        assert "WARNING" in line
        assert "slow" in line
        assert "rule_id=r1" in line
