"""
EventRelay - multi-tenant event delivery gateway.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from eventrelay.config import get_settings
from eventrelay.api.router import api_router
from eventrelay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("eventrelay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("EventRelay starting up (env=%s, worker=%s)", settings.app_env, settings.worker_id)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - rule credentials will be stored unencrypted. "
            "Generate a Fernet key for production."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    engine = None
    worker_tasks: list[asyncio.Task] = []

    if settings.workers_enabled:
        from eventrelay.services.delivery import DeliveryEngine
        from eventrelay.workers.event_poller import run_event_poller
        from eventrelay.workers.retry_worker import run_retry_worker
        from eventrelay.workers.schedule_worker import run_schedule_worker

        # One engine shared by every loop so shutdown can drain all deliveries
        engine = DeliveryEngine()
        app.state.delivery_engine = engine
        worker_tasks.append(asyncio.create_task(run_event_poller(engine)))
        worker_tasks.append(asyncio.create_task(run_retry_worker(engine)))
        worker_tasks.append(asyncio.create_task(run_schedule_worker(engine)))
        logger.info("Workers started (poller, retry, schedule)")
    else:
        logger.info("Workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - stop polling, then let in-flight deliveries finish
    logger.info("EventRelay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)
    if engine is not None:
        await engine.drain(settings.shutdown_grace_seconds)
        await engine.aclose()

    from eventrelay.database import dispose_engines
    from eventrelay.utils.dedup import close_redis
    await close_redis()
    await dispose_engines()
    logger.info("EventRelay shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level, settings.log_format)

    application = FastAPI(
        title="EventRelay",
        description="Multi-tenant event delivery gateway",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
