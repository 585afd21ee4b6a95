"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import get_settings
from eventrelay.database import get_db
from eventrelay.workers.heartbeat import WORKER_NAMES, last_heartbeat

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
# A worker is stale after missing this many of its own intervals
STALE_INTERVALS = 5


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and reports
    worker heartbeat freshness. Workers only degrade the status.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    workers = await _check_workers() if checks["redis"] else {}

    if not all(checks.values()):
        status = "unhealthy"
    elif workers and not all(w["healthy"] for w in workers.values()):
        status = "degraded"
    else:
        status = "ready"

    return {
        "status": status,
        "checks": checks,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _check_workers() -> dict:
    settings = get_settings()
    if not settings.workers_enabled:
        return {}
    intervals = {
        "event_poller": settings.poll_interval_seconds,
        "retry_worker": settings.retry_interval_seconds,
        "schedule_worker": settings.schedule_interval_seconds,
    }
    now = datetime.now(timezone.utc)
    workers = {}
    for name in WORKER_NAMES:
        try:
            seen = await last_heartbeat(name)
        except Exception as e:
            logger.warning("Heartbeat read for %s failed: %s", name, str(e))
            seen = None
        if seen is None:
            workers[name] = {"healthy": False, "last_heartbeat": None}
            continue
        age = (now - seen).total_seconds()
        workers[name] = {
            "healthy": age <= max(intervals[name] * STALE_INTERVALS, 60),
            "last_heartbeat": seen.isoformat(),
            "age_seconds": round(age, 1),
        }
    return workers
