"""
Worker heartbeats in Redis, read back by /health/ready.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

WORKER_NAMES = ("event_poller", "retry_worker", "schedule_worker")


def heartbeat_key(name: str) -> str:
    return f"eventrelay:worker_health:{name}"


async def record_heartbeat(name: str, ttl_seconds: int = 300) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(heartbeat_key(name), datetime.now(timezone.utc).isoformat(), ex=ttl_seconds)
    except Exception as e:
        logger.debug("Heartbeat for %s not recorded: %s", name, str(e))


async def last_heartbeat(name: str) -> Optional[datetime]:
    from eventrelay.utils.dedup import get_redis
    redis = await get_redis()
    value = await redis.get(heartbeat_key(name))
    if not value:
        return None
    return datetime.fromisoformat(value)
