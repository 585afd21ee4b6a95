"""
Event deduplication - Redis-based markers keyed by (tenant, source event id).
Prevents double dispatch when the poller re-reads a range after a restart or
when two replicas race on the same batch.
"""
import logging

logger = logging.getLogger(__name__)

# Default marker lifetime in seconds (1 hour)
DEDUP_TTL_SECONDS = 3600

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from eventrelay.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def make_dedup_key(tenant_id: str, event_id) -> str:
    return f"eventrelay:processed:{tenant_id}:{event_id}"


async def claim_event(tenant_id: str, event_id, ttl_seconds: int = DEDUP_TTL_SECONDS) -> bool:
    """
    Atomically mark an event as being dispatched.

    Returns True if this caller owns the event, False if another worker (or an
    earlier run) already claimed it within the TTL.
    """
    key = make_dedup_key(tenant_id, event_id)

    try:
        redis = await get_redis()
        # SET NX = only set if not exists. Returns True if set (new), None if exists (dupe).
        was_set = await redis.set(key, "1", nx=True, ex=ttl_seconds)
        if was_set:
            return True
        logger.info(
            "Duplicate event skipped: tenant=%s event=%s",
            tenant_id, event_id,
            extra={"tenant_id": tenant_id, "event_id": event_id},
        )
        return False
    except Exception as e:
        # Redis failure must not stall the pipeline - the unique log
        # constraint still prevents duplicate attempt rows
        logger.warning("Redis dedup check failed: %s. Assuming not duplicate.", str(e))
        return True


async def release_event(tenant_id: str, event_id) -> None:
    """Drop a marker so a re-read of the same range can dispatch the event again."""
    try:
        redis = await get_redis()
        await redis.delete(make_dedup_key(tenant_id, event_id))
    except Exception as e:
        logger.warning("Redis dedup release failed: %s", str(e))


async def is_processed(tenant_id: str, event_id) -> bool:
    try:
        redis = await get_redis()
        return bool(await redis.exists(make_dedup_key(tenant_id, event_id)))
    except Exception as e:
        logger.warning("Redis dedup lookup failed: %s", str(e))
        return False
