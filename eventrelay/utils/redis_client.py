"""
Shared Redis connection - worker heartbeats and the optional shared
rate-limit backend. Nothing on the request path requires Redis to be up.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

KEY_PREFIX = "eventrelay"

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


def heartbeat_key(worker_name: str) -> str:
    return f"{KEY_PREFIX}:worker_health:{worker_name}"


async def record_heartbeat(worker_name: str, ttl_seconds: int = 300) -> None:
    """Store a worker heartbeat timestamp. Best-effort."""
    try:
        redis = await get_redis()
        await redis.set(
            heartbeat_key(worker_name),
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
    _redis_client = None
