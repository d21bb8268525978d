"""
Rate limit sweeper - evicts idle rate-limit buckets and IP reputation records.
Runs every 5 minutes. Buckets idle > 1 hour and reputations idle > 24 hours go.
"""
import asyncio
import logging

from eventrelay.utils.rate_limiter import sweep_rate_limit_state
from eventrelay.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "rate_limit_sweeper"
POLL_INTERVAL_SECONDS = 5 * 60


def sweep_cycle() -> int:
    buckets, reputations = sweep_rate_limit_state()
    if buckets or reputations:
        logger.info(
            "Rate limit sweep evicted %d buckets, %d reputation records",
            buckets, reputations,
        )
    return buckets + reputations


async def run_rate_limit_sweeper():
    """Main loop - sweep idle rate-limit state every 5 minutes."""
    logger.info("Rate limit sweeper started (poll every %ds)", POLL_INTERVAL_SECONDS)

    while True:
        try:
            sweep_cycle()
        except Exception as e:
            logger.error("Rate limit sweeper error: %s", str(e), exc_info=True)

        await record_heartbeat(WORKER_NAME, ttl_seconds=POLL_INTERVAL_SECONDS * 3)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
