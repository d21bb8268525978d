"""
Delivery cleanup worker - purges old terminal webhook deliveries.
Runs every 6 hours. Delivered/failed deliveries older than
DELIVERY_RETENTION_DAYS are deleted with their attempt rows, in sub-batches
of 500 with a fixed 1 second pause between sub-batches to keep lock times short.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import get_settings
from eventrelay.database import async_session_factory
from eventrelay.models.webhook_delivery import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    WebhookDelivery,
    WebhookDeliveryAttempt,
)
from eventrelay.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "delivery_cleanup"
POLL_INTERVAL_SECONDS = 6 * 60 * 60  # 6 hours
SUB_BATCH_SIZE = 500
SUB_BATCH_PAUSE_SECONDS = 1.0


async def cleanup_cycle(
    db: Optional[AsyncSession] = None,
    retention_days: Optional[int] = None,
    sleep=asyncio.sleep,
) -> int:
    """Delete expired terminal deliveries. Returns the number deleted."""
    if db is None:
        async with async_session_factory() as session:
            return await cleanup_cycle(session, retention_days, sleep)

    days = retention_days if retention_days is not None else get_settings().delivery_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    total = 0

    while True:
        result = await db.execute(
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status.in_([DELIVERY_DELIVERED, DELIVERY_FAILED]),
                WebhookDelivery.created_at < cutoff,
            )
            .limit(SUB_BATCH_SIZE)
        )
        ids = list(result.scalars().all())
        if not ids:
            break

        await db.execute(
            delete(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.delivery_id.in_(ids))
        )
        await db.execute(delete(WebhookDelivery).where(WebhookDelivery.id.in_(ids)))
        await db.commit()
        total += len(ids)

        if len(ids) < SUB_BATCH_SIZE:
            break
        await sleep(SUB_BATCH_PAUSE_SECONDS)

    if total:
        logger.info("Delivery cleanup removed %d deliveries older than %d days", total, days)
    return total


async def run_delivery_cleanup():
    """Main loop - purge old deliveries every 6 hours."""
    logger.info("Delivery cleanup worker started (poll every %ds)", POLL_INTERVAL_SECONDS)

    while True:
        try:
            await cleanup_cycle()
        except Exception as e:
            logger.error("Delivery cleanup error: %s", str(e), exc_info=True)

        await record_heartbeat(WORKER_NAME, ttl_seconds=POLL_INTERVAL_SECONDS + 3600)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
