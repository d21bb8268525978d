"""
Webhook worker - drains pending webhook deliveries.
Runs every WEBHOOK_POLL_INTERVAL_SECONDS (default 30). Each invocation claims
up to WEBHOOK_BATCH_SIZE due deliveries and sends them concurrently, bounded
by WEBHOOK_MAX_CONCURRENCY. All session access is serialized behind one lock;
only the HTTP calls run in parallel.
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import get_settings
from eventrelay.database import async_session_factory
from eventrelay.models.webhook_delivery import (
    DELIVERY_DELIVERING,
    DELIVERY_PENDING,
    WebhookDelivery,
)
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.services.endpoint_health import is_deliverable
from eventrelay.services.webhook_delivery import (
    Sleep,
    WebhookSender,
    apply_outcome,
    mark_undeliverable,
    prepare_request,
    record_crash,
)
from eventrelay.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "webhook_worker"
STUCK_DELIVERY_MINUTES = 10


async def requeue_stuck_deliveries(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Deliveries left in 'delivering' by a crashed invocation go back to pending."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=STUCK_DELIVERY_MINUTES)
    result = await db.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.status == DELIVERY_DELIVERING,
            WebhookDelivery.updated_at < cutoff,
        )
        .values(status=DELIVERY_PENDING, updated_at=now)
    )
    if result.rowcount:
        logger.warning("Requeued %d stuck webhook deliveries", result.rowcount)
    return result.rowcount or 0


async def claim_due_deliveries(
    db: AsyncSession,
    limit: int,
    now: Optional[datetime] = None,
) -> list[WebhookDelivery]:
    """Oldest-first pending deliveries whose retry time has come, marked delivering."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(WebhookDelivery)
        .where(
            WebhookDelivery.status == DELIVERY_PENDING,
            or_(
                WebhookDelivery.next_retry_at.is_(None),
                WebhookDelivery.next_retry_at <= now,
            ),
        )
        .order_by(WebhookDelivery.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    deliveries = list(result.scalars().all())
    for delivery in deliveries:
        delivery.status = DELIVERY_DELIVERING
        delivery.updated_at = now
    await db.commit()
    return deliveries


async def process_pending_deliveries(
    db: Optional[AsyncSession] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
    max_concurrency: Optional[int] = None,
) -> dict:
    """
    One worker invocation. Returns {"processed": n, "results": {outcome: count}}.
    """
    if db is None:
        async with async_session_factory() as session:
            return await process_pending_deliveries(session, http_client, sleep, max_concurrency)

    settings = get_settings()
    if http_client is None:
        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
            return await process_pending_deliveries(db, client, sleep, max_concurrency)

    await requeue_stuck_deliveries(db)
    await db.commit()

    deliveries = await claim_due_deliveries(db, settings.webhook_batch_size)
    if not deliveries:
        return {"processed": 0, "results": {}}

    endpoint_ids = {d.endpoint_id for d in deliveries}
    result = await db.execute(select(WebhookEndpoint).where(WebhookEndpoint.id.in_(endpoint_ids)))
    endpoints = {ep.id: ep for ep in result.scalars().all()}

    sender = WebhookSender(
        http_client,
        max_retries=settings.webhook_incall_retries,
        backoff_base_seconds=settings.webhook_backoff_base_seconds,
        backoff_cap_seconds=settings.webhook_backoff_cap_seconds,
        sleep=sleep,
    )
    semaphore = asyncio.Semaphore(max_concurrency or settings.webhook_max_concurrency)
    db_lock = asyncio.Lock()

    async def _deliver(delivery: WebhookDelivery) -> str:
        async with semaphore:
            async with db_lock:
                endpoint = endpoints.get(delivery.endpoint_id)
                # Re-checked here so an endpoint disabled earlier in this batch is skipped
                if not is_deliverable(endpoint):
                    mark_undeliverable(delivery)
                    await db.commit()
                    return "skipped"
                body, headers = prepare_request(delivery, endpoint)

            outcome = await sender.send(endpoint.url, body, headers)

            async with db_lock:
                status = apply_outcome(
                    db, delivery, endpoint, outcome,
                    max_retries=settings.webhook_max_retries,
                    backoff_base_seconds=settings.webhook_backoff_base_seconds,
                    backoff_cap_seconds=settings.webhook_backoff_cap_seconds,
                    failure_threshold=settings.webhook_failure_threshold,
                )
                await db.commit()
                return status

    async def _safe_deliver(delivery: WebhookDelivery) -> str:
        try:
            return await _deliver(delivery)
        except Exception as e:
            logger.error(
                "Webhook delivery %s crashed: %s",
                str(delivery.id)[:8], str(e),
                exc_info=True,
                extra={"delivery_id": str(delivery.id)},
            )
            async with db_lock:
                try:
                    record_crash(
                        delivery, e,
                        max_retries=settings.webhook_max_retries,
                        backoff_base_seconds=settings.webhook_backoff_base_seconds,
                        backoff_cap_seconds=settings.webhook_backoff_cap_seconds,
                    )
                    await db.commit()
                except Exception as commit_error:
                    # Row stays in 'delivering' and is requeued by the stuck sweep
                    await db.rollback()
                    logger.error(
                        "Could not record crash for delivery %s: %s",
                        str(delivery.id)[:8], str(commit_error),
                    )
            return "error"

    statuses = await asyncio.gather(*(_safe_deliver(d) for d in deliveries))
    summary = dict(Counter(statuses))
    logger.info("Webhook worker processed %d deliveries: %s", len(deliveries), summary)
    return {"processed": len(deliveries), "results": summary}


async def run_webhook_worker():
    """Main webhook worker loop. Runs continuously."""
    settings = get_settings()
    logger.info("Webhook worker started (poll every %ds)", settings.webhook_poll_interval_seconds)

    while True:
        try:
            await process_pending_deliveries()
        except Exception as e:
            logger.error("Webhook worker error: %s", str(e), exc_info=True)

        await record_heartbeat(WORKER_NAME)
        await asyncio.sleep(settings.webhook_poll_interval_seconds)
