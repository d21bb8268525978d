"""
Webhook dispatch - fan an internal event out to a tenant's subscribed endpoints.
Creates pending deliveries only; the webhook worker does the sending.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.models.webhook_delivery import DELIVERY_PENDING, WebhookDelivery
from eventrelay.models.webhook_endpoint import ENDPOINT_ACTIVE, WebhookEndpoint

logger = logging.getLogger(__name__)


async def enqueue_webhook_event(
    db: AsyncSession,
    tenant_id: str,
    event_type: str,
    data: dict,
) -> list[WebhookDelivery]:
    """Queue one delivery per active subscribed endpoint. Caller commits."""
    result = await db.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.tenant_id == tenant_id,
            WebhookEndpoint.status == ENDPOINT_ACTIVE,
        )
    )
    endpoints = [ep for ep in result.scalars().all() if ep.subscribes_to(event_type)]

    now = datetime.now(timezone.utc)
    deliveries = []
    for endpoint in endpoints:
        delivery = WebhookDelivery(
            endpoint_id=endpoint.id,
            event_type=event_type,
            payload=data or {},
            status=DELIVERY_PENDING,
            created_at=now,
            updated_at=now,
        )
        db.add(delivery)
        deliveries.append(delivery)

    if deliveries:
        await db.flush()
        logger.info(
            "Queued %d webhook deliveries for %s (tenant=%s)",
            len(deliveries), event_type, tenant_id,
        )
    return deliveries
