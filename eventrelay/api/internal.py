"""
Internal routes - event dispatch from other services and a cron-style
trigger for the webhook worker. Guarded by X-Internal-Key.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.api.internal_auth import require_internal_key
from eventrelay.database import get_db
from eventrelay.schemas.webhooks import DispatchRequest, DispatchResponse, ProcessResponse
from eventrelay.services.webhook_dispatch import enqueue_webhook_event
from eventrelay.workers.webhook_worker import process_pending_deliveries

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/internal/webhooks",
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)


@router.post("/events", response_model=DispatchResponse)
async def dispatch_event(
    payload: DispatchRequest,
    db: AsyncSession = Depends(get_db),
):
    """Queue an event for every subscribed endpoint of the tenant."""
    deliveries = await enqueue_webhook_event(db, payload.tenant_id, payload.event_type, payload.data)
    return DispatchResponse(
        queued=len(deliveries),
        delivery_ids=[str(d.id) for d in deliveries],
    )


@router.post("/process", response_model=ProcessResponse)
async def process_deliveries():
    """Run one webhook worker invocation now."""
    summary = await process_pending_deliveries()
    return ProcessResponse(processed=summary["processed"], results=summary["results"])
