"""
Webhook endpoint management - tenant-scoped CRUD, reactivation, delivery history.
Guarded by X-Internal-Key; the tenant comes from X-Tenant-ID.
"""
import logging
import secrets
import uuid

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.api.internal_auth import get_tenant_id, require_internal_key
from eventrelay.database import get_db
from eventrelay.errors import NotFoundError
from eventrelay.models.webhook_delivery import WebhookDelivery
from eventrelay.models.webhook_endpoint import ENDPOINT_ACTIVE, WebhookEndpoint
from eventrelay.schemas.webhooks import (
    DeliveryResponse,
    EndpointCreate,
    EndpointResponse,
    EndpointUpdate,
)
from eventrelay.services.endpoint_health import reactivate
from eventrelay.utils.encryption import encrypt_secret

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/webhooks/endpoints",
    tags=["webhook-endpoints"],
    dependencies=[Depends(require_internal_key)],
)

LIST_LIMIT = 100


def generate_signing_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


def _serialize(endpoint: WebhookEndpoint, secret: str = None) -> dict:
    data = EndpointResponse(
        id=str(endpoint.id),
        name=endpoint.name or "",
        url=endpoint.url,
        events=endpoint.subscribed_event_types or [],
        status=endpoint.status,
        failure_count=endpoint.failure_count or 0,
        last_delivery_at=endpoint.last_delivery_at,
        created_at=endpoint.created_at,
        secret=secret,
    ).model_dump(mode="json")
    if secret is None:
        data.pop("secret")
    return data


async def _get_endpoint(db: AsyncSession, tenant_id: str, endpoint_id: str) -> WebhookEndpoint:
    try:
        ep_uuid = uuid.UUID(endpoint_id)
    except ValueError:
        raise NotFoundError("Webhook endpoint not found")

    result = await db.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.id == ep_uuid,
            WebhookEndpoint.tenant_id == tenant_id,
        )
    )
    endpoint = result.scalar_one_or_none()
    if endpoint is None:
        raise NotFoundError("Webhook endpoint not found")
    return endpoint


@router.get("")
async def list_endpoints(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(WebhookEndpoint)
        .where(WebhookEndpoint.tenant_id == tenant_id)
        .order_by(WebhookEndpoint.created_at.desc())
        .limit(LIST_LIMIT)
    )
    return {"success": True, "data": [_serialize(ep) for ep in result.scalars().all()]}


@router.post("", status_code=201)
async def create_endpoint(
    payload: EndpointCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Register an endpoint. The signing secret is only ever returned here."""
    secret = payload.secret or generate_signing_secret()
    endpoint = WebhookEndpoint(
        tenant_id=tenant_id,
        name=payload.name,
        url=payload.url,
        signing_secret=encrypt_secret(secret),
        subscribed_event_types=payload.events,
        status=ENDPOINT_ACTIVE,
        failure_count=0,
    )
    db.add(endpoint)
    await db.flush()

    logger.info("Webhook endpoint created: %s (tenant=%s)", str(endpoint.id)[:8], tenant_id,
                extra={"endpoint_id": str(endpoint.id)})
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "data": _serialize(endpoint, secret=secret),
            "message": "Webhook endpoint created successfully",
        },
    )


@router.put("/{endpoint_id}")
async def update_endpoint(
    endpoint_id: str,
    payload: EndpointUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _get_endpoint(db, tenant_id, endpoint_id)

    if payload.name is not None:
        endpoint.name = payload.name
    if payload.url is not None:
        endpoint.url = payload.url
    if payload.events is not None:
        endpoint.subscribed_event_types = payload.events
    if payload.status == ENDPOINT_ACTIVE and endpoint.status != ENDPOINT_ACTIVE:
        reactivate(endpoint)
    elif payload.status is not None:
        endpoint.status = payload.status
    await db.flush()

    return {
        "success": True,
        "data": _serialize(endpoint),
        "message": "Webhook endpoint updated successfully",
    }


@router.delete("/{endpoint_id}")
async def delete_endpoint(
    endpoint_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _get_endpoint(db, tenant_id, endpoint_id)
    await db.delete(endpoint)
    await db.flush()
    logger.info("Webhook endpoint deleted: %s (tenant=%s)", endpoint_id[:8], tenant_id)
    return {"success": True, "message": "Webhook endpoint deleted successfully"}


@router.post("/{endpoint_id}/reactivate")
async def reactivate_endpoint(
    endpoint_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _get_endpoint(db, tenant_id, endpoint_id)
    reactivate(endpoint)
    await db.flush()
    return {"success": True, "data": _serialize(endpoint)}


@router.get("/{endpoint_id}/deliveries")
async def list_deliveries(
    endpoint_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _get_endpoint(db, tenant_id, endpoint_id)
    result = await db.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.endpoint_id == endpoint.id)
        .order_by(WebhookDelivery.created_at.desc())
        .limit(LIST_LIMIT)
    )
    deliveries = [
        DeliveryResponse(
            id=str(d.id),
            event_type=d.event_type,
            status=d.status,
            attempt_count=d.attempt_count or 0,
            retry_count=d.retry_count or 0,
            response_code=d.response_code,
            error_message=d.error_message,
            next_retry_at=d.next_retry_at,
            delivered_at=d.delivered_at,
            created_at=d.created_at,
        ).model_dump(mode="json")
        for d in result.scalars().all()
    ]
    return {"success": True, "data": deliveries}
