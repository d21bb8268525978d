"""
Public ingestion endpoints - browser SDKs and landing pages write events here.

Security layers (in order):
1. IP reputation rate limit
2. Credential check (signed ingestion token, or client-app API key)
3. Per-workspace / per-app rate limit
4. Validation + persistence, then fire-and-forget enrichment

Errors raised here are EventRelayError subclasses rendered to {"error": ...}
by the exception handler in eventrelay.main. Preflight and CORS headers for
these paths are handled by PublicCorsMiddleware there.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import get_settings
from eventrelay.database import get_db
from eventrelay.errors import AuthenticationError, EventRelayError, RateLimitError, ValidationError
from eventrelay.models.client_app import ClientApp
from eventrelay.schemas.ingestion import CaptureResponse, IngestResponse
from eventrelay.services.event_ingestion import IngestionContext, capture_event, ingest_event
from eventrelay.utils.ingestion_tokens import verify_ingestion_token, workspace_key_lookup
from eventrelay.utils.rate_limiter import (
    RateLimitResult,
    RateLimits,
    check_ip_reputation,
    check_rate_limit,
    rate_limit_headers,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["ingestion"])

PUBLIC_PATHS = ("/api/v1/ingest", "/api/v1/events/capture")
PUBLIC_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, X-API-Key",
    "Access-Control-Max-Age": "86400",
}

DEMO_LANDING_KEY = "DEMO_LANDING_KEY"
DEMO_WORKSPACE_ID = "demo_landing_page"
CAPTURE_RATE_LIMIT = 100


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS


def get_client_ip(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if auth[:7].lower() == "bearer ":
        return auth[7:].strip() or None
    return None


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body.")


def _ok(content: dict, result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        content=content,
        headers=rate_limit_headers(result),
    )


async def _enforce_ip_limit(client_ip: str) -> None:
    result = await check_ip_reputation(client_ip, get_settings().ip_base_limit)
    if not result.allowed:
        logger.warning(
            "IP rate limited: %s (%s)",
            client_ip, result.reason,
            extra={"client_ip": client_ip, "error_code": result.reason},
        )
        raise RateLimitError("Rate limit exceeded", result)


async def _enforce_limit(identifier: str, limits: RateLimits, message: str) -> RateLimitResult:
    result = await check_rate_limit(identifier, limits)
    if not result.allowed:
        logger.warning(
            "Rate limited: %s (%s)",
            identifier, result.reason,
            extra={"error_code": result.reason},
        )
        raise RateLimitError(message, result)
    return result


@router.post("/ingest")
async def ingest(request: Request, db: AsyncSession = Depends(get_db)):
    """
    SDK event ingestion.
    Authorization: Bearer <payload>.<signature>
    """
    settings = get_settings()
    client_ip = get_client_ip(request)
    await _enforce_ip_limit(client_ip)

    token = _bearer_token(request)
    if not token:
        raise AuthenticationError("Missing ingestion token.")

    claims = await verify_ingestion_token(
        token,
        workspace_key_lookup(db),
        request_origin=request.headers.get("origin"),
        origin_policy=settings.token_origin_policy,
    )

    result = await _enforce_limit(
        f"ingest:{claims.workspace_id}",
        RateLimits(
            max_requests=settings.ingest_rate_limit,
            window_ms=settings.ingest_rate_window_ms,
            burst_size=settings.ingest_burst_size,
            burst_window_ms=settings.ingest_burst_window_ms,
        ),
        "Rate limit exceeded",
    )

    body = await _read_json(request)
    context = IngestionContext(
        workspace_id=claims.workspace_id,
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip,
    )
    try:
        await ingest_event(db, body, context)
    except EventRelayError:
        raise
    except Exception as e:
        logger.error(
            "Ingestion failed: %s", str(e),
            exc_info=True,
            extra={"workspace_id": claims.workspace_id},
        )
        raise EventRelayError("Internal server error", details=str(e))

    return _ok(IngestResponse().model_dump(), result)


async def _resolve_client_app(db: AsyncSession, api_key: str) -> Optional[tuple[str, str]]:
    """(app_id, workspace_id) for an API key, or None if the key is unknown or revoked."""
    if api_key == DEMO_LANDING_KEY and get_settings().demo_landing_key_enabled:
        return DEMO_WORKSPACE_ID, DEMO_WORKSPACE_ID

    result = await db.execute(
        select(ClientApp).where(
            ClientApp.api_key == api_key,
            ClientApp.status == "active",
        ).limit(1)
    )
    app = result.scalar_one_or_none()
    return (str(app.id), app.workspace_id) if app else None


@router.post("/events/capture")
async def capture(request: Request, db: AsyncSession = Depends(get_db)):
    """
    API-key event capture.
    X-API-Key: <key>  or  Authorization: Bearer <key>
    """
    client_ip = get_client_ip(request)
    await _enforce_ip_limit(client_ip)

    api_key = request.headers.get("x-api-key") or _bearer_token(request)
    if not api_key:
        raise AuthenticationError(
            "Missing API key. Include X-API-Key header or Authorization: Bearer header"
        )

    resolved = await _resolve_client_app(db, api_key)
    if resolved is None:
        raise AuthenticationError("Invalid API key")
    app_id, workspace_id = resolved

    result = await _enforce_limit(
        f"capture:{app_id}",
        RateLimits(max_requests=CAPTURE_RATE_LIMIT, window_ms=60000),
        "Rate limit exceeded. Maximum 100 events per minute.",
    )

    body = await _read_json(request)
    context = IngestionContext(
        workspace_id=workspace_id,
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip,
    )
    try:
        event_id = await capture_event(db, body, context)
    except EventRelayError:
        raise
    except Exception as e:
        logger.error(
            "Capture failed: %s", str(e),
            exc_info=True,
            extra={"workspace_id": workspace_id},
        )
        raise EventRelayError("Internal server error", details=str(e))

    return _ok(CaptureResponse(event_id=event_id).model_dump(), result)
