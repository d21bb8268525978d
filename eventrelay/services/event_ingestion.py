"""
Event ingestion - validate, normalize, persist, then hand off to enrichment.

Persistence is synchronous (committed before the caller gets a response);
enrichment is dispatched afterwards and never awaited.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.errors import ValidationError
from eventrelay.models.raw_event import RawEvent
from eventrelay.schemas.ingestion import CaptureEventPayload, IngestEventPayload
from eventrelay.services.enrichment import (
    EnrichmentDispatcher,
    EnrichmentJob,
    get_enrichment_dispatcher,
)

logger = logging.getLogger(__name__)

REQUIRED_INGEST_FIELDS = ("event", "ts", "user_id", "session_id")
REQUIRED_CAPTURE_FIELDS = ("user_id", "event_type")


@dataclass(frozen=True)
class IngestionContext:
    """Who is writing, and from where. Built by the API layer after auth."""
    workspace_id: str
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None


def normalize_timestamp(value: Union[str, int, float, None]) -> datetime:
    """
    Parse an ISO-8601 string or epoch-milliseconds number into an aware UTC datetime.
    Naive timestamps are taken as UTC.
    """
    if value is None or value == "":
        raise ValidationError("Invalid event timestamp.")

    try:
        if isinstance(value, bool):
            raise ValueError("boolean timestamp")
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ValidationError("Invalid event timestamp.")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse(model, body: Any):
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return model.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError("Malformed event fields.", details=e.errors(include_url=False))


def _require(payload, fields: tuple[str, ...], message: str) -> None:
    missing = [f for f in fields if getattr(payload, f) in (None, "")]
    if missing:
        raise ValidationError(message, details=missing)


async def _persist_and_enrich(
    db: AsyncSession,
    event: RawEvent,
    dispatcher: Optional[EnrichmentDispatcher],
) -> str:
    db.add(event)
    await db.commit()
    event_id = str(event.id)

    logger.info(
        "Event stored: %s id=%s",
        event.event_name, event_id[:8],
        extra={"workspace_id": event.workspace_id, "event_name": event.event_name},
    )

    (dispatcher or get_enrichment_dispatcher()).dispatch(
        EnrichmentJob(
            workspace_id=event.workspace_id,
            user_id=event.user_id,
            event_id=event_id,
        )
    )
    return event_id


async def ingest_event(
    db: AsyncSession,
    body: Any,
    context: IngestionContext,
    dispatcher: Optional[EnrichmentDispatcher] = None,
) -> str:
    """Ingest one SDK event. Returns the new event id."""
    payload: IngestEventPayload = _parse(IngestEventPayload, body)
    _require(payload, REQUIRED_INGEST_FIELDS, "Missing required event fields.")

    event = RawEvent(
        id=uuid.uuid4(),
        workspace_id=context.workspace_id,
        user_id=payload.user_id,
        session_id=payload.session_id,
        event_name=payload.event,
        occurred_at=normalize_timestamp(payload.ts),
        url=payload.page,
        referrer=payload.referrer,
        user_agent=context.user_agent,
        client_ip=context.client_ip,
        click_ids=payload.click_ids,
        campaign=payload.campaign,
        properties=payload.metadata,
        source="sdk",
    )
    return await _persist_and_enrich(db, event, dispatcher)


async def capture_event(
    db: AsyncSession,
    body: Any,
    context: IngestionContext,
    dispatcher: Optional[EnrichmentDispatcher] = None,
) -> str:
    """
    Ingest one API-key capture event. Unlike the SDK flow, a missing
    session_id gets a fresh one (anonymous landing-page visitors).
    """
    payload: CaptureEventPayload = _parse(CaptureEventPayload, body)
    _require(payload, REQUIRED_CAPTURE_FIELDS, "Missing required fields: user_id, event_type")

    occurred_at = (
        normalize_timestamp(payload.timestamp)
        if payload.timestamp not in (None, "")
        else datetime.now(timezone.utc)
    )
    properties = dict(payload.event_payload)
    if payload.device_info:
        properties["device_info"] = payload.device_info

    event = RawEvent(
        id=uuid.uuid4(),
        workspace_id=context.workspace_id,
        user_id=payload.user_id,
        session_id=payload.session_id or str(uuid.uuid4()),
        event_name=payload.event_type,
        occurred_at=occurred_at,
        user_agent=context.user_agent,
        client_ip=context.client_ip,
        click_ids={},
        campaign={},
        properties=properties,
        source="capture",
    )
    return await _persist_and_enrich(db, event, dispatcher)
