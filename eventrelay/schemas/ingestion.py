"""
Inbound event payload schemas.

Required fields are deliberately Optional here: presence is checked by the
ingestion service so a missing field yields the documented 400 body rather
than a framework-shaped 422.
"""
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class IngestEventPayload(BaseModel):
    """SDK event, authenticated by a signed ingestion token."""
    model_config = ConfigDict(extra="ignore")

    event: Optional[str] = None
    ts: Optional[Union[str, int, float]] = None  # ISO-8601 or epoch milliseconds
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    page: Optional[str] = None
    referrer: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    click_ids: dict = Field(default_factory=dict)
    campaign: dict = Field(default_factory=dict)


class CaptureEventPayload(BaseModel):
    """API-key capture event (landing pages, server-side integrations)."""
    model_config = ConfigDict(extra="ignore")

    event_type: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None
    event_payload: dict = Field(default_factory=dict)
    device_info: dict = Field(default_factory=dict)


class IngestResponse(BaseModel):
    status: str = "ok"


class CaptureResponse(BaseModel):
    success: bool = True
    event_id: str
