"""
Webhook endpoint management and dispatch schemas.
"""
from datetime import datetime
from typing import Any, Optional
import httpx
from pydantic import BaseModel, Field, field_validator


def _check_url(value: str) -> str:
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, ValueError):
        raise ValueError("url must be a valid http(s) URL")
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError("url must be an http(s) URL with a host")
    return value


class EndpointCreate(BaseModel):
    url: str
    name: str = ""
    events: list[str] = Field(default_factory=lambda: ["*"])
    secret: Optional[str] = Field(default=None, min_length=16)  # generated when omitted

    @field_validator("url")
    @classmethod
    def _url(cls, v: str) -> str:
        return _check_url(v)


class EndpointUpdate(BaseModel):
    url: Optional[str] = None
    name: Optional[str] = None
    events: Optional[list[str]] = None
    status: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v) if v is not None else v

    @field_validator("status")
    @classmethod
    def _status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("active", "failed"):
            raise ValueError("status must be 'active' or 'failed'")
        return v


class EndpointResponse(BaseModel):
    id: str
    name: str
    url: str
    events: list[str]
    status: str
    failure_count: int = 0
    last_delivery_at: Optional[datetime] = None
    created_at: datetime
    secret: Optional[str] = None  # only populated on create


class DeliveryResponse(BaseModel):
    id: str
    event_type: str
    status: str
    attempt_count: int
    retry_count: int
    response_code: Optional[int] = None
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime


class DispatchRequest(BaseModel):
    tenant_id: str
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)


class DispatchResponse(BaseModel):
    success: bool = True
    queued: int
    delivery_ids: list[str]


class ProcessResponse(BaseModel):
    success: bool = True
    processed: int
    results: dict[str, int]
