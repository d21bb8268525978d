"""
WebhookEndpoint - a customer-owned URL that receives signed event notifications.
Health fields (failure_count, status, last_delivery_at) are owned by the
delivery worker; a failed endpoint stays failed until a human reactivates it.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base

ENDPOINT_ACTIVE = "active"
ENDPOINT_FAILED = "failed"


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    url: Mapped[str] = mapped_column(Text, nullable=False)
    signing_secret: Mapped[str] = mapped_column(Text, nullable=False)  # Fernet-encrypted when configured

    subscribed_event_types: Mapped[list] = mapped_column(
        JSONB, default=list
    )  # ["profile.updated", ...] or ["*"]

    status: Mapped[str] = mapped_column(
        String(20), default=ENDPOINT_ACTIVE, nullable=False
    )  # active, failed
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_webhook_endpoints_tenant_status", "tenant_id", "status"),
    )

    def subscribes_to(self, event_type: str) -> bool:
        events = self.subscribed_event_types or []
        return "*" in events or event_type in events
