"""
Client app registration - maps a public API key to a workspace for the
API-key capture flow.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime
from sqlalchemy.dialects.postgresql import UUID
from eventrelay.database import Base


class ClientApp(Base):
    __tablename__ = "client_apps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    api_key = Column(String(128), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default="active", server_default="active")  # active, revoked
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
