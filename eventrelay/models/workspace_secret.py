"""
Per-workspace SDK signing key used to verify ingestion tokens.
One active key per workspace; rotation happens out-of-band.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID
from eventrelay.database import Base


class WorkspaceSecret(Base):
    __tablename__ = "workspace_secrets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, unique=True, index=True)
    sdk_signing_key = Column(Text, nullable=True)  # Fernet-encrypted when ENCRYPTION_KEY is set
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    rotated_at = Column(DateTime(timezone=True), nullable=True)
