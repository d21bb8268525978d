"""
Service-to-service auth for internal and management routes.
Callers present X-Internal-Key; tenant-scoped routes also carry X-Tenant-ID.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header

from eventrelay.config import get_settings
from eventrelay.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)


async def require_internal_key(
    x_internal_key: Optional[str] = Header(default=None),
) -> None:
    """Reject unless X-Internal-Key matches INTERNAL_API_KEY. Unset key rejects everything."""
    expected = get_settings().internal_api_key
    if not expected:
        logger.error(
            "INTERNAL_API_KEY not set - internal routes are disabled",
            extra={"error_code": "configuration_error"},
        )
        raise AuthenticationError("Unauthorized")
    if not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        raise AuthenticationError("Unauthorized")


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(default=None),
) -> str:
    if not x_tenant_id or not x_tenant_id.strip():
        raise ValidationError("Missing X-Tenant-ID header")
    return x_tenant_id.strip()
