"""
Endpoint health tracking - consecutive-failure counting and auto-disable.

A delivery success resets the endpoint's failure count. A delivery failure
increments it; at the threshold the endpoint is marked failed and receives
no further attempts until reactivated by a human.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from eventrelay.models.webhook_endpoint import ENDPOINT_ACTIVE, ENDPOINT_FAILED, WebhookEndpoint

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 10


def is_deliverable(endpoint: Optional[WebhookEndpoint]) -> bool:
    return endpoint is not None and endpoint.status == ENDPOINT_ACTIVE


def record_success(endpoint: WebhookEndpoint, now: Optional[datetime] = None) -> None:
    endpoint.failure_count = 0
    endpoint.last_delivery_at = now or datetime.now(timezone.utc)


def record_failure(
    endpoint: WebhookEndpoint,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> bool:
    """Count one failed delivery. Returns True if this failure disabled the endpoint."""
    endpoint.failure_count = (endpoint.failure_count or 0) + 1

    if endpoint.failure_count >= threshold and endpoint.status != ENDPOINT_FAILED:
        endpoint.status = ENDPOINT_FAILED
        logger.error(
            "Webhook endpoint %s disabled after %d consecutive failures",
            str(endpoint.id)[:8], endpoint.failure_count,
            extra={"endpoint_id": str(endpoint.id), "error_code": "endpoint_disabled"},
        )
        return True
    return False


def reactivate(endpoint: WebhookEndpoint) -> None:
    """Human re-activation of a failed endpoint."""
    endpoint.status = ENDPOINT_ACTIVE
    endpoint.failure_count = 0
    logger.info(
        "Webhook endpoint %s reactivated",
        str(endpoint.id)[:8],
        extra={"endpoint_id": str(endpoint.id)},
    )
