"""
Webhook delivery - sign, send with bounded in-call retry, record the outcome.

Two retry layers:
- in-call: up to WEBHOOK_INCALL_RETRIES extra attempts within one worker
  invocation, for transport errors, timeouts, 5xx, 408 and 429.
- cross-invocation: a failed delivery goes back to pending with a
  next_retry_at; after WEBHOOK_MAX_RETRIES it is marked failed for good.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.errors import DeliveryError
from eventrelay.models.webhook_delivery import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    WebhookDelivery,
    WebhookDeliveryAttempt,
)
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.services.endpoint_health import record_failure, record_success
from eventrelay.utils.encryption import decrypt_secret
from eventrelay.utils.webhook_signatures import serialize_payload, sign_body

logger = logging.getLogger(__name__)

USER_AGENT = "EventRelay-Webhooks/1.0"
RETRYABLE_STATUS_CODES = frozenset({408, 429})
MAX_ERROR_LENGTH = 500

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff(attempt: int, base_seconds: float = 1.0, cap_seconds: float = 30.0) -> float:
    """Exponential backoff without jitter: min(base * 2^attempt, cap)."""
    return min(base_seconds * (2 ** attempt), cap_seconds)


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def build_webhook_body(delivery: WebhookDelivery, timestamp: datetime) -> dict:
    """Envelope fields win over any same-named keys in the event payload."""
    body = dict(delivery.payload or {})
    body.update({
        "event_type": delivery.event_type,
        "delivery_id": str(delivery.id),
        "timestamp": timestamp.isoformat(),
    })
    return body


def build_webhook_headers(
    delivery: WebhookDelivery,
    signature: str,
    timestamp: datetime,
) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Signature": signature,
        "X-Event-Type": delivery.event_type,
        "X-Delivery-ID": str(delivery.id),
        "X-Timestamp": timestamp.isoformat(),
    }


def prepare_request(
    delivery: WebhookDelivery,
    endpoint: WebhookEndpoint,
    now: Optional[datetime] = None,
) -> tuple[bytes, dict[str, str]]:
    """Serialize and sign once; the signed bytes are the bytes sent."""
    timestamp = now or datetime.now(timezone.utc)
    body = serialize_payload(build_webhook_body(delivery, timestamp))
    signature = sign_body(body, decrypt_secret(endpoint.signing_secret))
    return body, build_webhook_headers(delivery, signature, timestamp)


@dataclass
class AttemptRecord:
    attempt_number: int
    attempted_at: datetime
    duration_ms: int
    response_code: Optional[int] = None
    error_message: Optional[str] = None


@dataclass
class DeliveryOutcome:
    success: bool
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def response_code(self) -> Optional[int]:
        return self.attempts[-1].response_code if self.attempts else None

    @property
    def error_message(self) -> Optional[str]:
        return self.attempts[-1].error_message if self.attempts else None


class WebhookSender:
    """
    POSTs one webhook with in-call retry.
    The HTTP client, sleep and jitter source are injectable for tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_cap_seconds: float = 30.0,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self._client = client
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self._sleep = sleep
        self._jitter = jitter

    def retry_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.backoff_base_seconds, self.backoff_cap_seconds) + self._jitter()

    async def _attempt(self, url: str, body: bytes, headers: dict[str, str]) -> int:
        """One POST. Returns the 2xx status or raises DeliveryError."""
        try:
            response = await self._client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timeout: {type(e).__name__}", retryable=True)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Transport error: {str(e) or type(e).__name__}", retryable=True)
        except (httpx.InvalidURL, ValueError) as e:
            raise DeliveryError(f"Invalid URL: {str(e) or type(e).__name__}", retryable=False)

        if 200 <= response.status_code < 300:
            return response.status_code
        raise DeliveryError(
            f"HTTP {response.status_code}",
            retryable=is_retryable_status(response.status_code),
            response_code=response.status_code,
        )

    async def send(self, url: str, body: bytes, headers: dict[str, str]) -> DeliveryOutcome:
        outcome = DeliveryOutcome(success=False)

        for attempt in range(self.max_retries + 1):
            attempted_at = datetime.now(timezone.utc)
            started = time.monotonic()
            try:
                status = await self._attempt(url, body, headers)
            except DeliveryError as e:
                outcome.attempts.append(AttemptRecord(
                    attempt_number=attempt + 1,
                    attempted_at=attempted_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    response_code=e.response_code,
                    error_message=e.message[:MAX_ERROR_LENGTH],
                ))
                if not e.retryable or attempt == self.max_retries:
                    break
                await self._sleep(self.retry_delay(attempt))
                continue

            outcome.attempts.append(AttemptRecord(
                attempt_number=attempt + 1,
                attempted_at=attempted_at,
                duration_ms=int((time.monotonic() - started) * 1000),
                response_code=status,
            ))
            outcome.success = True
            break

        return outcome


def apply_outcome(
    db: AsyncSession,
    delivery: WebhookDelivery,
    endpoint: WebhookEndpoint,
    outcome: DeliveryOutcome,
    max_retries: int = 5,
    backoff_base_seconds: float = 1.0,
    backoff_cap_seconds: float = 30.0,
    failure_threshold: int = 10,
    now: Optional[datetime] = None,
) -> str:
    """
    Record attempts and transition the delivery and its endpoint.
    Returns "delivered", "retrying" or "failed". Caller commits.
    """
    now = now or datetime.now(timezone.utc)

    for record in outcome.attempts:
        db.add(WebhookDeliveryAttempt(
            delivery_id=delivery.id,
            attempt_number=(delivery.attempt_count or 0) + record.attempt_number,
            response_code=record.response_code,
            error_message=record.error_message,
            duration_ms=record.duration_ms,
            attempted_at=record.attempted_at,
        ))

    delivery.attempt_count = (delivery.attempt_count or 0) + len(outcome.attempts)
    if outcome.attempts:
        delivery.last_attempt_at = outcome.attempts[-1].attempted_at
    delivery.response_code = outcome.response_code
    delivery.updated_at = now

    if outcome.success:
        delivery.status = DELIVERY_DELIVERED
        delivery.delivered_at = now
        delivery.next_retry_at = None
        delivery.error_message = None
        record_success(endpoint, now)
        logger.info(
            "Webhook delivered: %s -> %s (%s)",
            delivery.event_type, str(endpoint.id)[:8], outcome.response_code,
            extra={"delivery_id": str(delivery.id), "endpoint_id": str(endpoint.id)},
        )
        return "delivered"

    delivery.error_message = outcome.error_message
    delivery.retry_count = (delivery.retry_count or 0) + 1
    record_failure(endpoint, threshold=failure_threshold)

    if delivery.retry_count >= max_retries:
        delivery.status = DELIVERY_FAILED
        delivery.next_retry_at = None
        logger.error(
            "Webhook delivery %s exhausted retries (%d/%d): %s",
            str(delivery.id)[:8], delivery.retry_count, max_retries, delivery.error_message,
            extra={"delivery_id": str(delivery.id), "endpoint_id": str(endpoint.id)},
        )
        return "failed"

    delay = compute_backoff(delivery.retry_count, backoff_base_seconds, backoff_cap_seconds)
    delivery.status = DELIVERY_PENDING
    delivery.next_retry_at = now + timedelta(seconds=delay)
    logger.warning(
        "Webhook delivery %s retry %d/%d in %.0fs: %s",
        str(delivery.id)[:8], delivery.retry_count, max_retries, delay, delivery.error_message,
        extra={"delivery_id": str(delivery.id), "endpoint_id": str(endpoint.id)},
    )
    return "retrying"


def mark_undeliverable(delivery: WebhookDelivery, now: Optional[datetime] = None) -> None:
    delivery.status = DELIVERY_FAILED
    delivery.error_message = "Webhook endpoint not found or inactive"
    delivery.next_retry_at = None
    delivery.updated_at = now or datetime.now(timezone.utc)


def record_crash(
    delivery: WebhookDelivery,
    error: Exception,
    max_retries: int = 5,
    backoff_base_seconds: float = 1.0,
    backoff_cap_seconds: float = 30.0,
    now: Optional[datetime] = None,
) -> str:
    """
    Count an unexpected worker error against the delivery's retry budget.
    Returns "retrying" or "failed". Caller commits.
    """
    now = now or datetime.now(timezone.utc)
    delivery.error_message = f"Delivery crashed: {type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
    delivery.retry_count = (delivery.retry_count or 0) + 1
    delivery.updated_at = now

    if delivery.retry_count >= max_retries:
        delivery.status = DELIVERY_FAILED
        delivery.next_retry_at = None
        return "failed"

    delivery.status = DELIVERY_PENDING
    delivery.next_retry_at = now + timedelta(
        seconds=compute_backoff(delivery.retry_count, backoff_base_seconds, backoff_cap_seconds)
    )
    return "retrying"
