"""
Tests for eventrelay/workers/webhook_worker.py - claiming, sending, and the
per-batch endpoint health checks.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select

from eventrelay.models.webhook_delivery import WebhookDelivery, WebhookDeliveryAttempt
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.utils.webhook_signatures import verify_webhook_signature
from eventrelay.workers.webhook_worker import (
    claim_due_deliveries,
    process_pending_deliveries,
    requeue_stuck_deliveries,
)

SECRET = "whsec_worker_test_secret"


class Receiver:
    """MockTransport handler that records requests and replies with fixed status codes."""

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def _endpoint(db, **overrides):
    fields = dict(
        tenant_id="t1", name="crm", url="https://hooks.example.com/in",
        signing_secret=SECRET, subscribed_event_types=["*"],
        status="active", failure_count=0,
    )
    fields.update(overrides)
    endpoint = WebhookEndpoint(**fields)
    db.add(endpoint)
    await db.commit()
    return endpoint


async def _delivery(db, endpoint_id, age_seconds=60, **overrides):
    created = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
    fields = dict(
        endpoint_id=endpoint_id, event_type="profile.updated", payload={"score": 87},
        status="pending", created_at=created, updated_at=created,
    )
    fields.update(overrides)
    delivery = WebhookDelivery(**fields)
    db.add(delivery)
    await db.commit()
    return delivery


@pytest.fixture
def no_sleep():
    return AsyncMock()


class TestProcessPendingDeliveries:
    async def test_delivers_signed_request(self, db, no_sleep):
        endpoint = await _endpoint(db)
        delivery = await _delivery(db, endpoint.id)
        receiver = Receiver(200)

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result == {"processed": 1, "results": {"delivered": 1}}
        assert len(receiver.requests) == 1

        request = receiver.requests[0]
        assert request.headers["X-Delivery-ID"] == str(delivery.id)
        assert request.headers["X-Event-Type"] == "profile.updated"
        assert verify_webhook_signature(request.content, request.headers["X-Signature"], SECRET)

        assert delivery.status == "delivered"
        assert endpoint.failure_count == 0
        assert endpoint.last_delivery_at is not None

        attempts = (await db.execute(select(WebhookDeliveryAttempt))).scalars().all()
        assert len(attempts) == 1
        assert attempts[0].response_code == 200

    async def test_nothing_due(self, db, no_sleep):
        endpoint = await _endpoint(db)
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        await _delivery(db, endpoint.id, next_retry_at=future)
        receiver = Receiver()

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result == {"processed": 0, "results": {}}
        assert receiver.requests == []

    async def test_inactive_endpoint_skipped_without_request(self, db, no_sleep):
        endpoint = await _endpoint(db, status="failed", failure_count=10)
        delivery = await _delivery(db, endpoint.id)
        receiver = Receiver()

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["results"] == {"skipped": 1}
        assert receiver.requests == []
        assert delivery.status == "failed"
        assert delivery.error_message == "Webhook endpoint not found or inactive"

    async def test_missing_endpoint_skipped(self, db, no_sleep):
        delivery = await _delivery(db, uuid.uuid4())
        receiver = Receiver()

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["results"] == {"skipped": 1}
        assert receiver.requests == []
        assert delivery.status == "failed"

    async def test_failure_goes_back_to_pending(self, db, no_sleep):
        endpoint = await _endpoint(db)
        delivery = await _delivery(db, endpoint.id)
        receiver = Receiver(500)

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["results"] == {"retrying": 1}
        assert len(receiver.requests) == 4
        assert no_sleep.await_count == 3
        assert delivery.status == "pending"
        assert delivery.retry_count == 1
        assert delivery.next_retry_at is not None
        assert endpoint.failure_count == 1

    async def test_endpoint_disabled_mid_batch(self, db, no_sleep):
        """The failure that disables an endpoint stops the rest of the batch reaching it."""
        endpoint = await _endpoint(db, failure_count=9)
        first = await _delivery(db, endpoint.id, age_seconds=120)
        second = await _delivery(db, endpoint.id, age_seconds=60)
        receiver = Receiver(500)

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep, max_concurrency=1)

        assert result["results"] == {"retrying": 1, "skipped": 1}
        assert endpoint.status == "failed"
        assert endpoint.failure_count == 10
        assert len(receiver.requests) == 4
        assert all(r.headers["X-Delivery-ID"] == str(first.id) for r in receiver.requests)
        assert second.status == "failed"

    async def test_batch_size_takes_oldest_first(self, db, no_sleep, monkeypatch):
        from eventrelay.config import get_settings

        monkeypatch.setenv("WEBHOOK_BATCH_SIZE", "2")
        get_settings.cache_clear()

        endpoint = await _endpoint(db)
        oldest = await _delivery(db, endpoint.id, age_seconds=300)
        middle = await _delivery(db, endpoint.id, age_seconds=200)
        newest = await _delivery(db, endpoint.id, age_seconds=100)
        receiver = Receiver(200)

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["processed"] == 2
        assert oldest.status == "delivered"
        assert middle.status == "delivered"
        assert newest.status == "pending"


class TestStuckDeliveries:
    async def test_old_delivering_row_requeued(self, db):
        endpoint = await _endpoint(db)
        stale = datetime.now(timezone.utc) - timedelta(minutes=30)
        delivery = await _delivery(db, endpoint.id, status="delivering", updated_at=stale)

        count = await requeue_stuck_deliveries(db)
        await db.commit()
        await db.refresh(delivery)

        assert count == 1
        assert delivery.status == "pending"

    async def test_recent_delivering_row_left_alone(self, db):
        endpoint = await _endpoint(db)
        await _delivery(db, endpoint.id, status="delivering", updated_at=datetime.now(timezone.utc))

        assert await requeue_stuck_deliveries(db) == 0

    async def test_claimed_rows_marked_delivering(self, db):
        endpoint = await _endpoint(db)
        delivery = await _delivery(db, endpoint.id)

        claimed = await claim_due_deliveries(db, limit=10)

        assert [d.id for d in claimed] == [delivery.id]
        assert delivery.status == "delivering"
        assert await claim_due_deliveries(db, limit=10) == []


class TestUnsendableDeliveries:
    async def test_malformed_url_recorded_as_failed_attempt(self, db, no_sleep):
        endpoint = await _endpoint(db, url="http://[::1/hook")
        delivery = await _delivery(db, endpoint.id)
        receiver = Receiver()

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["results"] == {"retrying": 1}
        assert receiver.requests == []
        no_sleep.assert_not_awaited()
        assert delivery.status == "pending"
        assert delivery.retry_count == 1
        assert delivery.attempt_count == 1
        assert delivery.error_message.startswith("Invalid URL")
        assert endpoint.failure_count == 1

    async def test_malformed_url_reaches_terminal_state(self, db, no_sleep):
        endpoint = await _endpoint(db, url="http://[::1/hook")
        delivery = await _delivery(db, endpoint.id)
        receiver = Receiver()

        async with receiver.client() as client:
            for _ in range(5):
                delivery.next_retry_at = None
                await db.commit()
                await process_pending_deliveries(db, client, sleep=no_sleep)

        assert delivery.status == "failed"
        assert delivery.retry_count == 5
        assert delivery.attempt_count == 5

    async def test_crash_counts_toward_retries(self, db, no_sleep, monkeypatch):
        endpoint = await _endpoint(db)
        delivery = await _delivery(db, endpoint.id)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("eventrelay.workers.webhook_worker.prepare_request", explode)
        receiver = Receiver()

        async with receiver.client() as client:
            result = await process_pending_deliveries(db, client, sleep=no_sleep)

        assert result["results"] == {"error": 1}
        assert delivery.status == "pending"
        assert delivery.retry_count == 1
        assert delivery.next_retry_at is not None
        assert delivery.error_message == "Delivery crashed: RuntimeError: boom"

    async def test_crash_on_last_retry_fails_delivery(self, db, no_sleep, monkeypatch):
        endpoint = await _endpoint(db)
        delivery = await _delivery(db, endpoint.id, retry_count=4)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("eventrelay.workers.webhook_worker.prepare_request", explode)
        receiver = Receiver()

        async with receiver.client() as client:
            await process_pending_deliveries(db, client, sleep=no_sleep)

        assert delivery.status == "failed"
        assert delivery.retry_count == 5
        assert delivery.next_retry_at is None
