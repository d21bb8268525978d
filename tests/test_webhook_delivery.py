"""
Tests for eventrelay/services/webhook_delivery.py - signing, in-call retry,
and the cross-invocation retry state machine.
"""
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from eventrelay.models.webhook_delivery import WebhookDelivery
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.services.webhook_delivery import (
    USER_AGENT,
    DeliveryOutcome,
    WebhookSender,
    apply_outcome,
    compute_backoff,
    is_retryable_status,
    mark_undeliverable,
    prepare_request,
)
from eventrelay.utils.webhook_signatures import verify_webhook_signature

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
URL = "https://hooks.example.com/in"


def _endpoint(**overrides):
    fields = dict(
        id=uuid.uuid4(), tenant_id="t1", url=URL, signing_secret="whsec_test",
        subscribed_event_types=["*"], status="active", failure_count=0,
    )
    fields.update(overrides)
    return WebhookEndpoint(**fields)


def _delivery(endpoint, **overrides):
    fields = dict(
        id=uuid.uuid4(), endpoint_id=endpoint.id, event_type="profile.updated",
        payload={"score": 87}, status="delivering", attempt_count=0, retry_count=0,
    )
    fields.update(overrides)
    return WebhookDelivery(**fields)


def _sender(handler, max_retries=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sleep = AsyncMock()
    return WebhookSender(client, max_retries=max_retries, sleep=sleep, jitter=lambda: 0.0), sleep


def _counting(status_codes):
    """Handler returning the given status codes in order, repeating the last one."""
    calls = []

    def handler(request):
        calls.append(request)
        code = status_codes[min(len(calls), len(status_codes)) - 1]
        return httpx.Response(code)

    return handler, calls


class TestBackoff:
    def test_doubles_then_caps(self):
        assert [compute_backoff(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_custom_base_and_cap(self):
        assert compute_backoff(3, base_seconds=0.5, cap_seconds=3.0) == 3.0
        assert compute_backoff(1, base_seconds=0.5, cap_seconds=3.0) == 1.0

    @pytest.mark.parametrize("code,retryable", [(500, True), (503, True), (408, True), (429, True), (400, False), (404, False)])
    def test_retryable_status(self, code, retryable):
        assert is_retryable_status(code) is retryable


class TestPrepareRequest:
    def test_headers_and_signature(self):
        endpoint = _endpoint()
        delivery = _delivery(endpoint)

        body, headers = prepare_request(delivery, endpoint, now=NOW)

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == USER_AGENT
        assert headers["X-Event-Type"] == "profile.updated"
        assert headers["X-Delivery-ID"] == str(delivery.id)
        assert headers["X-Timestamp"] == NOW.isoformat()
        assert verify_webhook_signature(body, headers["X-Signature"], "whsec_test")

    def test_envelope_overrides_payload_keys(self):
        endpoint = _endpoint()
        delivery = _delivery(endpoint, payload={"event_type": "spoofed", "score": 1})

        body, _ = prepare_request(delivery, endpoint, now=NOW)
        decoded = json.loads(body)

        assert decoded["event_type"] == "profile.updated"
        assert decoded["delivery_id"] == str(delivery.id)
        assert decoded["timestamp"] == NOW.isoformat()
        assert decoded["score"] == 1


class TestWebhookSender:
    async def test_success_first_try(self):
        handler, calls = _counting([200])
        sender, sleep = _sender(handler)

        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is True
        assert outcome.response_code == 200
        assert len(calls) == 1
        sleep.assert_not_awaited()

    async def test_retries_5xx_until_exhausted(self):
        handler, calls = _counting([500])
        sender, sleep = _sender(handler, max_retries=3)

        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is False
        assert len(calls) == 4
        assert [a.attempt_number for a in outcome.attempts] == [1, 2, 3, 4]
        assert outcome.error_message == "HTTP 500"
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]

    async def test_recovers_on_second_attempt(self):
        handler, calls = _counting([503, 204])
        sender, _ = _sender(handler)

        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is True
        assert len(calls) == 2
        assert outcome.attempts[0].response_code == 503
        assert outcome.response_code == 204

    async def test_4xx_not_retried(self):
        handler, calls = _counting([400])
        sender, sleep = _sender(handler)

        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is False
        assert len(calls) == 1
        assert outcome.response_code == 400
        sleep.assert_not_awaited()

    async def test_429_retried(self):
        handler, calls = _counting([429, 200])
        sender, _ = _sender(handler)

        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is True
        assert len(calls) == 2

    async def test_transport_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200)

        sender, _ = _sender(handler)
        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is True
        assert outcome.attempts[0].response_code is None
        assert outcome.attempts[0].error_message.startswith("Transport error")

    async def test_timeout_recorded(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        sender, _ = _sender(handler, max_retries=0)
        outcome = await sender.send(URL, b"{}", {})

        assert outcome.success is False
        assert outcome.error_message == "Timeout: ReadTimeout"

    async def test_malformed_url_not_retried(self):
        handler, calls = _counting([200])
        sender, sleep = _sender(handler)

        outcome = await sender.send("http://[::1/hook", b"{}", {})

        assert outcome.success is False
        assert calls == []
        assert len(outcome.attempts) == 1
        assert outcome.response_code is None
        assert outcome.error_message.startswith("Invalid URL")
        sleep.assert_not_awaited()

    async def test_sends_exact_bytes(self):
        seen = []

        def handler(request):
            seen.append((request.content, request.headers["X-Signature"]))
            return httpx.Response(200)

        endpoint = _endpoint()
        body, headers = prepare_request(_delivery(endpoint), endpoint, now=NOW)
        sender, _ = _sender(handler)
        await sender.send(URL, body, headers)

        assert seen == [(body, headers["X-Signature"])]


class TestApplyOutcome:
    async def _failed_outcome(self):
        handler, _ = _counting([500])
        sender, _ = _sender(handler)
        return await sender.send(URL, b"{}", {})

    async def test_success_marks_delivered_and_resets_endpoint(self):
        db = MagicMock()
        endpoint = _endpoint(failure_count=4)
        delivery = _delivery(endpoint)
        handler, _ = _counting([200])
        sender, _ = _sender(handler)
        outcome = await sender.send(URL, b"{}", {})

        result = apply_outcome(db, delivery, endpoint, outcome, now=NOW)

        assert result == "delivered"
        assert delivery.status == "delivered"
        assert delivery.delivered_at == NOW
        assert delivery.attempt_count == 1
        assert delivery.response_code == 200
        assert endpoint.failure_count == 0
        assert endpoint.last_delivery_at == NOW
        db.add.assert_called_once()

    async def test_failure_schedules_retry(self):
        db = MagicMock()
        endpoint = _endpoint()
        delivery = _delivery(endpoint)

        result = apply_outcome(db, delivery, endpoint, await self._failed_outcome(), now=NOW)

        assert result == "retrying"
        assert delivery.status == "pending"
        assert delivery.retry_count == 1
        assert delivery.attempt_count == 4
        assert delivery.next_retry_at == NOW + timedelta(seconds=2)
        assert delivery.error_message == "HTTP 500"
        assert endpoint.failure_count == 1
        assert db.add.call_count == 4

    async def test_always_failing_receiver_ends_failed(self):
        db = MagicMock()
        endpoint = _endpoint()
        delivery = _delivery(endpoint)
        delays = []

        results = []
        for _ in range(5):
            outcome = await self._failed_outcome()
            results.append(apply_outcome(db, delivery, endpoint, outcome, max_retries=5, now=NOW))
            if delivery.next_retry_at is not None:
                delays.append((delivery.next_retry_at - NOW).total_seconds())

        assert results == ["retrying"] * 4 + ["failed"]
        assert delivery.status == "failed"
        assert delivery.retry_count == 5
        assert delivery.next_retry_at is None
        assert delays == sorted(delays)
        assert delivery.attempt_count == 20
        attempt_numbers = [c.args[0].attempt_number for c in db.add.call_args_list]
        assert attempt_numbers == list(range(1, 21))

    async def test_backoff_capped(self):
        db = MagicMock()
        endpoint = _endpoint()
        delivery = _delivery(endpoint, retry_count=8)

        apply_outcome(db, delivery, endpoint, await self._failed_outcome(), max_retries=20, now=NOW)

        assert delivery.next_retry_at == NOW + timedelta(seconds=30)

    async def test_tenth_failure_disables_endpoint(self):
        db = MagicMock()
        endpoint = _endpoint(failure_count=9)
        delivery = _delivery(endpoint)

        apply_outcome(db, delivery, endpoint, await self._failed_outcome(), now=NOW)

        assert endpoint.status == "failed"
        assert endpoint.failure_count == 10

    def test_empty_outcome_still_counts(self):
        db = MagicMock()
        endpoint = _endpoint()
        delivery = _delivery(endpoint)

        result = apply_outcome(db, delivery, endpoint, DeliveryOutcome(success=False), now=NOW)

        assert result == "retrying"
        assert delivery.attempt_count == 0
        db.add.assert_not_called()


class TestMarkUndeliverable:
    def test_fails_delivery(self):
        endpoint = _endpoint()
        delivery = _delivery(endpoint, next_retry_at=NOW)

        mark_undeliverable(delivery, now=NOW)

        assert delivery.status == "failed"
        assert delivery.next_retry_at is None
        assert delivery.error_message == "Webhook endpoint not found or inactive"
