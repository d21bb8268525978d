"""
Tests for eventrelay/api/webhook_endpoints.py - tenant-scoped endpoint management.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from eventrelay.config import get_settings
from eventrelay.models.webhook_delivery import WebhookDelivery
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.utils.encryption import decrypt_secret

BASE = "/api/v1/webhooks/endpoints"


async def _create(client, headers, **body):
    payload = {"url": "https://hooks.example.com/in", "name": "crm"}
    payload.update(body)
    resp = await client.post(BASE, json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestAuth:
    async def test_missing_key_rejected(self, client, internal_headers):
        resp = await client.get(BASE, headers={"X-Tenant-ID": "t1"})

        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    async def test_wrong_key_rejected(self, client, internal_headers):
        resp = await client.get(BASE, headers={"X-Internal-Key": "nope", "X-Tenant-ID": "t1"})

        assert resp.status_code == 401

    async def test_unset_key_rejects_everything(self, client):
        resp = await client.get(BASE, headers={"X-Internal-Key": "", "X-Tenant-ID": "t1"})

        assert resp.status_code == 401

    async def test_missing_tenant(self, client, internal_headers):
        resp = await client.get(BASE, headers={"X-Internal-Key": internal_headers["X-Internal-Key"]})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing X-Tenant-ID header"


class TestCreateAndList:
    async def test_secret_returned_only_on_create(self, client, internal_headers):
        created = await _create(client, internal_headers, events=["profile.updated"])

        assert created["secret"].startswith("whsec_")
        assert created["events"] == ["profile.updated"]
        assert created["status"] == "active"
        assert created["failure_count"] == 0

        listed = (await client.get(BASE, headers=internal_headers)).json()["data"]
        assert [ep["id"] for ep in listed] == [created["id"]]
        assert "secret" not in listed[0]

    async def test_default_subscribes_to_everything(self, client, internal_headers):
        created = await _create(client, internal_headers)

        assert created["events"] == ["*"]

    async def test_caller_supplied_secret(self, client, internal_headers, db):
        created = await _create(client, internal_headers, secret="my-own-secret-value-123")

        assert created["secret"] == "my-own-secret-value-123"
        row = (await db.execute(select(WebhookEndpoint))).scalar_one()
        assert decrypt_secret(row.signing_secret) == "my-own-secret-value-123"

    async def test_secret_encrypted_at_rest(self, client, internal_headers, db, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())
        get_settings.cache_clear()

        created = await _create(client, internal_headers)

        row = (await db.execute(select(WebhookEndpoint))).scalar_one()
        assert row.signing_secret != created["secret"]
        assert decrypt_secret(row.signing_secret) == created["secret"]

    @pytest.mark.parametrize("url", ["ftp://example.com", "http://[::1/hook", "http://", "https:///path"])
    async def test_bad_url_rejected(self, client, internal_headers, url):
        resp = await client.post(BASE, json={"url": url}, headers=internal_headers)

        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation error"

    async def test_tenants_isolated(self, client, internal_headers):
        created = await _create(client, internal_headers)
        other = dict(internal_headers, **{"X-Tenant-ID": "t2"})

        assert (await client.get(BASE, headers=other)).json()["data"] == []
        resp = await client.delete(f"{BASE}/{created['id']}", headers=other)
        assert resp.status_code == 404


class TestUpdateAndDelete:
    async def test_update_fields(self, client, internal_headers):
        created = await _create(client, internal_headers)

        resp = await client.put(
            f"{BASE}/{created['id']}",
            json={"name": "warehouse", "events": ["session.started"]},
            headers=internal_headers,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["name"] == "warehouse"
        assert data["events"] == ["session.started"]
        assert data["url"] == created["url"]

    async def test_invalid_status_rejected(self, client, internal_headers):
        created = await _create(client, internal_headers)

        resp = await client.put(f"{BASE}/{created['id']}", json={"status": "paused"}, headers=internal_headers)

        assert resp.status_code == 400

    async def test_unknown_id(self, client, internal_headers):
        resp = await client.put(f"{BASE}/{uuid.uuid4()}", json={"name": "x"}, headers=internal_headers)
        assert resp.status_code == 404

        resp = await client.put(f"{BASE}/not-a-uuid", json={"name": "x"}, headers=internal_headers)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Webhook endpoint not found"}

    async def test_delete(self, client, internal_headers):
        created = await _create(client, internal_headers)

        resp = await client.delete(f"{BASE}/{created['id']}", headers=internal_headers)

        assert resp.status_code == 200
        assert (await client.get(BASE, headers=internal_headers)).json()["data"] == []


class TestReactivate:
    async def _failed_endpoint(self, db):
        endpoint = WebhookEndpoint(
            tenant_id="t1", name="crm", url="https://hooks.example.com/in",
            signing_secret="whsec_x", subscribed_event_types=["*"],
            status="failed", failure_count=10,
        )
        db.add(endpoint)
        await db.commit()
        return endpoint

    async def test_reactivate_route(self, client, internal_headers, db):
        endpoint = await self._failed_endpoint(db)

        resp = await client.post(f"{BASE}/{endpoint.id}/reactivate", headers=internal_headers)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "active"
        assert data["failure_count"] == 0

    async def test_status_update_to_active_resets_failures(self, client, internal_headers, db):
        endpoint = await self._failed_endpoint(db)

        resp = await client.put(f"{BASE}/{endpoint.id}", json={"status": "active"}, headers=internal_headers)

        assert resp.json()["data"]["failure_count"] == 0


class TestDeliveries:
    async def test_newest_first(self, client, internal_headers, db):
        created = await _create(client, internal_headers)
        endpoint_id = uuid.UUID(created["id"])
        now = datetime.now(timezone.utc)
        db.add_all([
            WebhookDelivery(endpoint_id=endpoint_id, event_type="a", payload={},
                            status="delivered", created_at=now - timedelta(minutes=2)),
            WebhookDelivery(endpoint_id=endpoint_id, event_type="b", payload={},
                            status="pending", created_at=now - timedelta(minutes=1)),
        ])
        await db.commit()

        resp = await client.get(f"{BASE}/{created['id']}/deliveries", headers=internal_headers)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [d["event_type"] for d in data] == ["b", "a"]
        assert data[1]["status"] == "delivered"
        assert data[0]["attempt_count"] == 0
