"""Tests for the HTTP surface: health, webhook listing and inbound delivery."""

import asyncio
import base64
import json
import time

import pytest
from fastapi.testclient import TestClient

from opsconnect.integrations.incident.on_incident import OnIncident
from opsconnect.server import app, engine
from opsconnect.webhooks.signatures import sign_svix

client = TestClient(app)

SECRET = "whsec_" + base64.b64encode(b"server-test-signing-key").decode()
EVENT = "public_incident.incident_created_v2"


@pytest.fixture(autouse=True)
def _reset_engine():
    engine.reset()
    yield
    engine.reset()


@pytest.fixture
def incident_hook():
    """An incident.io trigger with its signing secret set; returns the webhook id."""
    engine.add_integration("incident", "incident", {})
    asyncio.run(engine.setup_node("on-incident", "incident", "incident.onIncident", {"events": [EVENT]}))
    asyncio.run(engine.run_trigger_action(
        "on-incident", "setSecret", {"webhookSigningSecret": SECRET}
    ))
    return engine.webhooks.find_by_node("on-incident")["id"]


def signed(body: bytes, secret: str = SECRET):
    timestamp = int(time.time())
    return {
        "Content-Type": "application/json",
        "webhook-id": "msg_1",
        "webhook-timestamp": str(timestamp),
        "webhook-signature": sign_svix(secret, "msg_1", timestamp, body),
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_health():
    resp = client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["service"] == "OpsConnect"
    assert {"daytona", "incident", "octopus", "rootly"} <= set(data["integrations"])


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhookRoutes:
    def test_unknown_webhook_uses_error_envelope(self):
        resp = client.post("/api/v1/webhooks/does-not-exist", content=b"{}")
        assert resp.status_code == 404
        assert resp.json() == {
            "error": {"code": "NOT_FOUND", "status": 404, "message": "webhook not found"}
        }

    def test_list_webhooks_omits_secrets(self, incident_hook):
        resp = client.get("/api/v1/webhooks")
        assert resp.status_code == 200
        [hook] = resp.json()["webhooks"]
        assert hook["id"] == incident_hook
        assert hook["references"] == ["on-incident"]
        assert "secret_encrypted" not in hook
        assert SECRET not in resp.text

    def test_signed_delivery_is_accepted(self, incident_hook):
        body = json.dumps({"event_type": EVENT, EVENT: {"id": "01HZ"}}).encode()

        resp = client.post(f"/api/v1/webhooks/{incident_hook}", content=body, headers=signed(body))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        [event] = engine.events.events_for("on-incident")
        assert event["data"]["incident"] == {"id": "01HZ"}

    def test_bad_signature_is_forbidden(self, incident_hook):
        body = json.dumps({"event_type": EVENT}).encode()
        headers = signed(body, secret="whsec_" + base64.b64encode(b"other").decode())

        resp = client.post(f"/api/v1/webhooks/{incident_hook}", content=body, headers=headers)

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_malformed_body_is_bad_request(self, incident_hook):
        body = b"{broken"
        resp = client.post(f"/api/v1/webhooks/{incident_hook}", content=body, headers=signed(body))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "BAD_REQUEST"

    def test_handler_crash_is_internal_error(self, incident_hook, monkeypatch):
        async def crash(self, ctx):
            raise RuntimeError("boom")

        monkeypatch.setattr(OnIncident, "handle_webhook", crash)
        body = json.dumps({"event_type": EVENT}).encode()

        resp = client.post(f"/api/v1/webhooks/{incident_hook}", content=body, headers=signed(body))

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "INTERNAL_SERVER_ERROR"
