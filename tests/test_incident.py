"""Tests for the incident.io trigger, its setSecret action and Svix verification."""

import base64
import json
import time

import httpx
import pytest

from opsconnect.core.base import ConfigurationError, IntegrationError
from opsconnect.engine import Engine
from opsconnect.integrations.incident import Incident, IncidentWebhookHandler
from opsconnect.webhooks.signatures import sign_svix

SECRET = "whsec_" + base64.b64encode(b"incident-signing-key-0123456789").decode()
CREATED = "public_incident.incident_created_v2"
UPDATED = "public_incident.incident_updated_v2"


def no_network(request):
    raise AssertionError(f"unexpected vendor call: {request.method} {request.url}")


async def make_engine(events=(CREATED, UPDATED), node_id="on-incident"):
    engine = Engine(http=httpx.AsyncClient(transport=httpx.MockTransport(no_network)))
    engine.add_integration("incident", Incident(), {})
    await engine.setup_node(node_id, "incident", "incident.onIncident", {"events": list(events)})
    return engine


def payload(event_type=CREATED, incident=None):
    return json.dumps({
        "event_type": event_type,
        event_type: incident or {"id": "01HX", "name": "Database latency", "severity": {"name": "Major"}},
    }).encode()


def signed_headers(body, secret=SECRET, prefix="webhook", timestamp=None, msg_id="msg_1"):
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "Content-Type": "application/json",
        f"{prefix}-id": msg_id,
        f"{prefix}-timestamp": str(timestamp),
        f"{prefix}-signature": sign_svix(secret, msg_id, timestamp, body),
    }


async def set_secret(engine, value=SECRET, node_id="on-incident"):
    return await engine.run_trigger_action(node_id, "setSecret", {"webhookSigningSecret": value})


async def deliver(engine, body, headers, node_id="on-incident"):
    hook = engine.webhooks.find_by_node(node_id)
    return await engine.handle_webhook(hook["id"], headers, body)


# ---------------------------------------------------------------------------
# Setup and secret management
# ---------------------------------------------------------------------------


class TestSetup:
    @pytest.mark.asyncio
    async def test_requires_events(self):
        engine = Engine(http=httpx.AsyncClient(transport=httpx.MockTransport(no_network)))
        engine.add_integration("incident", Incident(), {})
        with pytest.raises(ConfigurationError):
            await engine.setup_node("on-incident", "incident", "incident.onIncident", {"events": []})

    @pytest.mark.asyncio
    async def test_registration_has_no_remote_metadata(self):
        engine = await make_engine()
        hook = engine.webhooks.find_by_node("on-incident")
        assert hook["provisioned"] is True
        assert hook["metadata"] == {}

    @pytest.mark.asyncio
    async def test_set_secret_action(self):
        engine = await make_engine()

        result = await set_secret(engine, "  " + SECRET + "  ")

        assert result == {"ok": True, "signingSecretConfigured": True}
        hook = engine.webhooks.find_by_node("on-incident")
        assert engine.webhooks.get_secret(hook["id"]) == SECRET.encode()

    @pytest.mark.asyncio
    async def test_empty_secret_clears(self):
        engine = await make_engine()
        await set_secret(engine)
        result = await set_secret(engine, "")
        assert result["signingSecretConfigured"] is False

    @pytest.mark.asyncio
    async def test_unknown_action_raises(self):
        engine = await make_engine()
        with pytest.raises(IntegrationError):
            await engine.run_trigger_action("on-incident", "rotate", {})

    def test_set_secret_is_user_accessible(self):
        [action] = Incident().triggers()[0].actions()
        assert action.name == "setSecret"
        assert action.user_accessible is True


class TestHandler:
    handler = IncidentWebhookHandler()

    def test_compare_accepts_subsets_either_way(self):
        assert self.handler.compare_config({"events": [CREATED, UPDATED]}, {"events": [CREATED]})
        assert self.handler.compare_config({"events": [CREATED]}, {"events": [CREATED, UPDATED]})
        assert not self.handler.compare_config({"events": [CREATED]}, {"events": [UPDATED]})

    def test_merge_keeps_the_larger_set(self):
        merged, changed = self.handler.merge({"events": [CREATED]}, {"events": [CREATED, UPDATED]})
        assert merged["events"] == sorted([CREATED, UPDATED])
        assert changed is True

        merged, changed = self.handler.merge({"events": [CREATED, UPDATED]}, {"events": [CREATED]})
        assert merged["events"] == sorted([CREATED, UPDATED])
        assert changed is False

    @pytest.mark.asyncio
    async def test_nodes_with_nested_event_sets_share_a_registration(self):
        engine = await make_engine(events=(CREATED,))
        await engine.setup_node("second", "incident", "incident.onIncident", {"events": [CREATED, UPDATED]})

        [hook] = engine.webhooks.list_hooks()
        assert hook["references"] == ["on-incident", "second"]
        assert sorted(hook["configuration"]["events"]) == sorted([CREATED, UPDATED])


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


class TestOnIncident:
    @pytest.mark.asyncio
    async def test_without_secret_is_403(self):
        engine = await make_engine()
        body = payload()
        response = await deliver(engine, body, signed_headers(body))
        assert response.status_code == 403
        assert "setSecret" in response.error

    @pytest.mark.asyncio
    async def test_valid_delivery_emits(self):
        engine = await make_engine()
        await set_secret(engine)
        body = payload()

        response = await deliver(engine, body, signed_headers(body))

        assert response.is_ok
        [event] = engine.events.events_for("on-incident")
        assert event["type"] == "incident.incident.created"
        assert event["data"]["event_type"] == CREATED
        assert event["data"]["incident"]["name"] == "Database latency"

    @pytest.mark.asyncio
    async def test_svix_header_names_are_accepted(self):
        engine = await make_engine()
        await set_secret(engine)
        body = payload(UPDATED)

        response = await deliver(engine, body, signed_headers(body, prefix="svix"))

        assert response.is_ok
        assert engine.events.events_for("on-incident")[0]["type"] == "incident.incident.updated"

    @pytest.mark.asyncio
    async def test_incident_under_data_envelope(self):
        engine = await make_engine()
        await set_secret(engine)
        body = json.dumps({"data": {"event_type": CREATED, "incident": {"id": "01HY"}}}).encode()

        await deliver(engine, body, signed_headers(body))

        assert engine.events.events_for("on-incident")[0]["data"]["incident"] == {"id": "01HY"}

    @pytest.mark.asyncio
    async def test_bad_signature_is_403(self):
        engine = await make_engine()
        await set_secret(engine)
        body = payload()
        headers = signed_headers(body, secret="whsec_" + base64.b64encode(b"other").decode())

        response = await deliver(engine, body, headers)

        assert response.status_code == 403
        assert engine.events.events_for("on-incident") == []

    @pytest.mark.asyncio
    async def test_stale_delivery_is_403(self):
        engine = await make_engine()
        await set_secret(engine)
        body = payload()

        response = await deliver(engine, body, signed_headers(body, timestamp=int(time.time()) - 3600))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_event_type_is_400(self):
        engine = await make_engine()
        await set_secret(engine)
        body = json.dumps({"incident": {}}).encode()

        response = await deliver(engine, body, signed_headers(body))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unselected_event_is_acknowledged(self):
        engine = await make_engine(events=(CREATED,))
        await set_secret(engine)
        body = payload(UPDATED)

        response = await deliver(engine, body, signed_headers(body))

        assert response.status_code == 200
        assert engine.events.events_for("on-incident") == []
