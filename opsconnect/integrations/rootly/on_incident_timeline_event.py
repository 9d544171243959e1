"""Trigger on Rootly timeline events, enriched with the incident they belong to.

Unlike ``rootly.onEvent`` this trigger reads the incident from the Rootly
API, so status, severity, service and team filters work even when the
webhook payload carries only an ``incident_id``. Redelivered events whose
timestamps have not moved are dropped using per-node event state.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconnect.core.base import IntegrationError, Trigger, WebhookResponse, decode_configuration
from opsconnect.core.contexts import TriggerContext, WebhookRequestContext
from opsconnect.integrations.rootly.client import Client
from opsconnect.integrations.rootly.on_event import EVENT_TYPES, SIGNATURE_HEADER
from opsconnect.webhooks.signatures import SignatureError, TimestampedHMACVerifier

logger = logging.getLogger(__name__)

PAYLOAD_TYPE = "rootly.onIncidentTimelineEvent"
EVENT_STATES_KEY = "eventStates"

verifier = TimestampedHMACVerifier(SIGNATURE_HEADER)


class TimelineEventConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    incident_status: List[str] = Field(default_factory=list, alias="incidentStatus")
    severity: List[str] = Field(default_factory=list)
    service: List[str] = Field(default_factory=list)
    team: List[str] = Field(default_factory=list)
    event_source: List[str] = Field(default_factory=list, alias="eventSource")
    visibility: str = ""

    @property
    def incident_filters_enabled(self) -> bool:
        return bool(self.incident_status or self.severity or self.service or self.team)


# -----------------------------------------------------------------------
# Payload helpers
# -----------------------------------------------------------------------

def first_string(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _matches(filters: List[str], value: str) -> bool:
    if not filters:
        return True
    return any(f.lower() == value.lower() for f in filters)


def _severity(value: Any) -> str:
    if isinstance(value, dict):
        return first_string(value, "name", "slug")
    return value if isinstance(value, str) else ""


def resource_names(incident: Dict[str, Any], key: str) -> List[str]:
    """Service or team names from a list of resources or a single resource."""
    raw = incident.get(key)
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    names = []
    for item in raw:
        if isinstance(item, dict):
            name = first_string(item, "name", "slug")
            if name:
                names.append(name)
    return names


def _is_timeline_event(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return bool(first_string(data, "event", "kind") or first_string(data, "occurred_at", "created_at"))


def extract_event(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Accept the event at the top of ``data`` or nested under ``incident_event``."""
    nested = data.get("incident_event")
    if _is_timeline_event(nested):
        return nested
    if _is_timeline_event(data):
        return data
    return None


def fingerprint(event: Dict[str, Any]) -> str:
    value = first_string(event, "updated_at") or first_string(event, "created_at")
    return value or first_string(event, "occurred_at") or json.dumps(event, sort_keys=True)


def matches_incident_filters(incident: Dict[str, Any], config: TimelineEventConfiguration) -> bool:
    if config.incident_status and not _matches(
        config.incident_status, first_string(incident, "status", "state")
    ):
        return False
    if config.severity and not _matches(config.severity, _severity(incident.get("severity"))):
        return False
    if config.service and not _any_name(resource_names(incident, "services"), config.service):
        return False
    if config.team and not _any_name(resource_names(incident, "groups"), config.team):
        return False
    return True


def _any_name(names: List[str], filters: List[str]) -> bool:
    wanted = {f.lower() for f in filters}
    return any(name.lower() in wanted for name in names)


def incident_summary(
    incident: Optional[Dict[str, Any]], event: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    incident_id = first_string(incident or {}, "id") or first_string(event, "incident_id", "incidentId")
    if incident is None:
        return {"id": incident_id} if incident_id else None

    summary: Dict[str, Any] = {"id": incident_id}
    optional = {
        "title": first_string(incident, "title"),
        "status": first_string(incident, "status", "state"),
        "severity": _severity(incident.get("severity")),
        "services": resource_names(incident, "services"),
        "teams": resource_names(incident, "groups"),
    }
    summary.update({k: v for k, v in optional.items() if v})
    return summary


def build_payload(
    incident: Optional[Dict[str, Any]], event: Dict[str, Any], webhook_event: Dict[str, Any]
) -> Dict[str, Any]:
    payload = {
        key: first_string(event, key)
        for key in (
            "id", "event", "event_raw", "kind", "source", "visibility",
            "occurred_at", "created_at", "updated_at",
        )
    }
    payload.update({
        "incident_id": first_string(event, "incident_id", "incidentId"),
        "event_id": webhook_event.get("id", ""),
        "event_type": webhook_event.get("type", ""),
        "issued_at": webhook_event.get("issued_at", ""),
        "incident": incident_summary(incident, event),
    })
    return payload


# -----------------------------------------------------------------------
# Trigger
# -----------------------------------------------------------------------

class OnIncidentTimelineEvent(Trigger):
    name = "rootly.onIncidentTimelineEvent"

    async def setup(self, ctx: TriggerContext) -> None:
        decode_configuration(TimelineEventConfiguration, ctx.configuration)
        await ctx.request_webhook({"events": list(EVENT_TYPES)})

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        config = decode_configuration(TimelineEventConfiguration, ctx.configuration)

        try:
            verifier.verify(ctx.headers, ctx.body, ctx.webhook.get_secret())
        except SignatureError as exc:
            return WebhookResponse.failure(exc.status_code, f"invalid signature: {exc}")

        try:
            webhook = json.loads(ctx.body)
        except ValueError as exc:
            return WebhookResponse.failure(400, f"error parsing request body: {exc}")
        if not isinstance(webhook, dict):
            return WebhookResponse.failure(400, "request body must be a JSON object")

        webhook_event = webhook.get("event") or {}
        if webhook_event.get("type", "") not in EVENT_TYPES:
            return WebhookResponse.ok()

        event = extract_event(webhook.get("data") or {})
        if event is None:
            return WebhookResponse.ok()

        if not _matches(config.event_source, first_string(event, "source")):
            return WebhookResponse.ok()
        if config.visibility and config.visibility.lower() != first_string(event, "visibility").lower():
            return WebhookResponse.ok()
        # trail/start/close entries are not timeline events
        if first_string(event, "kind").lower() != "event":
            return WebhookResponse.ok()

        incident_id = first_string(event, "incident_id", "incidentId")
        incident: Optional[Dict[str, Any]] = None
        if incident_id:
            client = Client.for_integration(ctx.http, ctx.integration)
            try:
                incident = await client.get_incident(incident_id)
            except IntegrationError as exc:
                logger.warning("Fetching Rootly incident %s failed: %s", incident_id, exc)
                return WebhookResponse.failure(500, f"error fetching incident: {exc}")

        if config.incident_filters_enabled:
            if incident is None or not matches_incident_filters(incident, config):
                return WebhookResponse.ok()

        states: Dict[str, str] = dict(ctx.metadata.get(EVENT_STATES_KEY) or {})
        event_id = first_string(event, "id")
        current = fingerprint(event)
        if event_id and states.get(event_id) == current:
            return WebhookResponse.ok()

        ctx.events.emit(PAYLOAD_TYPE, build_payload(incident, event, webhook_event))
        if event_id:
            states[event_id] = current
            ctx.metadata[EVENT_STATES_KEY] = states
        return WebhookResponse.ok()
