"""Trigger on incident timeline events (notes, status changes) from Rootly."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconnect.core.base import Trigger, WebhookResponse, decode_configuration
from opsconnect.core.contexts import TriggerContext, WebhookRequestContext
from opsconnect.webhooks.signatures import SignatureError, TimestampedHMACVerifier

SIGNATURE_HEADER = "X-Rootly-Signature"
EVENT_TYPES = ["incident_event.created", "incident_event.updated"]
PAYLOAD_FIELDS = (
    "id",
    "event",
    "kind",
    "visibility",
    "occurred_at",
    "created_at",
    "user_display_name",
    "event_source",
    "incident",
)

verifier = TimestampedHMACVerifier(SIGNATURE_HEADER)


class OnEventConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    incident_status: List[str] = Field(default_factory=list, alias="incidentStatus")
    severity: List[str] = Field(default_factory=list)
    service: List[str] = Field(default_factory=list)
    team: List[str] = Field(default_factory=list)
    event_source: Optional[str] = Field(default=None, alias="eventSource")
    visibility: List[str] = Field(default_factory=list)
    event_kind: List[str] = Field(default_factory=list, alias="eventKind")


def _severity(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("slug") or value.get("name") or ""
    return value if isinstance(value, str) else ""


def _any_ref(items: Any, wanted: List[str]) -> bool:
    if not isinstance(items, list):
        return False
    for item in items:
        if not isinstance(item, dict):
            continue
        if any(item.get(k) in wanted for k in ("name", "slug", "id")):
            return True
    return False


def matches_filters(data: Dict[str, Any], config: OnEventConfiguration) -> bool:
    if config.visibility and data.get("visibility") not in config.visibility:
        return False
    if config.event_kind and data.get("kind") not in config.event_kind:
        return False
    if config.event_source is not None and data.get("event_source") != config.event_source:
        return False

    incident = data.get("incident")
    if not isinstance(incident, dict):
        return True

    if config.incident_status and incident.get("status") not in config.incident_status:
        return False
    if config.severity and _severity(incident.get("severity")) not in config.severity:
        return False
    if config.service and not _any_ref(incident.get("services"), config.service):
        return False
    if config.team and not _any_ref(incident.get("groups"), config.team):
        return False
    return True


class OnEvent(Trigger):
    name = "rootly.onEvent"

    async def setup(self, ctx: TriggerContext) -> None:
        decode_configuration(OnEventConfiguration, ctx.configuration)
        await ctx.request_webhook({"events": list(EVENT_TYPES)})

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        config = decode_configuration(OnEventConfiguration, ctx.configuration)

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

        event_type = (webhook.get("event") or {}).get("type", "")
        if event_type not in EVENT_TYPES:
            return WebhookResponse.ok()

        data = webhook.get("data") or {}
        if not matches_filters(data, config):
            return WebhookResponse.ok()

        payload = {k: data[k] for k in PAYLOAD_FIELDS if k in data}
        ctx.events.emit(f"rootly.{event_type}", payload)
        return WebhookResponse.ok()
