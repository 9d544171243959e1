"""Trigger on incident.io incident created/updated events.

The user creates the endpoint in incident.io, pastes its signing secret into
the ``setSecret`` action, and deliveries are verified Svix-style.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from opsconnect.core.base import (
    Action,
    ConfigurationError,
    IntegrationError,
    Trigger,
    WebhookResponse,
    decode_configuration,
)
from opsconnect.core.contexts import (
    TriggerActionContext,
    TriggerContext,
    WebhookRequestContext,
)
from opsconnect.webhooks.signatures import SignatureError, SvixVerifier

logger = logging.getLogger(__name__)

EVENT_INCIDENT_CREATED = "public_incident.incident_created_v2"
EVENT_INCIDENT_UPDATED = "public_incident.incident_updated_v2"
DEFAULT_EVENTS = [EVENT_INCIDENT_CREATED, EVENT_INCIDENT_UPDATED]

EVENT_NAMES = {
    EVENT_INCIDENT_CREATED: "incident.created",
    EVENT_INCIDENT_UPDATED: "incident.updated",
}

SET_SECRET_ACTION = "setSecret"
SECRET_PARAMETER = "webhookSigningSecret"

webhook_verifier = SvixVerifier()
# Older endpoints sign with the svix-* header names.
svix_verifier = SvixVerifier(
    id_header="svix-id",
    timestamp_header="svix-timestamp",
    signature_header="svix-signature",
)


class OnIncidentConfiguration(BaseModel):
    events: List[str] = Field(default_factory=list)


class OnIncident(Trigger):
    name = "incident.onIncident"

    async def setup(self, ctx: TriggerContext) -> None:
        config = decode_configuration(OnIncidentConfiguration, ctx.configuration)
        if not config.events:
            raise ConfigurationError("at least one event type must be chosen")
        await ctx.request_webhook({"events": config.events})

    def actions(self) -> List[Action]:
        return [Action(SET_SECRET_ACTION, user_accessible=True)]

    async def handle_action(self, ctx: TriggerActionContext) -> Dict[str, Any]:
        if ctx.name != SET_SECRET_ACTION:
            return await super().handle_action(ctx)
        if ctx.webhook is None:
            raise IntegrationError("webhook is not available")

        value = ctx.parameters.get(SECRET_PARAMETER)
        secret = value.strip() if isinstance(value, str) else ""
        ctx.webhook.set_secret(secret.encode("utf-8"))
        logger.info("Signing secret %s for webhook %s", "set" if secret else "cleared", ctx.webhook.id)
        return {"ok": True, "signingSecretConfigured": bool(secret)}

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        config = decode_configuration(OnIncidentConfiguration, ctx.configuration)

        secret = ctx.webhook.get_secret()
        if not secret or not secret.strip():
            return WebhookResponse.failure(
                403,
                "signing secret is required for webhook verification; "
                "use the setSecret action for this trigger",
            )

        verifier = webhook_verifier
        if not ctx.header("webhook-id") and ctx.header("svix-id"):
            verifier = svix_verifier
        try:
            verifier.verify(ctx.headers, ctx.body, secret)
        except SignatureError as exc:
            return WebhookResponse.failure(exc.status_code, f"invalid signature: {exc}")

        try:
            payload = json.loads(ctx.body)
        except ValueError as exc:
            return WebhookResponse.failure(400, f"error parsing request body: {exc}")
        if not isinstance(payload, dict):
            return WebhookResponse.failure(400, "request body must be a JSON object")

        source = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        event_type = source.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            return WebhookResponse.failure(400, "missing event_type in payload")

        accepted = config.events or DEFAULT_EVENTS
        if event_type not in accepted:
            logger.info("Ignoring incident.io event %s", event_type)
            return WebhookResponse.ok()

        incident = source.get("incident")
        if not isinstance(incident, dict):
            incident = source.get(event_type) if isinstance(source.get(event_type), dict) else None

        ctx.events.emit(
            f"incident.{EVENT_NAMES.get(event_type, event_type)}",
            {"event_type": event_type, "incident": incident},
        )
        return WebhookResponse.ok()
