"""Trigger on Octopus deployment lifecycle events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsconnect.core.base import Trigger, WebhookResponse, decode_configuration
from opsconnect.core.contexts import TriggerContext, WebhookRequestContext
from opsconnect.integrations.octopus.common import (
    DEFAULT_EVENT_CATEGORIES,
    DEPLOYMENT_EVENT_CATEGORIES,
    payload_type,
    read_event,
    related_document_ids,
    webhook_verifier,
)
from opsconnect.webhooks.signatures import SignatureError

logger = logging.getLogger(__name__)


class OnDeploymentEventConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_categories: List[str] = Field(default_factory=list, alias="eventCategories")
    project: str = ""
    environment: str = ""

    @field_validator("project", "environment", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    def selected_categories(self) -> List[str]:
        selected: List[str] = []
        for category in self.event_categories:
            if category in DEPLOYMENT_EVENT_CATEGORIES and category not in selected:
                selected.append(category)
        return selected or list(DEFAULT_EVENT_CATEGORIES)


def build_event_data(payload: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
    category = event.get("Category", "")
    data: Dict[str, Any] = {
        "eventType": category,
        "category": category,
        "timestamp": payload.get("Timestamp", ""),
    }
    for key, field in (("message", "Message"), ("occurredAt", "Occurred")):
        if event.get(field):
            data[key] = event[field]

    related = related_document_ids(event)
    for key, prefix in (
        ("projectId", "Projects"),
        ("environmentId", "Environments"),
        ("releaseId", "Releases"),
        ("deploymentId", "Deployments"),
    ):
        if related.get(prefix):
            data[key] = related[prefix][0]

    server_uri = (payload.get("Payload") or {}).get("ServerUri")
    if server_uri:
        data["serverUri"] = server_uri
    return data


class OnDeploymentEvent(Trigger):
    name = "octopus.onDeploymentEvent"

    async def setup(self, ctx: TriggerContext) -> None:
        config = decode_configuration(OnDeploymentEventConfiguration, ctx.configuration)
        filters: Dict[str, List[str]] = {}
        if config.project:
            filters["projects"] = [config.project]
        if config.environment:
            filters["environments"] = [config.environment]
        await ctx.request_webhook({"events": config.selected_categories(), "filters": filters})

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        try:
            webhook_verifier.verify(ctx.headers, ctx.body, ctx.webhook.get_secret())
        except SignatureError as exc:
            return WebhookResponse.failure(exc.status_code, str(exc))

        if not ctx.is_json():
            return WebhookResponse.ok()

        try:
            payload = json.loads(ctx.body)
        except ValueError as exc:
            return WebhookResponse.failure(400, f"error parsing request body: {exc}")
        if not isinstance(payload, dict):
            return WebhookResponse.failure(400, "request body must be a JSON object")

        config = decode_configuration(OnDeploymentEventConfiguration, ctx.configuration)
        event = read_event(payload)
        category = event.get("Category", "")
        if category not in config.selected_categories():
            return WebhookResponse.ok()

        related = related_document_ids(event)
        if config.project and config.project not in related.get("Projects", []):
            return WebhookResponse.ok()
        if config.environment and config.environment not in related.get("Environments", []):
            return WebhookResponse.ok()

        ctx.events.emit(payload_type(category), build_event_data(payload, event))
        return WebhookResponse.ok()
