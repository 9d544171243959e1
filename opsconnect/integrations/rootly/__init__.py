"""Rootly: incident timeline event triggers."""

from typing import List

from opsconnect.core.base import Component, Integration, Trigger, WebhookHandler
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.integrations.rootly.on_event import OnEvent
from opsconnect.integrations.rootly.on_incident_timeline_event import OnIncidentTimelineEvent
from opsconnect.integrations.rootly.webhook_handler import RootlyWebhookHandler


@IntegrationRegistry.register_global
class Rootly(Integration):
    name = "rootly"

    def __init__(self) -> None:
        self._triggers: List[Trigger] = [OnEvent(), OnIncidentTimelineEvent()]
        self._handler = RootlyWebhookHandler()

    def components(self) -> List[Component]:
        return []

    def triggers(self) -> List[Trigger]:
        return self._triggers

    def webhook_handler(self) -> WebhookHandler:
        return self._handler


__all__ = ["OnEvent", "OnIncidentTimelineEvent", "Rootly", "RootlyWebhookHandler"]
