"""incident.io: incident lifecycle triggers."""

from typing import List

from opsconnect.core.base import Component, Integration, Trigger, WebhookHandler
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.integrations.incident.on_incident import OnIncident
from opsconnect.integrations.incident.webhook_handler import IncidentWebhookHandler


@IntegrationRegistry.register_global
class Incident(Integration):
    name = "incident"

    def __init__(self) -> None:
        self._triggers: List[Trigger] = [OnIncident()]
        self._handler = IncidentWebhookHandler()

    def components(self) -> List[Component]:
        return []

    def triggers(self) -> List[Trigger]:
        return self._triggers

    def webhook_handler(self) -> WebhookHandler:
        return self._handler


__all__ = ["Incident", "IncidentWebhookHandler", "OnIncident"]
