"""Octopus Deploy: release deployments and deployment event triggers."""

import time
from typing import Callable, List, Optional

from opsconnect.core.base import Component, Integration, Trigger, WebhookHandler
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.integrations.octopus.deploy_release import DeployRelease
from opsconnect.integrations.octopus.on_deployment_event import OnDeploymentEvent
from opsconnect.integrations.octopus.webhook_handler import OctopusWebhookHandler


@IntegrationRegistry.register_global
class Octopus(Integration):
    name = "octopus"

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._components: List[Component] = [
            DeployRelease(poll_interval=poll_interval, timeout=timeout, clock=clock),
        ]
        self._triggers: List[Trigger] = [OnDeploymentEvent()]
        self._handler = OctopusWebhookHandler()

    def components(self) -> List[Component]:
        return self._components

    def triggers(self) -> List[Trigger]:
        return self._triggers

    def webhook_handler(self) -> WebhookHandler:
        return self._handler


__all__ = ["DeployRelease", "OnDeploymentEvent", "Octopus", "OctopusWebhookHandler"]
