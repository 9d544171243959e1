"""Multiplexes logical webhook requests onto shared remote subscriptions.

Most vendors cap the number of webhook endpoints per account, so every node
of one integration that asks for a webhook is served by as few remote
subscriptions as the integration's handler allows:

1. Look for an existing registration whose configuration the handler's
   ``compare_config`` accepts.
2. Merge the request into it; re-run the handler's ``setup`` only when the
   merge widened the configuration.
3. Otherwise create a new registration and run ``setup``.

A failed ``setup`` leaves the registration unprovisioned with no metadata.
Handlers recover on retry by looking the remote object up by a name derived
from the registration id.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from opsconnect.core.base import ConfigurationError
from opsconnect.core.contexts import IntegrationInstance, WebhookHandlerContext
from opsconnect.webhooks.registry import WebhookRegistry

logger = logging.getLogger(__name__)


class WebhookProvisioner:
    def __init__(self, registry: WebhookRegistry, http: httpx.AsyncClient) -> None:
        self.registry = registry
        self.http = http

    async def request(
        self,
        instance: IntegrationInstance,
        node_id: str,
        configuration: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Ensure *node_id* is served by a registration covering *configuration*."""
        handler = instance.integration.webhook_handler()
        if handler is None:
            raise ConfigurationError(
                f"integration '{instance.integration.name}' does not support webhooks"
            )

        current = self.registry.find_by_node(node_id)
        if current is not None and current["integration_id"] == instance.id:
            # Re-setup of the same node: release first so the old request
            # does not pin a configuration it no longer needs.
            remaining = self.registry.remove_reference(current["id"], node_id)
            if not remaining:
                await self._cleanup(instance, current["id"])

        for hook in self.registry.list_hooks(instance.id):
            if not handler.compare_config(hook["configuration"], configuration):
                continue

            merged, changed = handler.merge(hook["configuration"], configuration)
            self.registry.add_reference(hook["id"], node_id)
            if changed:
                logger.info("Widening webhook %s for node %s", hook["id"], node_id)
                self.registry.update(hook["id"], configuration=merged)
                await self._provision(instance, hook["id"])
            elif not hook["provisioned"]:
                await self._provision(instance, hook["id"])
            return self.registry.get(hook["id"])

        hook = self.registry.create(instance.id, configuration)
        self.registry.add_reference(hook["id"], node_id)
        logger.info("Created webhook %s for node %s", hook["id"], node_id)
        await self._provision(instance, hook["id"])
        return self.registry.get(hook["id"])

    async def release(self, instance: IntegrationInstance, node_id: str) -> bool:
        """Drop the node's reference; delete the remote subscription if it was the last.

        Returns True if a registration was deleted.
        """
        hook = self.registry.find_by_node(node_id)
        if hook is None:
            return False

        remaining = self.registry.remove_reference(hook["id"], node_id)
        if remaining:
            return False

        await self._cleanup(instance, hook["id"])
        return True

    async def provision_pending(self, instances: List[IntegrationInstance]) -> int:
        """Retry setup for registrations whose previous setup failed.

        Returns how many were provisioned.
        """
        by_id = {i.id: i for i in instances}
        provisioned = 0
        for hook in self.registry.list_hooks():
            if hook["provisioned"] or not hook["references"]:
                continue
            instance = by_id.get(hook["integration_id"])
            if instance is None:
                continue
            try:
                await self._provision(instance, hook["id"])
            except Exception:
                logger.warning("Webhook %s still failing to provision", hook["id"], exc_info=True)
                continue
            provisioned += 1
        return provisioned

    # -- Internal ---------------------------------------------------------

    def _context(self, instance: IntegrationInstance, hook_id: str) -> WebhookHandlerContext:
        return WebhookHandlerContext(
            webhook=self.registry.handle(hook_id),
            integration=instance,
            http=self.http,
        )

    async def _provision(self, instance: IntegrationInstance, hook_id: str) -> None:
        handler = instance.integration.webhook_handler()
        try:
            metadata = await handler.setup(self._context(instance, hook_id))
        except Exception:
            self.registry.update(hook_id, provisioned=False)
            raise
        self.registry.update(hook_id, metadata=metadata or {}, provisioned=True)

    async def _cleanup(self, instance: IntegrationInstance, hook_id: str) -> None:
        handler = instance.integration.webhook_handler()
        await handler.cleanup(self._context(instance, hook_id))
        self.registry.delete(hook_id)
        logger.info("Deleted webhook %s", hook_id)
