"""
Host glue: wires integrations, nodes, executions, scheduled actions and
inbound webhooks together.

A *node* is one configured block (component or trigger) of one connected
integration. The engine owns the in-memory stores and hands integrations
the context objects they expect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from opsconnect import config
from opsconnect.core.base import (
    Component,
    ConfigurationError,
    Integration,
    IntegrationError,
    Trigger,
    WebhookResponse,
)
from opsconnect.core.contexts import (
    ActionContext,
    ExecutionContext,
    IntegrationInstance,
    SetupContext,
    TriggerActionContext,
    TriggerContext,
    WebhookRequestContext,
)
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.core.store import (
    ActionRequests,
    ActionScheduler,
    EventLog,
    Execution,
    ExecutionStore,
    NodeEvents,
)
from opsconnect.webhooks.provisioner import WebhookProvisioner
from opsconnect.webhooks.registry import WebhookRegistry

logger = logging.getLogger(__name__)

KICKOFF_FAILURE_REASON = "error"
CANCELLED_REASON = "cancelled"


@dataclass
class Node:
    id: str
    integration_id: str
    block_name: str
    configuration: Dict[str, Any] = field(default_factory=dict)
    # Trigger state that outlives a single delivery
    metadata: Dict[str, Any] = field(default_factory=dict)


class Engine:
    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        webhooks: Optional[WebhookRegistry] = None,
    ) -> None:
        self.http = http or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT)
        self.webhooks = webhooks or WebhookRegistry()
        self.provisioner = WebhookProvisioner(self.webhooks, self.http)
        self.executions = ExecutionStore()
        self.scheduler = ActionScheduler()
        self.events = EventLog()
        self._instances: Dict[str, IntegrationInstance] = {}
        self._nodes: Dict[str, Node] = {}

    # -- Integrations and nodes -------------------------------------------

    def add_integration(
        self,
        instance_id: str,
        integration: Union[Integration, str],
        configuration: Optional[Dict[str, Any]] = None,
    ) -> IntegrationInstance:
        """Connect a vendor account. *integration* may be a registered name."""
        if isinstance(integration, str):
            integration = IntegrationRegistry.get_global(integration)()
        instance = IntegrationInstance(instance_id, integration, dict(configuration or {}))
        self._instances[instance_id] = instance
        logger.info("Added %s integration %s", integration.name, instance_id)
        return instance

    def get_integration(self, instance_id: str) -> IntegrationInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise ConfigurationError(f"unknown integration instance '{instance_id}'")
        return instance

    def get_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise ConfigurationError(f"unknown node '{node_id}'")
        return node

    def list_nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def _block(self, node: Node) -> Union[Component, Trigger]:
        return self.get_integration(node.integration_id).integration.block(node.block_name)

    async def setup_node(
        self,
        node_id: str,
        integration_id: str,
        block_name: str,
        configuration: Optional[Dict[str, Any]] = None,
    ) -> Node:
        """Validate a block's configuration and provision any webhook it requests.

        Configuration errors remove the node again, along with any webhook
        reference it took. Vendor failures while provisioning leave the node
        in place so :meth:`provision_pending` can retry.
        """
        instance = self.get_integration(integration_id)
        block = instance.integration.block(block_name)
        node = Node(node_id, integration_id, block_name, dict(configuration or {}))
        previous = self._nodes.get(node_id)
        if previous is not None:
            node.metadata = previous.metadata
        self._nodes[node_id] = node

        async def request_webhook(webhook_config: Dict[str, Any]) -> None:
            await self.provisioner.request(instance, node_id, webhook_config)

        ctx_cls = TriggerContext if isinstance(block, Trigger) else SetupContext
        try:
            await block.setup(ctx_cls(node.configuration, instance, self.http, request_webhook))
        except ConfigurationError:
            self._nodes.pop(node_id, None)
            await self.provisioner.release(instance, node_id)
            raise
        logger.info("Set up node %s (%s)", node_id, block_name)
        return node

    async def remove_node(self, node_id: str) -> None:
        node = self._nodes.pop(node_id, None)
        if node is None:
            return
        await self.provisioner.release(self.get_integration(node.integration_id), node_id)
        logger.info("Removed node %s", node_id)

    async def provision_pending(self) -> int:
        return await self.provisioner.provision_pending(list(self._instances.values()))

    # -- Executions -------------------------------------------------------

    def _component(self, node: Node) -> Component:
        block = self._block(node)
        if not isinstance(block, Component):
            raise ConfigurationError(f"node '{node.id}' is not a component")
        return block

    def _execution_context(self, execution: Execution, node: Node) -> ExecutionContext:
        return ExecutionContext(
            execution=execution,
            configuration=node.configuration,
            integration=self.get_integration(node.integration_id),
            http=self.http,
            requests=ActionRequests(self.scheduler, execution.id),
        )

    def _execution(self, execution_id: str) -> Execution:
        execution = self.executions.get(execution_id)
        if execution is None:
            raise IntegrationError(f"unknown execution '{execution_id}'")
        return execution

    async def execute(self, node_id: str, input_data: Optional[Dict[str, Any]] = None) -> Execution:
        """Run a component. Kickoff failures fail the execution immediately."""
        node = self.get_node(node_id)
        component = self._component(node)
        execution = self.executions.create(node_id, input_data)
        try:
            await component.execute(self._execution_context(execution, node))
        except (IntegrationError, httpx.HTTPError) as exc:
            logger.warning("Execution %s failed to start: %s", execution.id, exc)
            execution.fail(KICKOFF_FAILURE_REASON, str(exc))
        return execution

    async def run_action(
        self,
        execution_id: str,
        name: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        execution = self._execution(execution_id)
        node = self.get_node(execution.node_id)
        base = self._execution_context(execution, node)
        ctx = ActionContext(
            execution=base.execution,
            configuration=base.configuration,
            integration=base.integration,
            http=base.http,
            requests=base.requests,
            name=name,
            parameters=dict(parameters or {}),
        )
        await self._component(node).handle_action(ctx)

    async def run_due_actions(self, now: Optional[float] = None) -> int:
        """Run every scheduled action call that is due. Returns how many ran."""
        ran = 0
        for call in self.scheduler.pop_due(now):
            try:
                await self.run_action(call.execution_id, call.name, call.parameters)
            except (IntegrationError, httpx.HTTPError) as exc:
                logger.error("Action '%s' for execution %s failed: %s", call.name, call.execution_id, exc)
                continue
            except Exception:
                logger.exception("Action '%s' for execution %s crashed", call.name, call.execution_id)
                continue
            ran += 1
        return ran

    async def cancel(self, execution_id: str) -> None:
        """Cancel an execution. Remote cancellation is best-effort."""
        execution = self._execution(execution_id)
        if execution.is_finished():
            return
        node = self.get_node(execution.node_id)
        await self._component(node).cancel(self._execution_context(execution, node))
        if not execution.is_finished():
            execution.fail(CANCELLED_REASON, "execution cancelled")

    # -- Triggers ---------------------------------------------------------

    async def run_trigger_action(
        self,
        node_id: str,
        name: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        node = self.get_node(node_id)
        trigger = self._block(node)
        if not isinstance(trigger, Trigger):
            raise ConfigurationError(f"node '{node_id}' is not a trigger")

        hook = self.webhooks.find_by_node(node_id)
        ctx = TriggerActionContext(
            name=name,
            parameters=dict(parameters or {}),
            configuration=node.configuration,
            integration=self.get_integration(node.integration_id),
            webhook=self.webhooks.handle(hook["id"]) if hook else None,
        )
        return await trigger.handle_action(ctx)

    # -- Inbound webhooks -------------------------------------------------

    def _finder(self, node_id: str):
        def find(key: str, value: str) -> Optional[Execution]:
            execution = self.executions.find_by_kv(key, value)
            if execution is None or execution.node_id != node_id:
                return None
            return execution

        return find

    async def handle_webhook(
        self, webhook_id: str, headers: Mapping[str, str], body: bytes
    ) -> WebhookResponse:
        """Deliver one request to every node sharing the registration.

        Returns the first non-200 response, otherwise 200.
        """
        hook = self.webhooks.get(webhook_id)
        if hook is None:
            return WebhookResponse.failure(404, "webhook not found")

        instance = self._instances.get(hook["integration_id"])
        if instance is None:
            return WebhookResponse.failure(404, "webhook not found")

        handle = self.webhooks.handle(webhook_id)
        first_error: Optional[WebhookResponse] = None
        for node_id in hook["references"]:
            node = self._nodes.get(node_id)
            if node is None:
                continue

            ctx = WebhookRequestContext(
                headers=headers,
                body=body,
                configuration=node.configuration,
                webhook=handle,
                integration=instance,
                http=self.http,
                find_execution_by_kv=self._finder(node_id),
                events=NodeEvents(self.events, node_id),
                metadata=node.metadata,
            )
            try:
                response = await self._block(node).handle_webhook(ctx)
            except Exception:
                logger.exception("Webhook %s failed for node %s", webhook_id, node_id)
                response = WebhookResponse.failure(500, "internal error")

            if not response.is_ok:
                logger.info(
                    "Webhook %s rejected by node %s: %d %s",
                    webhook_id, node_id, response.status_code, response.error,
                )
                if first_error is None:
                    first_error = response

        return first_error or WebhookResponse.ok()

    async def aclose(self) -> None:
        await self.http.aclose()

    def reset(self) -> None:
        self.webhooks.reset()
        self.executions.reset()
        self.scheduler.reset()
        self.events.reset()
        self._instances.clear()
        self._nodes.clear()
