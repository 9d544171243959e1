"""Deploy a release to an environment and wait for the deployment task."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, field_validator

from opsconnect import config
from opsconnect.completion import (
    POLL_ACTION,
    CompletionCoordinator,
    CompletionEvent,
    PendingOperation,
    RemoteOperation,
    RemoteStatus,
    StartedOperation,
)
from opsconnect.core.base import (
    Action,
    Component,
    ConfigurationError,
    OutputChannel,
    WebhookResponse,
    decode_configuration,
)
from opsconnect.core.contexts import (
    ActionContext,
    ExecutionContext,
    IntegrationInstance,
    SetupContext,
    WebhookRequestContext,
)
from opsconnect.integrations.octopus.client import Client, space_id_for
from opsconnect.integrations.octopus.common import (
    DEFAULT_EVENT_CATEGORIES,
    EVENT_DEPLOYMENT_SUCCEEDED,
    TASK_FAILED,
    TASK_QUEUED,
    TASK_SUCCESS,
    is_task_completed,
    read_event,
    related_document_ids,
    webhook_verifier,
)

PAYLOAD_TYPE = "octopus.deployment.finished"
SUCCESS_CHANNEL = "success"
FAILED_CHANNEL = "failed"
EXECUTION_KEY = "deployment_id"


class DeployReleaseConfiguration(BaseModel):
    project: str = ""
    release: str = ""
    environment: str = ""

    @field_validator("project", "release", "environment", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    def validate_required(self) -> "DeployReleaseConfiguration":
        for name in ("project", "release", "environment"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} is required")
        return self


def decode(configuration: Dict[str, Any]) -> DeployReleaseConfiguration:
    return decode_configuration(DeployReleaseConfiguration, configuration).validate_required()


class DeploymentOperation(RemoteOperation):
    """An Octopus deployment, tracked through its server task."""

    correlation_key = EXECUTION_KEY
    initial_state = TASK_QUEUED

    async def start(self, ctx: ExecutionContext) -> StartedOperation:
        cfg = decode(ctx.configuration)
        client = Client.for_integration(ctx.http, ctx.integration)
        space_id = await space_id_for(client, ctx.integration)

        deployment = await client.create_deployment(space_id, cfg.release, cfg.environment)
        return StartedOperation(
            remote_task_id=deployment.get("TaskId", ""),
            correlation_value=deployment.get("Id", ""),
            details={
                "deploymentId": deployment.get("Id", ""),
                "spaceId": space_id,
                "projectId": deployment.get("ProjectId", ""),
                "releaseId": deployment.get("ReleaseId", ""),
                "environmentId": deployment.get("EnvironmentId", ""),
                "created": deployment.get("Created", ""),
            },
        )

    async def fetch(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> RemoteStatus:
        client = Client.for_integration(http, integration)
        task = await client.get_task(op.remote_task_id)
        details = {
            key: task[field]
            for key, field in (("errorMessage", "ErrorMessage"), ("duration", "Duration"))
            if task.get(field)
        }
        return RemoteStatus(
            state=task.get("State", ""),
            completed_at=task.get("CompletedTime") or None,
            details=details,
        )

    async def cancel(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> None:
        client = Client.for_integration(http, integration)
        space_id = op.details.get("spaceId") or await space_id_for(client, integration)
        await client.cancel_task(space_id, op.remote_task_id)

    def is_terminal(self, state: str) -> bool:
        return is_task_completed(state)

    def output_channel(self, state: str) -> str:
        return SUCCESS_CHANNEL if state == TASK_SUCCESS else FAILED_CHANNEL

    def parse_event(self, payload: Dict[str, Any]) -> Optional[CompletionEvent]:
        event = read_event(payload)
        category = event.get("Category", "")
        if category not in DEFAULT_EVENT_CATEGORIES:
            return None

        candidates = related_document_ids(event).get("Deployments", [])
        if not candidates:
            return None

        timestamp = payload.get("Timestamp")
        return CompletionEvent(
            category=category,
            candidate_ids=candidates,
            state=TASK_SUCCESS if category == EVENT_DEPLOYMENT_SUCCEEDED else TASK_FAILED,
            completed_at=timestamp if isinstance(timestamp, str) and timestamp else None,
        )

    def build_payload(self, op: PendingOperation, status: RemoteStatus) -> Dict[str, Any]:
        payload = {
            "deploymentId": op.details.get("deploymentId", op.correlation_value),
            "taskState": status.state,
            "projectId": op.details.get("projectId", ""),
            "releaseId": op.details.get("releaseId", ""),
            "environmentId": op.details.get("environmentId", ""),
            "created": op.details.get("created", ""),
        }
        if op.completed_at:
            payload["completedTime"] = op.completed_at
        for key in ("errorMessage", "duration"):
            if status.details.get(key):
                payload[key] = status.details[key]
        return payload


class DeployRelease(Component):
    name = "octopus.deployRelease"

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.coordinator = CompletionCoordinator(
            DeploymentOperation(),
            poll_interval=config.OCTOPUS_POLL_INTERVAL if poll_interval is None else poll_interval,
            timeout=config.OCTOPUS_DEPLOY_TIMEOUT if timeout is None else timeout,
            payload_type=PAYLOAD_TYPE,
            verifier=webhook_verifier,
            clock=clock,
        )

    def output_channels(self, configuration: Dict[str, Any]) -> List[OutputChannel]:
        return [
            OutputChannel(SUCCESS_CHANNEL, "Success"),
            OutputChannel(FAILED_CHANNEL, "Failed"),
        ]

    async def setup(self, ctx: SetupContext) -> None:
        decode(ctx.configuration)
        await ctx.request_webhook({"events": list(DEFAULT_EVENT_CATEGORIES)})

    async def execute(self, ctx: ExecutionContext) -> None:
        await self.coordinator.kickoff(ctx)

    def actions(self) -> List[Action]:
        return [Action(POLL_ACTION)]

    async def handle_action(self, ctx: ActionContext) -> None:
        if ctx.name == POLL_ACTION:
            await self.coordinator.poll(ctx)
            return
        await super().handle_action(ctx)

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        return await self.coordinator.handle_webhook(ctx)

    async def cancel(self, ctx: ExecutionContext) -> None:
        await self.coordinator.cancel(ctx)
