"""Run a code snippet in a Daytona sandbox and report its exit code and output."""

from __future__ import annotations

import logging
import shlex
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, field_validator

from opsconnect import config
from opsconnect.completion import (
    POLL_ACTION,
    CompletionCoordinator,
    PendingOperation,
    RemoteOperation,
    RemoteStatus,
    StartedOperation,
)
from opsconnect.core.base import (
    DEFAULT_OUTPUT_CHANNEL,
    Action,
    APIError,
    Component,
    ConfigurationError,
    decode_configuration,
)
from opsconnect.core.contexts import (
    ActionContext,
    ExecutionContext,
    IntegrationInstance,
    SetupContext,
)
from opsconnect.integrations.daytona.client import Client, find_command

logger = logging.getLogger(__name__)

PAYLOAD_TYPE = "daytona.execute.response"
DEFAULT_TIMEOUT_SECONDS = 30

STATE_RUNNING = "running"
STATE_COMPLETED = "completed"

LANGUAGE_COMMANDS = {
    "python": "python3 -c {}",
    "javascript": "node -e {}",
    "typescript": "npx ts-node -e {}",
}


class ExecuteCodeConfiguration(BaseModel):
    sandbox: str = ""
    code: str = ""
    language: str = ""
    timeout: int = 0

    @field_validator("sandbox", "language", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    def validate_required(self) -> "ExecuteCodeConfiguration":
        for name in ("sandbox", "code", "language"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} is required")
        if self.language not in LANGUAGE_COMMANDS:
            raise ConfigurationError(
                f"invalid language: {self.language} (must be python, typescript, or javascript)"
            )
        if self.timeout < 0:
            raise ConfigurationError("timeout must not be negative")
        return self

    def command(self) -> str:
        return LANGUAGE_COMMANDS[self.language].format(shlex.quote(self.code))


def decode(configuration: Dict[str, Any]) -> ExecuteCodeConfiguration:
    return decode_configuration(ExecuteCodeConfiguration, configuration).validate_required()


class SessionCommand(RemoteOperation):
    """A command run asynchronously inside a fresh sandbox session."""

    initial_state = STATE_RUNNING

    async def start(self, ctx: ExecutionContext) -> StartedOperation:
        cfg = decode(ctx.configuration)
        client = Client.for_integration(ctx.http, ctx.integration)

        session_id = str(uuid.uuid4())
        await client.create_session(cfg.sandbox, session_id)
        response = await client.execute_session_command(cfg.sandbox, session_id, cfg.command())
        return StartedOperation(
            remote_task_id=response.get("cmdId", ""),
            state=STATE_RUNNING,
            details={"sandboxId": cfg.sandbox, "sessionId": session_id},
        )

    async def fetch(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> RemoteStatus:
        client = Client.for_integration(http, integration)
        sandbox_id = op.details["sandboxId"]
        session_id = op.details["sessionId"]

        session = await client.get_session(sandbox_id, session_id)
        command = find_command(session, op.remote_task_id)
        if command is None or command.get("exitCode") is None:
            return RemoteStatus(state=STATE_RUNNING)

        try:
            logs = await client.get_session_command_logs(sandbox_id, session_id, op.remote_task_id)
        except APIError as exc:
            logger.warning("Could not read logs for command %s: %s", op.remote_task_id, exc)
            logs = ""
        return RemoteStatus(
            state=STATE_COMPLETED,
            details={"exitCode": command["exitCode"], "result": logs},
        )

    async def cancel(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> None:
        client = Client.for_integration(http, integration)
        await client.delete_session(op.details["sandboxId"], op.details["sessionId"])

    def is_terminal(self, state: str) -> bool:
        return state == STATE_COMPLETED

    def output_channel(self, state: str) -> str:
        return DEFAULT_OUTPUT_CHANNEL.name

    def build_payload(self, op: PendingOperation, status: RemoteStatus) -> Dict[str, Any]:
        return {
            "exitCode": status.details.get("exitCode"),
            "result": status.details.get("result", ""),
        }

    def timeout_for(self, configuration: Dict[str, Any]) -> Optional[float]:
        timeout = decode_configuration(ExecuteCodeConfiguration, configuration).timeout
        return float(timeout or DEFAULT_TIMEOUT_SECONDS)


class ExecuteCode(Component):
    name = "daytona.executeCode"

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.coordinator = CompletionCoordinator(
            SessionCommand(),
            poll_interval=config.DAYTONA_POLL_INTERVAL if poll_interval is None else poll_interval,
            timeout=DEFAULT_TIMEOUT_SECONDS,
            payload_type=PAYLOAD_TYPE,
            clock=clock,
        )

    async def setup(self, ctx: SetupContext) -> None:
        decode(ctx.configuration)

    async def execute(self, ctx: ExecutionContext) -> None:
        await self.coordinator.kickoff(ctx)

    def actions(self) -> List[Action]:
        return [Action(POLL_ACTION)]

    async def handle_action(self, ctx: ActionContext) -> None:
        if ctx.name == POLL_ACTION:
            await self.coordinator.poll(ctx)
            return
        await super().handle_action(ctx)

    async def cancel(self, ctx: ExecutionContext) -> None:
        await self.coordinator.cancel(ctx)
