"""
Completion race coordinator.

A remote operation is started inside an execution, then finished by
whichever of two paths first observes a terminal vendor state:

- the ``poll`` action, scheduled at kickoff and rescheduled until the
  elapsed-time budget runs out;
- an inbound webhook, correlated back to the execution through a KV entry.

Both paths may run concurrently for the same execution. Neither takes a
lock: each re-reads the persisted operation and returns without writing
when the execution is finished or ``completed_at`` is already set.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx

from opsconnect.completion.models import (
    PendingOperation,
    RemoteOperation,
    RemoteStatus,
)
from opsconnect.core.base import IntegrationError, WebhookResponse
from opsconnect.core.contexts import (
    ActionContext,
    ExecutionContext,
    WebhookRequestContext,
)
from opsconnect.core.store import Execution
from opsconnect.webhooks.signatures import SignatureError, SignatureVerifier

logger = logging.getLogger(__name__)

POLL_ACTION = "poll"
METADATA_KEY = "operation"
TIMEOUT_REASON = "timeout"

# Vendor calls that may fail transiently; anything else is a bug and propagates.
TRANSIENT_ERRORS = (IntegrationError, httpx.HTTPError)


def _now_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CompletionCoordinator:
    """Drives one :class:`RemoteOperation` from kickoff to a single emission."""

    def __init__(
        self,
        operation: RemoteOperation,
        poll_interval: float,
        timeout: float,
        payload_type: str,
        verifier: Optional[SignatureVerifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.operation = operation
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.payload_type = payload_type
        self.verifier = verifier
        self.clock = clock

    # -- Persistence ------------------------------------------------------

    @staticmethod
    def load(execution: Execution) -> Optional[PendingOperation]:
        raw = execution.get_metadata().get(METADATA_KEY)
        if not raw:
            return None
        return PendingOperation.model_validate(raw)

    @staticmethod
    def _save(execution: Execution, op: PendingOperation) -> None:
        metadata = execution.get_metadata()
        metadata[METADATA_KEY] = op.model_dump()
        execution.set_metadata(metadata)

    # -- Kickoff ----------------------------------------------------------

    async def kickoff(self, ctx: ExecutionContext) -> PendingOperation:
        """Start the remote operation and schedule the first poll.

        Raises whatever the vendor call raises; the caller fails the
        execution.
        """
        started = await self.operation.start(ctx)
        if not started.remote_task_id:
            raise IntegrationError("vendor response is missing the task id")
        if self.operation.correlation_key and not started.correlation_value:
            raise IntegrationError(
                f"vendor response is missing the {self.operation.correlation_key}"
            )

        now = self.clock()
        budget = self.operation.timeout_for(ctx.configuration) or self.timeout
        op = PendingOperation(
            execution_id=ctx.execution.id,
            correlation_key=self.operation.correlation_key,
            correlation_value=started.correlation_value,
            remote_task_id=started.remote_task_id,
            kickoff_time=now,
            timeout_budget=budget,
            last_known_state=started.state or self.operation.initial_state,
            details=started.details,
        )
        self._save(ctx.execution, op)
        if op.correlation_key:
            ctx.execution.set_kv(op.correlation_key, op.correlation_value)

        ctx.requests.schedule_action_call(POLL_ACTION, {}, self._next_delay(op, now))
        logger.info(
            "Started remote task %s for execution %s (budget %.0fs)",
            op.remote_task_id, op.execution_id, budget,
        )
        return op

    # -- Poll path --------------------------------------------------------

    async def poll(self, ctx: ActionContext) -> None:
        execution = ctx.execution
        if execution.is_finished():
            return

        op = self.load(execution)
        if op is None or op.is_completed:
            return

        now = self.clock()
        if op.remaining(now) < 0:
            self._time_out(execution, op, now)
            return

        try:
            status = await self.operation.fetch(ctx.http, ctx.integration, op)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Polling task %s failed, will retry: %s", op.remote_task_id, exc)
            self._reschedule(ctx, op)
            return

        if not self.operation.is_terminal(status.state):
            if op.remaining(self.clock()) <= 0:
                self._time_out(execution, op, self.clock())
                return
            if status.state != op.last_known_state:
                op.last_known_state = status.state
                self._save(execution, op)
            self._reschedule(ctx, op)
            return

        self._finish(execution, status)

    def _reschedule(self, ctx: ActionContext, op: PendingOperation) -> None:
        ctx.requests.schedule_action_call(POLL_ACTION, {}, self._next_delay(op, self.clock()))

    def _next_delay(self, op: PendingOperation, now: float) -> float:
        return max(0.0, min(self.poll_interval, op.remaining(now)))

    def _time_out(self, execution: Execution, op: PendingOperation, now: float) -> None:
        op.completed_at = _now_iso(now)
        self._save(execution, op)
        execution.fail(
            TIMEOUT_REASON,
            f"remote task {op.remote_task_id} did not finish within {op.timeout_budget:.0f} seconds",
        )

    # -- Webhook path -----------------------------------------------------

    async def handle_webhook(self, ctx: WebhookRequestContext) -> WebhookResponse:
        if self.verifier is None:
            return WebhookResponse.ok()

        try:
            self.verifier.verify(ctx.headers, ctx.body, ctx.webhook.get_secret(), now=self.clock())
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

        event = self.operation.parse_event(payload)
        if event is None:
            return WebhookResponse.ok()

        execution = self._resolve(ctx, event.candidate_ids)
        if execution is None or execution.is_finished():
            return WebhookResponse.ok()

        op = self.load(execution)
        if op is None or op.is_completed:
            return WebhookResponse.ok()

        status = RemoteStatus(state=event.state, completed_at=event.completed_at)
        try:
            confirmed = await self.operation.fetch(ctx.http, ctx.integration, op)
        except Exception as exc:
            logger.warning(
                "Could not enrich %s event for task %s, using event state: %s",
                event.category, op.remote_task_id, exc,
                exc_info=not isinstance(exc, TRANSIENT_ERRORS),
            )
        else:
            # A lagging read-back must not downgrade a terminal event.
            if self.operation.is_terminal(confirmed.state):
                if not confirmed.completed_at:
                    confirmed.completed_at = event.completed_at
                status = confirmed

        self._finish(execution, status)
        return WebhookResponse.ok()

    def _resolve(self, ctx: WebhookRequestContext, candidates: List[str]) -> Optional[Execution]:
        key = self.operation.correlation_key
        if not key or ctx.find_execution_by_kv is None:
            return None
        for candidate in candidates:
            execution = ctx.find_execution_by_kv(key, candidate)
            if execution is not None:
                return execution
        return None

    # -- Terminal transition ----------------------------------------------

    def _finish(self, execution: Execution, status: RemoteStatus) -> None:
        # The other path may have finished while we waited on the vendor.
        op = self.load(execution)
        if execution.is_finished() or op is None or op.is_completed:
            return

        op.last_known_state = status.state
        op.completed_at = status.completed_at or _now_iso(self.clock())
        op.details.update(status.details)
        self._save(execution, op)

        channel = self.operation.output_channel(status.state)
        execution.emit(channel, self.payload_type, [self.operation.build_payload(op, status)])

    # -- Cancellation -----------------------------------------------------

    async def cancel(self, ctx: ExecutionContext) -> None:
        """Best-effort remote cancel. Never raises for vendor failures."""
        op = self.load(ctx.execution)
        if op is None or op.is_completed:
            return
        if self.operation.is_terminal(op.last_known_state):
            return

        try:
            await self.operation.cancel(ctx.http, ctx.integration, op)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Cancelling task %s failed: %s", op.remote_task_id, exc)
