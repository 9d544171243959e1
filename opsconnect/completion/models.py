"""Pending-operation records and the per-vendor operation interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from opsconnect.core.contexts import ExecutionContext, IntegrationInstance


class PendingOperation(BaseModel):
    """A remote operation started by an execution and not yet reported.

    Persisted in the execution metadata under ``"operation"``. Once
    ``completed_at`` is set the record is final.
    """

    model_config = ConfigDict(extra="ignore")

    execution_id: str
    correlation_key: Optional[str] = None
    correlation_value: Optional[str] = None
    remote_task_id: str
    kickoff_time: float
    timeout_budget: float
    last_known_state: str = ""
    completed_at: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return bool(self.completed_at)

    def elapsed(self, now: float) -> float:
        return now - self.kickoff_time

    def remaining(self, now: float) -> float:
        return self.timeout_budget - self.elapsed(now)


@dataclass
class StartedOperation:
    """What the vendor returned when the operation was kicked off."""

    remote_task_id: str
    correlation_value: Optional[str] = None
    state: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RemoteStatus:
    state: str
    completed_at: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionEvent:
    """A parsed inbound notification about some remote operation.

    ``state`` is the provisional terminal state implied by ``category``.
    """

    category: str
    candidate_ids: List[str]
    state: str
    completed_at: Optional[str] = None


class RemoteOperation(ABC):
    """Vendor-specific half of completion tracking.

    ``correlation_key`` names the execution KV entry used to find the
    execution from a webhook. Poll-only operations leave it as None and keep
    the default :meth:`parse_event`.
    """

    correlation_key: Optional[str] = None
    initial_state: str = ""

    @abstractmethod
    async def start(self, ctx: ExecutionContext) -> StartedOperation:
        """Ask the vendor to start the operation. Errors fail the execution."""

    @abstractmethod
    async def fetch(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> RemoteStatus:
        """Read the current vendor state of *op*."""

    async def cancel(
        self,
        http: httpx.AsyncClient,
        integration: IntegrationInstance,
        op: PendingOperation,
    ) -> None:
        return None

    @abstractmethod
    def is_terminal(self, state: str) -> bool: ...

    @abstractmethod
    def output_channel(self, state: str) -> str: ...

    def parse_event(self, payload: Dict[str, Any]) -> Optional[CompletionEvent]:
        return None

    @abstractmethod
    def build_payload(self, op: PendingOperation, status: RemoteStatus) -> Dict[str, Any]: ...

    def timeout_for(self, configuration: Dict[str, Any]) -> Optional[float]:
        """Per-execution time budget, or None for the coordinator default."""
        return None
