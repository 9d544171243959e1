"""Context objects the engine hands to integrations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
)

import httpx

from opsconnect.core.base import ConfigurationError
from opsconnect.core.store import ActionRequests, Execution, NodeEvents

if TYPE_CHECKING:
    from opsconnect.core.base import Integration

RequestWebhookFn = Callable[[Dict[str, Any]], Awaitable[None]]
FindExecutionFn = Callable[[str, str], Optional[Execution]]


@dataclass
class IntegrationInstance:
    """A connected vendor account: the integration plus its configuration."""

    id: str
    integration: "Integration"
    configuration: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_config(self, name: str) -> str:
        """Return a required configuration value, stripped of whitespace."""
        value = self.configuration.get(name)
        if value is None or not str(value).strip():
            raise ConfigurationError(f"{name} is required")
        return str(value).strip()

    def get_optional_config(self, name: str, default: str = "") -> str:
        value = self.configuration.get(name)
        if value is None:
            return default
        return str(value).strip()

    def set_metadata(self, values: Dict[str, Any]) -> None:
        self.metadata.update(values)


class WebhookHandle(ABC):
    """View of one physical webhook registration, including its secret channel."""

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    @abstractmethod
    def url(self) -> str: ...

    @abstractmethod
    def get_configuration(self) -> Dict[str, Any]: ...

    @abstractmethod
    def get_metadata(self) -> Dict[str, Any]: ...

    @abstractmethod
    def get_secret(self) -> Optional[bytes]: ...

    @abstractmethod
    def set_secret(self, secret: bytes) -> None: ...


def _header(headers: Mapping[str, str], name: str) -> str:
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return value
    return ""


@dataclass
class SetupContext:
    configuration: Dict[str, Any]
    integration: IntegrationInstance
    http: httpx.AsyncClient
    request_webhook: RequestWebhookFn


@dataclass
class TriggerContext(SetupContext):
    pass


@dataclass
class ExecutionContext:
    execution: Execution
    configuration: Dict[str, Any]
    integration: IntegrationInstance
    http: httpx.AsyncClient
    requests: ActionRequests


@dataclass
class ActionContext(ExecutionContext):
    name: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TriggerActionContext:
    name: str
    parameters: Dict[str, Any]
    configuration: Dict[str, Any]
    integration: IntegrationInstance
    webhook: Optional[WebhookHandle] = None


@dataclass
class WebhookHandlerContext:
    webhook: WebhookHandle
    integration: IntegrationInstance
    http: httpx.AsyncClient


@dataclass
class WebhookRequestContext:
    """One inbound webhook delivery, addressed to one node."""

    headers: Mapping[str, str]
    body: bytes
    configuration: Dict[str, Any]
    webhook: WebhookHandle
    integration: IntegrationInstance
    http: httpx.AsyncClient
    find_execution_by_kv: Optional[FindExecutionFn] = None
    events: Optional[NodeEvents] = None
    # Per-node state owned by the receiving trigger
    metadata: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str) -> str:
        """Case-insensitive header lookup; returns "" when absent."""
        return _header(self.headers, name).strip()

    def is_json(self) -> bool:
        return "application/json" in self.header("Content-Type").lower()
