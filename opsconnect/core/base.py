"""Contracts every integration implements, plus the shared error hierarchy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from opsconnect.core.contexts import (
        ActionContext,
        ExecutionContext,
        SetupContext,
        TriggerActionContext,
        TriggerContext,
        WebhookHandlerContext,
        WebhookRequestContext,
    )


# -----------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------

class IntegrationError(Exception):
    """Base class for errors raised by integrations."""


class ConfigurationError(IntegrationError):
    """Raised when a configuration value is missing or invalid."""


class APIError(IntegrationError):
    """Raised when a vendor API returns a non-2xx response."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"request failed with {status_code}: {body}")

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


# -----------------------------------------------------------------------
# Value types
# -----------------------------------------------------------------------

@dataclass(frozen=True)
class OutputChannel:
    name: str
    label: str = ""


DEFAULT_OUTPUT_CHANNEL = OutputChannel(name="default", label="Default")


@dataclass(frozen=True)
class Action:
    name: str
    user_accessible: bool = False


@dataclass
class WebhookResponse:
    """Outcome of an inbound webhook: an HTTP status and an optional error."""

    status_code: int = 200
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "WebhookResponse":
        return cls(200)

    @classmethod
    def failure(cls, status_code: int, error: str) -> "WebhookResponse":
        return cls(status_code, error)

    @property
    def is_ok(self) -> bool:
        return self.status_code == 200


# -----------------------------------------------------------------------
# Capability interfaces
# -----------------------------------------------------------------------

class WebhookHandler(ABC):
    """Reconciles logical webhook requests onto one remote subscription.

    Configurations are passed around as plain dicts so they can be stored
    on the registration record as-is.
    """

    @abstractmethod
    def compare_config(self, a: Dict[str, Any], b: Dict[str, Any]) -> bool:
        """Return True if a registration holding *a* can serve request *b*."""

    @abstractmethod
    def merge(
        self, current: Dict[str, Any], requested: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        """Widen *current* to cover *requested*. Returns ``(merged, changed)``."""

    @abstractmethod
    async def setup(self, ctx: "WebhookHandlerContext") -> Dict[str, Any]:
        """Create or update the remote subscription and return its metadata."""

    @abstractmethod
    async def cleanup(self, ctx: "WebhookHandlerContext") -> None:
        """Delete the remote subscription described by the stored metadata."""


class Component(ABC):
    """A workflow step that calls a vendor API.

    Subclasses MUST set ``name`` and implement :meth:`execute`. Components
    that wait for a remote operation also override :meth:`handle_action`,
    :meth:`handle_webhook` and :meth:`cancel`.
    """

    name: str = ""

    def output_channels(self, configuration: Dict[str, Any]) -> List[OutputChannel]:
        return [DEFAULT_OUTPUT_CHANNEL]

    async def setup(self, ctx: "SetupContext") -> None:
        return None

    @abstractmethod
    async def execute(self, ctx: "ExecutionContext") -> None:
        """Start the work for one execution."""

    def actions(self) -> List[Action]:
        return []

    async def handle_action(self, ctx: "ActionContext") -> None:
        raise IntegrationError(f"unknown action: {ctx.name}")

    async def handle_webhook(self, ctx: "WebhookRequestContext") -> WebhookResponse:
        return WebhookResponse.ok()

    async def cancel(self, ctx: "ExecutionContext") -> None:
        return None


class Trigger(ABC):
    """Starts workflows from inbound vendor webhooks."""

    name: str = ""

    @abstractmethod
    async def setup(self, ctx: "TriggerContext") -> None:
        """Validate configuration and request a webhook."""

    @abstractmethod
    async def handle_webhook(self, ctx: "WebhookRequestContext") -> WebhookResponse:
        """Verify, filter and emit an inbound event."""

    def actions(self) -> List[Action]:
        return []

    async def handle_action(self, ctx: "TriggerActionContext") -> Dict[str, Any]:
        raise IntegrationError(f"unknown action: {ctx.name}")


class Integration(ABC):
    """A vendor account type: its components, triggers and webhook handler."""

    name: str = ""

    @abstractmethod
    def components(self) -> List[Component]:
        """Return the components this integration offers."""

    def triggers(self) -> List[Trigger]:
        return []

    def webhook_handler(self) -> Optional[WebhookHandler]:
        return None

    def block(self, block_name: str) -> Component | Trigger:
        """Look up a component or trigger by its fully qualified name."""
        for block in [*self.components(), *self.triggers()]:
            if block.name == block_name:
                return block
        raise ConfigurationError(f"unknown block '{block_name}' for integration '{self.name}'")


# -----------------------------------------------------------------------
# Configuration decoding
# -----------------------------------------------------------------------

ModelT = TypeVar("ModelT", bound=BaseModel)


def decode_configuration(model: Type[ModelT], value: Any) -> ModelT:
    """Validate a node configuration dict into *model*.

    The first validation error becomes a :class:`ConfigurationError` whose
    message names the offending field.
    """
    try:
        return model.model_validate(value or {})
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ())) or "configuration"
        if first.get("type") == "missing":
            raise ConfigurationError(f"{loc} is required") from exc
        if first.get("type") == "value_error" and "error" in first.get("ctx", {}):
            raise ConfigurationError(str(first["ctx"]["error"])) from exc
        raise ConfigurationError(f"{loc}: {first.get('msg', 'invalid value')}") from exc
