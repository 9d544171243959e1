"""Integration framework: contracts, contexts and in-memory engine collaborators."""

from opsconnect.core.base import (
    DEFAULT_OUTPUT_CHANNEL,
    Action,
    APIError,
    Component,
    ConfigurationError,
    Integration,
    IntegrationError,
    OutputChannel,
    Trigger,
    WebhookHandler,
    WebhookResponse,
    decode_configuration,
)
from opsconnect.core.contexts import (
    ActionContext,
    ExecutionContext,
    IntegrationInstance,
    SetupContext,
    TriggerActionContext,
    TriggerContext,
    WebhookHandle,
    WebhookHandlerContext,
    WebhookRequestContext,
)
from opsconnect.core.registry import IntegrationNotFoundError, IntegrationRegistry
from opsconnect.core.store import (
    ActionRequests,
    ActionScheduler,
    EventLog,
    Execution,
    ExecutionStore,
    NodeEvents,
    ScheduledCall,
)

__all__ = [
    "DEFAULT_OUTPUT_CHANNEL",
    "Action",
    "ActionContext",
    "ActionRequests",
    "ActionScheduler",
    "APIError",
    "Component",
    "ConfigurationError",
    "EventLog",
    "Execution",
    "ExecutionContext",
    "ExecutionStore",
    "Integration",
    "IntegrationError",
    "IntegrationInstance",
    "IntegrationNotFoundError",
    "IntegrationRegistry",
    "NodeEvents",
    "OutputChannel",
    "ScheduledCall",
    "SetupContext",
    "Trigger",
    "TriggerActionContext",
    "TriggerContext",
    "WebhookHandle",
    "WebhookHandler",
    "WebhookHandlerContext",
    "WebhookRequestContext",
    "WebhookResponse",
    "decode_configuration",
]
