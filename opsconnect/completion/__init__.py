"""Tracks long-running remote operations until they report a terminal state."""

from opsconnect.completion.coordinator import (
    METADATA_KEY,
    POLL_ACTION,
    TIMEOUT_REASON,
    CompletionCoordinator,
)
from opsconnect.completion.models import (
    CompletionEvent,
    PendingOperation,
    RemoteOperation,
    RemoteStatus,
    StartedOperation,
)

__all__ = [
    "METADATA_KEY",
    "POLL_ACTION",
    "TIMEOUT_REASON",
    "CompletionCoordinator",
    "CompletionEvent",
    "PendingOperation",
    "RemoteOperation",
    "RemoteStatus",
    "StartedOperation",
]
