"""Constants and payload helpers shared by the Octopus blocks."""

from __future__ import annotations

from typing import Any, Dict, List

from opsconnect.webhooks.signatures import StaticHeaderVerifier

# Deployment event categories
EVENT_DEPLOYMENT_QUEUED = "DeploymentQueued"
EVENT_DEPLOYMENT_STARTED = "DeploymentStarted"
EVENT_DEPLOYMENT_SUCCEEDED = "DeploymentSucceeded"
EVENT_DEPLOYMENT_FAILED = "DeploymentFailed"

DEPLOYMENT_EVENT_CATEGORIES = [
    EVENT_DEPLOYMENT_QUEUED,
    EVENT_DEPLOYMENT_STARTED,
    EVENT_DEPLOYMENT_SUCCEEDED,
    EVENT_DEPLOYMENT_FAILED,
]
DEFAULT_EVENT_CATEGORIES = [EVENT_DEPLOYMENT_SUCCEEDED, EVENT_DEPLOYMENT_FAILED]

# Task states
TASK_QUEUED = "Queued"
TASK_EXECUTING = "Executing"
TASK_SUCCESS = "Success"
TASK_FAILED = "Failed"
TASK_CANCELED = "Canceled"
TASK_TIMED_OUT = "TimedOut"
TASK_CANCELLING = "Cancelling"

TERMINAL_TASK_STATES = frozenset({TASK_SUCCESS, TASK_FAILED, TASK_CANCELED, TASK_TIMED_OUT})

WEBHOOK_HEADER = "X-Webhook-Secret"
SUBSCRIPTION_NAME_PREFIX = "OpsConnect"

webhook_verifier = StaticHeaderVerifier(WEBHOOK_HEADER)


def is_task_completed(state: str) -> bool:
    return state in TERMINAL_TASK_STATES


def payload_type(category: str) -> str:
    known = {
        EVENT_DEPLOYMENT_QUEUED: "octopus.deployment.queued",
        EVENT_DEPLOYMENT_STARTED: "octopus.deployment.started",
        EVENT_DEPLOYMENT_SUCCEEDED: "octopus.deployment.succeeded",
        EVENT_DEPLOYMENT_FAILED: "octopus.deployment.failed",
    }
    return known.get(category, f"octopus.deployment.{category.lower()}")


def read_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The subscription event lives at ``Payload.Event``."""
    body = payload.get("Payload")
    if not isinstance(body, dict):
        return {}
    event = body.get("Event")
    return event if isinstance(event, dict) else {}


def related_document_ids(event: Dict[str, Any]) -> Dict[str, List[str]]:
    """Group ``RelatedDocumentIds`` such as ``Projects-1`` by their prefix."""
    grouped: Dict[str, List[str]] = {}
    docs = event.get("RelatedDocumentIds")
    if not isinstance(docs, list):
        return grouped
    for doc in docs:
        if not isinstance(doc, str):
            continue
        prefix, sep, _ = doc.partition("-")
        if not sep:
            continue
        grouped.setdefault(prefix, []).append(doc)
    return grouped
