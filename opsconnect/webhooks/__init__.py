"""Webhook subscriptions: reconciliation, registration and signature checks."""

from opsconnect.webhooks.provisioner import WebhookProvisioner
from opsconnect.webhooks.registry import RegistrationHandle, WebhookRegistry
from opsconnect.webhooks.signatures import (
    SignatureError,
    SignatureVerifier,
    StaticHeaderVerifier,
    SvixVerifier,
    TimestampedHMACVerifier,
    VerificationFailure,
    sign_svix,
    sign_timestamped,
)
from opsconnect.webhooks.subscriptions import (
    SubscriptionConfig,
    covers,
    deterministic_name,
    generate_secret,
    merge_filter_values,
    merge_subscriptions,
    normalize_events,
)

__all__ = [
    "RegistrationHandle",
    "SignatureError",
    "SignatureVerifier",
    "StaticHeaderVerifier",
    "SubscriptionConfig",
    "SvixVerifier",
    "TimestampedHMACVerifier",
    "VerificationFailure",
    "WebhookProvisioner",
    "WebhookRegistry",
    "covers",
    "deterministic_name",
    "generate_secret",
    "merge_filter_values",
    "merge_subscriptions",
    "normalize_events",
]
