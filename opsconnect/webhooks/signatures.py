"""Webhook signature verification strategies.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time)
- A missing or empty secret always fails (fail-closed)
- Each failure names the specific defect so callers can map it to an
  HTTP status: malformed header -> 400, undecodable stored secret -> 500,
  anything else -> 403
- Svix-style signatures are checked against a replay window (default 300s)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Mapping, Optional, Union

from opsconnect import config

SecretLike = Union[str, bytes, None]


class VerificationFailure(str, Enum):
    MISSING_SECRET = "missing_secret"
    MISSING_HEADER = "missing_header"
    MALFORMED_HEADER = "malformed_header"
    INVALID_SECRET_ENCODING = "invalid_secret_encoding"
    SIGNATURE_MISMATCH = "signature_mismatch"
    STALE_TIMESTAMP = "stale_timestamp"

    @property
    def status_code(self) -> int:
        if self is VerificationFailure.MALFORMED_HEADER:
            return 400
        if self is VerificationFailure.INVALID_SECRET_ENCODING:
            return 500
        return 403


class SignatureError(Exception):
    """Raised when an inbound webhook fails verification."""

    def __init__(self, failure: VerificationFailure, message: str) -> None:
        self.failure = failure
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return self.failure.status_code


def _header(headers: Mapping[str, str], name: str) -> str:
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return value.strip()
    return ""


def _secret_bytes(secret: SecretLike) -> bytes:
    if secret is None:
        return b""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return secret.strip()


class SignatureVerifier(ABC):
    """Common interface: ``verify`` returns None or raises SignatureError."""

    @abstractmethod
    def verify(
        self,
        headers: Mapping[str, str],
        body: bytes,
        secret: SecretLike,
        now: Optional[float] = None,
    ) -> None:
        """Check *headers*/*body* against *secret*."""


# -----------------------------------------------------------------------
# Static header
# -----------------------------------------------------------------------

class StaticHeaderVerifier(SignatureVerifier):
    """The vendor echoes the stored secret verbatim in a custom header."""

    def __init__(self, header_name: str) -> None:
        self.header_name = header_name

    def verify(self, headers, body, secret, now=None) -> None:
        key = _secret_bytes(secret)
        if not key:
            raise SignatureError(VerificationFailure.MISSING_SECRET, "missing webhook secret")

        value = _header(headers, self.header_name)
        if not value:
            raise SignatureError(
                VerificationFailure.MISSING_HEADER, f"missing {self.header_name} header"
            )

        if not hmac.compare_digest(value.encode("utf-8"), key):
            raise SignatureError(VerificationFailure.SIGNATURE_MISMATCH, "invalid webhook secret")


# -----------------------------------------------------------------------
# Timestamped HMAC: "t=<unix>,v1=<hex>"
# -----------------------------------------------------------------------

def sign_timestamped(secret: SecretLike, timestamp: int, body: bytes) -> str:
    """Return the ``t=..,v1=..`` header value for *body* signed at *timestamp*."""
    digest = hmac.new(
        _secret_bytes(secret), str(timestamp).encode("utf-8") + body, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


class TimestampedHMACVerifier(SignatureVerifier):
    """``HMAC_SHA256(secret, timestamp || body)`` carried as ``t=..,v1=..``.

    ``tolerance`` is optional; with None the timestamp is only authenticated,
    not bounded.
    """

    def __init__(self, header_name: str, tolerance: Optional[int] = None) -> None:
        self.header_name = header_name
        self.tolerance = tolerance

    def verify(self, headers, body, secret, now=None) -> None:
        key = _secret_bytes(secret)
        if not key:
            raise SignatureError(VerificationFailure.MISSING_SECRET, "missing webhook secret")

        value = _header(headers, self.header_name)
        if not value:
            raise SignatureError(
                VerificationFailure.MISSING_HEADER, f"missing {self.header_name} header"
            )

        timestamp = ""
        signatures: List[str] = []
        for item in value.split(","):
            name, sep, part = item.strip().partition("=")
            if not sep:
                continue
            if name == "t":
                timestamp = part
            elif name == "v1":
                signatures.append(part)

        if not timestamp or not signatures:
            raise SignatureError(VerificationFailure.MALFORMED_HEADER, "invalid signature format")

        try:
            ts = int(timestamp)
        except ValueError:
            raise SignatureError(
                VerificationFailure.MALFORMED_HEADER, "invalid signature timestamp"
            ) from None

        expected = hmac.new(
            key, timestamp.encode("utf-8") + body, hashlib.sha256
        ).hexdigest().encode("utf-8")
        if not any(hmac.compare_digest(expected, sig.encode("utf-8")) for sig in signatures):
            raise SignatureError(VerificationFailure.SIGNATURE_MISMATCH, "signature mismatch")

        if self.tolerance is not None:
            now = time.time() if now is None else now
            if abs(now - ts) > self.tolerance:
                raise SignatureError(
                    VerificationFailure.STALE_TIMESTAMP, "webhook timestamp too old or in future"
                )


# -----------------------------------------------------------------------
# Svix-style: HMAC over "id.timestamp.body", base64, multiple candidates
# -----------------------------------------------------------------------

SVIX_SECRET_PREFIX = "whsec_"


def _svix_key(secret: bytes) -> bytes:
    if secret.startswith(SVIX_SECRET_PREFIX.encode("utf-8")):
        encoded = secret[len(SVIX_SECRET_PREFIX):]
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise SignatureError(
                VerificationFailure.INVALID_SECRET_ENCODING, "invalid secret base64"
            ) from None
    return secret


def sign_svix(secret: SecretLike, message_id: str, timestamp: int, body: bytes) -> str:
    """Return a ``v1,<base64>`` signature candidate."""
    key = _svix_key(_secret_bytes(secret))
    signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


class SvixVerifier(SignatureVerifier):
    """Multi-field signed-content HMAC with a replay window."""

    def __init__(
        self,
        id_header: str = "webhook-id",
        timestamp_header: str = "webhook-timestamp",
        signature_header: str = "webhook-signature",
        tolerance: int = config.SVIX_TOLERANCE_SECONDS,
    ) -> None:
        self.id_header = id_header
        self.timestamp_header = timestamp_header
        self.signature_header = signature_header
        self.tolerance = tolerance

    def verify(self, headers, body, secret, now=None) -> None:
        raw = _secret_bytes(secret)
        if not raw:
            raise SignatureError(VerificationFailure.MISSING_SECRET, "missing webhook secret")

        message_id = _header(headers, self.id_header)
        timestamp = _header(headers, self.timestamp_header)
        signature = _header(headers, self.signature_header)
        if not message_id or not timestamp or not signature:
            raise SignatureError(
                VerificationFailure.MISSING_HEADER, "missing required webhook headers"
            )

        key = _svix_key(raw)
        signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
        expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")

        for candidate in signature.split():
            sig = candidate[3:] if candidate.startswith("v1,") else candidate
            if not hmac.compare_digest(sig.encode("utf-8"), expected.encode("utf-8")):
                continue

            try:
                ts = int(timestamp)
            except ValueError:
                raise SignatureError(
                    VerificationFailure.MALFORMED_HEADER, "invalid webhook timestamp"
                ) from None

            now = time.time() if now is None else now
            if abs(now - ts) > self.tolerance:
                raise SignatureError(
                    VerificationFailure.STALE_TIMESTAMP, "webhook timestamp too old or in future"
                )
            return

        raise SignatureError(VerificationFailure.SIGNATURE_MISMATCH, "signature mismatch")
