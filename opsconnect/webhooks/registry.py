"""Physical webhook registrations with Fernet-encrypted secret storage.

One registration exists per remote subscription. Any number of nodes
(components or triggers) may reference it; the registration lives until the
last reference is released.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from opsconnect import config
from opsconnect.core.contexts import WebhookHandle

# -----------------------------------------------------------------------
# Encryption setup
# -----------------------------------------------------------------------

if config.SECRET_KEY:
    FERNET_KEY = config.SECRET_KEY.encode()
else:
    FERNET_KEY = Fernet.generate_key()

_fernet = Fernet(FERNET_KEY)


def _encrypt(plaintext: bytes) -> str:
    return _fernet.encrypt(plaintext).decode()


def _decrypt(ciphertext: str) -> Optional[bytes]:
    try:
        return _fernet.decrypt(ciphertext.encode())
    except InvalidToken:
        return None


# -----------------------------------------------------------------------
# WebhookRegistry
# -----------------------------------------------------------------------

class WebhookRegistry:
    """In-memory registration store.

    Parameters
    ----------
    encrypt_fn:
        Callable that encrypts secret bytes and returns ciphertext.
    decrypt_fn:
        Callable that decrypts ciphertext and returns bytes (or None).
    """

    def __init__(
        self,
        base_url: str = config.BASE_URL,
        encrypt_fn: Optional[Callable[[bytes], str]] = None,
        decrypt_fn: Optional[Callable[[str], Optional[bytes]]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._hooks: Dict[str, Dict[str, Any]] = {}
        self._base_url = base_url.rstrip("/")
        self._encrypt = encrypt_fn or _encrypt
        self._decrypt = decrypt_fn or _decrypt

    # -- CRUD -------------------------------------------------------------

    def create(self, integration_id: str, configuration: Dict[str, Any]) -> Dict[str, Any]:
        """Create an unprovisioned registration. Returns its safe view."""
        hook_id = str(uuid.uuid4())
        hook = {
            "id": hook_id,
            "integration_id": integration_id,
            "url": f"{self._base_url}/api/v1/webhooks/{hook_id}",
            "configuration": dict(configuration),
            "metadata": None,
            "references": [],
            "provisioned": False,
            "secret_encrypted": None,
            "created_at": time.time(),
            "updated_at": time.time(),
        }
        with self._lock:
            self._hooks[hook_id] = hook
        return self._safe_view(hook)

    def get(self, hook_id: str) -> Optional[Dict[str, Any]]:
        """Get a registration by ID (secret omitted)."""
        with self._lock:
            h = self._hooks.get(hook_id)
            return self._safe_view(h) if h else None

    def list_hooks(self, integration_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._safe_view(h)
                for h in sorted(self._hooks.values(), key=lambda h: h["created_at"])
                if integration_id is None or h["integration_id"] == integration_id
            ]

    def delete(self, hook_id: str) -> bool:
        with self._lock:
            return self._hooks.pop(hook_id, None) is not None

    def update(self, hook_id: str, **fields: Any) -> bool:
        """Update configuration, metadata or provisioned flag. Returns True if found."""
        allowed = {"configuration", "metadata", "provisioned"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._lock:
            h = self._hooks.get(hook_id)
            if h is None:
                return False
            h.update(fields)
            h["updated_at"] = time.time()
            return True

    # -- References -----------------------------------------------------------

    def add_reference(self, hook_id: str, node_id: str) -> None:
        with self._lock:
            refs = self._hooks[hook_id]["references"]
            if node_id not in refs:
                refs.append(node_id)

    def remove_reference(self, hook_id: str, node_id: str) -> List[str]:
        """Drop *node_id* and return the remaining references."""
        with self._lock:
            refs = self._hooks[hook_id]["references"]
            if node_id in refs:
                refs.remove(node_id)
            return list(refs)

    def find_by_node(self, node_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for h in self._hooks.values():
                if node_id in h["references"]:
                    return self._safe_view(h)
        return None

    # -- Secret channel -----------------------------------------------------

    def set_secret(self, hook_id: str, secret: bytes) -> None:
        encrypted = self._encrypt(secret)
        with self._lock:
            self._hooks[hook_id]["secret_encrypted"] = encrypted

    def get_secret(self, hook_id: str) -> Optional[bytes]:
        with self._lock:
            enc = self._hooks[hook_id]["secret_encrypted"]
        if enc is None:
            return None
        return self._decrypt(enc)

    def has_secret(self, hook_id: str) -> bool:
        with self._lock:
            return self._hooks[hook_id]["secret_encrypted"] is not None

    # -- Lifecycle --------------------------------------------------------

    def reset(self) -> None:
        with self._lock:
            self._hooks.clear()

    def handle(self, hook_id: str) -> "RegistrationHandle":
        return RegistrationHandle(self, hook_id)

    # -- Internal ---------------------------------------------------------

    @staticmethod
    def _safe_view(h: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy with the encrypted secret stripped."""
        view = {k: v for k, v in h.items() if k != "secret_encrypted"}
        view["configuration"] = dict(h["configuration"])
        view["references"] = list(h["references"])
        view["metadata"] = dict(h["metadata"]) if h["metadata"] is not None else None
        return view


class RegistrationHandle(WebhookHandle):
    """:class:`WebhookHandle` backed by a :class:`WebhookRegistry` record."""

    def __init__(self, registry: WebhookRegistry, hook_id: str) -> None:
        self._registry = registry
        self._id = hook_id

    def _view(self) -> Dict[str, Any]:
        view = self._registry.get(self._id)
        if view is None:
            raise KeyError(f"webhook {self._id} no longer exists")
        return view

    @property
    def id(self) -> str:
        return self._id

    @property
    def url(self) -> str:
        return self._view()["url"]

    def get_configuration(self) -> Dict[str, Any]:
        return self._view()["configuration"]

    def get_metadata(self) -> Dict[str, Any]:
        return self._view()["metadata"] or {}

    def get_secret(self) -> Optional[bytes]:
        return self._registry.get_secret(self._id)

    def set_secret(self, secret: bytes) -> None:
        self._registry.set_secret(self._id, secret)
