"""Integration registry with explicit registration and a shared global table."""

from __future__ import annotations

import logging
from typing import Dict, List, Type

from opsconnect.core.base import Integration, IntegrationError

logger = logging.getLogger(__name__)


class IntegrationNotFoundError(IntegrationError):
    """Raised when a requested integration is not registered."""


class IntegrationRegistry:
    """Maps integration names to classes.

    Use the class methods for the global shared registry, or instantiate
    for an isolated registry (useful in tests).
    """

    _global_integrations: Dict[str, Type[Integration]] = {}

    def __init__(self) -> None:
        self._integrations: Dict[str, Type[Integration]] = {}

    # --- Instance-level API (isolated registries) ---

    def register(self, integration_cls: Type[Integration]) -> None:
        """Register an integration class. Uses ``integration_cls.name`` as the key."""
        name = integration_cls.name.lower().strip()
        if not name:
            raise ValueError("Integration class must have a non-empty 'name' attribute")
        self._integrations[name] = integration_cls

    def get(self, name: str) -> Type[Integration]:
        key = name.lower().strip()
        cls = self._integrations.get(key)
        if cls is None:
            available = list(self._integrations.keys())
            raise IntegrationNotFoundError(
                f"Unknown integration '{name}'. Available: {available}"
            )
        return cls

    def has(self, name: str) -> bool:
        return name.lower().strip() in self._integrations

    def list_integrations(self) -> List[str]:
        return sorted(self._integrations.keys())

    def clear(self) -> None:
        self._integrations.clear()

    # --- Class-level (global) API ---

    @classmethod
    def register_global(cls, integration_cls: Type[Integration]) -> Type[Integration]:
        """Register in the global registry. Usable as a class decorator."""
        name = integration_cls.name.lower().strip()
        if not name:
            raise ValueError("Integration class must have a non-empty 'name' attribute")
        cls._global_integrations[name] = integration_cls
        logger.debug("Registered integration: %s", name)
        return integration_cls

    @classmethod
    def get_global(cls, name: str) -> Type[Integration]:
        key = name.lower().strip()
        integration = cls._global_integrations.get(key)
        if integration is None:
            available = list(cls._global_integrations.keys())
            raise IntegrationNotFoundError(
                f"Unknown integration '{name}'. Available: {available}"
            )
        return integration

    @classmethod
    def list_global(cls) -> List[str]:
        return sorted(cls._global_integrations.keys())
