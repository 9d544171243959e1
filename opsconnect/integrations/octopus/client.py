"""Octopus Deploy REST client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from opsconnect.core.base import ConfigurationError
from opsconnect.core.contexts import IntegrationInstance
from opsconnect.integrations.http import VendorClient

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Octopus-ApiKey"


def _seg(value: str) -> str:
    return quote(value, safe="")


class Client(VendorClient):
    def __init__(self, http: httpx.AsyncClient, server_url: str, api_key: str) -> None:
        super().__init__(http, server_url)
        self.api_key = api_key

    @classmethod
    def for_integration(cls, http: httpx.AsyncClient, instance: IntegrationInstance) -> "Client":
        server_url = instance.get_config("serverUrl").rstrip("/")
        if not server_url:
            raise ConfigurationError("serverUrl is required")
        return cls(http, server_url, instance.get_config("apiKey"))

    def _headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self.api_key}

    # -- Spaces -----------------------------------------------------------

    async def list_spaces(self) -> List[Dict[str, Any]]:
        return await self._request_list("GET", "/api/spaces/all")

    # -- Deployments and tasks --------------------------------------------

    async def create_deployment(
        self, space_id: str, release_id: str, environment_id: str
    ) -> Dict[str, Any]:
        return await self._request_object(
            "POST",
            f"/api/{_seg(space_id)}/deployments",
            json={"ReleaseId": release_id, "EnvironmentId": environment_id},
        )

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        return await self._request_object("GET", f"/api/tasks/{_seg(task_id)}")

    async def cancel_task(self, space_id: str, task_id: str) -> None:
        await self._request("POST", f"/api/{_seg(space_id)}/tasks/{_seg(task_id)}/cancel")

    # -- Subscriptions ----------------------------------------------------

    async def list_subscriptions(self, space_id: str) -> List[Dict[str, Any]]:
        return await self._request_list("GET", f"/api/{_seg(space_id)}/subscriptions/all")

    async def create_subscription(self, space_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request_object("POST", f"/api/{_seg(space_id)}/subscriptions", json=body)

    async def update_subscription(
        self, space_id: str, subscription_id: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._request_object(
            "PUT",
            f"/api/{_seg(space_id)}/subscriptions/{_seg(subscription_id)}",
            json=body,
        )

    async def delete_subscription(self, space_id: str, subscription_id: str) -> None:
        await self._request(
            "DELETE", f"/api/{_seg(space_id)}/subscriptions/{_seg(subscription_id)}"
        )


async def resolve_space(client: Client, requested: str = "") -> Dict[str, Any]:
    """Pick the configured space by id or name, else the default, else the first."""
    spaces = await client.list_spaces()
    if not spaces:
        raise ConfigurationError("no spaces available for this API key")

    if not requested:
        for space in spaces:
            if space.get("IsDefault"):
                return space
        return spaces[0]

    for space in spaces:
        if requested in (space.get("Id"), space.get("Name")):
            return space
    raise ConfigurationError(f"space '{requested}' is not accessible with this API key")


async def space_id_for(client: Client, instance: IntegrationInstance) -> str:
    """Resolve the integration's space once and cache it in instance metadata."""
    cached: Optional[Dict[str, Any]] = instance.metadata.get("space")
    if cached and cached.get("id"):
        return cached["id"]

    space = await resolve_space(client, instance.get_optional_config("space"))
    instance.set_metadata({"space": {"id": space["Id"], "name": space.get("Name", "")}})
    logger.info("Resolved Octopus space %s for integration %s", space["Id"], instance.id)
    return space["Id"]
