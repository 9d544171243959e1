"""Daytona sandbox API client.

Process and session calls go through a per-sandbox toolbox proxy whose URL
is looked up once and cached on the client.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from opsconnect.core.base import IntegrationError
from opsconnect.core.contexts import IntegrationInstance
from opsconnect.integrations.http import VendorClient

DEFAULT_BASE_URL = "https://app.daytona.io/api"


def _seg(value: str) -> str:
    return quote(value, safe="")


class Client(VendorClient):
    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str = DEFAULT_BASE_URL) -> None:
        super().__init__(http, base_url)
        self.api_key = api_key
        self._toolbox_urls: Dict[str, str] = {}

    @classmethod
    def for_integration(cls, http: httpx.AsyncClient, instance: IntegrationInstance) -> "Client":
        base_url = instance.get_optional_config("baseURL") or DEFAULT_BASE_URL
        return cls(http, instance.get_config("apiKey"), base_url)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def toolbox_url(self, sandbox_id: str) -> str:
        if sandbox_id not in self._toolbox_urls:
            data = await self._request("GET", f"/sandbox/{_seg(sandbox_id)}/toolbox-proxy-url")
            url = (data or {}).get("proxyToolboxUrl", "") if isinstance(data, dict) else ""
            if not url:
                raise IntegrationError(f"no toolbox proxy URL for sandbox {sandbox_id}")
            self._toolbox_urls[sandbox_id] = url.rstrip("/")
        return self._toolbox_urls[sandbox_id]

    async def _session_url(self, sandbox_id: str, session_id: str = "") -> str:
        url = f"{await self.toolbox_url(sandbox_id)}/{_seg(sandbox_id)}/process/session"
        return f"{url}/{_seg(session_id)}" if session_id else url

    # -- Sessions ---------------------------------------------------------

    async def create_session(self, sandbox_id: str, session_id: str) -> None:
        await self._request(
            "POST", await self._session_url(sandbox_id), json={"sessionId": session_id}
        )

    async def execute_session_command(
        self, sandbox_id: str, session_id: str, command: str
    ) -> Dict[str, Any]:
        url = await self._session_url(sandbox_id, session_id)
        return await self._request_object(
            "POST", f"{url}/exec", json={"command": command, "runAsync": True}
        )

    async def get_session(self, sandbox_id: str, session_id: str) -> Dict[str, Any]:
        url = await self._session_url(sandbox_id, session_id)
        return await self._request_object("GET", url)

    async def get_session_command_logs(
        self, sandbox_id: str, session_id: str, command_id: str
    ) -> str:
        url = await self._session_url(sandbox_id, session_id)
        logs = await self._request("GET", f"{url}/command/{_seg(command_id)}/logs")
        if logs is None:
            return ""
        return logs if isinstance(logs, str) else str(logs)

    async def delete_session(self, sandbox_id: str, session_id: str) -> None:
        await self._request("DELETE", await self._session_url(sandbox_id, session_id))


def find_command(session: Dict[str, Any], command_id: str) -> Optional[Dict[str, Any]]:
    commands: List[Dict[str, Any]] = session.get("commands") or []
    for command in commands:
        if command.get("id") == command_id:
            return command
    return None
