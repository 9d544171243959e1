"""Rootly webhook endpoint API (JSON:API envelopes)."""

from __future__ import annotations

from typing import Any, Dict, List
from urllib.parse import quote

import httpx

from opsconnect.core.contexts import IntegrationInstance
from opsconnect.integrations.http import VendorClient

DEFAULT_BASE_URL = "https://api.rootly.com"
ENDPOINTS_PATH = "/v1/webhooks/endpoints"
INCIDENTS_PATH = "/v1/incidents"
RESOURCE_TYPE = "webhooks_endpoints"


def _endpoint(resource: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a JSON:API resource into ``{id, name, url, events, secret}``."""
    attributes = resource.get("attributes") or {}
    return {
        "id": resource.get("id", ""),
        "name": attributes.get("name", ""),
        "url": attributes.get("url", ""),
        "events": list(attributes.get("event_types") or []),
        "secret": attributes.get("secret", ""),
    }


class Client(VendorClient):
    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str = DEFAULT_BASE_URL) -> None:
        super().__init__(http, base_url)
        self.api_key = api_key

    @classmethod
    def for_integration(cls, http: httpx.AsyncClient, instance: IntegrationInstance) -> "Client":
        base_url = instance.get_optional_config("baseURL") or DEFAULT_BASE_URL
        return cls(http, instance.get_config("apiKey"), base_url)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def _body(name: str, url: str, events: List[str], enabled: bool = True) -> Dict[str, Any]:
        return {
            "data": {
                "type": RESOURCE_TYPE,
                "attributes": {
                    "name": name,
                    "url": url,
                    "event_types": events,
                    "enabled": enabled,
                },
            }
        }

    async def list_webhook_endpoints(self) -> List[Dict[str, Any]]:
        data = await self._request_object("GET", ENDPOINTS_PATH)
        return [_endpoint(r) for r in data.get("data") or []]

    async def create_webhook_endpoint(
        self, name: str, url: str, events: List[str]
    ) -> Dict[str, Any]:
        data = await self._request_object(
            "POST", ENDPOINTS_PATH, json=self._body(name, url, events)
        )
        return _endpoint(data.get("data") or {})

    async def update_webhook_endpoint(
        self, endpoint_id: str, name: str, url: str, events: List[str]
    ) -> Dict[str, Any]:
        data = await self._request_object(
            "PUT",
            f"{ENDPOINTS_PATH}/{quote(endpoint_id, safe='')}",
            json=self._body(name, url, events),
        )
        return _endpoint(data.get("data") or {})

    async def delete_webhook_endpoint(self, endpoint_id: str) -> None:
        await self._request("DELETE", f"{ENDPOINTS_PATH}/{quote(endpoint_id, safe='')}")

    async def get_incident(self, incident_id: str) -> Dict[str, Any]:
        """Fetch one incident, flattened to ``{id, **attributes}``."""
        data = await self._request_object("GET", f"{INCIDENTS_PATH}/{quote(incident_id, safe='')}")
        resource = data.get("data") or {}
        return {"id": resource.get("id", ""), **(resource.get("attributes") or {})}
