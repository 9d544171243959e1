"""Shared request helper for vendor REST clients."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from opsconnect.core.base import APIError, IntegrationError

logger = logging.getLogger(__name__)


class UnexpectedResponseError(IntegrationError):
    """Raised when a 2xx response body does not have the expected shape."""

    def __init__(self, method: str, url: str, expected: str, body: Any) -> None:
        self.body = body
        got = "an empty body" if body is None else type(body).__name__
        super().__init__(f"{method} {url}: expected {expected}, got {got}")


class VendorClient:
    """Thin JSON client over an injected ``httpx.AsyncClient``.

    Subclasses set ``base_url`` and implement :meth:`_headers`.
    """

    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """Send a request; returns decoded JSON, raw text, or None for an empty body.

        *url* may be a path relative to ``base_url`` or an absolute URL.
        """
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"

        headers = {"Accept": "application/json", **self._headers()}
        if json is not None:
            headers["Content-Type"] = "application/json"

        response = await self.http.request(method, url, params=params, json=json, headers=headers)
        if response.status_code < 200 or response.status_code >= 300:
            logger.debug("%s %s -> %d", method, url, response.status_code)
            raise APIError(response.status_code, response.text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _request_object(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Dict[str, Any]:
        """Like :meth:`_request`, but the body must be a JSON object."""
        data = await self._request(method, url, params=params, json=json)
        if not isinstance(data, dict):
            raise UnexpectedResponseError(method, url, "a JSON object", data)
        return data

    async def _request_list(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        """Like :meth:`_request`, but the body must be a JSON array; empty means []."""
        data = await self._request(method, url, params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise UnexpectedResponseError(method, url, "a JSON array", data)
        return data
