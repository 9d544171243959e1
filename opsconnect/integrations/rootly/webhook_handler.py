"""Rootly webhook handler: one endpoint per URL, widened to cover every requested event."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from opsconnect.core.base import APIError, IntegrationError, WebhookHandler
from opsconnect.core.contexts import WebhookHandlerContext
from opsconnect.integrations.rootly.client import Client
from opsconnect.webhooks.subscriptions import (
    SubscriptionConfig,
    covers,
    deterministic_name,
    merge_subscriptions,
    normalize_events,
)

logger = logging.getLogger(__name__)

ENDPOINT_NAME_PREFIX = "OpsConnect"


def select_endpoint(
    endpoints: List[Dict[str, Any]], name: str, url: str
) -> Optional[Dict[str, Any]]:
    """Prefer our deterministic name; fall back to an endpoint already pointing at *url*."""
    for endpoint in endpoints:
        if endpoint["name"] == name:
            return endpoint

    url_matches = [e for e in endpoints if e["url"] == url]
    for endpoint in url_matches:
        if endpoint["name"] == ENDPOINT_NAME_PREFIX:
            return endpoint
    return url_matches[0] if url_matches else None


class RootlyWebhookHandler(WebhookHandler):
    """Reuses an endpoint whenever its event set already covers the request."""

    def compare_config(self, a: Dict[str, Any], b: Dict[str, Any]) -> bool:
        return covers(SubscriptionConfig.from_any(a), SubscriptionConfig.from_any(b))

    def merge(
        self, current: Dict[str, Any], requested: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        merged, changed = merge_subscriptions(
            SubscriptionConfig.from_any(current), SubscriptionConfig.from_any(requested)
        )
        return merged.to_dict(), changed

    async def setup(self, ctx: WebhookHandlerContext) -> Dict[str, Any]:
        client = Client.for_integration(ctx.http, ctx.integration)
        requested = SubscriptionConfig.from_any(ctx.webhook.get_configuration()).events
        name = deterministic_name(ENDPOINT_NAME_PREFIX, ctx.webhook.id)

        try:
            endpoints = await client.list_webhook_endpoints()
        except IntegrationError as exc:
            logger.warning("Listing Rootly endpoints failed, creating a new one: %s", exc)
            endpoints = []

        existing = select_endpoint(endpoints, name, ctx.webhook.url)
        if existing is None:
            endpoint = await client.create_webhook_endpoint(name, ctx.webhook.url, requested)
        else:
            merged = normalize_events([*existing["events"], *requested])
            if merged == normalize_events(existing["events"]):
                # Unchanged endpoints do not echo their secret back.
                endpoint = {**existing, "secret": ""}
            else:
                endpoint = await client.update_webhook_endpoint(
                    existing["id"], name, existing["url"], merged
                )

        if endpoint.get("secret"):
            ctx.webhook.set_secret(endpoint["secret"].encode("utf-8"))
        return {"endpointId": endpoint["id"]}

    async def cleanup(self, ctx: WebhookHandlerContext) -> None:
        endpoint_id = ctx.webhook.get_metadata().get("endpointId")
        if not endpoint_id:
            return

        client = Client.for_integration(ctx.http, ctx.integration)
        try:
            await client.delete_webhook_endpoint(endpoint_id)
        except APIError as exc:
            if not exc.not_found:
                raise
