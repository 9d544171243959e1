"""One Octopus subscription per integration, widened as nodes ask for more."""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from opsconnect.core.base import APIError, WebhookHandler
from opsconnect.core.contexts import WebhookHandlerContext
from opsconnect.integrations.octopus.client import Client, space_id_for
from opsconnect.integrations.octopus.common import SUBSCRIPTION_NAME_PREFIX, WEBHOOK_HEADER
from opsconnect.webhooks.subscriptions import (
    SubscriptionConfig,
    deterministic_name,
    generate_secret,
    merge_subscriptions,
)

logger = logging.getLogger(__name__)

PROJECTS = "projects"
ENVIRONMENTS = "environments"


class OctopusWebhookHandler(WebhookHandler):
    def compare_config(self, a: Dict[str, Any], b: Dict[str, Any]) -> bool:
        # Every request folds into the single subscription.
        return True

    def merge(
        self, current: Dict[str, Any], requested: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        merged, changed = merge_subscriptions(
            SubscriptionConfig.from_any(current), SubscriptionConfig.from_any(requested)
        )
        return merged.to_dict(), changed

    async def setup(self, ctx: WebhookHandlerContext) -> Dict[str, Any]:
        client = Client.for_integration(ctx.http, ctx.integration)
        space_id = await space_id_for(client, ctx.integration)
        config = SubscriptionConfig.from_any(ctx.webhook.get_configuration())

        secret = ctx.webhook.get_secret()
        if not secret:
            secret = generate_secret().encode("utf-8")

        name = deterministic_name(SUBSCRIPTION_NAME_PREFIX, ctx.webhook.id)
        body = {
            "Name": name,
            "SpaceId": space_id,
            "EventNotificationSubscription": {
                "WebhookURI": ctx.webhook.url,
                "WebhookHeaderKey": WEBHOOK_HEADER,
                "WebhookHeaderValue": secret.decode("utf-8"),
                "WebhookTimeout": "00:00:30",
                "Filter": {
                    "EventCategories": config.events,
                    "Projects": config.filter_for(PROJECTS),
                    "Environments": config.filter_for(ENVIRONMENTS),
                },
            },
        }

        subscription_id = ctx.webhook.get_metadata().get("subscriptionId")
        subscription = None
        if subscription_id:
            try:
                subscription = await client.update_subscription(space_id, subscription_id, body)
            except APIError as exc:
                if not exc.not_found:
                    raise
                logger.info("Subscription %s vanished, recreating", subscription_id)

        if subscription is None:
            await self._delete_stale(client, space_id, name)
            subscription = await client.create_subscription(space_id, body)

        ctx.webhook.set_secret(secret)
        return {"subscriptionId": subscription["Id"], "spaceId": space_id}

    async def cleanup(self, ctx: WebhookHandlerContext) -> None:
        metadata = ctx.webhook.get_metadata()
        subscription_id = metadata.get("subscriptionId")
        space_id = metadata.get("spaceId")
        if not subscription_id or not space_id:
            return

        client = Client.for_integration(ctx.http, ctx.integration)
        try:
            await client.delete_subscription(space_id, subscription_id)
        except APIError as exc:
            if not exc.not_found:
                raise

    @staticmethod
    async def _delete_stale(client: Client, space_id: str, name: str) -> None:
        """Remove a subscription left behind by an attempt that never saved metadata."""
        try:
            subscriptions = await client.list_subscriptions(space_id)
            for sub in subscriptions:
                if sub.get("Name") == name:
                    logger.info("Deleting stale subscription %s", sub.get("Id"))
                    await client.delete_subscription(space_id, sub["Id"])
                    return
        except APIError as exc:
            logger.warning("Stale subscription lookup failed: %s", exc)
