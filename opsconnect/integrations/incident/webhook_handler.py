"""incident.io webhook handler: registrations are local, the user pastes the URL into incident.io."""

from __future__ import annotations

from typing import Any, Dict, Tuple

from opsconnect.core.base import WebhookHandler
from opsconnect.core.contexts import WebhookHandlerContext
from opsconnect.webhooks.subscriptions import SubscriptionConfig


class IncidentWebhookHandler(WebhookHandler):
    """incident.io endpoints are created by hand, so there is nothing remote to manage.

    Registrations are shared when one event set contains the other; the
    merge keeps the larger of the two.
    """

    def compare_config(self, a: Dict[str, Any], b: Dict[str, Any]) -> bool:
        events_a = set(SubscriptionConfig.from_any(a).events)
        events_b = set(SubscriptionConfig.from_any(b).events)
        return events_a <= events_b or events_b <= events_a

    def merge(
        self, current: Dict[str, Any], requested: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        cur = SubscriptionConfig.from_any(current)
        req = SubscriptionConfig.from_any(requested)
        if set(cur.events) < set(req.events):
            return req.to_dict(), True
        return cur.to_dict(), False

    async def setup(self, ctx: WebhookHandlerContext) -> Dict[str, Any]:
        return {}

    async def cleanup(self, ctx: WebhookHandlerContext) -> None:
        return None
