"""
Subscription configuration algebra shared by webhook handlers.

A subscription is a set of event names plus per-dimension scope filters
(``{"projects": [...], "environments": [...]}``). An empty or absent filter
means "unscoped": the subscription matches every resource on that dimension.
Merging only ever widens, so the union of two non-empty filters is scoped,
but merging anything with an unscoped filter stays unscoped.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Any, Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from opsconnect.core.base import ConfigurationError


def normalize_events(events: Iterable[str]) -> List[str]:
    """Trim, drop blanks, deduplicate and sort for stable comparisons."""
    normalized = {e.strip() for e in events if e and e.strip()}
    return sorted(normalized)


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        value = value.strip() if value else ""
        if value and value not in seen:
            seen.append(value)
    return seen


def merge_filter_values(a: List[str], b: List[str]) -> List[str]:
    """Union two filters, keeping "empty means all" on either side."""
    if not a or not b:
        return []
    return _dedupe([*a, *b])


class SubscriptionConfig(BaseModel):
    """Events and scope filters requested from, or held by, a registration."""

    model_config = ConfigDict(extra="ignore")

    events: List[str] = Field(default_factory=list)
    filters: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("events")
    @classmethod
    def _normalize_events(cls, v: List[str]) -> List[str]:
        return normalize_events(v)

    @field_validator("filters")
    @classmethod
    def _normalize_filters(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        # Empty and absent are the same value, so empty dimensions are dropped.
        cleaned = {dim.strip(): _dedupe(values) for dim, values in v.items()}
        return {dim: values for dim, values in cleaned.items() if dim and values}

    @classmethod
    def from_any(cls, value: Any) -> "SubscriptionConfig":
        if value is None:
            return cls()
        if isinstance(value, SubscriptionConfig):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid webhook configuration: {exc}") from exc

    def filter_for(self, dimension: str) -> List[str]:
        return list(self.filters.get(dimension, []))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def merge_subscriptions(
    current: SubscriptionConfig, requested: SubscriptionConfig
) -> Tuple[SubscriptionConfig, bool]:
    """Widen *current* so it also satisfies *requested*.

    Returns ``(merged, changed)`` where ``changed`` is True iff merged differs
    from current.
    """
    dimensions = sorted(set(current.filters) | set(requested.filters))
    filters: Dict[str, List[str]] = {}
    for dim in dimensions:
        merged_values = merge_filter_values(current.filter_for(dim), requested.filter_for(dim))
        if merged_values:
            filters[dim] = merged_values

    merged = SubscriptionConfig(
        events=[*current.events, *requested.events],
        filters=filters,
    )
    return merged, merged != current


def covers(a: SubscriptionConfig, b: SubscriptionConfig) -> bool:
    """True if a registration holding *a* already delivers everything *b* needs."""
    if not set(b.events).issubset(a.events):
        return False
    for dim, scoped in a.filters.items():
        wanted = b.filter_for(dim)
        if not wanted:
            # b is unscoped on a dimension a restricts.
            return False
        if not set(wanted).issubset(scoped):
            return False
    return True


def deterministic_name(prefix: str, webhook_id: str, length: int = 12) -> str:
    """Vendor-side name derived from the local webhook id.

    Lets Setup find a remote object created by an earlier attempt that
    crashed before its metadata was persisted.
    """
    digest = hashlib.sha256(webhook_id.encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:length]}"


def generate_secret() -> str:
    return secrets.token_hex(32)
