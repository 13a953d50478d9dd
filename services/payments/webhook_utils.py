"""Shared helpers for reading Stripe webhook event payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from core.plan_constants import PlanTier, normalize_plan_tier
from services.time_utils import from_unix


def resolve_event_type(event: Mapping[str, Any]) -> Optional[str]:
    value = event.get("type")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_event_id(event: Mapping[str, Any]) -> Optional[str]:
    value = event.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def event_object(event: Mapping[str, Any]) -> Dict[str, Any]:
    data = event.get("data")
    if not isinstance(data, Mapping):
        return {}
    obj = data.get("object")
    return dict(obj) if isinstance(obj, Mapping) else {}


def object_metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        return {}
    return {str(key): str(value) for key, value in metadata.items() if value is not None}


def resolve_reference(value: Any) -> Optional[str]:
    """Return an object id from either an expanded object or a bare id string."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        candidate = value.get("id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def resolve_metadata_plan(metadata: Mapping[str, str]) -> Optional[PlanTier]:
    return normalize_plan_tier(metadata.get("plan"))


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = subscription.get("items")
    if not isinstance(items, Mapping):
        return {}
    data = items.get("data")
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def subscription_period(subscription: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Read the current billing period, falling back to the first subscription item."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start")
    if start is None:
        start = item.get("current_period_start")
    end = subscription.get("current_period_end")
    if end is None:
        end = item.get("current_period_end")
    return from_unix(start), from_unix(end)


def subscription_price_id(subscription: Mapping[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price")
    return resolve_reference(price)


__all__ = [
    "event_object",
    "object_metadata",
    "resolve_event_id",
    "resolve_event_type",
    "resolve_metadata_plan",
    "resolve_reference",
    "subscription_period",
    "subscription_price_id",
]
