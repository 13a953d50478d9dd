"""Shared plan tier and billing status constants used across services and routers."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Optional, Sequence


class PlanTier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


SUPPORTED_PLAN_TIERS: Sequence[str] = tuple(tier.value for tier in PlanTier)

# Mirrors the billing provider's subscription status vocabulary.
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_INCOMPLETE = "incomplete"
STATUS_TRIALING = "trialing"

KNOWN_SUBSCRIPTION_STATUSES: FrozenSet[str] = frozenset(
    [STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELED, STATUS_INCOMPLETE, STATUS_TRIALING, "unpaid", "incomplete_expired", "paused"]
)


def normalize_plan_tier(value: Optional[str]) -> Optional[PlanTier]:
    """Return the matching ``PlanTier`` or ``None`` for unknown values."""
    if value is None:
        return None
    candidate = str(value).strip().lower()
    if candidate not in SUPPORTED_PLAN_TIERS:
        return None
    return PlanTier(candidate)


__all__ = [
    "KNOWN_SUBSCRIPTION_STATUSES",
    "PlanTier",
    "STATUS_ACTIVE",
    "STATUS_CANCELED",
    "STATUS_INCOMPLETE",
    "STATUS_PAST_DUE",
    "STATUS_TRIALING",
    "SUPPORTED_PLAN_TIERS",
    "normalize_plan_tier",
]
