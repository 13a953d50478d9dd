"""Shared helpers for coercing identifiers used across web/services layers."""

from __future__ import annotations

import uuid
from typing import Any, Optional


def normalize_uuid(value: Any) -> Optional[uuid.UUID]:
    """Convert ``value`` into a UUID if possible."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def require_uuid(value: Any, *, error: Exception) -> uuid.UUID:
    """Like ``normalize_uuid`` but raises ``error`` when the value is not a UUID."""
    normalized = normalize_uuid(value)
    if normalized is None:
        raise error
    return normalized


__all__ = ["normalize_uuid", "require_uuid"]
