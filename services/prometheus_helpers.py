"""Utilities for creating Prometheus collectors that survive module reloads."""

from __future__ import annotations

from typing import Sequence

from prometheus_client import REGISTRY, Counter

from core.logging import get_logger

logger = get_logger(__name__)


def _lookup_collector(name: str):
    existing = getattr(REGISTRY, "_names_to_collectors", None)
    if isinstance(existing, dict):
        return existing.get(name) or existing.get(f"{name}_total")
    return None


def build_counter(name: str, documentation: str, labelnames: Sequence[str] | None = None) -> Counter:
    """Create a Counter while tolerating duplicate registrations."""

    labels = tuple(labelnames or ())
    try:
        return Counter(name, documentation, labels)
    except ValueError:
        collector = _lookup_collector(name)
        if collector is None:
            raise
        logger.debug("Counter %s already registered; reusing existing collector.", name)
        return collector


__all__ = ["build_counter"]
