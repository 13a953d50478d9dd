"""Prometheus counters for billing webhooks and entitlement checks."""

from __future__ import annotations

from services.prometheus_helpers import build_counter

_WEBHOOK_EVENTS = build_counter(
    "billing_webhook_events",
    "Billing provider webhook deliveries grouped by event type and handling result.",
    ("event_type", "result"),
)
_ENTITLEMENT_DECISIONS = build_counter(
    "entitlement_decisions",
    "Gated-action entitlement decisions grouped by outcome.",
    ("result",),
)


def record_webhook_event(event_type: str | None, result: str) -> None:
    _WEBHOOK_EVENTS.labels(event_type=event_type or "unknown", result=result).inc()


def record_entitlement_decision(allowed: bool, reason: str | None = None) -> None:
    result = "allow" if allowed else (reason or "deny").lower()
    _ENTITLEMENT_DECISIONS.labels(result=result).inc()


__all__ = ["record_entitlement_decision", "record_webhook_event"]
