"""Payments service helpers."""

from .stripe_client import (
    StripeClient,
    StripeError,
    get_stripe_client,
    get_webhook_secret,
    verify_webhook_signature,
)

__all__ = [
    "StripeClient",
    "StripeError",
    "get_stripe_client",
    "get_webhook_secret",
    "verify_webhook_signature",
]
