"""Stripe REST helper: checkout sessions, subscriptions, and webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from core.env import env_int, env_str

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_BASE_URL = "https://api.stripe.com"
DEFAULT_SIGNATURE_TOLERANCE_SECONDS = env_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300, minimum=1)


class StripeError(RuntimeError):
    """Raised when Stripe returns an error response."""

    def __init__(self, status_code: int, message: str, *, payload: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


def _flatten_form(data: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested dicts/lists the way Stripe expects (``a[b][0][c]=...``)."""
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(_flatten_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(_flatten_form(item, item_name))
                else:
                    pairs.append((item_name, _form_scalar(item)))
        else:
            pairs.append((name, _form_scalar(value)))
    return pairs


def _form_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(slots=True)
class StripeClient:
    """HTTP client wrapper for the Stripe API."""

    secret_key: str
    base_url: str = DEFAULT_STRIPE_API_BASE_URL
    transport: Optional[httpx.AsyncBaseTransport] = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: Optional[Mapping[str, Any]] = None,
        timeout: float = 10.0,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        form = _flatten_form(data) if data else None
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, data=form)
        except httpx.HTTPError as exc:
            logger.warning("Stripe request %s %s failed: %s", method, path, exc)
            raise StripeError(502, "Stripe is unreachable.", payload={"error": type(exc).__name__}) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            body = payload if isinstance(payload, dict) else {"body": response.text}
            error = body.get("error") if isinstance(body.get("error"), dict) else {}
            message = error.get("message") or "Stripe request failed."
            logger.warning("Stripe API error %s: %s", response.status_code, body)
            raise StripeError(response.status_code, message, payload=body)
        if not isinstance(payload, dict):
            logger.warning("Stripe returned a non-object body for %s %s", method, path)
            raise StripeError(502, "Stripe returned an unreadable response.", payload={"body": response.text})
        return payload

    async def create_checkout_session(
        self,
        *,
        customer_email: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        logger.info("Creating Stripe checkout session price=%s user=%s", price_id, metadata.get("userId"))
        return await self._request(
            "POST",
            "/v1/checkout/sessions",
            data={
                "customer_email": customer_email,
                "payment_method_types": ["card"],
                "line_items": [{"price": price_id, "quantity": 1}],
                "mode": "subscription",
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "subscription_data": {"metadata": dict(metadata)},
            },
        )

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/subscriptions/{subscription_id}")

    async def update_subscription(self, subscription_id: str, **fields: Any) -> Dict[str, Any]:
        logger.info("Updating Stripe subscription %s fields=%s", subscription_id, sorted(fields))
        return await self._request("POST", f"/v1/subscriptions/{subscription_id}", data=fields)


def get_stripe_client() -> StripeClient:
    secret_key = env_str("STRIPE_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured.")
    base_url = env_str("STRIPE_API_BASE_URL", DEFAULT_STRIPE_API_BASE_URL) or DEFAULT_STRIPE_API_BASE_URL
    return StripeClient(secret_key=secret_key, base_url=base_url)


def get_webhook_secret() -> str:
    secret = env_str("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured.")
    return secret


def _parse_signature_header(signature_header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    *,
    payload: bytes,
    signature_header: str,
    secret: Optional[str] = None,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Validate a ``Stripe-Signature`` header against the shared webhook secret."""
    if not payload or not signature_header:
        return False

    secret_key = secret or get_webhook_secret()
    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        logger.debug("Malformed Stripe-Signature header.")
        return False

    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance: t=%s", timestamp)
        return False

    expected = compute_signature(payload, timestamp, secret_key)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


__all__ = [
    "StripeClient",
    "StripeError",
    "compute_signature",
    "get_stripe_client",
    "get_webhook_secret",
    "verify_webhook_signature",
]
