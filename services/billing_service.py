"""Checkout initiation, webhook reconciliation, and subscription management."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.env import env_str
from core.plan_constants import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    PlanTier,
    normalize_plan_tier,
)
from models.subscription import Subscription
from models.user import User
from services.audit_log import record_audit_event
from services.id_utils import normalize_uuid
from services.payments.stripe_client import StripeClient, StripeError, get_stripe_client
from services.payments.webhook_utils import (
    event_object,
    object_metadata,
    resolve_event_type,
    resolve_metadata_plan,
    resolve_reference,
    subscription_period,
    subscription_price_id,
)
from services.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = "http://localhost:19006"

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"

RESULT_APPLIED = "applied"
RESULT_IGNORED = "ignored"
RESULT_OBSERVED = "observed"
RESULT_MISSING_METADATA = "missing_metadata"
RESULT_INVALID_PLAN = "invalid_plan"
RESULT_MISSING_SUBSCRIPTION = "missing_subscription"
RESULT_USER_NOT_FOUND = "user_not_found"
RESULT_SUBSCRIPTION_NOT_FOUND = "subscription_not_found"


class BillingServiceError(RuntimeError):
    """Raised when a billing operation cannot be completed."""

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class AlreadySubscribedError(BillingServiceError):
    def __init__(self, subscription_id: Optional[str] = None) -> None:
        super().__init__("billing.already_subscribed", "You already have an active subscription.", 409)
        self.subscription_id = subscription_id


@dataclass(frozen=True)
class PlanDefinition:
    tier: PlanTier
    name: str
    price: float
    currency: str
    interval: str
    features: Sequence[str]
    popular: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tier.value,
            "name": self.name,
            "price": self.price,
            "currency": self.currency,
            "interval": self.interval,
            "features": list(self.features),
            "popular": self.popular,
        }


PLAN_CATALOG: Sequence[PlanDefinition] = (
    PlanDefinition(
        tier=PlanTier.BASIC,
        name="Basic",
        price=9.99,
        currency="usd",
        interval="month",
        features=("Unlimited messages", "Standard response time", "Chat history", "Email support"),
    ),
    PlanDefinition(
        tier=PlanTier.PRO,
        name="Pro",
        price=19.99,
        currency="usd",
        interval="month",
        features=(
            "Everything in Basic",
            "Priority response time",
            "Advanced AI models",
            "Export conversations",
            "Priority support",
        ),
        popular=True,
    ),
    PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        price=49.99,
        currency="usd",
        interval="month",
        features=(
            "Everything in Pro",
            "Dedicated account manager",
            "Custom integrations",
            "API access",
            "SLA guarantee",
        ),
    ),
)
_PLANS_BY_TIER: Dict[PlanTier, PlanDefinition] = {plan.tier: plan for plan in PLAN_CATALOG}


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]


@dataclass
class ReconcileResult:
    event_type: Optional[str]
    result: str
    user_id: Optional[uuid.UUID] = None
    subscription_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.result == RESULT_APPLIED


def list_plans() -> List[PlanDefinition]:
    return list(PLAN_CATALOG)


def get_plan(plan: PlanTier) -> PlanDefinition:
    return _PLANS_BY_TIER[plan]


def resolve_price_id(plan: PlanTier) -> str:
    """Price identifiers come from ``STRIPE_<TIER>_PRICE_ID`` with test fallbacks."""
    return env_str(f"STRIPE_{plan.value.upper()}_PRICE_ID") or f"price_{plan.value}_test"


def _frontend_url() -> str:
    return (env_str("FRONTEND_URL", DEFAULT_FRONTEND_URL) or DEFAULT_FRONTEND_URL).rstrip("/")


def default_success_url() -> str:
    return f"{_frontend_url()}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"


def default_cancel_url() -> str:
    return f"{_frontend_url()}/subscription/cancel"


def _find_subscription(session: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    ).scalar_one_or_none()


def find_active_subscription(session: Session, user_id: uuid.UUID) -> Optional[Subscription]:
    return (
        session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == STATUS_ACTIVE)
            .order_by(Subscription.created_at.desc())
        )
        .scalars()
        .first()
    )


def apply_subscription_status(
    session: Session,
    subscription: Subscription,
    status: str,
    *,
    user: Optional[User] = None,
) -> None:
    """Write ``status`` to the subscription row and mirror it onto the owning account."""
    subscription.status = status
    subscription.updated_at = utcnow()
    owner = user if user is not None else session.get(User, subscription.user_id)
    if owner is None:
        logger.warning("Subscription %s has no owning account.", subscription.stripe_subscription_id)
        return
    owner.subscription_status = status


async def start_checkout(
    session: Session,
    user_id: Any,
    plan: Any,
    *,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    client: Optional[StripeClient] = None,
) -> CheckoutSession:
    """Create a hosted checkout session for ``plan``; entitlement state is left untouched."""

    tier = normalize_plan_tier(plan.value if isinstance(plan, PlanTier) else plan)
    if tier is None:
        raise BillingServiceError("billing.invalid_plan", "Invalid plan selected.", 400)

    user_uuid = normalize_uuid(user_id)
    user = session.get(User, user_uuid) if user_uuid else None
    if user is None:
        raise BillingServiceError("billing.user_not_found", "User not found.", 404)

    # Advisory only: the provider remains the source of truth.
    existing = find_active_subscription(session, user.id)
    if existing is not None:
        logger.info("Checkout blocked for user=%s: active subscription %s", user.id, existing.stripe_subscription_id)
        raise AlreadySubscribedError(existing.stripe_subscription_id)

    try:
        stripe_client = client or get_stripe_client()
    except RuntimeError as exc:
        raise BillingServiceError("billing.not_configured", str(exc), 503) from exc

    try:
        payload = await stripe_client.create_checkout_session(
            customer_email=user.email,
            price_id=resolve_price_id(tier),
            success_url=success_url or default_success_url(),
            cancel_url=cancel_url or default_cancel_url(),
            metadata={"userId": str(user.id), "plan": tier.value},
        )
    except StripeError as exc:
        logger.error("Checkout session creation failed for user=%s: %s", user.id, exc)
        raise BillingServiceError("billing.provider_error", "Failed to create checkout session.", 502) from exc

    session_id = payload.get("id")
    if not isinstance(session_id, str) or not session_id:
        raise BillingServiceError("billing.provider_error", "Checkout session response was missing an id.", 502)

    record_audit_event(
        session,
        action="checkout_started",
        user_id=user.id,
        resource="subscription",
        details={"plan": tier.value, "sessionId": session_id},
    )
    session.commit()
    logger.info("Checkout session %s created for user=%s plan=%s", session_id, user.id, tier.value)
    return CheckoutSession(session_id=session_id, url=payload.get("url"))


# Webhook reconciliation ------------------------------------------------------

_Handler = Callable[[Session, Dict[str, Any], Optional[StripeClient]], Awaitable[ReconcileResult]]


async def _handle_checkout_completed(
    session: Session, obj: Dict[str, Any], client: Optional[StripeClient]
) -> ReconcileResult:
    metadata = object_metadata(obj)
    user_uuid = normalize_uuid(metadata.get("userId"))
    if user_uuid is None or not metadata.get("plan"):
        logger.warning("Checkout session %s is missing userId/plan metadata.", obj.get("id"))
        return ReconcileResult(EVENT_CHECKOUT_COMPLETED, RESULT_MISSING_METADATA)

    tier = resolve_metadata_plan(metadata)
    if tier is None:
        logger.warning("Checkout session %s carries unsupported plan %r.", obj.get("id"), metadata.get("plan"))
        return ReconcileResult(EVENT_CHECKOUT_COMPLETED, RESULT_INVALID_PLAN, user_id=user_uuid)

    stripe_subscription_id = resolve_reference(obj.get("subscription"))
    if stripe_subscription_id is None:
        logger.warning("Checkout session %s has no subscription reference.", obj.get("id"))
        return ReconcileResult(EVENT_CHECKOUT_COMPLETED, RESULT_MISSING_SUBSCRIPTION, user_id=user_uuid)

    user = session.get(User, user_uuid)
    if user is None:
        logger.warning("Checkout session %s references unknown user %s.", obj.get("id"), user_uuid)
        return ReconcileResult(EVENT_CHECKOUT_COMPLETED, RESULT_USER_NOT_FOUND, user_id=user_uuid)

    stripe_client = client or get_stripe_client()
    provider_subscription = await stripe_client.retrieve_subscription(stripe_subscription_id)
    period_start, period_end = subscription_period(provider_subscription)

    subscription = _find_subscription(session, stripe_subscription_id)
    if subscription is None:
        subscription = Subscription(
            user_id=user.id,
            stripe_subscription_id=stripe_subscription_id,
            plan=tier.value,
            status=STATUS_ACTIVE,
            created_at=utcnow(),
        )
        session.add(subscription)

    subscription.plan = tier.value
    subscription.stripe_customer_id = resolve_reference(obj.get("customer")) or resolve_reference(
        provider_subscription.get("customer")
    )
    subscription.stripe_price_id = subscription_price_id(provider_subscription)
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.cancel_at_period_end = bool(provider_subscription.get("cancel_at_period_end", False))

    user.subscription_plan = tier.value
    apply_subscription_status(session, subscription, STATUS_ACTIVE, user=user)

    record_audit_event(
        session,
        action="subscription_created",
        user_id=user.id,
        resource="subscription",
        details={"plan": tier.value, "subscriptionId": stripe_subscription_id},
    )
    logger.info("Subscription %s activated for user=%s plan=%s", stripe_subscription_id, user.id, tier.value)
    return ReconcileResult(
        EVENT_CHECKOUT_COMPLETED,
        RESULT_APPLIED,
        user_id=user.id,
        subscription_id=stripe_subscription_id,
        details={"plan": tier.value},
    )


def _subscription_handler(event_type: str) -> _Handler:
    async def handler(session: Session, obj: Dict[str, Any], client: Optional[StripeClient]) -> ReconcileResult:
        stripe_subscription_id = resolve_reference(obj.get("id"))
        subscription = _find_subscription(session, stripe_subscription_id) if stripe_subscription_id else None
        if subscription is None:
            logger.info("No subscription on record for %s (%s); skipping.", stripe_subscription_id, event_type)
            return ReconcileResult(event_type, RESULT_SUBSCRIPTION_NOT_FOUND, subscription_id=stripe_subscription_id)

        status = obj.get("status")
        period_start, period_end = subscription_period(obj)
        if period_start is not None:
            subscription.current_period_start = period_start
        if period_end is not None:
            subscription.current_period_end = period_end
        if "cancel_at_period_end" in obj:
            subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        if isinstance(status, str) and status:
            apply_subscription_status(session, subscription, status)
        else:
            subscription.updated_at = utcnow()

        logger.info("Subscription %s updated via %s status=%s", stripe_subscription_id, event_type, status)
        return ReconcileResult(
            event_type,
            RESULT_APPLIED,
            user_id=subscription.user_id,
            subscription_id=stripe_subscription_id,
            details={"status": subscription.status},
        )

    return handler


async def _handle_subscription_deleted(
    session: Session, obj: Dict[str, Any], client: Optional[StripeClient]
) -> ReconcileResult:
    stripe_subscription_id = resolve_reference(obj.get("id"))
    subscription = _find_subscription(session, stripe_subscription_id) if stripe_subscription_id else None
    if subscription is None:
        logger.info("No subscription on record for %s (deleted); skipping.", stripe_subscription_id)
        return ReconcileResult(
            EVENT_SUBSCRIPTION_DELETED, RESULT_SUBSCRIPTION_NOT_FOUND, subscription_id=stripe_subscription_id
        )

    apply_subscription_status(session, subscription, STATUS_CANCELED)
    record_audit_event(
        session,
        action="subscription_deleted",
        user_id=subscription.user_id,
        resource="subscription",
        details={"subscriptionId": stripe_subscription_id},
    )
    logger.info("Subscription %s canceled", stripe_subscription_id)
    return ReconcileResult(
        EVENT_SUBSCRIPTION_DELETED,
        RESULT_APPLIED,
        user_id=subscription.user_id,
        subscription_id=stripe_subscription_id,
    )


async def _handle_payment_failed(
    session: Session, obj: Dict[str, Any], client: Optional[StripeClient]
) -> ReconcileResult:
    stripe_subscription_id = resolve_reference(obj.get("subscription"))
    subscription = _find_subscription(session, stripe_subscription_id) if stripe_subscription_id else None
    if subscription is None:
        logger.info("Payment failure for unknown subscription %s; skipping.", stripe_subscription_id)
        return ReconcileResult(EVENT_PAYMENT_FAILED, RESULT_SUBSCRIPTION_NOT_FOUND, subscription_id=stripe_subscription_id)

    apply_subscription_status(session, subscription, STATUS_PAST_DUE)
    logger.warning("Payment failed for subscription %s user=%s", stripe_subscription_id, subscription.user_id)
    return ReconcileResult(
        EVENT_PAYMENT_FAILED,
        RESULT_APPLIED,
        user_id=subscription.user_id,
        subscription_id=stripe_subscription_id,
    )


async def _handle_payment_succeeded(
    session: Session, obj: Dict[str, Any], client: Optional[StripeClient]
) -> ReconcileResult:
    stripe_subscription_id = resolve_reference(obj.get("subscription"))
    logger.info("Payment succeeded for subscription %s invoice=%s", stripe_subscription_id, obj.get("id"))
    return ReconcileResult(EVENT_PAYMENT_SUCCEEDED, RESULT_OBSERVED, subscription_id=stripe_subscription_id)


_HANDLERS: Mapping[str, _Handler] = {
    EVENT_CHECKOUT_COMPLETED: _handle_checkout_completed,
    EVENT_SUBSCRIPTION_CREATED: _subscription_handler(EVENT_SUBSCRIPTION_CREATED),
    EVENT_SUBSCRIPTION_UPDATED: _subscription_handler(EVENT_SUBSCRIPTION_UPDATED),
    EVENT_SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EVENT_PAYMENT_FAILED: _handle_payment_failed,
    EVENT_PAYMENT_SUCCEEDED: _handle_payment_succeeded,
}


async def reconcile_event(
    session: Session,
    event: Mapping[str, Any],
    *,
    client: Optional[StripeClient] = None,
) -> ReconcileResult:
    """Apply a verified provider event to local state. Safe to call repeatedly."""

    event_type = resolve_event_type(event)
    handler = _HANDLERS.get(event_type or "")
    if handler is None:
        logger.info("Unhandled billing event type: %s", event_type)
        return ReconcileResult(event_type, RESULT_IGNORED)

    try:
        result = await handler(session, event_object(event), client)
        if result.applied:
            session.commit()
    except Exception:
        session.rollback()
        raise
    return result


# Subscription management -----------------------------------------------------


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    def _iso(value: Any) -> Optional[str]:
        normalized = ensure_utc(value)
        return normalized.isoformat() if normalized else None

    return {
        "id": str(subscription.id),
        "userId": str(subscription.user_id),
        "stripeSubscriptionId": subscription.stripe_subscription_id,
        "stripeCustomerId": subscription.stripe_customer_id,
        "stripePriceId": subscription.stripe_price_id,
        "plan": subscription.plan,
        "status": subscription.status,
        "currentPeriodStart": _iso(subscription.current_period_start),
        "currentPeriodEnd": _iso(subscription.current_period_end),
        "cancelAtPeriodEnd": bool(subscription.cancel_at_period_end),
        "createdAt": _iso(subscription.created_at),
    }


def get_latest_subscription(session: Session, user_id: Any) -> Subscription:
    user_uuid = normalize_uuid(user_id)
    subscription = None
    if user_uuid is not None:
        subscription = (
            session.execute(
                select(Subscription)
                .where(Subscription.user_id == user_uuid)
                .order_by(Subscription.created_at.desc())
            )
            .scalars()
            .first()
        )
    if subscription is None:
        raise BillingServiceError("billing.subscription_not_found", "No subscription found.", 404)
    return subscription


async def cancel_subscription(
    session: Session,
    user_id: Any,
    *,
    client: Optional[StripeClient] = None,
) -> Subscription:
    """Ask the provider to cancel at period end; entitlement changes arrive later via webhook."""

    user_uuid = normalize_uuid(user_id)
    subscription = find_active_subscription(session, user_uuid) if user_uuid else None
    if subscription is None:
        raise BillingServiceError("billing.subscription_not_found", "No active subscription found.", 404)

    try:
        stripe_client = client or get_stripe_client()
    except RuntimeError as exc:
        raise BillingServiceError("billing.not_configured", str(exc), 503) from exc

    try:
        await stripe_client.update_subscription(subscription.stripe_subscription_id, cancel_at_period_end=True)
    except StripeError as exc:
        logger.error("Cancel request failed for subscription %s: %s", subscription.stripe_subscription_id, exc)
        raise BillingServiceError("billing.provider_error", "Failed to cancel subscription.", 502) from exc

    subscription.cancel_at_period_end = True
    subscription.updated_at = utcnow()
    record_audit_event(
        session,
        action="subscription_canceled",
        user_id=subscription.user_id,
        resource="subscription",
        details={"subscriptionId": subscription.stripe_subscription_id},
    )
    session.commit()
    logger.info("Subscription %s set to cancel at period end", subscription.stripe_subscription_id)
    return subscription


__all__ = [
    "AlreadySubscribedError",
    "BillingServiceError",
    "CheckoutSession",
    "PLAN_CATALOG",
    "PlanDefinition",
    "ReconcileResult",
    "apply_subscription_status",
    "cancel_subscription",
    "default_cancel_url",
    "default_success_url",
    "find_active_subscription",
    "get_latest_subscription",
    "get_plan",
    "list_plans",
    "reconcile_event",
    "resolve_price_id",
    "serialize_subscription",
    "start_checkout",
]
