"""Billing endpoints: plans, checkout, provider webhooks, and subscription state."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.billing import (
    CancelSubscriptionResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanListResponse,
    PlanSchema,
    SubscriptionSchema,
    TrialStatusResponse,
    WebhookAckResponse,
)
from services import billing_service
from services.billing_metrics import record_webhook_event
from services.billing_service import BillingServiceError
from services.entitlement_service import get_trial_status
from services.payments.stripe_client import verify_webhook_signature
from services.payments.webhook_store import has_processed_event, record_processed_event
from services.payments.webhook_utils import resolve_event_id, resolve_event_type
from web.deps import get_current_user
from web.middleware.auth_context import AuthenticatedUser

router = APIRouter(prefix="/billing", tags=["Billing"])

logger = logging.getLogger(__name__)


def _raise(exc: BillingServiceError) -> None:
    raise HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message}) from exc


@router.get("/plans", response_model=PlanListResponse)
def read_plans() -> PlanListResponse:
    return PlanListResponse(plans=[PlanSchema(**plan.to_dict()) for plan in billing_service.list_plans()])


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    payload: CheckoutSessionRequest,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> CheckoutSessionResponse:
    try:
        checkout = await billing_service.start_checkout(
            db,
            user.id,
            payload.plan,
            success_url=payload.successUrl,
            cancel_url=payload.cancelUrl,
        )
    except BillingServiceError as exc:
        _raise(exc)
    return CheckoutSessionResponse(sessionId=checkout.session_id, url=checkout.url)


@router.post("/webhook", response_model=WebhookAckResponse)
async def handle_billing_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAckResponse:
    raw_body = await request.body()
    signature_header = request.headers.get("stripe-signature")

    if not signature_header:
        logger.warning("Billing webhook missing Stripe-Signature header.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "billing.webhook_signature_missing", "message": "Missing webhook signature header."},
        )

    try:
        is_valid = verify_webhook_signature(payload=raw_body, signature_header=signature_header)
    except RuntimeError as exc:
        logger.error("Billing webhook signature verification unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "billing.webhook_signature_unavailable", "message": str(exc)},
        ) from exc

    if not is_valid:
        logger.warning("Billing webhook signature invalid.")
        record_webhook_event(None, "signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "billing.webhook_signature_invalid", "message": "Webhook signature verification failed."},
        )

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Billing webhook payload decode failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "billing.webhook_payload_invalid", "message": "Webhook body could not be parsed."},
        ) from exc
    if not isinstance(event, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "billing.webhook_payload_invalid", "message": "Webhook body must be an object."},
        )

    event_id = resolve_event_id(event)
    event_type = resolve_event_type(event)
    log_context = {"event_id": event_id, "event_type": event_type}
    logger.info("Received billing webhook.", extra={"webhook": log_context})

    if has_processed_event(event_id):
        logger.info("Duplicate billing webhook ignored.", extra={"webhook": log_context})
        record_webhook_event(event_type, "duplicate")
        return WebhookAckResponse(duplicate=True)

    try:
        result = await billing_service.reconcile_event(db, event)
    except (RuntimeError, SQLAlchemyError) as exc:
        db.rollback()
        logger.exception("Billing webhook handling failed.", extra={"webhook": log_context})
        record_webhook_event(event_type, "error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "billing.webhook_failed", "message": "Webhook handling failed."},
        ) from exc

    record_processed_event(event_id=event_id, event_type=event_type, result=result.result)
    record_webhook_event(event_type, result.result)
    logger.info(
        "Billing webhook handled.",
        extra={"webhook": {**log_context, "result": result.result, "subscription_id": result.subscription_id}},
    )
    return WebhookAckResponse()


@router.get("/subscription", response_model=SubscriptionSchema)
def read_subscription(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SubscriptionSchema:
    try:
        subscription = billing_service.get_latest_subscription(db, user.id)
    except BillingServiceError as exc:
        _raise(exc)
    return SubscriptionSchema(**billing_service.serialize_subscription(subscription))


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> CancelSubscriptionResponse:
    try:
        subscription = await billing_service.cancel_subscription(db, user.id)
    except BillingServiceError as exc:
        _raise(exc)
    return CancelSubscriptionResponse(
        message="Subscription will be canceled at the end of the billing period",
        subscription=SubscriptionSchema(**billing_service.serialize_subscription(subscription)),
    )


@router.get("/trial", response_model=TrialStatusResponse)
def read_trial_status(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> TrialStatusResponse:
    trial = get_trial_status(db, user.id)
    if trial is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "auth.user_not_found", "message": "User not found."},
        )
    return TrialStatusResponse(
        isActive=trial.is_active,
        startDate=trial.start_date.isoformat() if trial.start_date else None,
        endDate=trial.end_date.isoformat() if trial.end_date else None,
        hoursRemaining=trial.hours_remaining,
        hasSubscription=trial.has_subscription,
    )


__all__ = ["router"]
