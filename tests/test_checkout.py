import asyncio

import httpx
import pytest
from sqlalchemy import select

from core.plan_constants import PlanTier
from models.audit import AuditLog
from services import billing_service
from services.billing_service import AlreadySubscribedError, BillingServiceError
from services.payments.stripe_client import StripeClient, StripeError


def _start(db_session, user_id, plan, client, **kwargs):
    return asyncio.run(billing_service.start_checkout(db_session, user_id, plan, client=client, **kwargs))


def test_start_checkout_passes_metadata_and_default_urls(db_session, make_user, fake_stripe, monkeypatch) -> None:
    monkeypatch.setenv("FRONTEND_URL", "https://app.example.com/")
    user = make_user()

    checkout = _start(db_session, user.id, PlanTier.PRO, fake_stripe)

    assert checkout.session_id == "cs_test_1"
    assert checkout.url == "https://checkout.stripe.test/pay"
    call = fake_stripe.checkout_calls[0]
    assert call["metadata"] == {"userId": str(user.id), "plan": "pro"}
    assert call["customer_email"] == user.email
    assert call["success_url"] == "https://app.example.com/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    assert call["cancel_url"] == "https://app.example.com/subscription/cancel"
    actions = db_session.execute(select(AuditLog.action)).scalars().all()
    assert actions == ["checkout_started"]


def test_start_checkout_honours_explicit_urls_and_price_env(db_session, make_user, fake_stripe, monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_ENTERPRISE_PRICE_ID", "price_live_enterprise")
    user = make_user()

    _start(
        db_session,
        user.id,
        "enterprise",
        fake_stripe,
        success_url="https://example.com/ok",
        cancel_url="https://example.com/no",
    )

    call = fake_stripe.checkout_calls[0]
    assert call["price_id"] == "price_live_enterprise"
    assert call["success_url"] == "https://example.com/ok"
    assert call["cancel_url"] == "https://example.com/no"


def test_start_checkout_does_not_touch_entitlement(db_session, make_user, fake_stripe) -> None:
    user = make_user()

    _start(db_session, user.id, "basic", fake_stripe)

    db_session.refresh(user)
    assert user.subscription_status is None
    assert user.subscription_plan is None


def test_already_subscribed_short_circuits_before_provider(db_session, make_user, fake_stripe) -> None:
    user = make_user()
    asyncio.run(
        billing_service.reconcile_event(
            db_session,
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "id": "cs_prev",
                        "subscription": "sub_existing",
                        "metadata": {"userId": str(user.id), "plan": "basic"},
                    }
                },
            },
            client=fake_stripe,
        )
    )

    with pytest.raises(AlreadySubscribedError) as excinfo:
        _start(db_session, user.id, "pro", fake_stripe)

    assert excinfo.value.status_code == 409
    assert excinfo.value.subscription_id == "sub_existing"
    assert fake_stripe.checkout_calls == []


@pytest.mark.parametrize("plan", ["platinum", "", None])
def test_invalid_plan_is_rejected(db_session, make_user, fake_stripe, plan) -> None:
    user = make_user()

    with pytest.raises(BillingServiceError) as excinfo:
        _start(db_session, user.id, plan, fake_stripe)

    assert excinfo.value.code == "billing.invalid_plan"
    assert fake_stripe.checkout_calls == []


def test_provider_error_maps_to_bad_gateway(db_session, make_user, fake_stripe) -> None:
    user = make_user()
    fake_stripe.error = StripeError(402, "card declined")

    with pytest.raises(BillingServiceError) as excinfo:
        _start(db_session, user.id, "pro", fake_stripe)

    assert excinfo.value.status_code == 502
    assert excinfo.value.code == "billing.provider_error"


def test_missing_provider_configuration(db_session, make_user, monkeypatch) -> None:
    user = make_user()

    def _unconfigured():
        raise RuntimeError("STRIPE_SECRET_KEY is not configured.")

    monkeypatch.setattr(billing_service, "get_stripe_client", _unconfigured)

    with pytest.raises(BillingServiceError) as excinfo:
        _start(db_session, user.id, "pro", None)

    assert excinfo.value.status_code == 503


def test_cancel_subscription_sets_cancel_flag(db_session, make_user, fake_stripe) -> None:
    user = make_user()
    asyncio.run(
        billing_service.reconcile_event(
            db_session,
            {
                "id": "evt_2",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "id": "cs_1",
                        "subscription": "sub_cancel",
                        "metadata": {"userId": str(user.id), "plan": "pro"},
                    }
                },
            },
            client=fake_stripe,
        )
    )

    subscription = asyncio.run(billing_service.cancel_subscription(db_session, user.id, client=fake_stripe))

    assert subscription.cancel_at_period_end is True
    assert subscription.status == "active"
    assert fake_stripe.update_calls == [("sub_cancel", {"cancel_at_period_end": True})]


def test_cancel_without_active_subscription(db_session, make_user, fake_stripe) -> None:
    user = make_user()

    with pytest.raises(BillingServiceError) as excinfo:
        asyncio.run(billing_service.cancel_subscription(db_session, user.id, client=fake_stripe))

    assert excinfo.value.status_code == 404
    assert fake_stripe.update_calls == []


def test_plan_catalog_lists_three_tiers() -> None:
    plans = [plan.to_dict() for plan in billing_service.list_plans()]
    assert [plan["id"] for plan in plans] == ["basic", "pro", "enterprise"]
    assert [plan["popular"] for plan in plans] == [False, True, False]


def _unreachable_client() -> StripeClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return StripeClient(secret_key="sk_test", transport=httpx.MockTransport(_handler))


def test_start_checkout_maps_transport_failure_to_bad_gateway(db_session, make_user) -> None:
    user = make_user()

    with pytest.raises(BillingServiceError) as excinfo:
        _start(db_session, user.id, PlanTier.PRO, _unreachable_client())

    assert excinfo.value.status_code == 502
    assert excinfo.value.code == "billing.provider_error"


def test_stripe_client_wraps_transport_and_body_errors() -> None:
    with pytest.raises(StripeError) as unreachable:
        asyncio.run(_unreachable_client().retrieve_subscription("sub_1"))
    assert unreachable.value.status_code == 502
    assert isinstance(unreachable.value.__cause__, httpx.ConnectError)

    html_client = StripeClient(
        secret_key="sk_test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>")),
    )
    with pytest.raises(StripeError) as unreadable:
        asyncio.run(html_client.retrieve_subscription("sub_1"))
    assert unreadable.value.status_code == 502

    declined = StripeClient(
        secret_key="sk_test",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(402, json={"error": {"message": "Your card was declined."}})
        ),
    )
    with pytest.raises(StripeError) as provider_error:
        asyncio.run(declined.retrieve_subscription("sub_1"))
    assert provider_error.value.status_code == 402
    assert str(provider_error.value) == "Your card was declined."
