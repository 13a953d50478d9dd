import time

import pytest

from services.payments.stripe_client import _flatten_form, compute_signature, verify_webhook_signature

SECRET = "whsec_unit"
PAYLOAD = b'{"id":"evt_1","type":"invoice.payment_succeeded"}'


def _header(payload: bytes, timestamp: int, secret: str = SECRET) -> str:
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def test_valid_signature_is_accepted() -> None:
    now = int(time.time())
    assert verify_webhook_signature(payload=PAYLOAD, signature_header=_header(PAYLOAD, now), secret=SECRET)


def test_any_matching_v1_signature_is_accepted() -> None:
    now = int(time.time())
    header = f"t={now},v1=deadbeef,v1={compute_signature(PAYLOAD, now, SECRET)},v0=ignored"
    assert verify_webhook_signature(payload=PAYLOAD, signature_header=header, secret=SECRET)


def test_tampered_payload_is_rejected() -> None:
    now = int(time.time())
    header = _header(PAYLOAD, now)
    assert not verify_webhook_signature(payload=PAYLOAD + b" ", signature_header=header, secret=SECRET)


def test_wrong_secret_is_rejected() -> None:
    now = int(time.time())
    header = _header(PAYLOAD, now, secret="whsec_other")
    assert not verify_webhook_signature(payload=PAYLOAD, signature_header=header, secret=SECRET)


def test_stale_timestamp_is_rejected() -> None:
    signed_at = 1_700_000_000
    header = _header(PAYLOAD, signed_at)
    assert not verify_webhook_signature(
        payload=PAYLOAD, signature_header=header, secret=SECRET, now=signed_at + 301, tolerance=300
    )
    assert verify_webhook_signature(
        payload=PAYLOAD, signature_header=header, secret=SECRET, now=signed_at + 299, tolerance=300
    )


@pytest.mark.parametrize("header", ["", "garbage", "t=abc,v1=00", "t=1700000000", "v1=abcdef"])
def test_malformed_headers_are_rejected(header: str) -> None:
    assert not verify_webhook_signature(payload=PAYLOAD, signature_header=header, secret=SECRET, now=1_700_000_000)


def test_missing_secret_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        verify_webhook_signature(payload=PAYLOAD, signature_header="t=1,v1=00")


def test_flatten_form_encodes_nested_checkout_fields() -> None:
    pairs = _flatten_form(
        {
            "mode": "subscription",
            "line_items": [{"price": "price_pro", "quantity": 1}],
            "metadata": {"userId": "u1", "plan": "pro"},
            "subscription_data": {"metadata": {"plan": "pro"}},
            "cancel_at_period_end": True,
            "customer_email": None,
        }
    )
    assert pairs == [
        ("mode", "subscription"),
        ("line_items[0][price]", "price_pro"),
        ("line_items[0][quantity]", "1"),
        ("metadata[userId]", "u1"),
        ("metadata[plan]", "pro"),
        ("subscription_data[metadata][plan]", "pro"),
        ("cancel_at_period_end", "true"),
    ]
