from datetime import datetime, timedelta, timezone

import pytest
import redis
from sqlalchemy import select

from models.auth import OtpCode
from services import otp_service, rate_limiter
from services.sms_sender import SmsDeliveryError, SmsSender


class RecordingSender(SmsSender):
    def __init__(self, *, fail: bool = False, mock: bool = True) -> None:
        super().__init__(
            account_sid=None if mock else "ACabcdef",
            auth_token="token",
            from_number="+15550000000",
            force_mock=mock,
        )
        self.sent = []
        self.fail = fail

    def send(self, to: str, body: str):
        if self.fail:
            raise SmsDeliveryError("Failed to send SMS.")
        self.sent.append((to, body))
        return None


def _code_from(sender: RecordingSender) -> str:
    body = sender.sent[-1][1]
    return body.split("code is: ")[1][:6]


def test_send_and_verify_otp_marks_phone_verified(db_session, make_user) -> None:
    user = make_user()
    sender = RecordingSender()

    issued = otp_service.send_otp(db_session, "+15551234567", user_id=user.id, sender=sender)
    code = _code_from(sender)

    assert issued.mock_code == code
    assert issued.expires_in == otp_service.OTP_TTL_SECONDS
    assert otp_service.verify_otp(db_session, "+15551234567", code) is True
    db_session.refresh(user)
    assert user.phone_verified is True
    assert otp_service.verify_otp(db_session, "+15551234567", code) is False


def test_verify_rejects_wrong_or_malformed_codes(db_session) -> None:
    sender = RecordingSender()
    otp_service.send_otp(db_session, "+15551234567", sender=sender)
    code = _code_from(sender)
    wrong = "000000" if code != "000000" else "111111"

    assert otp_service.verify_otp(db_session, "+15551234567", wrong) is False
    assert otp_service.verify_otp(db_session, "+15551234567", "12ab56") is False
    assert otp_service.verify_otp(db_session, "+15550000000", code) is False


def test_expired_codes_are_rejected_and_cleaned(db_session) -> None:
    sender = RecordingSender()
    otp_service.send_otp(db_session, "+15551234567", sender=sender)
    code = _code_from(sender)
    record = db_session.execute(select(OtpCode)).scalar_one()
    record.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    assert otp_service.verify_otp(db_session, "+15551234567", code) is False
    assert otp_service.cleanup_expired_otps(db_session) == 1
    assert db_session.execute(select(OtpCode)).first() is None


def test_delivery_failure_surfaces_as_service_error(db_session) -> None:
    with pytest.raises(otp_service.OtpServiceError) as excinfo:
        otp_service.send_otp(db_session, "+15551234567", sender=RecordingSender(fail=True))
    assert excinfo.value.status_code == 502


def test_real_delivery_does_not_echo_code(db_session) -> None:
    issued = otp_service.send_otp(db_session, "+15551234567", sender=RecordingSender(mock=False))
    assert issued.mock_code is None


def test_sms_sender_mock_mode_rules() -> None:
    assert SmsSender(account_sid=None, auth_token="t", from_number="+1").mock_mode is True
    assert SmsSender(account_sid="AC1234placeholder", auth_token="t", from_number="+1").mock_mode is True
    assert SmsSender(account_sid="ACabcdef", auth_token="t", from_number="+1").mock_mode is False
    assert SmsSender(account_sid="ACabcdef", auth_token="t", from_number="+1", force_mock=True).mock_mode is True


class FakePipeline:
    def __init__(self, store: dict, ttls: dict) -> None:
        self.store = store
        self.ttls = ttls
        self.ops = []

    def incrby(self, key, amount):
        self.ops.append(("incrby", key, amount))
        return self

    def ttl(self, key):
        self.ops.append(("ttl", key))
        return self

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "incrby":
                self.store[op[1]] = self.store.get(op[1], 0) + op[2]
                results.append(self.store[op[1]])
            else:
                results.append(self.ttls.get(op[1], -1))
        self.ops = []
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.store = {}
        self.ttls = {}

    def pipeline(self):
        return FakePipeline(self.store, self.ttls)

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True


class BrokenRedis:
    def pipeline(self):
        raise redis.ConnectionError("down")


def test_rate_limiter_fails_open_without_backend() -> None:
    result = rate_limiter.check_limit("chat.send", "user-1", limit=1, window_seconds=60)
    assert result.allowed is True
    assert result.backend_error is True
    assert result.headers() == {}


def test_rate_limiter_counts_within_window() -> None:
    rate_limiter.set_client_for_tests(FakeRedis())

    first = rate_limiter.check_limit("otp.send", "user-1", limit=2, window_seconds=3600)
    second = rate_limiter.check_limit("otp.send", "user-1", limit=2, window_seconds=3600)
    third = rate_limiter.check_limit("otp.send", "user-1", limit=2, window_seconds=3600)
    other = rate_limiter.check_limit("otp.send", "user-2", limit=2, window_seconds=3600)

    assert [first.allowed, second.allowed, third.allowed, other.allowed] == [True, True, False, True]
    assert first.remaining == 1
    assert third.remaining == 0
    assert third.headers()["X-RateLimit-Limit"] == "2"
    assert 3500 < third.retry_after_seconds() <= 3600


def test_rate_limiter_fails_open_on_redis_error() -> None:
    rate_limiter.set_client_for_tests(BrokenRedis())
    result = rate_limiter.check_limit("auth.login", "1.2.3.4", limit=1, window_seconds=60)
    assert result.allowed is True
    assert result.backend_error is True
