"""Phone verification codes: issue, deliver, verify, and expire."""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from core.env import env_int
from models.auth import OtpCode
from models.user import User
from services.sms_sender import SmsDeliveryError, SmsSender, get_sms_sender
from services.time_utils import utcnow

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
OTP_TTL_SECONDS = env_int("OTP_TTL_SECONDS", 10 * 60, minimum=60)
OTP_MESSAGE_TEMPLATE = "Your ZYNX AI verification code is: {code}. Valid for 10 minutes."


class OtpServiceError(RuntimeError):
    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class OtpIssueResult:
    phone: str
    expires_in: int
    mock_code: Optional[str] = None


def generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))


def _code_digest(phone: str, code: str) -> str:
    return hashlib.sha256(f"{phone}|{code}".encode("utf-8")).hexdigest()


def send_otp(
    session: Session,
    phone: str,
    *,
    user_id: Optional[uuid.UUID] = None,
    sender: Optional[SmsSender] = None,
) -> OtpIssueResult:
    """Store a fresh code and deliver it; the code is echoed back only in mock mode."""

    phone = (phone or "").strip()
    if not phone:
        raise OtpServiceError("otp.invalid_phone", "Phone number is required.", 400)

    sms = sender or get_sms_sender()
    code = generate_code()
    session.add(
        OtpCode(
            user_id=user_id,
            phone=phone,
            code_hash=_code_digest(phone, code),
            expires_at=utcnow() + timedelta(seconds=OTP_TTL_SECONDS),
            verified=False,
            created_at=utcnow(),
        )
    )
    session.commit()

    try:
        sms.send(phone, OTP_MESSAGE_TEMPLATE.format(code=code))
    except SmsDeliveryError as exc:
        raise OtpServiceError("otp.delivery_failed", "Failed to send OTP.", 502) from exc

    return OtpIssueResult(phone=phone, expires_in=OTP_TTL_SECONDS, mock_code=code if sms.mock_mode else None)


def verify_otp(session: Session, phone: str, code: str) -> bool:
    """Consume the newest unexpired code for ``phone``; marks the owner's phone verified."""

    phone = (phone or "").strip()
    code = (code or "").strip()
    if not phone or len(code) != OTP_LENGTH or not code.isdigit():
        return False

    record = (
        session.execute(
            select(OtpCode)
            .where(
                OtpCode.phone == phone,
                OtpCode.code_hash == _code_digest(phone, code),
                OtpCode.verified.is_(False),
                OtpCode.expires_at > utcnow(),
            )
            .order_by(OtpCode.created_at.desc())
        )
        .scalars()
        .first()
    )
    if record is None:
        return False

    record.verified = True
    if record.user_id is not None:
        user = session.get(User, record.user_id)
        if user is not None:
            user.phone_verified = True
    session.commit()
    logger.info("OTP verified for phone=%s user=%s", phone, record.user_id)
    return True


def cleanup_expired_otps(session: Session) -> int:
    result = session.execute(delete(OtpCode).where(OtpCode.expires_at < utcnow()))
    session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Removed %d expired OTP codes.", removed)
    return removed


__all__ = [
    "OTP_LENGTH",
    "OtpIssueResult",
    "OtpServiceError",
    "cleanup_expired_otps",
    "generate_code",
    "send_otp",
    "verify_otp",
]
