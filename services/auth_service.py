"""Email/password authentication, trial provisioning, and refresh-token sessions."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.env import env_int, env_str
from models.user import User
from services import rate_limiter
from services.audit_log import record_audit_event
from services.auth_tokens import (
    REFRESH_SCOPE,
    AuthTokenError,
    TokenPair,
    decode_token,
    find_refresh_token,
    is_refresh_token_usable,
    issue_token_pair,
)
from services.id_utils import normalize_uuid
from services.otp_service import OtpServiceError, send_otp
from services.sms_sender import SmsSender
from services.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

TRIAL_DURATION_HOURS = env_int("TRIAL_DURATION_HOURS", 24, minimum=1)
DEVICE_SIGNUP_LIMIT = env_int("AUTH_DEVICE_SIGNUP_LIMIT", 3, minimum=1)
DEVICE_SIGNUP_WINDOW_HOURS = 24
_SERVER_SALT = env_str("SERVER_SALT") or ""

_PASSWORD_MIN_LENGTH = env_int("AUTH_PASSWORD_MIN_LENGTH", 8, minimum=8)
_UPPER_REGEX = re.compile(r"[A-Z]")
_LOWER_REGEX = re.compile(r"[a-z]")
_DIGIT_REGEX = re.compile(r"[0-9]")
_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_PASSWORD_HASHER = PasswordHasher(
    time_cost=env_int("AUTH_ARGON2_TIME_COST", 3, minimum=1),
    memory_cost=env_int("AUTH_ARGON2_MEMORY_COST", 65536, minimum=8),
    parallelism=env_int("AUTH_ARGON2_PARALLELISM", 1, minimum=1),
)


class AuthServiceError(RuntimeError):
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.extra = dict(extra or {})
        self.headers = dict(headers or {}) if headers else None


@dataclass(frozen=True)
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


def hash_device_fingerprint(fingerprint: str) -> str:
    return hmac.new(_SERVER_SALT.encode("utf-8"), fingerprint.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_password(password: str) -> str:
    return _PASSWORD_HASHER.hash(password)


def _normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or not _EMAIL_REGEX.match(value):
        raise AuthServiceError("auth.invalid_payload", "Invalid email address.", 400)
    return value


def validate_password_strength(password: Optional[str]) -> None:
    value = password or ""
    if len(value) < _PASSWORD_MIN_LENGTH:
        raise AuthServiceError(
            "auth.invalid_password", f"Password must be at least {_PASSWORD_MIN_LENGTH} characters.", 400
        )
    if not _UPPER_REGEX.search(value):
        raise AuthServiceError("auth.invalid_password", "Password must contain at least one uppercase letter.", 400)
    if not _LOWER_REGEX.search(value):
        raise AuthServiceError("auth.invalid_password", "Password must contain at least one lowercase letter.", 400)
    if not _DIGIT_REGEX.search(value):
        raise AuthServiceError("auth.invalid_password", "Password must contain at least one number.", 400)


def _safe_ip_value(ip_value: Optional[str]) -> Optional[str]:
    if not ip_value:
        return None
    try:
        ipaddress.ip_address(ip_value)
    except ValueError:
        return None
    return ip_value


def _enforce_rate_limit(scope: str, identifier: Optional[str], *, limit: int, window_seconds: int) -> None:
    result = rate_limiter.check_limit(scope, identifier, limit=limit, window_seconds=window_seconds)
    if not result.allowed:
        retry_after = result.retry_after_seconds()
        raise AuthServiceError(
            "auth.rate_limited",
            f"Too many requests. Try again in {retry_after} seconds.",
            429,
            extra={"retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


def _enforce_auth_rate_limit(scope: str, context: RequestContext) -> None:
    _enforce_rate_limit(
        scope,
        context.ip,
        limit=rate_limiter.AUTH_LIMIT,
        window_seconds=rate_limiter.AUTH_WINDOW_SECONDS,
    )


class RegisterUserUseCase:
    """Creates an account with a fixed trial window and signs it in."""

    def __init__(
        self,
        session: Session,
        payload: Dict[str, Any],
        context: RequestContext,
        *,
        sms_sender: Optional[SmsSender] = None,
    ):
        self.session = session
        self.payload = payload
        self.context = context
        self.sms_sender = sms_sender
        self.now = utcnow()
        self.email = _normalize_email(payload.get("email"))
        self.phone = (payload.get("phone") or "").strip() or None
        fingerprint = (payload.get("deviceFingerprint") or "").strip()
        self.fingerprint_hash = hash_device_fingerprint(fingerprint) if fingerprint else None

    def execute(self) -> AuthResult:
        _enforce_auth_rate_limit("auth.signup", self.context)
        validate_password_strength(self.payload.get("password"))
        self._ensure_email_available()
        self._enforce_device_limit()
        user = self._persist_user()
        self._send_phone_otp(user)
        tokens = issue_token_pair(self.session, user_id=user.id, email=user.email, role=user.role)
        record_audit_event(
            self.session,
            action="signup",
            user_id=user.id,
            resource="user",
            details={"message": "User signed up successfully"},
            ip=self.context.ip,
            user_agent=self.context.user_agent,
        )
        self.session.commit()
        logger.info("User %s signed up; trial ends %s", user.id, user.trial_end.isoformat())
        return AuthResult(user=user, tokens=tokens)

    def _ensure_email_available(self) -> None:
        existing = self.session.execute(select(User.id).where(func.lower(User.email) == self.email)).first()
        if existing is not None:
            raise AuthServiceError("auth.email_taken", "User already exists.", 409)

    def _enforce_device_limit(self) -> None:
        if self.fingerprint_hash is None:
            return
        since = self.now - timedelta(hours=DEVICE_SIGNUP_WINDOW_HOURS)
        recent = self.session.execute(
            select(func.count(User.id)).where(
                User.device_fingerprint_hash == self.fingerprint_hash,
                User.created_at >= since,
            )
        ).scalar_one()
        if recent >= DEVICE_SIGNUP_LIMIT:
            raise AuthServiceError("auth.device_limit", "Too many accounts created from this device.", 429)

    def _persist_user(self) -> User:
        user = User(
            email=self.email,
            password_hash=hash_password(self.payload["password"]),
            phone=self.phone,
            phone_verified=False,
            role="user",
            trial_start=self.now,
            trial_end=self.now + timedelta(hours=TRIAL_DURATION_HOURS),
            device_fingerprint_hash=self.fingerprint_hash,
            is_active=True,
            is_banned=False,
            created_at=self.now,
            updated_at=self.now,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def _send_phone_otp(self, user: User) -> None:
        if not self.phone:
            return
        try:
            send_otp(self.session, self.phone, user_id=user.id, sender=self.sms_sender)
        except OtpServiceError as exc:
            logger.warning("Signup OTP delivery failed for user=%s: %s", user.id, exc)


class LoginUserUseCase:
    """Verifies credentials and issues a fresh token pair."""

    def __init__(self, session: Session, payload: Dict[str, Any], context: RequestContext):
        self.session = session
        self.payload = payload
        self.context = context
        self.now = utcnow()
        self.email = (payload.get("email") or "").strip().lower()

    def execute(self) -> AuthResult:
        _enforce_auth_rate_limit("auth.login", self.context)
        user = self._load_user()
        self._verify_credentials(user)
        self._mark_login_success(user)
        tokens = issue_token_pair(self.session, user_id=user.id, email=user.email, role=user.role)
        record_audit_event(
            self.session,
            action="login",
            user_id=user.id,
            resource="user",
            ip=self.context.ip,
            user_agent=self.context.user_agent,
        )
        self.session.commit()
        return AuthResult(user=user, tokens=tokens)

    def _load_user(self) -> User:
        user = None
        if self.email:
            user = self.session.execute(
                select(User).where(func.lower(User.email) == self.email)
            ).scalar_one_or_none()
        if user is None:
            raise AuthServiceError("auth.invalid_credentials", "Invalid credentials.", 401)
        return user

    def _verify_credentials(self, user: User) -> None:
        if user.is_banned:
            raise AuthServiceError(
                "auth.account_banned",
                "Account is banned.",
                403,
                extra={"reason": user.banned_reason},
            )
        try:
            _PASSWORD_HASHER.verify(user.password_hash, self.payload.get("password") or "")
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            raise AuthServiceError("auth.invalid_credentials", "Invalid credentials.", 401) from None
        if not user.is_active:
            raise AuthServiceError("auth.account_inactive", "Account is inactive.", 403)

    def _mark_login_success(self, user: User) -> None:
        user.last_login_at = self.now
        user.last_login_ip = _safe_ip_value(self.context.ip)
        fingerprint = (self.payload.get("deviceFingerprint") or "").strip()
        if fingerprint:
            user.device_fingerprint_hash = hash_device_fingerprint(fingerprint)
        if _PASSWORD_HASHER.check_needs_rehash(user.password_hash):
            user.password_hash = hash_password(self.payload["password"])


def register_user(
    session: Session,
    payload: Dict[str, Any],
    *,
    context: RequestContext,
    sms_sender: Optional[SmsSender] = None,
) -> AuthResult:
    return RegisterUserUseCase(session, payload, context, sms_sender=sms_sender).execute()


def login_user(session: Session, payload: Dict[str, Any], *, context: RequestContext) -> AuthResult:
    return LoginUserUseCase(session, payload, context).execute()


def refresh_session(session: Session, *, refresh_token: Optional[str]) -> TokenPair:
    """Rotate a refresh token: the presented token is revoked and a new pair issued."""

    if not refresh_token:
        raise AuthServiceError("auth.invalid_payload", "Refresh token required.", 400)
    try:
        payload = decode_token(refresh_token, scope=REFRESH_SCOPE)
    except AuthTokenError as exc:
        raise AuthServiceError(exc.code, "Invalid refresh token.", 401) from exc

    record = find_refresh_token(session, refresh_token)
    if record is None or record.revoked_at is not None:
        raise AuthServiceError("auth.token_invalid", "Invalid refresh token.", 401)
    if not is_refresh_token_usable(record):
        raise AuthServiceError("auth.token_expired", "Refresh token expired.", 401)

    user = session.get(User, normalize_uuid(payload.get("sub")))
    if user is None or user.id != record.user_id:
        raise AuthServiceError("auth.token_invalid", "Invalid refresh token.", 401)
    if user.is_banned or not user.is_active:
        raise AuthServiceError("auth.account_inactive", "Account is inactive or banned.", 403)

    record.revoked_at = utcnow()
    tokens = issue_token_pair(session, user_id=user.id, email=user.email, role=user.role)
    session.commit()
    return tokens


def logout_session(session: Session, *, refresh_token: Optional[str]) -> bool:
    if not refresh_token:
        return False
    record = find_refresh_token(session, refresh_token)
    if record is None or record.revoked_at is not None:
        return False
    record.revoked_at = utcnow()
    session.commit()
    return True


def get_profile(session: Session, user_id: Any) -> User:
    user_uuid = normalize_uuid(user_id)
    user = session.get(User, user_uuid) if user_uuid else None
    if user is None:
        raise AuthServiceError("auth.user_not_found", "User not found.", 404)
    return user


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "email": user.email,
        "phone": user.phone,
        "phoneVerified": bool(user.phone_verified),
        "role": user.role,
        "trialStart": _iso(user.trial_start),
        "trialEnd": _iso(user.trial_end),
        "subscriptionPlan": user.subscription_plan,
        "subscriptionStatus": user.subscription_status,
        "createdAt": _iso(user.created_at),
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized else None


__all__ = [
    "AuthResult",
    "AuthServiceError",
    "RequestContext",
    "get_profile",
    "hash_device_fingerprint",
    "login_user",
    "logout_session",
    "refresh_session",
    "register_user",
    "serialize_user",
    "validate_password_strength",
]
