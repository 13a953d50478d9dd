"""Access/refresh JWT issuance and refresh-token storage helpers."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.env import env_int, env_str
from models.auth import RefreshToken
from services.time_utils import ensure_utc, utcnow

ACCESS_SCOPE = "access"
REFRESH_SCOPE = "refresh"


class AuthTokenError(RuntimeError):
    """Raised when a token cannot be issued or verified."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


_JWT_SECRET = env_str("AUTH_JWT_SECRET")
if not _JWT_SECRET:
    raise RuntimeError("AUTH_JWT_SECRET environment variable is required.")
_JWT_REFRESH_SECRET = env_str("AUTH_JWT_REFRESH_SECRET") or _JWT_SECRET

_JWT_ALG = env_str("AUTH_JWT_ALG") or "HS256"
_JWT_ISSUER = env_str("AUTH_JWT_ISSUER") or "zynx-auth"
_JWT_AUDIENCE = env_str("AUTH_JWT_AUDIENCE") or "zynx-app"
_ACCESS_TOKEN_TTL = env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 3600, minimum=60)
_REFRESH_TOKEN_TTL = env_int("AUTH_REFRESH_TOKEN_TTL_SECONDS", 60 * 60 * 24 * 7, minimum=300)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_access_token(*, user_id: str, email: str, role: str) -> tuple[str, int]:
    now = utcnow()
    payload = {
        "sub": user_id,
        "aud": _JWT_AUDIENCE,
        "iss": _JWT_ISSUER,
        "scope": ACCESS_SCOPE,
        "email": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=_ACCESS_TOKEN_TTL)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _JWT_SECRET, algorithm=_JWT_ALG), _ACCESS_TOKEN_TTL


def create_refresh_token(*, user_id: str) -> tuple[str, datetime]:
    now = utcnow()
    expires_at = now + timedelta(seconds=_REFRESH_TOKEN_TTL)
    payload = {
        "sub": user_id,
        "aud": _JWT_AUDIENCE,
        "iss": _JWT_ISSUER,
        "scope": REFRESH_SCOPE,
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, _JWT_REFRESH_SECRET, algorithm=_JWT_ALG), expires_at


def decode_token(token: str, *, scope: str = ACCESS_SCOPE) -> Dict[str, Any]:
    """Decode a JWT and check that it was issued for ``scope``."""

    secret = _JWT_REFRESH_SECRET if scope == REFRESH_SCOPE else _JWT_SECRET
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[_JWT_ALG],
            audience=_JWT_AUDIENCE,
            issuer=_JWT_ISSUER,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthTokenError("auth.token_expired", "Token has expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthTokenError("auth.token_invalid", "Invalid token.") from exc
    if payload.get("scope") != scope:
        raise AuthTokenError("auth.token_invalid", "Token scope mismatch.")
    return payload


def issue_token_pair(session: Session, *, user_id: uuid.UUID, email: str, role: str) -> TokenPair:
    """Issue access+refresh tokens and store the refresh token digest."""

    access_token, expires_in = create_access_token(user_id=str(user_id), email=email, role=role)
    refresh_token, refresh_expires_at = create_refresh_token(user_id=str(user_id))
    session.add(
        RefreshToken(
            user_id=user_id,
            token_hash=token_digest(refresh_token),
            expires_at=refresh_expires_at,
            created_at=utcnow(),
        )
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        refresh_expires_at=refresh_expires_at,
    )


def find_refresh_token(session: Session, token: str) -> Optional[RefreshToken]:
    return session.execute(
        select(RefreshToken).where(RefreshToken.token_hash == token_digest(token))
    ).scalar_one_or_none()


def is_refresh_token_usable(record: RefreshToken, *, now: Optional[datetime] = None) -> bool:
    current = now or utcnow()
    if record.revoked_at is not None:
        return False
    expires_at = ensure_utc(record.expires_at)
    return expires_at is not None and expires_at > current


__all__ = [
    "ACCESS_SCOPE",
    "AuthTokenError",
    "REFRESH_SCOPE",
    "TokenPair",
    "create_access_token",
    "create_refresh_token",
    "decode_token",
    "find_refresh_token",
    "is_refresh_token_usable",
    "issue_token_pair",
    "token_digest",
]
