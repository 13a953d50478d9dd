"""Attach access-token claims from Authorization headers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from services.auth_tokens import ACCESS_SCOPE, AuthTokenError, decode_token

logger = get_logger(__name__)

_BYPASS_PREFIXES = (
    "/api/v1/auth/signup",
    "/api/v1/auth/login",
    "/api/v1/auth/refresh",
    "/api/v1/billing/webhook",
    "/docs",
    "/openapi",
    "/healthz",
    "/metrics",
)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _should_bypass(path: str) -> bool:
    path = path or ""
    return any(path.startswith(prefix) for prefix in _BYPASS_PREFIXES)


def _extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    value = header_value.strip()
    if value.lower().startswith("bearer "):
        token = value[7:].strip()
        return token or None
    return None


async def auth_context_middleware(request: Request, call_next):
    """Decode a Bearer access token into ``request.state.user_claims``.

    Account lookups (existence, bans) happen in ``web.deps.get_current_user`` so they
    share the request's database session.
    """
    path = request.url.path if request.url else ""
    if request.method == "OPTIONS" or _should_bypass(path):
        return await call_next(request)

    token = _extract_bearer(request.headers.get("authorization"))
    if not token:
        return await call_next(request)

    try:
        payload = decode_token(token, scope=ACCESS_SCOPE)
    except AuthTokenError as exc:
        logger.debug("Rejected access token on %s: %s", path, exc.code)
        return JSONResponse(status_code=401, content={"detail": {"code": exc.code, "message": exc.message}})

    if not payload.get("sub"):
        detail = {"code": "auth.token_invalid", "message": "Invalid token."}
        return JSONResponse(status_code=401, content={"detail": detail})

    request.state.user_claims = payload
    return await call_next(request)


__all__ = ["AuthenticatedUser", "auth_context_middleware"]
