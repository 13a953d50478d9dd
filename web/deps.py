"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from models.user import User
from services.auth_service import RequestContext
from services.entitlement_service import EntitlementDecision, TrialExpiredError, ensure_account_entitlement
from services.id_utils import normalize_uuid
from web.middleware.auth_context import AuthenticatedUser


def get_request_context(request: Request) -> RequestContext:
    client = request.client
    return RequestContext(
        ip=client.host if client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_current_account(request: Request, db: Session = Depends(get_db)) -> User:
    """Load the caller's account row once per request; banned or inactive accounts are refused."""
    claims = getattr(request.state, "user_claims", None)
    if not claims:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Authentication required."},
        )

    user_uuid = normalize_uuid(claims.get("sub"))
    # One read per request; the gate evaluates this same row.
    record = db.get(User, user_uuid) if user_uuid else None
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.user_not_found", "message": "User not found."},
        )
    if record.is_banned or not record.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "auth.account_inactive", "message": "Account is inactive or banned."},
        )
    return record


def get_current_user(request: Request, account: User = Depends(get_current_account)) -> AuthenticatedUser:
    user = AuthenticatedUser(id=str(account.id), email=account.email, role=account.role or "user")
    request.state.user = user
    return user


def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "admin.forbidden", "message": "Admin access denied."},
        )
    return user


def require_chat_entitlement(account: User = Depends(get_current_account)) -> EntitlementDecision:
    """Gate an action on the trial/subscription state of the row loaded for this request."""
    return ensure_account_entitlement(account)


async def trial_expired_handler(request: Request, exc: TrialExpiredError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=exc.to_payload())


__all__ = [
    "get_current_account",
    "get_current_user",
    "get_request_context",
    "require_admin",
    "require_chat_entitlement",
    "trial_expired_handler",
]
