"""Email/password authentication and phone verification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.auth import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OtpSendResponse,
    RefreshRequest,
    SendOtpRequest,
    SignupRequest,
    TokenPairSchema,
    UserProfileSchema,
    VerifyOtpRequest,
)
from services import rate_limiter
from services.auth_service import (
    AuthResult,
    AuthServiceError,
    RequestContext,
    get_profile,
    login_user,
    logout_session,
    refresh_session,
    register_user,
    serialize_user,
)
from services.id_utils import normalize_uuid
from services.otp_service import OtpServiceError, send_otp, verify_otp
from web.deps import get_current_user, get_request_context
from web.middleware.auth_context import AuthenticatedUser

router = APIRouter(prefix="/auth", tags=["Auth"])


def _raise(exc: AuthServiceError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    if getattr(exc, "extra", None):
        detail.update(exc.extra)
    raise HTTPException(
        status_code=exc.status_code,
        detail=detail,
        headers=exc.headers,
    ) from exc


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        accessToken=result.tokens.access_token,
        refreshToken=result.tokens.refresh_token,
        expiresIn=result.tokens.expires_in,
        user=UserProfileSchema(**serialize_user(result.user)),
    )


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(
    payload: SignupRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    try:
        result = register_user(db, payload.model_dump(), context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    try:
        result = login_user(db, payload.model_dump(), context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return _auth_response(result)


@router.post("/refresh", response_model=TokenPairSchema)
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)) -> TokenPairSchema:
    try:
        tokens = refresh_session(db, refresh_token=payload.refreshToken)
    except AuthServiceError as exc:
        _raise(exc)
    return TokenPairSchema(
        accessToken=tokens.access_token,
        refreshToken=tokens.refresh_token,
        expiresIn=tokens.expires_in,
    )


@router.post("/logout", response_model=MessageResponse)
def logout(payload: LogoutRequest, db: Session = Depends(get_db)) -> MessageResponse:
    logout_session(db, refresh_token=payload.refreshToken)
    return MessageResponse(message="Logged out successfully")


@router.post("/send-otp", response_model=OtpSendResponse)
def send_phone_otp(
    payload: SendOtpRequest,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> OtpSendResponse:
    limit = rate_limiter.check_limit(
        "otp.send",
        user.id,
        limit=rate_limiter.OTP_LIMIT,
        window_seconds=rate_limiter.OTP_WINDOW_SECONDS,
    )
    if not limit.allowed:
        retry_after = limit.retry_after_seconds()
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "otp.rate_limited",
                "message": "Too many OTP requests. Please try again later.",
                "retryAfter": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )
    try:
        issued = send_otp(db, payload.phone, user_id=normalize_uuid(user.id))
    except OtpServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message}) from exc
    return OtpSendResponse(expiresIn=issued.expires_in, code=issued.mock_code)


@router.post("/verify-otp", response_model=MessageResponse)
def verify_phone_otp(payload: VerifyOtpRequest, db: Session = Depends(get_db)) -> MessageResponse:
    if not verify_otp(db, payload.phone, payload.code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "otp.invalid", "message": "Invalid or expired OTP code."},
        )
    return MessageResponse(message="Phone verified successfully")


@router.get("/profile", response_model=UserProfileSchema)
def read_profile(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserProfileSchema:
    try:
        record = get_profile(db, user.id)
    except AuthServiceError as exc:
        _raise(exc)
    return UserProfileSchema(**serialize_user(record))


__all__ = ["router"]
