"""Administrative endpoints for account moderation and reporting."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.admin import AdminActionResponse, BanUserRequest, PagedResponse
from services import admin_service
from services.admin_service import AdminServiceError
from services.id_utils import normalize_uuid
from web.deps import require_admin
from web.middleware.auth_context import AuthenticatedUser

router = APIRouter(prefix="/admin", tags=["Admin"])


def _raise(exc: AdminServiceError) -> None:
    raise HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message}) from exc


def _page(page: admin_service.Page) -> PagedResponse:
    return PagedResponse(items=page.items, total=page.total, limit=page.limit, offset=page.offset)


@router.get("/users", response_model=PagedResponse)
def read_users(
    search: Optional[str] = Query(default=None, max_length=200),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _admin: AuthenticatedUser = Depends(require_admin),
) -> PagedResponse:
    try:
        page = admin_service.list_users(db, search=search, status=status, limit=limit, offset=offset)
    except AdminServiceError as exc:
        _raise(exc)
    return _page(page)


@router.get("/users/{user_id}")
def read_user(
    user_id: str,
    db: Session = Depends(get_db),
    _admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    try:
        return admin_service.get_user_detail(db, user_id)
    except AdminServiceError as exc:
        _raise(exc)


@router.post("/users/{user_id}/ban", response_model=AdminActionResponse)
def ban_user(
    user_id: str,
    payload: BanUserRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: AuthenticatedUser = Depends(require_admin),
) -> AdminActionResponse:
    try:
        admin_service.ban_user(
            db,
            user_id,
            reason=payload.reason,
            actor_id=normalize_uuid(admin.id),
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AdminServiceError as exc:
        _raise(exc)
    return AdminActionResponse(message="User banned successfully")


@router.post("/users/{user_id}/unban", response_model=AdminActionResponse)
def unban_user(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: AuthenticatedUser = Depends(require_admin),
) -> AdminActionResponse:
    try:
        admin_service.unban_user(
            db,
            user_id,
            actor_id=normalize_uuid(admin.id),
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AdminServiceError as exc:
        _raise(exc)
    return AdminActionResponse(message="User unbanned successfully")


@router.get("/subscriptions", response_model=PagedResponse)
def read_subscriptions(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _admin: AuthenticatedUser = Depends(require_admin),
) -> PagedResponse:
    return _page(admin_service.list_subscriptions(db, status=status, limit=limit, offset=offset))


@router.get("/analytics")
def read_analytics(
    period: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    _admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    try:
        return admin_service.get_analytics(db, period_days=period)
    except AdminServiceError as exc:
        _raise(exc)


@router.get("/logs", response_model=PagedResponse)
def read_audit_logs(
    userId: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _admin: AuthenticatedUser = Depends(require_admin),
) -> PagedResponse:
    try:
        page = admin_service.list_audit_logs(db, user_id=userId, action=action, limit=limit, offset=offset)
    except AdminServiceError as exc:
        _raise(exc)
    return _page(page)


__all__ = ["router"]
