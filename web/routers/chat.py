"""Chat endpoints; every route requires an active trial or subscription."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.chat import (
    ChatClearResponse,
    ChatHistoryResponse,
    ChatMessageSchema,
    ChatSendRequest,
    ChatSendResponse,
)
from services import chat_service, rate_limiter
from services.chat_service import ChatServiceError
from web.deps import get_current_user, require_chat_entitlement
from web.middleware.auth_context import AuthenticatedUser

router = APIRouter(
    prefix="/chat",
    tags=["Chat"],
    dependencies=[Depends(require_chat_entitlement)],
)


def _raise(exc: ChatServiceError) -> None:
    raise HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message}) from exc


def _enforce_chat_rate_limit(user_id: str, response: Response) -> None:
    result = rate_limiter.check_limit(
        "chat.send",
        user_id,
        limit=rate_limiter.CHAT_LIMIT,
        window_seconds=rate_limiter.CHAT_WINDOW_SECONDS,
    )
    headers = result.headers()
    if not result.allowed:
        retry_after = result.retry_after_seconds()
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "chat.rate_limited",
                "message": "Message limit reached. Please try again later.",
                "retryAfter": retry_after,
            },
            headers={**headers, "Retry-After": str(retry_after)},
        )
    for name, value in headers.items():
        response.headers[name] = value


@router.post("/", response_model=ChatSendResponse)
def send_chat_message(
    payload: ChatSendRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatSendResponse:
    _enforce_chat_rate_limit(user.id, response)
    try:
        saved = chat_service.send_message(
            db,
            user.id,
            payload.message,
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except ChatServiceError as exc:
        _raise(exc)
    return ChatSendResponse(
        message=ChatMessageSchema(**chat_service.serialize_message(saved)),
        response=saved.response or "",
    )


@router.get("/history", response_model=ChatHistoryResponse)
def read_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatHistoryResponse:
    page = chat_service.get_history(db, user.id, limit=limit, offset=offset)
    return ChatHistoryResponse(
        messages=[ChatMessageSchema(**chat_service.serialize_message(item)) for item in page.messages],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/export")
def export_history(
    format: Literal["json", "csv", "txt"] = Query(default="json"),
    startDate: Optional[datetime] = Query(default=None),
    endDate: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    try:
        exported = chat_service.export_messages(db, user.id, fmt=format, start=startDate, end=endDate)
    except ChatServiceError as exc:
        _raise(exc)
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f"attachment; filename={exported.filename}"},
    )


@router.delete("/{message_id}")
def delete_chat_message(
    message_id: str,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    try:
        chat_service.delete_message(db, user.id, message_id)
    except ChatServiceError as exc:
        _raise(exc)
    return {"success": True, "message": "Message deleted successfully"}


@router.delete("/", response_model=ChatClearResponse)
def clear_chat_history(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatClearResponse:
    deleted = chat_service.clear_history(db, user.id)
    return ChatClearResponse(deleted=deleted, message=f"Deleted {deleted} messages")


__all__ = ["router"]
