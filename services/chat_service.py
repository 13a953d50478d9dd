"""Persistence and orchestration for chat messages."""

from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.env import env_int
from llm.chat_completion import ChatCompletion, ChatCompletionError, complete_chat
from llm.prompts import chat_assistant
from models.chat import ChatMessage
from services.audit_log import record_audit_event
from services.id_utils import normalize_uuid
from services.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
HISTORY_CONTEXT_LIMIT = env_int("CHAT_HISTORY_CONTEXT_LIMIT", 10, minimum=1)
DEFAULT_HISTORY_PAGE = 50
EXPORT_FORMATS = ("json", "csv", "txt")

CompletionFn = Callable[[List[Dict[str, Any]]], ChatCompletion]


class ChatServiceError(RuntimeError):
    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class HistoryPage:
    messages: List[ChatMessage]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class ChatExport:
    content: str
    media_type: str
    filename: str


def _require_user_uuid(user_id: Any) -> uuid.UUID:
    user_uuid = normalize_uuid(user_id)
    if user_uuid is None:
        raise ChatServiceError("chat.invalid_user", "Invalid user id.", 400)
    return user_uuid


def _recent_exchanges(db: Session, user_id: uuid.UUID, limit: int) -> List[ChatMessage]:
    recent = (
        db.query(ChatMessage)
        .filter(ChatMessage.user_id == user_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(limit)
        .all()
    )
    recent.reverse()
    return recent


def send_message(
    db: Session,
    user_id: Any,
    message: str,
    *,
    complete: Optional[CompletionFn] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ChatMessage:
    """Answer ``message`` with the recent conversation as context and store the exchange."""

    user_uuid = _require_user_uuid(user_id)
    text = (message or "").strip()
    if not text:
        raise ChatServiceError("chat.invalid_message", "Message cannot be empty.", 400)
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ChatServiceError("chat.invalid_message", "Message too long.", 400)

    history = [
        {"content": item.content, "response": item.response}
        for item in _recent_exchanges(db, user_uuid, HISTORY_CONTEXT_LIMIT)
    ]
    prompt = chat_assistant.get_prompt(history, text)

    try:
        completion = (complete or complete_chat)(prompt)
    except ChatCompletionError as exc:
        raise ChatServiceError("chat.llm_failed", str(exc), 502) from exc

    saved = ChatMessage(
        user_id=user_uuid,
        role="user",
        content=text,
        response=completion.text,
        tokens=completion.tokens,
        created_at=utcnow(),
    )
    db.add(saved)
    record_audit_event(
        db,
        action="chat",
        user_id=user_uuid,
        resource="message",
        details={"tokens": completion.tokens},
        ip=ip,
        user_agent=user_agent,
    )
    db.commit()
    return saved


def get_history(db: Session, user_id: Any, *, limit: int = DEFAULT_HISTORY_PAGE, offset: int = 0) -> HistoryPage:
    user_uuid = _require_user_uuid(user_id)
    query = db.query(ChatMessage).filter(ChatMessage.user_id == user_uuid)
    total = query.count()
    page = query.order_by(ChatMessage.created_at.desc()).offset(offset).limit(limit).all()
    page.reverse()
    return HistoryPage(messages=page, total=total, limit=limit, offset=offset)


def delete_message(db: Session, user_id: Any, message_id: Any) -> None:
    user_uuid = _require_user_uuid(user_id)
    message_uuid = normalize_uuid(message_id)
    message = None
    if message_uuid is not None:
        message = (
            db.query(ChatMessage)
            .filter(ChatMessage.id == message_uuid, ChatMessage.user_id == user_uuid)
            .one_or_none()
        )
    if message is None:
        raise ChatServiceError("chat.message_not_found", "Message not found.", 404)
    db.delete(message)
    db.commit()


def clear_history(db: Session, user_id: Any) -> int:
    user_uuid = _require_user_uuid(user_id)
    deleted = (
        db.query(ChatMessage)
        .filter(ChatMessage.user_id == user_uuid)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


def _export_rows(
    db: Session,
    user_id: uuid.UUID,
    start: Optional[datetime],
    end: Optional[datetime],
) -> List[Tuple[datetime, str, Optional[str]]]:
    query = db.query(ChatMessage.created_at, ChatMessage.content, ChatMessage.response).filter(
        ChatMessage.user_id == user_id
    )
    if start is not None:
        query = query.filter(ChatMessage.created_at >= start)
    if end is not None:
        query = query.filter(ChatMessage.created_at <= end)
    return [
        (ensure_utc(created_at), content, response)
        for created_at, content, response in query.order_by(ChatMessage.created_at.asc()).all()
    ]


def export_messages(
    db: Session,
    user_id: Any,
    *,
    fmt: str = "json",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> ChatExport:
    if fmt not in EXPORT_FORMATS:
        raise ChatServiceError("chat.invalid_format", "Invalid format. Use json, csv, or txt.", 400)

    user_uuid = _require_user_uuid(user_id)
    rows = _export_rows(db, user_uuid, start, end)
    exported_at = utcnow().isoformat()

    if fmt == "json":
        payload = {
            "exportDate": exported_at,
            "messageCount": len(rows),
            "messages": [
                {"createdAt": created_at.isoformat(), "content": content, "response": response}
                for created_at, content, response in rows
            ],
        }
        return ChatExport(json.dumps(payload, ensure_ascii=False), "application/json", "chat-export.json")

    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(["Date", "User Message", "AI Response"])
        for created_at, content, response in rows:
            writer.writerow([created_at.isoformat(), content, response or ""])
        return ChatExport(buffer.getvalue(), "text/csv", "chat-export.csv")

    lines = [
        "ZYNX AI Chat Export",
        f"Export Date: {exported_at}",
        f"Total Messages: {len(rows)}",
        "=" * 80,
        "",
    ]
    for created_at, content, response in rows:
        lines.extend(
            [
                f"[{created_at.isoformat()}]",
                f"User: {content}",
                f"AI: {response or 'No response'}",
                "-" * 80,
                "",
            ]
        )
    return ChatExport("\n".join(lines) + "\n", "text/plain", "chat-export.txt")


def serialize_message(message: ChatMessage) -> Dict[str, Any]:
    created_at = ensure_utc(message.created_at)
    return {
        "id": str(message.id),
        "role": message.role,
        "content": message.content,
        "response": message.response,
        "tokens": message.tokens,
        "createdAt": created_at.isoformat() if created_at else None,
    }


__all__ = [
    "ChatExport",
    "ChatServiceError",
    "HistoryPage",
    "MAX_MESSAGE_LENGTH",
    "clear_history",
    "delete_message",
    "export_messages",
    "get_history",
    "send_message",
    "serialize_message",
]
