"""Chat API schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ChatSendRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    conversationId: Optional[str] = None


class ChatMessageSchema(BaseModel):
    id: str
    role: str
    content: str
    response: Optional[str] = None
    tokens: int = 0
    createdAt: Optional[str] = None


class ChatSendResponse(BaseModel):
    message: ChatMessageSchema
    response: str


class ChatHistoryResponse(BaseModel):
    messages: List[ChatMessageSchema]
    total: int
    limit: int
    offset: int


class ChatClearResponse(BaseModel):
    success: bool = True
    deleted: int
    message: str
