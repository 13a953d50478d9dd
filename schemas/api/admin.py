"""Admin API schemas."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field


class BanUserRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PagedResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int


class AdminActionResponse(BaseModel):
    success: bool = True
    message: str
