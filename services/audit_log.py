"""Shared helpers for DB-backed audit logging."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from core.env import env_str
from models.audit import AuditLog
from services.time_utils import utcnow

logger = logging.getLogger(__name__)

_IP_HASH_SALT = env_str("AUDIT_LOG_IP_SALT") or env_str("SERVER_SALT") or ""


def hash_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    payload = f"{ip}|{_IP_HASH_SALT}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def record_audit_event(
    session: Session,
    *,
    action: str,
    user_id: Optional[uuid.UUID] = None,
    resource: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    """Add an audit row to ``session``; the caller owns the commit."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        details=json.dumps(dict(details), ensure_ascii=False, default=str) if details else None,
        ip_hash=hash_ip(ip),
        user_agent=(user_agent or None) and user_agent[:512],
        created_at=utcnow(),
    )
    session.add(entry)
    logger.debug("Audit event queued action=%s user=%s resource=%s", action, user_id, resource)
    return entry


__all__ = ["hash_ip", "record_audit_event"]
