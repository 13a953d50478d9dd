"""Operator queries and moderation actions over accounts, billing, and usage."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.orm import Session

from core.plan_constants import STATUS_ACTIVE, normalize_plan_tier
from models.audit import AuditLog
from models.chat import ChatMessage
from models.subscription import Subscription
from models.user import User
from services.audit_log import record_audit_event
from services.billing_service import get_plan, serialize_subscription
from services.id_utils import normalize_uuid
from services.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

USER_STATUS_FILTERS = ("active", "banned", "subscribed")


class AdminServiceError(RuntimeError):
    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class Page:
    items: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int


def _iso(value: Optional[datetime]) -> Optional[str]:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized else None


def _serialize_admin_user(user: User, message_count: int) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "email": user.email,
        "phone": user.phone,
        "phoneVerified": bool(user.phone_verified),
        "trialStart": _iso(user.trial_start),
        "trialEnd": _iso(user.trial_end),
        "subscriptionPlan": user.subscription_plan,
        "subscriptionStatus": user.subscription_status,
        "isActive": bool(user.is_active),
        "isBanned": bool(user.is_banned),
        "bannedReason": user.banned_reason,
        "lastLoginAt": _iso(user.last_login_at),
        "createdAt": _iso(user.created_at),
        "messageCount": int(message_count or 0),
    }


def _require_user(session: Session, user_id: Any) -> User:
    user_uuid = normalize_uuid(user_id)
    user = session.get(User, user_uuid) if user_uuid else None
    if user is None:
        raise AdminServiceError("admin.user_not_found", "User not found.", 404)
    return user


def list_users(
    session: Session,
    *,
    search: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Page:
    if status and status not in USER_STATUS_FILTERS:
        raise AdminServiceError("admin.invalid_status", "Status must be one of active, banned, subscribed.", 400)

    conditions = []
    if search:
        pattern = f"%{search.strip().lower()}%"
        conditions.append(or_(func.lower(User.email).like(pattern), User.phone.like(f"%{search.strip()}%")))
    if status == "active":
        conditions.extend([User.is_active.is_(True), User.is_banned.is_(False)])
    elif status == "banned":
        conditions.append(User.is_banned.is_(True))
    elif status == "subscribed":
        conditions.append(User.subscription_status == STATUS_ACTIVE)

    message_counts = (
        select(ChatMessage.user_id, func.count(ChatMessage.id).label("message_count"))
        .group_by(ChatMessage.user_id)
        .subquery()
    )
    rows = session.execute(
        select(User, func.coalesce(message_counts.c.message_count, 0))
        .outerjoin(message_counts, message_counts.c.user_id == User.id)
        .where(*conditions)
        .order_by(User.created_at.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    total = session.execute(select(func.count(User.id)).where(*conditions)).scalar_one()
    return Page(
        items=[_serialize_admin_user(user, count) for user, count in rows],
        total=int(total),
        limit=limit,
        offset=offset,
    )


def get_user_detail(session: Session, user_id: Any) -> Dict[str, Any]:
    user = _require_user(session, user_id)
    subscriptions = (
        session.execute(
            select(Subscription)
            .where(Subscription.user_id == user.id)
            .order_by(Subscription.created_at.desc())
            .limit(5)
        )
        .scalars()
        .all()
    )
    messages = (
        session.execute(
            select(ChatMessage)
            .where(ChatMessage.user_id == user.id)
            .order_by(ChatMessage.created_at.desc())
            .limit(10)
        )
        .scalars()
        .all()
    )
    total_messages, total_tokens = session.execute(
        select(func.count(ChatMessage.id), func.coalesce(func.sum(ChatMessage.tokens), 0)).where(
            ChatMessage.user_id == user.id
        )
    ).one()

    return {
        "user": _serialize_admin_user(user, total_messages),
        "subscriptions": [serialize_subscription(item) for item in subscriptions],
        "messages": [
            {
                "id": str(item.id),
                "content": item.content,
                "response": item.response,
                "tokens": item.tokens,
                "createdAt": _iso(item.created_at),
            }
            for item in messages
        ],
        "stats": {"totalMessages": int(total_messages), "totalTokens": int(total_tokens or 0)},
    }


def ban_user(
    session: Session,
    user_id: Any,
    *,
    reason: Optional[str],
    actor_id: Optional[uuid.UUID],
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> User:
    reason_text = (reason or "").strip()
    if not reason_text:
        raise AdminServiceError("admin.invalid_payload", "Ban reason is required.", 400)

    user = _require_user(session, user_id)
    user.is_banned = True
    user.banned_at = utcnow()
    user.banned_reason = reason_text
    record_audit_event(
        session,
        action="ban_user",
        user_id=actor_id,
        resource="user",
        details={"targetUserId": str(user.id), "email": user.email, "reason": reason_text},
        ip=ip,
        user_agent=user_agent,
    )
    session.commit()
    logger.info("User %s banned by %s", user.id, actor_id)
    return user


def unban_user(
    session: Session,
    user_id: Any,
    *,
    actor_id: Optional[uuid.UUID],
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> User:
    user = _require_user(session, user_id)
    user.is_banned = False
    user.banned_at = None
    user.banned_reason = None
    record_audit_event(
        session,
        action="unban_user",
        user_id=actor_id,
        resource="user",
        details={"targetUserId": str(user.id), "email": user.email},
        ip=ip,
        user_agent=user_agent,
    )
    session.commit()
    logger.info("User %s unbanned by %s", user.id, actor_id)
    return user


def list_subscriptions(
    session: Session,
    *,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Page:
    conditions = [Subscription.status == status] if status else []
    rows = session.execute(
        select(Subscription, User.email, User.phone)
        .join(User, User.id == Subscription.user_id)
        .where(*conditions)
        .order_by(Subscription.created_at.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    total = session.execute(select(func.count(Subscription.id)).where(*conditions)).scalar_one()
    items = []
    for subscription, email, phone in rows:
        entry = serialize_subscription(subscription)
        entry["user"] = {"id": str(subscription.user_id), "email": email, "phone": phone}
        items.append(entry)
    return Page(items=items, total=int(total), limit=limit, offset=offset)


def get_analytics(session: Session, *, period_days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    if period_days <= 0:
        raise AdminServiceError("admin.invalid_period", "Period must be a positive number of days.", 400)

    current = ensure_utc(now) if now else utcnow()
    start = current - timedelta(days=period_days)
    one_day_ago = current - timedelta(days=1)

    total_users = session.execute(select(func.count(User.id))).scalar_one()
    new_users = session.execute(select(func.count(User.id)).where(User.created_at >= start)).scalar_one()
    active_subscriptions = session.execute(
        select(func.count(Subscription.id)).where(Subscription.status == STATUS_ACTIVE)
    ).scalar_one()
    breakdown_rows = session.execute(
        select(Subscription.plan, func.count(Subscription.id))
        .where(Subscription.status == STATUS_ACTIVE)
        .group_by(Subscription.plan)
    ).all()

    monthly_revenue = 0.0
    breakdown = []
    for plan, count in breakdown_rows:
        breakdown.append({"plan": plan, "count": int(count)})
        tier = normalize_plan_tier(plan)
        if tier is not None:
            monthly_revenue += get_plan(tier).price * int(count)

    total_messages = session.execute(select(func.count(ChatMessage.id))).scalar_one()
    messages_in_period = session.execute(
        select(func.count(ChatMessage.id)).where(ChatMessage.created_at >= start)
    ).scalar_one()
    total_tokens = session.execute(select(func.coalesce(func.sum(ChatMessage.tokens), 0))).scalar_one()
    dau = session.execute(
        select(func.count(distinct(ChatMessage.user_id))).where(ChatMessage.created_at >= one_day_ago)
    ).scalar_one()
    # Same boundary as the gate: access ends at trial_end, and only "active" counts as subscribed.
    unsubscribed = or_(User.subscription_status.is_(None), User.subscription_status != STATUS_ACTIVE)
    trial_users = session.execute(
        select(func.count(User.id)).where(User.trial_end > current, unsubscribed)
    ).scalar_one()
    expired_trials = session.execute(
        select(func.count(User.id)).where(User.trial_end <= current, unsubscribed)
    ).scalar_one()

    return {
        "users": {
            "total": int(total_users),
            "new": int(new_users),
            "trial": int(trial_users),
            "expiredTrial": int(expired_trials),
            "dau": int(dau),
        },
        "subscriptions": {
            "active": int(active_subscriptions),
            "breakdown": breakdown,
            "monthlyRevenue": round(monthly_revenue, 2),
        },
        "messages": {
            "total": int(total_messages),
            "inPeriod": int(messages_in_period),
            "totalTokens": int(total_tokens or 0),
        },
        "period": {"days": period_days, "startDate": start.isoformat(), "endDate": current.isoformat()},
    }


def list_audit_logs(
    session: Session,
    *,
    user_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Page:
    conditions = []
    if user_id:
        user_uuid = normalize_uuid(user_id)
        if user_uuid is None:
            raise AdminServiceError("admin.invalid_payload", "Invalid user id.", 400)
        conditions.append(AuditLog.user_id == user_uuid)
    if action:
        conditions.append(AuditLog.action == action)

    logs = (
        session.execute(
            select(AuditLog).where(*conditions).order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)
        )
        .scalars()
        .all()
    )
    total = session.execute(select(func.count(AuditLog.id)).where(*conditions)).scalar_one()
    items = [
        {
            "id": str(entry.id),
            "userId": str(entry.user_id) if entry.user_id else None,
            "action": entry.action,
            "resource": entry.resource,
            "details": entry.details,
            "userAgent": entry.user_agent,
            "createdAt": _iso(entry.created_at),
        }
        for entry in logs
    ]
    return Page(items=items, total=int(total), limit=limit, offset=offset)


__all__ = [
    "AdminServiceError",
    "Page",
    "ban_user",
    "get_analytics",
    "get_user_detail",
    "list_audit_logs",
    "list_subscriptions",
    "list_users",
    "unban_user",
]
