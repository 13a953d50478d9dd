"""Trial and subscription entitlement checks for gated actions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.plan_constants import STATUS_ACTIVE
from models.user import User
from services.billing_metrics import record_entitlement_decision
from services.id_utils import normalize_uuid
from services.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

TRIAL_EXPIRED_CODE = "TRIAL_EXPIRED"
TRIAL_EXPIRED_MESSAGE = "Trial expired. Please subscribe to continue."


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: uuid.UUID
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    subscription_plan: Optional[str]
    subscription_status: Optional[str]


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[str] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class TrialStatus:
    is_active: bool
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    hours_remaining: int
    has_subscription: bool


class EntitlementServiceError(RuntimeError):
    """Raised when the entitlement record cannot be resolved."""

    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TrialExpiredError(RuntimeError):
    """Raised by gated actions when neither the trial nor a subscription allows access."""

    code = TRIAL_EXPIRED_CODE

    def __init__(self, trial_end: Optional[datetime]) -> None:
        super().__init__(TRIAL_EXPIRED_MESSAGE)
        self.trial_end = trial_end

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": TRIAL_EXPIRED_MESSAGE,
            "code": self.code,
            "trialEnd": self.trial_end.isoformat() if self.trial_end else None,
        }


def evaluate(
    now: datetime,
    trial_end: Optional[datetime],
    subscription_status: Optional[str],
) -> EntitlementDecision:
    """Decide ALLOW/DENY for a gated action. Pure; performs no I/O."""

    if subscription_status == STATUS_ACTIVE:
        return EntitlementDecision(allowed=True)

    normalized_end = ensure_utc(trial_end)
    if normalized_end is not None and ensure_utc(now) < normalized_end:
        return EntitlementDecision(allowed=True)

    return EntitlementDecision(allowed=False, reason=TRIAL_EXPIRED_CODE, trial_end=normalized_end)


def load_entitlement(session: Session, user_id: Any) -> Optional[EntitlementRecord]:
    """Read the entitlement fields for ``user_id`` in a single query."""

    user_uuid = normalize_uuid(user_id)
    if user_uuid is None:
        return None
    row = session.execute(
        select(
            User.id,
            User.trial_start,
            User.trial_end,
            User.subscription_plan,
            User.subscription_status,
        ).where(User.id == user_uuid)
    ).first()
    if row is None:
        return None
    return entitlement_from_account(row)


def entitlement_from_account(account: Any) -> EntitlementRecord:
    """Build a record from an already-loaded ``User`` row (or a row with the same columns)."""
    return EntitlementRecord(
        user_id=account.id,
        trial_start=ensure_utc(account.trial_start),
        trial_end=ensure_utc(account.trial_end),
        subscription_plan=account.subscription_plan,
        subscription_status=account.subscription_status,
    )


def _require_record(session: Session, user_id: Any) -> EntitlementRecord:
    record = load_entitlement(session, user_id)
    if record is None:
        raise EntitlementServiceError("auth.user_not_found", "User not found", 404)
    return record


def _decide(record: EntitlementRecord, now: Optional[datetime]) -> EntitlementDecision:
    decision = evaluate(now or utcnow(), record.trial_end, record.subscription_status)
    record_entitlement_decision(decision.allowed, decision.reason)
    return decision


def _raise_if_denied(record: EntitlementRecord, decision: EntitlementDecision) -> EntitlementDecision:
    if not decision.allowed:
        logger.info("Gated action denied for user=%s reason=%s", record.user_id, decision.reason)
        raise TrialExpiredError(decision.trial_end)
    return decision


def check_entitlement(session: Session, user_id: Any, *, now: Optional[datetime] = None) -> EntitlementDecision:
    return _decide(_require_record(session, user_id), now)


def ensure_entitlement(session: Session, user_id: Any, *, now: Optional[datetime] = None) -> EntitlementDecision:
    """Raise ``TrialExpiredError`` unless the account may perform a gated action."""

    record = _require_record(session, user_id)
    return _raise_if_denied(record, _decide(record, now))


def ensure_account_entitlement(account: User, *, now: Optional[datetime] = None) -> EntitlementDecision:
    """Same as ``ensure_entitlement`` for a ``User`` row the caller loaded this request."""

    record = entitlement_from_account(account)
    return _raise_if_denied(record, _decide(record, now))


def get_trial_status(session: Session, user_id: Any, *, now: Optional[datetime] = None) -> Optional[TrialStatus]:
    record = load_entitlement(session, user_id)
    if record is None:
        return None

    current = ensure_utc(now) if now else utcnow()
    is_trial_active = record.trial_end is not None and current < record.trial_end
    has_subscription = record.subscription_status == STATUS_ACTIVE

    hours_remaining = 0
    if is_trial_active and record.trial_end is not None:
        seconds_remaining = (record.trial_end - current).total_seconds()
        hours_remaining = max(0, int(seconds_remaining // 3600))

    return TrialStatus(
        is_active=is_trial_active or has_subscription,
        start_date=record.trial_start,
        end_date=record.trial_end,
        hours_remaining=hours_remaining,
        has_subscription=has_subscription,
    )


__all__ = [
    "EntitlementDecision",
    "EntitlementRecord",
    "EntitlementServiceError",
    "TRIAL_EXPIRED_CODE",
    "TRIAL_EXPIRED_MESSAGE",
    "TrialExpiredError",
    "TrialStatus",
    "check_entitlement",
    "ensure_account_entitlement",
    "ensure_entitlement",
    "entitlement_from_account",
    "evaluate",
    "get_trial_status",
    "load_entitlement",
]
