"""Seed a development database with an admin and one account per entitlement state.

Accounts created (password ``Password123`` unless overridden):

* ``admin@zynxai.com``        admin role, open trial
* ``test1@example.com``       trial still running
* ``test2@example.com``       trial expired, never subscribed
* ``subscriber@example.com``  active pro subscription

Re-running the script leaves existing accounts untouched.
"""

import argparse
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from scripts._path import add_root

add_root()

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.logging import setup_logging
from core.plan_constants import STATUS_ACTIVE, PlanTier
from database import session_scope
from models.chat import ChatMessage
from models.subscription import Subscription
from models.user import User
from services.audit_log import record_audit_event
from services.auth_service import TRIAL_DURATION_HOURS, hash_password
from services.billing_service import apply_subscription_status
from services.otp_service import cleanup_expired_otps
from services.time_utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "Password123"
ADMIN_EMAIL = "admin@zynxai.com"

SAMPLE_EXCHANGES = (
    ("Hello, how are you?", "I am doing well, thank you! How can I assist you today?", 25),
    (
        "What is the weather like?",
        "I don't have access to real-time weather data. A weather website or app will have current conditions.",
        35,
    ),
)


@dataclass
class SeedReport:
    created: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    expired_otps_removed: int = 0


def _existing(session: Session, email: str) -> Optional[User]:
    return session.execute(select(User).where(User.email == email)).scalar_one_or_none()


def _add_user(
    session: Session,
    report: SeedReport,
    *,
    email: str,
    password_hash: str,
    trial_start: Optional[datetime],
    trial_end: Optional[datetime],
    phone: Optional[str] = None,
    role: str = "user",
) -> Optional[User]:
    if _existing(session, email) is not None:
        report.skipped.append(email)
        return None
    user = User(
        email=email,
        password_hash=password_hash,
        phone=phone,
        phone_verified=phone is not None,
        role=role,
        trial_start=trial_start,
        trial_end=trial_end,
    )
    session.add(user)
    session.flush()
    report.created.append(email)
    return user


def _add_sample_messages(session: Session, user: User, now: datetime) -> None:
    for offset, (content, response, tokens) in enumerate(SAMPLE_EXCHANGES):
        session.add(
            ChatMessage(
                user_id=user.id,
                content=content,
                response=response,
                tokens=tokens,
                created_at=now - timedelta(minutes=len(SAMPLE_EXCHANGES) - offset),
            )
        )


def seed_dev_data(session: Session, *, password: str = DEFAULT_PASSWORD, now: Optional[datetime] = None) -> SeedReport:
    now = now or utcnow()
    trial = timedelta(hours=TRIAL_DURATION_HOURS)
    password_hash = hash_password(password)
    report = SeedReport()

    _add_user(
        session,
        report,
        email=ADMIN_EMAIL,
        password_hash=password_hash,
        trial_start=now,
        trial_end=now + trial,
        role="admin",
    )

    active_trial = _add_user(
        session,
        report,
        email="test1@example.com",
        password_hash=password_hash,
        trial_start=now,
        trial_end=now + trial,
        phone="+1234567890",
    )
    if active_trial is not None:
        _add_sample_messages(session, active_trial, now)

    _add_user(
        session,
        report,
        email="test2@example.com",
        password_hash=password_hash,
        trial_start=now - 2 * trial,
        trial_end=now - trial,
        phone="+1234567891",
    )

    subscriber = _add_user(
        session,
        report,
        email="subscriber@example.com",
        password_hash=password_hash,
        trial_start=now - timedelta(days=30),
        trial_end=now - timedelta(days=30) + trial,
        phone="+1234567892",
    )
    if subscriber is not None:
        subscription = Subscription(
            user_id=subscriber.id,
            stripe_customer_id="cus_test_subscriber",
            stripe_subscription_id="sub_test_subscriber",
            stripe_price_id="price_pro_test",
            plan=PlanTier.PRO.value,
            status=STATUS_ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )
        session.add(subscription)
        subscriber.subscription_plan = PlanTier.PRO.value
        apply_subscription_status(session, subscription, STATUS_ACTIVE, user=subscriber)
        _add_sample_messages(session, subscriber, now)
        record_audit_event(
            session,
            action="subscribe",
            user_id=subscriber.id,
            resource="subscription",
            details={"plan": PlanTier.PRO.value, "source": "seed"},
        )

    session.commit()
    report.expired_otps_removed = cleanup_expired_otps(session)
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed development accounts for each trial and subscription state.")
    parser.add_argument(
        "--password",
        type=str,
        default=DEFAULT_PASSWORD,
        help=f"Password assigned to every seeded account. Default {DEFAULT_PASSWORD}",
    )
    args = parser.parse_args()

    setup_logging()
    with session_scope() as db_session:
        report = seed_dev_data(db_session, password=args.password)

    logger.info("Seed complete: created=%s skipped=%s", report.created, report.skipped)
    if report.expired_otps_removed:
        logger.info("Removed %d expired OTP codes.", report.expired_otps_removed)


if __name__ == "__main__":
    main()
