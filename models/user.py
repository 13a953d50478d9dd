"""Account records, including the trial window and the mirrored subscription state."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "trial_end IS NULL OR trial_start IS NULL OR trial_end >= trial_start",
            name="ck_users_trial_window",
        ),
        {"extend_existing": True},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(320), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True, index=True)
    phone_verified = Column(Boolean, nullable=False, default=False)
    role = Column(String(16), nullable=False, default="user")

    # Set once at signup.
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    # Written only by the billing reconciler.
    subscription_plan = Column(String(32), nullable=True)
    subscription_status = Column(String(32), nullable=True, index=True)

    device_fingerprint_hash = Column(String(128), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_banned = Column(Boolean, nullable=False, default=False)
    banned_at = Column(DateTime(timezone=True), nullable=True)
    banned_reason = Column(Text, nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    subscriptions = relationship(
        "Subscription",
        back_populates="user",
        order_by="Subscription.created_at.desc()",
        lazy="select",
    )


__all__ = ["User"]
