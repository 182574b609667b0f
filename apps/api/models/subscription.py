"""Subscription model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


BILLING_CYCLES = ("monthly", "yearly")
STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"


class Subscription(Base):
    """One user's relationship to a plan over a billing period."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one active subscription per user.
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_subscriptions_due", "status", "cancel_at_period_end", "current_period_end"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=False, index=True)
    billing_cycle = Column(String, nullable=False, default="monthly")
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("Plan", back_populates="subscriptions")
    credit_entries = relationship("CreditLedger", back_populates="subscription")
