"""ReferralStats model for referral signups and commission."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ReferralStats(Base):
    """Per-user referral counters, created alongside every user."""

    __tablename__ = "referral_stats"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    reference_code = Column(String, unique=True, nullable=False, index=True)
    total_users_signed = Column(Integer, nullable=False, default=0)
    total_paid_subscribers = Column(Integer, nullable=False, default=0)
    total_earning = Column(Numeric(12, 4), nullable=False, default=0)
    amount_deducted = Column(Numeric(12, 4), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="referral_stats")
