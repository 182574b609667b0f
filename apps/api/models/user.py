"""User model."""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Identity anchor keyed by the auth provider's opaque user id."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    referred_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    referred_by = relationship("User", remote_side=[id], back_populates="referrals")
    referrals = relationship("User", back_populates="referred_by")
    referral_stats = relationship("ReferralStats", back_populates="user", uselist=False)
    subscriptions = relationship("Subscription", back_populates="user")
    credit_entries = relationship("CreditLedger", back_populates="user")
    billing_history = relationship("BillingHistory", back_populates="user")
