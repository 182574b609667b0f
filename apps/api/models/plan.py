"""Plan catalog model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Plan(Base):
    """Catalog entry selecting price and credit quota.

    Daily plans replenish ``daily_credits`` per calendar day; monthly plans
    grant ``monthly_credits`` once per billing period.
    """

    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, unique=True, nullable=False, index=True)
    price_monthly = Column(Numeric(10, 2), nullable=False, default=0)
    price_yearly = Column(Numeric(10, 2), nullable=False, default=0)
    daily_credits = Column(Integer, nullable=False, default=0)
    monthly_credits = Column(Integer, nullable=False, default=0)
    is_daily = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    features = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="plan")
