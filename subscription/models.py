# src/subscription/models.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text, CheckConstraint
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime
from typing import Optional

PLAN_ACTIVATION = "plan_activation"
PLAN_RENEWAL = "plan_renewal"
PACKAGE_PURCHASE = "package_purchase"
USAGE_DEBIT = "usage_debit"
REFUND = "refund"
ADMIN_ADJUSTMENT = "admin_adjustment"
PROMO_CREDIT = "promo_credit"

TRANSACTION_TYPES = (
    PLAN_ACTIVATION,
    PLAN_RENEWAL,
    PACKAGE_PURCHASE,
    USAGE_DEBIT,
    REFUND,
    ADMIN_ADJUSTMENT,
    PROMO_CREDIT,
)


class Plan(Base):
    """Recurring tier granting minutes_per_cycle minutes every billing cycle."""
    __tablename__ = "subscription_plans"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String, unique=True, nullable=False)  # stable key: free, starter, pro, business
    display_name: str = Column(String, nullable=False)
    price: int = Column(Integer, nullable=False, default=0)  # major currency units
    minutes_per_cycle: int = Column(Integer, nullable=False)
    description: Optional[str] = Column(Text, nullable=True)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    sort_order: int = Column(Integer, nullable=False, default=0)

    @property
    def price_minor(self) -> int:
        return self.price * 100


class Package(Base):
    """One-time bundle of non-expiring bonus minutes."""
    __tablename__ = "minute_packages"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String, unique=True, nullable=False)  # 1hr, 5hr, 10hr
    display_name: str = Column(String, nullable=False)
    price: int = Column(Integer, nullable=False)
    minutes: int = Column(Integer, nullable=False)
    description: Optional[str] = Column(Text, nullable=True)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    sort_order: int = Column(Integer, nullable=False, default=0)

    @property
    def price_minor(self) -> int:
        return self.price * 100


class Subscription(Base):
    """Per-user minutes ledger row. One per user."""
    __tablename__ = "user_subscriptions"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    plan_id: int = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    cycle_start: datetime = Column(DateTime, nullable=False)
    cycle_end: datetime = Column(DateTime, nullable=False)
    minutes_included: int = Column(Integer, nullable=False, default=0)
    minutes_used: int = Column(Integer, nullable=False, default=0)
    bonus_minutes: int = Column(Integer, nullable=False, default=0)
    status: str = Column(String, nullable=False, default="active")
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="subscription")
    plan = relationship("Plan")

    __table_args__ = (
        CheckConstraint("bonus_minutes >= 0", name="ck_user_subscriptions_bonus_non_negative"),
    )

    @property
    def plan_remaining(self) -> int:
        return max(0, self.minutes_included - self.minutes_used)


class MinuteTransaction(Base):
    """Append-only audit entry. Written once per ledger mutation, never updated."""
    __tablename__ = "minute_transactions"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id: Optional[int] = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True)
    source_ref_id: Optional[str] = Column(String, nullable=True, index=True)  # e.g. job id
    package_id: Optional[int] = Column(Integer, ForeignKey("minute_packages.id"), nullable=True)
    type: str = Column(String, nullable=False)
    minutes_delta: int = Column(Integer, nullable=False)
    duration_seconds: Optional[int] = Column(Integer, nullable=True)
    plan_minutes_after: int = Column(Integer, nullable=False)
    bonus_minutes_after: int = Column(Integer, nullable=False)
    description: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow, index=True)


class UsageCharge(Base):
    """Minutes charged against one consuming resource, so its refund is exact and happens once."""
    __tablename__ = "usage_charges"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_ref_id: str = Column(String, unique=True, nullable=False)
    minutes_charged: int = Column(Integer, nullable=False)
    refunded: bool = Column(Boolean, nullable=False, default=False)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    refunded_at: Optional[datetime] = Column(DateTime, nullable=True)
