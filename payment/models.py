# src/payment/models.py
from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, DateTime, JSON, Text, Index, text
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime
from typing import Optional

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

# Shadow transaction states, serialized as the gateway expects them
STATE_CREATED = 1
STATE_COMPLETED = 2
STATE_CANCELLED = -1
STATE_CANCELLED_AFTER_COMPLETE = -2


class Payment(Base):
    """Represents one purchase attempt for a plan or a package."""
    __tablename__ = "payments"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    kind: str = Column(String, nullable=False)  # plan, package
    plan_id: Optional[int] = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    package_id: Optional[int] = Column(Integer, ForeignKey("minute_packages.id"), nullable=True)
    amount: int = Column(Integer, nullable=False)  # minor units (tiyin)
    provider: str = Column(String, nullable=False, default="payme")
    provider_tx_id: Optional[str] = Column(String, nullable=True)
    provider_response: Optional[dict] = Column(JSON, nullable=True)
    failure_reason: Optional[str] = Column(Text, nullable=True)
    status: str = Column(String, nullable=False, default=PENDING)  # pending, completed, failed
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    completed_at: Optional[datetime] = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="payments")
    plan = relationship("Plan")
    package = relationship("Package")

    __table_args__ = (
        # at most one pending payment per (user, target)
        Index(
            "uq_payments_pending_plan", "user_id", "plan_id", unique=True,
            sqlite_where=text("status = 'pending' AND plan_id IS NOT NULL"),
            postgresql_where=text("status = 'pending' AND plan_id IS NOT NULL"),
        ),
        Index(
            "uq_payments_pending_package", "user_id", "package_id", unique=True,
            sqlite_where=text("status = 'pending' AND package_id IS NOT NULL"),
            postgresql_where=text("status = 'pending' AND package_id IS NOT NULL"),
        ),
    )

    @property
    def target_id(self) -> Optional[int]:
        return self.plan_id if self.kind == "plan" else self.package_id

    @property
    def target_name(self) -> Optional[str]:
        target = self.plan if self.kind == "plan" else self.package
        return target.name if target else None


class PaymeTransaction(Base):
    """Local mirror of one gateway transaction, keyed by the gateway's id."""
    __tablename__ = "payme_transactions"

    id: int = Column(Integer, primary_key=True, index=True)
    external_id: str = Column(String, unique=True, nullable=False, index=True)
    payment_id: int = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    time: int = Column(BigInteger, nullable=False, index=True)  # client-supplied, epoch ms
    amount: int = Column(Integer, nullable=False)
    state: int = Column(Integer, nullable=False, default=STATE_CREATED)
    reason: Optional[int] = Column(Integer, nullable=True)
    create_time: int = Column(BigInteger, nullable=False)
    perform_time: int = Column(BigInteger, nullable=False, default=0)
    cancel_time: int = Column(BigInteger, nullable=False, default=0)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow)

    payment = relationship("Payment")

    __table_args__ = (
        # one live gateway transaction per payment
        Index(
            "uq_payme_transactions_created_payment", "payment_id", unique=True,
            sqlite_where=text("state = 1"),
            postgresql_where=text("state = 1"),
        ),
    )
