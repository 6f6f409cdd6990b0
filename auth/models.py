# src/auth/models.py
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime
from typing import Optional

class User(Base):
    """Represents a user in the system."""
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, index=True)
    # Short numeric id shown to payment providers as account.user_id
    account_id: int = Column(Integer, unique=True, index=True, nullable=False)
    username: Optional[str] = Column(String, nullable=True)
    email: Optional[str] = Column(String, unique=True, index=True, nullable=True)
    telegram_id: Optional[int] = Column(BigInteger, unique=True, nullable=True)
    role: str = Column(String, nullable=False, default="user")
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    subscription = relationship("Subscription", back_populates="user", uselist=False)
    payments = relationship("Payment", back_populates="user")


class AdminActionLog(Base):
    """Represents a log of admin actions."""
    __tablename__ = "admin_action_logs"

    id: int = Column(Integer, primary_key=True, index=True)
    admin_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)
    action: str = Column(String, nullable=False)
    timestamp: datetime = Column(DateTime, nullable=False, default=datetime.utcnow)

    admin = relationship("User")
