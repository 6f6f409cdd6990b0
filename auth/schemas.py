# src/auth/schemas.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class UserResponse(BaseModel):
    """Schema for user response."""
    id: int
    account_id: int
    username: Optional[str] = None
    email: Optional[str] = None
    telegram_id: Optional[int] = None
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


class AccountMergeRequest(BaseModel):
    """Schema for merging a source account into a target account."""
    target_user_id: int
    source_user_id: int


class AccountMergeResponse(BaseModel):
    target_user_id: int
    source_user_id: int
    bonus_minutes_moved: int
    payments_moved: int
    transactions_moved: int


class AdminActionLogResponse(BaseModel):
    """Schema for admin action log response."""
    id: int
    admin_id: int
    action: str
    timestamp: datetime

    class Config:
        from_attributes = True
