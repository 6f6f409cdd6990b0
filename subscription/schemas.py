# src/subscription/schemas.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

class PlanResponse(BaseModel):
    """Schema for plan response."""
    id: int
    name: str
    display_name: str
    price: int
    minutes_per_cycle: int
    description: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True

class PackageResponse(BaseModel):
    """Schema for package response."""
    id: int
    name: str
    display_name: str
    price: int
    minutes: int
    description: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True

class BalanceResponse(BaseModel):
    """Current minutes balance after any due cycle rollover."""
    plan_remaining: int
    plan_total: int
    plan_used: int
    bonus: int
    total_available: int
    cycle_start: datetime
    cycle_end: datetime
    plan_name: str
    plan_display_name: str
    status: str

class MinutesCheckResponse(BaseModel):
    has_enough_minutes: bool
    required_minutes: int
    available_minutes: int
    balance: BalanceResponse

class MinuteTransactionResponse(BaseModel):
    id: int
    user_id: int
    subscription_id: Optional[int]
    source_ref_id: Optional[str]
    package_id: Optional[int]
    type: str
    minutes_delta: int
    duration_seconds: Optional[int]
    plan_minutes_after: int
    bonus_minutes_after: int
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True

class TransactionHistoryResponse(BaseModel):
    transactions: List[MinuteTransactionResponse]
    total: int
    limit: int
    offset: int

class MinuteAdjustmentRequest(BaseModel):
    """Schema for an operator credit/debit of bonus minutes."""
    user_id: int
    minutes: int
    type: str = "admin_adjustment"  # or promo_credit
    description: Optional[str] = None

class LedgerAuditResponse(BaseModel):
    user_id: int
    consistent: bool
    plan_remaining: int
    bonus: int
    last_plan_minutes_after: Optional[int] = None
    last_bonus_minutes_after: Optional[int] = None
    entries: int
