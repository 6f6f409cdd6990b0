# src/payment/schemas.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: int
    user_id: int
    kind: str
    plan_id: Optional[int]
    package_id: Optional[int]
    amount: int  # minor units
    provider: str
    provider_tx_id: Optional[str]
    failure_reason: Optional[str] = None
    status: str
    created_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True

class PaymentCreateResponse(BaseModel):
    """Schema for payment creation response."""
    payment: PaymentResponse
    checkout_url: str

class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    limit: int
    offset: int

class PaymeTransactionResponse(BaseModel):
    """Shadow transaction as shown to operators."""
    id: int
    external_id: str
    payment_id: int
    time: int
    amount: int
    state: int
    reason: Optional[int]
    create_time: int
    perform_time: int
    cancel_time: int

    class Config:
        from_attributes = True
