# src/payme/schemas.py
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, Union

class PaymeAccount(BaseModel):
    """Account fields configured in the merchant dashboard. The unused order field arrives as "0" or empty."""
    user_id: Union[int, str] = ""
    plan_id: Optional[str] = None
    package_id: Optional[str] = None

class PaymeRequest(BaseModel):
    jsonrpc: Optional[str] = None
    id: Optional[Any] = None
    method: str
    params: Dict[str, Any]

class CheckPerformTransactionParams(BaseModel):
    amount: int
    account: PaymeAccount

class CreateTransactionParams(BaseModel):
    id: str
    time: int  # client-supplied, epoch ms
    amount: int
    account: PaymeAccount

class PerformTransactionParams(BaseModel):
    id: str

class CancelTransactionParams(BaseModel):
    id: str
    reason: int

class CheckTransactionParams(BaseModel):
    id: str

class GetStatementParams(BaseModel):
    from_: int = Field(alias="from")
    to: int
