# src/admin/routes.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from auth.models import User, AdminActionLog
from auth.schemas import UserResponse, AdminActionLogResponse, AccountMergeRequest, AccountMergeResponse
from auth.services import AccountService
from subscription.schemas import MinuteAdjustmentRequest, MinuteTransactionResponse, LedgerAuditResponse, TransactionHistoryResponse
from subscription.services import SubscriptionService
from payment.models import Payment, PaymeTransaction, STATE_CANCELLED_AFTER_COMPLETE
from payment.schemas import PaymentResponse, PaymeTransactionResponse
from auth.routes import get_current_user
from database import get_db

router = APIRouter(prefix="/admin", tags=["admin"])

def check_admin_role(current_user: User = Depends(get_current_user)) -> User:
    """Ensure the user has admin role."""
    if current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user

def log_action(admin: User, action: str, db: Session):
    db.add(AdminActionLog(admin_id=admin.id, action=action))
    db.commit()

@router.get("/users", response_model=List[UserResponse], dependencies=[Depends(check_admin_role)])
def get_users(
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Retrieve users, optionally by payment account id."""
    query = db.query(User)
    if account_id:
        query = query.filter(User.account_id == account_id)
    return [UserResponse.from_orm(user) for user in query.all()]

@router.post("/minutes/adjust", response_model=MinuteTransactionResponse, dependencies=[Depends(check_admin_role)])
def adjust_minutes(
    adjustment: MinuteAdjustmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Credit or debit a user's bonus minutes."""
    if not db.query(User).filter(User.id == adjustment.user_id).first():
        raise HTTPException(status_code=404, detail="User not found")
    entry = SubscriptionService().adjust_minutes(
        adjustment.user_id, adjustment.minutes, db,
        tx_type=adjustment.type, description=adjustment.description,
    )
    log_action(current_user, f"{adjustment.type} of {adjustment.minutes:+d} minutes for user {adjustment.user_id}", db)
    return MinuteTransactionResponse.from_orm(entry)

@router.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, dependencies=[Depends(check_admin_role)])
def get_user_transactions(
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    transactions, total = SubscriptionService.get_transactions(user_id, db, limit=limit, offset=offset)
    return TransactionHistoryResponse(
        transactions=[MinuteTransactionResponse.from_orm(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )

@router.get("/users/{user_id}/audit", response_model=LedgerAuditResponse, dependencies=[Depends(check_admin_role)])
def audit_user_ledger(user_id: int, db: Session = Depends(get_db), current_user: User = Depends(check_admin_role)):
    """Check the user's balance against the latest audit entry."""
    return SubscriptionService().audit_balance(user_id, db)

@router.post("/users/merge", response_model=AccountMergeResponse, dependencies=[Depends(check_admin_role)])
def merge_users(
    merge: AccountMergeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Merge source account into target account."""
    result = AccountService().merge_accounts(merge.target_user_id, merge.source_user_id, db)
    log_action(current_user, f"Merged user {merge.source_user_id} into {merge.target_user_id}", db)
    return result

@router.get("/payments", response_model=List[PaymentResponse], dependencies=[Depends(check_admin_role)])
def get_payments(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Retrieve payments with optional status filter."""
    query = db.query(Payment)
    if status:
        query = query.filter(Payment.status == status)
    return [PaymentResponse.from_orm(payment) for payment in query.order_by(Payment.id.desc()).all()]

@router.get("/payme/cancelled-after-complete", response_model=List[PaymeTransactionResponse], dependencies=[Depends(check_admin_role)])
def get_cancelled_after_complete(db: Session = Depends(get_db), current_user: User = Depends(check_admin_role)):
    """Gateway transactions reversed after the entitlement was granted. These need manual reconciliation."""
    query = db.query(PaymeTransaction).filter(PaymeTransaction.state == STATE_CANCELLED_AFTER_COMPLETE)
    return [PaymeTransactionResponse.from_orm(tx) for tx in query.order_by(PaymeTransaction.cancel_time.desc()).all()]

@router.get("/logs", response_model=List[AdminActionLogResponse], dependencies=[Depends(check_admin_role)])
def get_admin_logs(db: Session = Depends(get_db), current_user: User = Depends(check_admin_role)):
    """Retrieve admin action logs."""
    return [AdminActionLogResponse.from_orm(log) for log in db.query(AdminActionLog).all()]
