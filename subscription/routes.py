# src/subscription/routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from subscription.services import SubscriptionService, required_minutes
from subscription.schemas import PlanResponse, PackageResponse, BalanceResponse, MinutesCheckResponse, TransactionHistoryResponse, MinuteTransactionResponse
from auth.routes import get_current_user
from database import get_db
from auth.models import User

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

@router.get("/plans", response_model=List[PlanResponse])
def get_plans(db: Session = Depends(get_db)):
    """List purchasable plans."""
    return [PlanResponse.from_orm(p) for p in SubscriptionService.list_plans(db)]

@router.get("/plans/{name}", response_model=PlanResponse)
def get_plan(name: str, db: Session = Depends(get_db)):
    return PlanResponse.from_orm(SubscriptionService.get_plan_by_name(name, db))

@router.get("/packages", response_model=List[PackageResponse])
def get_packages(db: Session = Depends(get_db)):
    """List minute packages."""
    return [PackageResponse.from_orm(p) for p in SubscriptionService.list_packages(db)]

@router.get("/packages/{name}", response_model=PackageResponse)
def get_package(name: str, db: Session = Depends(get_db)):
    return PackageResponse.from_orm(SubscriptionService.get_package_by_name(name, db))

@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Current minutes balance. Users without a subscription get the free tier."""
    service = SubscriptionService()
    if not service.get_subscription(current_user.id, db):
        service.create_free_subscription(current_user.id, db)
    return service.get_balance(current_user.id, db)

@router.get("/check-minutes", response_model=MinutesCheckResponse)
def check_minutes(
    duration: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Whether a job of `duration` seconds fits the current balance."""
    service = SubscriptionService()
    if not service.get_subscription(current_user.id, db):
        service.create_free_subscription(current_user.id, db)
    has_enough = service.has_enough_minutes(current_user.id, duration, db)
    balance = service.get_balance(current_user.id, db)
    return MinutesCheckResponse(
        has_enough_minutes=has_enough,
        required_minutes=required_minutes(duration),
        available_minutes=balance.total_available,
        balance=balance,
    )

@router.get("/transactions", response_model=TransactionHistoryResponse)
def get_transactions(
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Minute transaction history, newest first."""
    limit = max(1, min(limit, 100))
    transactions, total = SubscriptionService.get_transactions(current_user.id, db, limit=limit, offset=max(0, offset))
    return TransactionHistoryResponse(
        transactions=[MinuteTransactionResponse.from_orm(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )
