# src/payment/routes.py
from fastapi import APIRouter, Depends, HTTPException
from typing import List
from sqlalchemy.orm import Session
from payment.services import PaymentService
from payment.schemas import PaymentResponse, PaymentCreateResponse, PaymentListResponse
from auth.routes import get_current_user
from auth.models import User
from database import get_db

router = APIRouter(prefix="/payments", tags=["payments"])

@router.post("/plan/{plan_name}", response_model=PaymentCreateResponse)
def create_plan_payment(
    plan_name: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Reserve a plan purchase and return the checkout link."""
    return PaymentService().create_plan_payment_by_name(current_user.id, plan_name, db)

@router.post("/package/{package_name}", response_model=PaymentCreateResponse)
def create_package_payment(
    package_name: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Reserve a package purchase and return the checkout link."""
    return PaymentService().create_package_payment_by_name(current_user.id, package_name, db)

@router.get("/", response_model=PaymentListResponse)
def get_user_payments(
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    limit = max(1, min(limit, 100))
    payments, total = PaymentService.get_user_payments(current_user.id, db, limit=limit, offset=max(0, offset))
    return PaymentListResponse(
        payments=[PaymentResponse.from_orm(p) for p in payments],
        total=total,
        limit=limit,
        offset=offset,
    )

@router.get("/pending", response_model=List[PaymentResponse])
def get_pending_payments(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Payments still waiting for the provider."""
    return [PaymentResponse.from_orm(p) for p in PaymentService.get_pending_payments(current_user.id, db)]

@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    payment = PaymentService.get_payment(payment_id, db)
    if payment.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentResponse.from_orm(payment)
