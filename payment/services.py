# src/payment/services.py
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.models import User
from config import settings
from exceptions import BadRequestError, NotFoundError
from payment.models import Payment, PaymeTransaction, PENDING, COMPLETED, FAILED, STATE_CREATED
from payment.schemas import PaymentResponse, PaymentCreateResponse
from payme.checkout import generate_checkout_url
from subscription.services import SubscriptionService, utcnow

logger = logging.getLogger(__name__)

PLAN = "plan"
PACKAGE = "package"


class PaymentService:
    def __init__(self, logger_: Optional[logging.Logger] = None, ledger: Optional[SubscriptionService] = None):
        self.logger = logger_ or logger
        self.ledger = ledger or SubscriptionService(self.logger)

    def _check_plan_purchase(self, user_id: int, plan, db: Session):
        if plan.price <= 0 or plan.name == settings.FREE_PLAN_NAME:
            raise BadRequestError("Free plan does not require payment", "FREE_PLAN_NO_PAYMENT")

        subscription = self.ledger.get_subscription(user_id, db)
        if not subscription or subscription.status != "active":
            return
        now = self.ledger.now()
        if subscription.cycle_end <= now:
            return
        if subscription.plan_id == plan.id:
            raise BadRequestError(f"{plan.display_name} plan is already active", "PLAN_ALREADY_ACTIVE")
        if subscription.plan.price > 0:
            days_left = max(1, (subscription.cycle_end - now).days)
            raise BadRequestError(
                f"{subscription.plan.display_name} plan is active for {days_left} more days",
                "ACTIVE_PAID_PLAN_EXISTS",
            )

    @staticmethod
    def _find_pending_payment(user_id: int, target_filter, db: Session) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.user_id == user_id, Payment.status == PENDING, target_filter).first()

    def create_payment(self, user_id: int, kind: str, target_id: int, db: Session) -> Payment:
        """Reserve an order. Returns the existing pending payment for the same target if there is one."""
        if kind == PLAN:
            target = self.ledger.get_plan(target_id, db)
            self._check_plan_purchase(user_id, target, db)
            target_filter = Payment.plan_id == target.id
        elif kind == PACKAGE:
            target = self.ledger.get_package(target_id, db)
            if target.price <= 0:
                raise BadRequestError("Package has no price", "FREE_PLAN_NO_PAYMENT")
            target_filter = Payment.package_id == target.id
        else:
            raise BadRequestError(f"Unknown order kind: {kind}", "INVALID_ORDER_TYPE")

        existing = self._find_pending_payment(user_id, target_filter, db)
        if existing:
            self.logger.info(f"Reusing pending payment {existing.id} for user {user_id}, {kind} {target.name}")
            return existing

        payment = Payment(
            user_id=user_id,
            kind=kind,
            plan_id=target.id if kind == PLAN else None,
            package_id=target.id if kind == PACKAGE else None,
            amount=target.price_minor,
            provider="payme",
            status=PENDING,
            created_at=utcnow(),
        )
        db.add(payment)
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request reserved the same target first
            db.rollback()
            existing = self._find_pending_payment(user_id, target_filter, db)
            if existing:
                return existing
            raise
        db.refresh(payment)
        self.logger.info(f"Payment {payment.id} created: user={user_id}, {kind}={target.name}, amount={payment.amount}")
        return payment

    def _with_checkout_url(self, payment: Payment, db: Session) -> PaymentCreateResponse:
        user = db.query(User).filter(User.id == payment.user_id).first()
        checkout_url = generate_checkout_url(user.account_id, payment.kind, payment.target_name, payment.amount)
        return PaymentCreateResponse(payment=PaymentResponse.from_orm(payment), checkout_url=checkout_url)

    def create_plan_payment_by_name(self, user_id: int, plan_name: str, db: Session) -> PaymentCreateResponse:
        plan = self.ledger.get_plan_by_name(plan_name, db)
        payment = self.create_payment(user_id, PLAN, plan.id, db)
        return self._with_checkout_url(payment, db)

    def create_package_payment_by_name(self, user_id: int, package_name: str, db: Session) -> PaymentCreateResponse:
        pkg = self.ledger.get_package_by_name(package_name, db)
        payment = self.create_payment(user_id, PACKAGE, pkg.id, db)
        return self._with_checkout_url(payment, db)

    def confirm_payment(
            self,
            payment_id: int,
            provider_tx_id: Optional[str],
            provider_response: Optional[Dict[str, Any]],
            db: Session,
            commit: bool = True,
    ) -> Payment:
        """Mark a pending payment completed and grant its entitlement in the same transaction.

        Confirming an already completed payment returns it without granting again.
        """
        payment = self.get_payment(payment_id, db)
        if payment.status == COMPLETED:
            self.logger.info(f"Payment {payment_id} already completed")
            return payment

        claimed = db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PENDING)
            .values(
                status=COMPLETED,
                provider_tx_id=provider_tx_id,
                provider_response=provider_response,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        if claimed.rowcount != 1:
            if payment.status == COMPLETED:
                return payment
            raise BadRequestError(f"Payment {payment_id} is {payment.status}", "INVALID_PAYMENT_STATUS")

        try:
            if payment.kind == PLAN:
                self.ledger.activate_plan(payment.user_id, payment.plan_id, db, commit=False)
            else:
                self.ledger.purchase_package(payment.user_id, payment.package_id, db, commit=False)
            if commit:
                db.commit()
        except Exception:
            db.rollback()
            self.logger.error(f"Activation failed for payment {payment_id}, confirmation rolled back", exc_info=True)
            raise

        self.logger.info(f"Payment {payment_id} confirmed, provider_tx_id={provider_tx_id}")
        return payment

    def fail_payment(self, payment_id: int, reason: str, db: Session, commit: bool = True) -> Payment:
        payment = self.get_payment(payment_id, db)
        failed = db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PENDING)
            .values(status=FAILED, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        if failed.rowcount != 1:
            raise BadRequestError(f"Payment {payment_id} is {payment.status}", "INVALID_PAYMENT_STATUS")
        if commit:
            db.commit()
        self.logger.info(f"Payment {payment_id} failed: {reason}")
        return payment

    @staticmethod
    def get_payment(payment_id: int, db: Session) -> Payment:
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment:
            raise NotFoundError("Payment not found", "PAYMENT_NOT_FOUND")
        return payment

    @staticmethod
    def get_user_payments(user_id: int, db: Session, limit: int = 20, offset: int = 0) -> Tuple[List[Payment], int]:
        query = db.query(Payment).filter(Payment.user_id == user_id)
        total = query.count()
        payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset).all()
        return payments, total

    @staticmethod
    def get_pending_payments(user_id: int, db: Session) -> List[Payment]:
        return db.query(Payment).filter(Payment.user_id == user_id, Payment.status == PENDING).all()

    def expire_stale_payments(self, db: Session) -> int:
        """Fail pending payments past the expiry window that no live gateway transaction holds."""
        cutoff = utcnow() - timedelta(hours=settings.PAYMENT_EXPIRY_HOURS)
        live = select(PaymeTransaction.payment_id).where(PaymeTransaction.state == STATE_CREATED)
        stale = db.query(Payment).filter(
            Payment.status == PENDING,
            Payment.created_at < cutoff,
            ~Payment.id.in_(live),
        ).all()

        expired = 0
        for payment in stale:
            result = db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PENDING)
                .values(status=FAILED, failure_reason="expired")
                .execution_options(synchronize_session=False)
            )
            expired += result.rowcount
        db.commit()
        if expired:
            self.logger.info(f"Expired {expired} stale pending payments")
        return expired
