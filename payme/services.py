# src/payme/services.py
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.models import User
from auth.services import AuthService
from exceptions import BillingError
from config import settings
from notification.services import NotificationService
from payment.models import (
    Payment, PaymeTransaction, PENDING,
    STATE_CREATED, STATE_COMPLETED, STATE_CANCELLED, STATE_CANCELLED_AFTER_COMPLETE,
)
from payment.services import PaymentService, PLAN, PACKAGE
from payme import errors
from payme.errors import PaymeError
from payme.schemas import (
    PaymeAccount,
    CheckPerformTransactionParams,
    CreateTransactionParams,
    PerformTransactionParams,
    CancelTransactionParams,
    CheckTransactionParams,
    GetStatementParams,
)
from subscription.models import Plan, Package

logger = logging.getLogger(__name__)

# Cancel reasons
REASON_RECEIVER_NOT_FOUND = 1
REASON_DEBIT_ERROR = 2
REASON_TRANSACTION_ERROR = 3
REASON_TIMEOUT = 4
REASON_REFUND = 5
REASON_UNKNOWN = 10

# createPayment refusals the gateway can be told about
PAYMENT_ERROR_MAP = {
    "PLAN_ALREADY_ACTIVE": (errors.ORDER_ALREADY_PAID, "order_id"),
    "ACTIVE_PAID_PLAN_EXISTS": (errors.UNABLE_TO_PERFORM, "plan_id"),
    "FREE_PLAN_NO_PAYMENT": (errors.INVALID_AMOUNT, None),
}


def now_ms() -> int:
    return int(time.time() * 1000)


class PaymeService:
    """Payme Merchant API handler.

    Mirrors each gateway transaction in ``payme_transactions`` and drives the linked
    Payment through PaymentService. Every method is safe to replay with the same id.
    """

    def __init__(
            self,
            logger_: Optional[logging.Logger] = None,
            payments: Optional[PaymentService] = None,
            notifier: Optional[Callable[[Dict[str, Any]], None]] = None,
            clock: Callable[[], int] = now_ms,
    ):
        self.logger = logger_ or logger
        self.payments = payments or PaymentService(self.logger)
        self.notifier = notifier
        self.now = clock
        self.timeout_ms = settings.PAYME_TRANSACTION_TIMEOUT_MS
        self.methods = {
            "CheckPerformTransaction": (self.check_perform_transaction, CheckPerformTransactionParams),
            "CreateTransaction": (self.create_transaction, CreateTransactionParams),
            "PerformTransaction": (self.perform_transaction, PerformTransactionParams),
            "CancelTransaction": (self.cancel_transaction, CancelTransactionParams),
            "CheckTransaction": (self.check_transaction, CheckTransactionParams),
            "GetStatement": (self.get_statement, GetStatementParams),
        }

    def handle_request(self, method: str, params: Dict[str, Any], request_id: Any, db: Session) -> Dict[str, Any]:
        """Dispatch one JSON-RPC call. Always returns an envelope, never raises."""
        self.logger.info(f"Processing Payme request: method={method}, id={request_id}")
        if method not in self.methods:
            return errors.error_response(request_id, errors.METHOD_NOT_FOUND)

        handler, params_model = self.methods[method]
        try:
            result = handler(params_model(**params), db)
            return errors.success_response(request_id, result)
        except ValidationError as e:
            self.logger.warning(f"Invalid params for {method}: {str(e)}")
            return errors.error_response(request_id, errors.INVALID_REQUEST)
        except PaymeError as e:
            self.logger.info(f"{method} rejected with {e.code}")
            return {"error": e.to_dict(), "id": request_id}
        except Exception:
            db.rollback()
            self.logger.error(f"Error processing Payme request {method}", exc_info=True)
            return errors.error_response(request_id, errors.INTERNAL_ERROR)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_timed_out(self, tx: PaymeTransaction) -> bool:
        return self.now() - tx.create_time > self.timeout_ms

    @staticmethod
    def _find_transaction(external_id: str, db: Session) -> Optional[PaymeTransaction]:
        return db.query(PaymeTransaction).filter(PaymeTransaction.external_id == external_id).first()

    @staticmethod
    def _find_live_transaction(payment_id: int, db: Session) -> Optional[PaymeTransaction]:
        return db.query(PaymeTransaction).filter(
            PaymeTransaction.payment_id == payment_id,
            PaymeTransaction.state == STATE_CREATED,
        ).first()

    @staticmethod
    def _parse_account(account: PaymeAccount) -> Optional[Tuple[str, str]]:
        for kind, value in ((PLAN, account.plan_id), (PACKAGE, account.package_id)):
            if value and value != "0":
                return kind, value
        return None

    def _validate_order(self, amount: int, account: PaymeAccount, db: Session) -> Tuple[User, str, Any]:
        """Resolve user and order and check the amount against the catalog price."""
        user = None
        account_id = str(account.user_id).strip()
        if account_id.isdigit():
            user = AuthService.get_user_by_account_id(int(account_id), db)
        if not user:
            raise PaymeError(errors.USER_NOT_FOUND, "user_id")

        order = self._parse_account(account)
        if not order:
            raise PaymeError(errors.INVALID_ORDER_TYPE, "plan_id")
        kind, name = order

        if kind == PLAN:
            target = db.query(Plan).filter(Plan.name == name, Plan.is_active == True).first()
            if not target:
                raise PaymeError(errors.PLAN_NOT_FOUND, "plan_id")
        else:
            target = db.query(Package).filter(Package.name == name, Package.is_active == True).first()
            if not target:
                raise PaymeError(errors.PACKAGE_NOT_FOUND, "package_id")

        if amount <= 0 or amount != target.price_minor:
            raise PaymeError(errors.INVALID_AMOUNT)
        return user, kind, target

    def _cancel_timed_out(self, tx: PaymeTransaction, db: Session) -> bool:
        cancelled = db.execute(
            update(PaymeTransaction)
            .where(PaymeTransaction.id == tx.id, PaymeTransaction.state == STATE_CREATED)
            .values(state=STATE_CANCELLED, reason=REASON_TIMEOUT, cancel_time=self.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(tx)
        if cancelled.rowcount:
            self.logger.info(f"Payme transaction {tx.external_id} timed out and was cancelled")
        return bool(cancelled.rowcount)

    def _notify(self, payment: Payment, status: str):
        if not self.notifier:
            return
        try:
            payload = NotificationService.build_payment_notification(payment, status)
            if payload:
                self.notifier(payload)
        except Exception:
            self.logger.error(f"Failed to queue {status} notification for payment {payment.id}", exc_info=True)

    # ------------------------------------------------------------------
    # Merchant API methods
    # ------------------------------------------------------------------

    def check_perform_transaction(self, params: CheckPerformTransactionParams, db: Session) -> Dict[str, Any]:
        user, kind, target = self._validate_order(params.amount, params.account, db)
        self.logger.info(f"CheckPerformTransaction allowed: account={user.account_id}, {kind}={target.name}")
        return {"allow": True, "additional": {"user_id": user.account_id}}

    def create_transaction(self, params: CreateTransactionParams, db: Session) -> Dict[str, Any]:
        existing = self._find_transaction(params.id, db)
        if existing:
            if existing.state != STATE_CREATED:
                raise PaymeError(errors.UNABLE_TO_PERFORM)
            if self._is_timed_out(existing):
                self._cancel_timed_out(existing, db)
                raise PaymeError(errors.UNABLE_TO_PERFORM)
            return self._created_result(existing)

        user, kind, target = self._validate_order(params.amount, params.account, db)
        try:
            payment = self.payments.create_payment(user.id, kind, target.id, db)
        except BillingError as e:
            self.logger.warning(f"Payment creation refused for account {user.account_id}: {e}")
            code, data = PAYMENT_ERROR_MAP.get(e.code, (errors.INTERNAL_ERROR, None))
            raise PaymeError(code, data)

        in_progress = self._find_live_transaction(payment.id, db)
        if in_progress:
            self.logger.info(f"Payment {payment.id} already held by Payme transaction {in_progress.external_id}")
            raise PaymeError(errors.ORDER_IN_PROGRESS, "order_id")

        create_time = self.now()
        tx = PaymeTransaction(
            external_id=params.id,
            payment_id=payment.id,
            time=params.time,
            amount=params.amount,
            state=STATE_CREATED,
            create_time=create_time,
            perform_time=0,
            cancel_time=0,
        )
        db.add(tx)
        try:
            db.commit()
        except IntegrityError:
            # lost a race: either a replay of this id or another transaction for the order
            db.rollback()
            existing = self._find_transaction(params.id, db)
            if existing and existing.state == STATE_CREATED:
                return self._created_result(existing)
            raise PaymeError(errors.ORDER_IN_PROGRESS, "order_id")

        self.logger.info(f"Payme transaction {params.id} created for payment {payment.id}")
        return self._created_result(tx)

    @staticmethod
    def _created_result(tx: PaymeTransaction) -> Dict[str, Any]:
        return {"create_time": tx.create_time, "transaction": str(tx.payment_id), "state": tx.state}

    def perform_transaction(self, params: PerformTransactionParams, db: Session) -> Dict[str, Any]:
        tx = self._find_transaction(params.id, db)
        if not tx:
            raise PaymeError(errors.TRANSACTION_NOT_FOUND)
        if tx.state == STATE_COMPLETED:
            return self._performed_result(tx)
        if tx.state != STATE_CREATED:
            raise PaymeError(errors.UNABLE_TO_PERFORM)
        if self._is_timed_out(tx):
            self._cancel_timed_out(tx, db)
            raise PaymeError(errors.UNABLE_TO_PERFORM)

        perform_time = self.now()
        claimed = db.execute(
            update(PaymeTransaction)
            .where(PaymeTransaction.id == tx.id, PaymeTransaction.state == STATE_CREATED)
            .values(state=STATE_COMPLETED, perform_time=perform_time)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            db.refresh(tx)
            if tx.state == STATE_COMPLETED:
                return self._performed_result(tx)
            raise PaymeError(errors.UNABLE_TO_PERFORM)

        try:
            payment = self.payments.confirm_payment(
                tx.payment_id, params.id, {"payme_id": params.id, "perform_time": perform_time}, db, commit=False,
            )
            db.commit()
        except Exception:
            db.rollback()
            self.logger.error(f"Failed to perform Payme transaction {params.id}", exc_info=True)
            raise PaymeError(errors.INTERNAL_ERROR)

        db.refresh(tx)
        self.logger.info(f"Payme transaction {params.id} performed, payment {tx.payment_id} completed")
        self._notify(payment, "success")
        return self._performed_result(tx)

    @staticmethod
    def _performed_result(tx: PaymeTransaction) -> Dict[str, Any]:
        return {"transaction": str(tx.payment_id), "perform_time": tx.perform_time, "state": tx.state}

    def cancel_transaction(self, params: CancelTransactionParams, db: Session) -> Dict[str, Any]:
        tx = self._find_transaction(params.id, db)
        if not tx:
            raise PaymeError(errors.TRANSACTION_NOT_FOUND)
        if tx.state in (STATE_CANCELLED, STATE_CANCELLED_AFTER_COMPLETE):
            return self._cancelled_result(tx)

        if tx.state == STATE_CREATED:
            new_state = STATE_CANCELLED
        elif tx.state == STATE_COMPLETED:
            new_state = STATE_CANCELLED_AFTER_COMPLETE
        else:
            raise PaymeError(errors.UNABLE_TO_CANCEL)

        previous_state = tx.state
        cancelled = db.execute(
            update(PaymeTransaction)
            .where(PaymeTransaction.id == tx.id, PaymeTransaction.state == previous_state)
            .values(state=new_state, reason=params.reason, cancel_time=self.now())
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount != 1:
            # state moved under us; answer from the stored row
            db.rollback()
            db.refresh(tx)
            if tx.state in (STATE_CANCELLED, STATE_CANCELLED_AFTER_COMPLETE):
                return self._cancelled_result(tx)
            raise PaymeError(errors.UNABLE_TO_CANCEL)

        payment = tx.payment
        if previous_state == STATE_CREATED and payment.status == PENDING:
            self.payments.fail_payment(payment.id, f"Cancelled by Payme. Reason: {params.reason}", db, commit=False)
        db.commit()
        db.refresh(tx)

        if new_state == STATE_CANCELLED_AFTER_COMPLETE:
            self.logger.warning(
                f"Payme transaction {params.id} cancelled after completion, payment {payment.id} "
                f"needs manual reconciliation"
            )
        else:
            self.logger.info(f"Payme transaction {params.id} cancelled, reason={params.reason}")
        self._notify(payment, "cancelled")
        return self._cancelled_result(tx)

    @staticmethod
    def _cancelled_result(tx: PaymeTransaction) -> Dict[str, Any]:
        return {"transaction": str(tx.payment_id), "cancel_time": tx.cancel_time, "state": tx.state}

    def check_transaction(self, params: CheckTransactionParams, db: Session) -> Dict[str, Any]:
        tx = self._find_transaction(params.id, db)
        if not tx:
            raise PaymeError(errors.TRANSACTION_NOT_FOUND)
        return {
            "create_time": tx.create_time or 0,
            "perform_time": tx.perform_time or 0,
            "cancel_time": tx.cancel_time or 0,
            "transaction": str(tx.payment_id),
            "state": tx.state,
            "reason": tx.reason,
        }

    def get_statement(self, params: GetStatementParams, db: Session) -> Dict[str, Any]:
        """Transactions whose client time lies in [from, to], oldest first."""
        transactions = db.query(PaymeTransaction).filter(
            PaymeTransaction.time >= params.from_,
            PaymeTransaction.time <= params.to,
        ).order_by(PaymeTransaction.time.asc(), PaymeTransaction.id.asc()).all()

        statement = []
        for tx in transactions:
            payment = tx.payment
            account = {"user_id": str(payment.user.account_id)}
            if payment.kind == PLAN and payment.plan:
                account["plan_id"] = payment.plan.name
            elif payment.package:
                account["package_id"] = payment.package.name
            statement.append({
                "id": tx.external_id,
                "time": tx.time,
                "amount": tx.amount,
                "account": account,
                "create_time": tx.create_time or 0,
                "perform_time": tx.perform_time or 0,
                "cancel_time": tx.cancel_time or 0,
                "transaction": str(tx.payment_id),
                "state": tx.state,
                "reason": tx.reason,
            })
        return {"transactions": statement}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cancel_timed_out_transactions(self, db: Session) -> int:
        """Cancel CREATED transactions past the timeout. Their payments stay pending for reuse."""
        cutoff = self.now() - self.timeout_ms
        stale = db.query(PaymeTransaction).filter(
            PaymeTransaction.state == STATE_CREATED,
            PaymeTransaction.create_time < cutoff,
        ).all()
        cancelled = 0
        for tx in stale:
            if self._cancel_timed_out(tx, db):
                cancelled += 1
        return cancelled
