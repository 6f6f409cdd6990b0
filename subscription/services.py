# src/subscription/services.py
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from exceptions import BadRequestError, ConflictError, NotFoundError
from subscription.models import (
    Plan, Package, Subscription, MinuteTransaction, UsageCharge,
    PLAN_ACTIVATION, PLAN_RENEWAL, PACKAGE_PURCHASE, USAGE_DEBIT, REFUND,
    ADMIN_ADJUSTMENT, PROMO_CREDIT,
)
from subscription.schemas import BalanceResponse, LedgerAuditResponse

logger = logging.getLogger(__name__)

# Bounded retries for compare-and-swap updates of a subscription row
MAX_CAS_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # naive UTC, as stored


def required_minutes(duration_seconds: int) -> int:
    return math.ceil(duration_seconds / 60)


class SubscriptionService:
    """Minutes ledger: plan quota, carried bonus minutes, billing cycles and the audit log."""

    def __init__(self, logger_: Optional[logging.Logger] = None, clock: Callable[[], datetime] = utcnow):
        self.logger = logger_ or logger
        self.now = clock
        self.cycle_length = timedelta(days=settings.BILLING_CYCLE_DAYS)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @staticmethod
    def list_plans(db: Session) -> List[Plan]:
        return db.query(Plan).filter(Plan.is_active == True).order_by(Plan.sort_order).all()

    @staticmethod
    def list_packages(db: Session) -> List[Package]:
        return db.query(Package).filter(Package.is_active == True).order_by(Package.sort_order).all()

    @staticmethod
    def get_plan(plan_id: int, db: Session) -> Plan:
        plan = db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise NotFoundError("Plan not found", "PLAN_NOT_FOUND")
        return plan

    @staticmethod
    def get_plan_by_name(name: str, db: Session) -> Plan:
        plan = db.query(Plan).filter(Plan.name == name).first()
        if not plan:
            raise NotFoundError("Plan not found", "PLAN_NOT_FOUND")
        return plan

    @staticmethod
    def get_package(package_id: int, db: Session) -> Package:
        pkg = db.query(Package).filter(Package.id == package_id).first()
        if not pkg:
            raise NotFoundError("Package not found", "PACKAGE_NOT_FOUND")
        return pkg

    @staticmethod
    def get_package_by_name(name: str, db: Session) -> Package:
        pkg = db.query(Package).filter(Package.name == name).first()
        if not pkg:
            raise NotFoundError("Package not found", "PACKAGE_NOT_FOUND")
        return pkg

    # ------------------------------------------------------------------
    # Subscription row
    # ------------------------------------------------------------------

    @staticmethod
    def get_subscription(user_id: int, db: Session) -> Optional[Subscription]:
        return db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def create_free_subscription(self, user_id: int, db: Session, commit: bool = True) -> Subscription:
        """Create the free-tier row for a user who has none yet."""
        existing = self.get_subscription(user_id, db)
        if existing:
            return existing

        free_plan = self.get_plan_by_name(settings.FREE_PLAN_NAME, db)
        now = self.now()
        subscription = Subscription(
            user_id=user_id,
            plan_id=free_plan.id,
            cycle_start=now,
            cycle_end=now + self.cycle_length,
            minutes_included=free_plan.minutes_per_cycle,
            minutes_used=0,
            bonus_minutes=0,
            status="active",
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
        db.flush()

        self.record_transaction(
            db, user_id, subscription, PLAN_ACTIVATION, free_plan.minutes_per_cycle,
            description=f"{free_plan.display_name} plan activated - {free_plan.minutes_per_cycle} minutes",
        )
        if commit:
            db.commit()
        self.logger.info(f"Free subscription created for user {user_id}")
        return subscription

    def _require_subscription(self, user_id: int, db: Session) -> Subscription:
        subscription = self.get_subscription(user_id, db) or self.create_free_subscription(user_id, db, commit=False)
        if subscription is None:
            raise NotFoundError(f"Subscription missing for user {user_id}", "SUBSCRIPTION_MISSING")
        return subscription

    def record_transaction(
            self,
            db: Session,
            user_id: int,
            subscription: Subscription,
            tx_type: str,
            minutes_delta: int,
            source_ref_id: Optional[str] = None,
            package_id: Optional[int] = None,
            duration_seconds: Optional[int] = None,
            description: Optional[str] = None,
    ) -> MinuteTransaction:
        """Append one audit entry carrying the balances that result from the mutation."""
        entry = MinuteTransaction(
            user_id=user_id,
            subscription_id=subscription.id,
            source_ref_id=source_ref_id,
            package_id=package_id,
            type=tx_type,
            minutes_delta=minutes_delta,
            duration_seconds=duration_seconds,
            plan_minutes_after=subscription.plan_remaining,
            bonus_minutes_after=subscription.bonus_minutes,
            description=description,
            created_at=self.now(),
        )
        db.add(entry)
        db.flush()
        return entry

    def _compare_and_swap(
            self,
            subscription: Subscription,
            db: Session,
            compute: Callable[[Subscription], Optional[Dict[str, int]]],
    ) -> Optional[Dict[str, int]]:
        """Apply compute(subscription) as a conditional update on the values it was computed from.

        Returns the applied values, or None when compute declines. Retries on lost races.
        """
        for attempt in range(MAX_CAS_ATTEMPTS):
            db.refresh(subscription)
            values = compute(subscription)
            if values is None:
                return None
            result = db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription.id,
                    Subscription.bonus_minutes == subscription.bonus_minutes,
                    Subscription.minutes_used == subscription.minutes_used,
                )
                .values(updated_at=self.now(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.refresh(subscription)
                return values
            self.logger.info(f"Subscription {subscription.id} changed concurrently, retry {attempt + 1}")
        db.rollback()
        raise ConflictError("Ledger is busy, try again", "LEDGER_CONFLICT")

    # ------------------------------------------------------------------
    # Billing cycle
    # ------------------------------------------------------------------

    def roll_cycle_if_expired(self, user_id: int, db: Session, commit: bool = True) -> bool:
        """Advance an expired cycle by exactly one period from the old cycle end.

        Usage resets, bonus minutes stay. Several elapsed periods are not caught up in one call.
        """
        subscription = self.get_subscription(user_id, db)
        if not subscription:
            return False

        now = self.now()
        if now < subscription.cycle_end:
            return False

        old_end = subscription.cycle_end
        new_end = old_end + self.cycle_length
        result = db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, Subscription.cycle_end == old_end)
            .values(cycle_start=old_end, cycle_end=new_end, minutes_used=0, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.refresh(subscription)
        if result.rowcount != 1:
            # another caller rolled this cycle first
            return False

        self.record_transaction(
            db, user_id, subscription, PLAN_RENEWAL, subscription.minutes_included,
            description=f"Billing cycle renewed - {subscription.minutes_included} plan minutes reset",
        )
        if commit:
            db.commit()
        self.logger.info(f"Billing cycle rolled for user {user_id}, new cycle end {new_end.isoformat()}")
        return True

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int, db: Session) -> BalanceResponse:
        subscription = self.get_subscription(user_id, db)
        if not subscription:
            now = self.now()
            return BalanceResponse(
                plan_remaining=0,
                plan_total=0,
                plan_used=0,
                bonus=0,
                total_available=0,
                cycle_start=now,
                cycle_end=now,
                plan_name="none",
                plan_display_name="No Plan",
                status="inactive",
            )

        self.roll_cycle_if_expired(user_id, db)
        db.refresh(subscription)

        plan_remaining = subscription.plan_remaining
        return BalanceResponse(
            plan_remaining=plan_remaining,
            plan_total=subscription.minutes_included,
            plan_used=subscription.minutes_used,
            bonus=subscription.bonus_minutes,
            total_available=plan_remaining + subscription.bonus_minutes,
            cycle_start=subscription.cycle_start,
            cycle_end=subscription.cycle_end,
            plan_name=subscription.plan.name,
            plan_display_name=subscription.plan.display_name,
            status=subscription.status,
        )

    def has_enough_minutes(self, user_id: int, duration_seconds: int, db: Session) -> bool:
        self._check_duration(duration_seconds)
        balance = self.get_balance(user_id, db)
        return balance.total_available >= required_minutes(duration_seconds)

    # ------------------------------------------------------------------
    # Debit / refund (job pipeline)
    # ------------------------------------------------------------------

    @staticmethod
    def _check_duration(duration_seconds: int):
        if duration_seconds < 0:
            raise BadRequestError(f"Duration must not be negative, got {duration_seconds}", "INVALID_DURATION")

    @staticmethod
    def _find_charge(source_ref_id: str, db: Session) -> Optional[UsageCharge]:
        return db.query(UsageCharge).filter(UsageCharge.source_ref_id == source_ref_id).first()

    def deduct_minutes(self, user_id: int, source_ref_id: str, duration_seconds: int, db: Session) -> bool:
        """Charge a job. Bonus minutes are consumed first, then plan quota.

        Returns False when the balance is insufficient; the caller rejects the job.
        """
        self._check_duration(duration_seconds)
        needed = required_minutes(duration_seconds)
        charge = self._find_charge(source_ref_id, db)
        if charge and charge.user_id != user_id:
            raise ConflictError(f"{source_ref_id} is already charged to another user", "SOURCE_REF_CONFLICT")

        subscription = self._require_subscription(user_id, db)
        self.roll_cycle_if_expired(user_id, db, commit=False)

        if charge and not charge.refunded:
            self.logger.warning(f"{source_ref_id} already charged {charge.minutes_charged} minutes, not charging again")
            db.commit()
            return True

        def debit(sub: Subscription) -> Optional[Dict[str, int]]:
            if sub.plan_remaining + sub.bonus_minutes < needed:
                return None
            from_bonus = min(sub.bonus_minutes, needed)
            from_plan = needed - from_bonus
            return {
                "bonus_minutes": sub.bonus_minutes - from_bonus,
                "minutes_used": sub.minutes_used + from_plan,
            }

        applied = self._compare_and_swap(subscription, db, debit)
        if applied is None:
            self.logger.warning(
                f"Insufficient minutes for user {user_id}: required={needed}, "
                f"available={subscription.plan_remaining + subscription.bonus_minutes}"
            )
            db.commit()
            return False

        minutes, seconds = divmod(duration_seconds, 60)
        try:
            if charge:
                charge.minutes_charged = needed
                charge.refunded = False
                charge.refunded_at = None
            else:
                db.add(UsageCharge(
                    user_id=user_id, source_ref_id=source_ref_id, minutes_charged=needed, created_at=self.now(),
                ))
            self.record_transaction(
                db, user_id, subscription, USAGE_DEBIT, -needed,
                source_ref_id=source_ref_id,
                duration_seconds=duration_seconds,
                description=f"Processing: {needed} minutes ({minutes}:{seconds:02d})",
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._find_charge(source_ref_id, db)
            if existing and existing.user_id != user_id:
                raise ConflictError(f"{source_ref_id} is already charged to another user", "SOURCE_REF_CONFLICT")
            if existing and not existing.refunded:
                self.logger.warning(f"{source_ref_id} was charged by a concurrent caller")
                return True
            raise

        self.logger.info(f"Deducted {needed} minutes from user {user_id} for {source_ref_id}")
        return True

    def refund_minutes(self, user_id: int, source_ref_id: str, db: Session) -> bool:
        """Return a job's whole charge to bonus minutes. No-op if nothing or already refunded."""
        charge = db.query(UsageCharge).filter(
            UsageCharge.source_ref_id == source_ref_id,
            UsageCharge.user_id == user_id,
        ).first()
        if not charge or not charge.minutes_charged or charge.refunded:
            self.logger.warning(f"Cannot refund {source_ref_id} for user {user_id}: no charge or already refunded")
            return False

        subscription = self.get_subscription(user_id, db)
        if not subscription:
            raise NotFoundError(f"Subscription missing for user {user_id}", "SUBSCRIPTION_MISSING")

        now = self.now()
        claimed = db.execute(
            update(UsageCharge)
            .where(UsageCharge.id == charge.id, UsageCharge.refunded == False)
            .values(refunded=True, refunded_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            return False

        minutes = charge.minutes_charged
        self._compare_and_swap(
            subscription, db,
            lambda sub: {"bonus_minutes": sub.bonus_minutes + minutes},
        )
        self.record_transaction(
            db, user_id, subscription, REFUND, minutes,
            source_ref_id=source_ref_id,
            description=f"Refund for failed processing: {minutes} minutes",
        )
        db.commit()
        self.logger.info(f"Refunded {minutes} minutes to user {user_id} for {source_ref_id}")
        return True

    # ------------------------------------------------------------------
    # Entitlements (payment activation)
    # ------------------------------------------------------------------

    def activate_plan(self, user_id: int, plan_id: int, db: Session, commit: bool = True) -> Subscription:
        """Create or replace the user's plan and start a fresh cycle. Bonus minutes are kept."""
        plan = self.get_plan(plan_id, db)
        subscription = self.get_subscription(user_id, db)
        now = self.now()

        if subscription:
            subscription.plan_id = plan.id
            subscription.cycle_start = now
            subscription.cycle_end = now + self.cycle_length
            subscription.minutes_included = plan.minutes_per_cycle
            subscription.minutes_used = 0
            subscription.status = "active"
            subscription.updated_at = now
        else:
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                cycle_start=now,
                cycle_end=now + self.cycle_length,
                minutes_included=plan.minutes_per_cycle,
                minutes_used=0,
                bonus_minutes=0,
                status="active",
                created_at=now,
                updated_at=now,
            )
            db.add(subscription)
        db.flush()

        self.record_transaction(
            db, user_id, subscription, PLAN_ACTIVATION, plan.minutes_per_cycle,
            description=f"{plan.display_name} plan activated - {plan.minutes_per_cycle} minutes",
        )
        if commit:
            db.commit()
        self.logger.info(f"Plan {plan.name} activated for user {user_id}")
        return subscription

    def purchase_package(self, user_id: int, package_id: int, db: Session, commit: bool = True) -> MinuteTransaction:
        """Add a package's minutes to bonus, creating a free subscription first if needed."""
        pkg = self.get_package(package_id, db)
        subscription = self._require_subscription(user_id, db)

        self._compare_and_swap(
            subscription, db,
            lambda sub: {"bonus_minutes": sub.bonus_minutes + pkg.minutes},
        )
        entry = self.record_transaction(
            db, user_id, subscription, PACKAGE_PURCHASE, pkg.minutes,
            package_id=pkg.id,
            description=f"{pkg.display_name} package purchased - {pkg.minutes} minutes added",
        )
        if commit:
            db.commit()
        self.logger.info(f"Package {pkg.name} purchased by user {user_id}: +{pkg.minutes} bonus minutes")
        return entry

    # ------------------------------------------------------------------
    # Operator adjustments and history
    # ------------------------------------------------------------------

    def adjust_minutes(
            self,
            user_id: int,
            minutes: int,
            db: Session,
            tx_type: str = ADMIN_ADJUSTMENT,
            description: Optional[str] = None,
    ) -> MinuteTransaction:
        if tx_type not in (ADMIN_ADJUSTMENT, PROMO_CREDIT):
            raise BadRequestError(f"Unsupported adjustment type: {tx_type}", "INVALID_ADJUSTMENT")
        if minutes == 0 or (tx_type == PROMO_CREDIT and minutes < 0):
            raise BadRequestError("Adjustment must be a non-zero credit or debit", "INVALID_ADJUSTMENT")

        subscription = self._require_subscription(user_id, db)

        def adjust(sub: Subscription) -> Optional[Dict[str, int]]:
            if sub.bonus_minutes + minutes < 0:
                return None
            return {"bonus_minutes": sub.bonus_minutes + minutes}

        if self._compare_and_swap(subscription, db, adjust) is None:
            db.rollback()
            raise BadRequestError("Adjustment would make bonus minutes negative", "INVALID_ADJUSTMENT")

        entry = self.record_transaction(
            db, user_id, subscription, tx_type, minutes,
            description=description or f"Manual adjustment: {minutes:+d} minutes",
        )
        db.commit()
        self.logger.info(f"{tx_type} of {minutes:+d} minutes applied to user {user_id}")
        return entry

    @staticmethod
    def get_transactions(user_id: int, db: Session, limit: int = 20, offset: int = 0) -> Tuple[List[MinuteTransaction], int]:
        query = db.query(MinuteTransaction).filter(MinuteTransaction.user_id == user_id)
        total = query.count()
        transactions = (
            query.order_by(MinuteTransaction.created_at.desc(), MinuteTransaction.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return transactions, total

    def audit_balance(self, user_id: int, db: Session) -> LedgerAuditResponse:
        """Cross-check the current row against the balances recorded by the latest audit entry."""
        subscription = self.get_subscription(user_id, db)
        if not subscription:
            raise NotFoundError(f"Subscription missing for user {user_id}", "SUBSCRIPTION_MISSING")

        query = db.query(MinuteTransaction).filter(MinuteTransaction.user_id == user_id)
        entries = query.count()
        last = query.order_by(MinuteTransaction.id.desc()).first()
        consistent = (
            last is not None
            and last.plan_minutes_after == subscription.plan_remaining
            and last.bonus_minutes_after == subscription.bonus_minutes
        )
        if not consistent:
            self.logger.warning(f"Ledger for user {user_id} does not match its latest audit entry")
        return LedgerAuditResponse(
            user_id=user_id,
            consistent=consistent,
            plan_remaining=subscription.plan_remaining,
            bonus=subscription.bonus_minutes,
            last_plan_minutes_after=last.plan_minutes_after if last else None,
            last_bonus_minutes_after=last.bonus_minutes_after if last else None,
            entries=entries,
        )
