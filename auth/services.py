# src/auth/services.py
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from jose import jwt
from datetime import datetime, timedelta
from typing import Optional
from auth.models import User
from auth.schemas import AccountMergeResponse
from config import settings
from exceptions import BadRequestError, NotFoundError
from payment.models import Payment, PENDING, FAILED
from subscription.models import MinuteTransaction, UsageCharge, ADMIN_ADJUSTMENT
from subscription.services import SubscriptionService

logger = logging.getLogger(__name__)

# Account ids shown to the payment provider start here
FIRST_ACCOUNT_ID = 100001

class AuthService:
    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        to_encode.update({"exp": expire})
        encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
        return encoded_jwt

    @staticmethod
    def get_user(user_id: int, db: Session) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_account_id(account_id: int, db: Session) -> Optional[User]:
        """Retrieve a user by the numeric id the payment provider knows."""
        return db.query(User).filter(User.account_id == account_id).first()

    @staticmethod
    def create_user(
            db: Session,
            username: Optional[str] = None,
            email: Optional[str] = None,
            telegram_id: Optional[int] = None,
            role: str = "user",
    ) -> User:
        """Create a user with the next free account id."""
        for _ in range(3):
            last = db.query(func.max(User.account_id)).scalar()
            new_user = User(
                account_id=(last or FIRST_ACCOUNT_ID - 1) + 1,
                username=username,
                email=email,
                telegram_id=telegram_id,
                role=role,
            )
            db.add(new_user)
            try:
                db.commit()
            except IntegrityError:
                # account id taken concurrently, or a duplicate email/telegram id
                db.rollback()
                if (email and db.query(User).filter(User.email == email).first()) or \
                        (telegram_id and db.query(User).filter(User.telegram_id == telegram_id).first()):
                    raise BadRequestError("User already registered", "USER_EXISTS")
                continue
            db.refresh(new_user)
            logger.info(f"User {new_user.id} created with account id {new_user.account_id}")
            return new_user
        raise BadRequestError("Could not allocate an account id, try again", "USER_EXISTS")


class AccountService:
    """Moves one user's minutes, payments and history onto another user."""

    def __init__(self, logger_: Optional[logging.Logger] = None, ledger: Optional[SubscriptionService] = None):
        self.logger = logger_ or logger
        self.ledger = ledger or SubscriptionService(self.logger)

    def merge_accounts(self, target_user_id: int, source_user_id: int, db: Session) -> AccountMergeResponse:
        """Merge source into target in one transaction and delete source. Nothing is applied on error."""
        if target_user_id == source_user_id:
            raise BadRequestError("Cannot merge an account into itself", "INVALID_MERGE")
        target = AuthService.get_user(target_user_id, db)
        source = AuthService.get_user(source_user_id, db)
        if not target or not source:
            raise NotFoundError("User not found", "USER_NOT_FOUND")

        try:
            target_sub = self.ledger.get_subscription(target.id, db)
            source_sub = self.ledger.get_subscription(source.id, db)
            merged_sub = target_sub or source_sub
            bonus_moved = 0

            if target_sub and source_sub:
                bonus_moved = source_sub.bonus_minutes
                db.query(MinuteTransaction).filter(
                    MinuteTransaction.subscription_id == source_sub.id
                ).update({MinuteTransaction.subscription_id: target_sub.id}, synchronize_session=False)
                db.delete(source_sub)
                db.flush()
                target_sub.bonus_minutes += bonus_moved
                db.flush()
            elif source_sub:
                source_sub.user_id = target.id
                db.flush()

            # source pending orders that target already holds would break pending uniqueness
            target_pending = db.query(Payment).filter(Payment.user_id == target.id, Payment.status == PENDING).all()
            held = {(p.kind, p.target_id) for p in target_pending}
            for payment in db.query(Payment).filter(Payment.user_id == source.id, Payment.status == PENDING).all():
                if (payment.kind, payment.target_id) in held:
                    payment.status = FAILED
                    payment.failure_reason = f"Superseded by account merge into user {target.id}"
            db.flush()

            payments_moved = db.query(Payment).filter(Payment.user_id == source.id).update(
                {Payment.user_id: target.id}, synchronize_session=False)
            transactions_moved = db.query(MinuteTransaction).filter(MinuteTransaction.user_id == source.id).update(
                {MinuteTransaction.user_id: target.id}, synchronize_session=False)
            db.query(UsageCharge).filter(UsageCharge.user_id == source.id).update(
                {UsageCharge.user_id: target.id}, synchronize_session=False)

            if merged_sub:
                # the newest entry must carry the merged balances
                self.ledger.record_transaction(
                    db, target.id, merged_sub, ADMIN_ADJUSTMENT, bonus_moved,
                    description=f"Account merge: {bonus_moved} bonus minutes from user {source.id}",
                )

            db.flush()
            db.expire(source)
            db.delete(source)
            db.commit()
        except Exception:
            db.rollback()
            self.logger.error(f"Account merge {source_user_id} -> {target_user_id} failed, rolled back", exc_info=True)
            raise

        self.logger.info(
            f"Merged user {source_user_id} into {target_user_id}: bonus={bonus_moved}, "
            f"payments={payments_moved}, transactions={transactions_moved}"
        )
        return AccountMergeResponse(
            target_user_id=target_user_id,
            source_user_id=source_user_id,
            bonus_minutes_moved=bonus_moved,
            payments_moved=payments_moved,
            transactions_moved=transactions_moved,
        )
