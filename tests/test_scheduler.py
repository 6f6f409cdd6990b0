from datetime import timedelta

import pytest

from config import settings
from payment.models import Payment, PaymeTransaction, STATE_CREATED
from payment.services import PaymentService
from payme.services import now_ms
from scheduler import tasks
from subscription.services import SubscriptionService, utcnow


@pytest.fixture()
def scheduled_db(monkeypatch, session_factory):
    monkeypatch.setattr(tasks, "SessionLocal", session_factory)


def test_cancel_timed_out_transactions_task(db, user, scheduled_db):
    package = SubscriptionService.get_package_by_name("1hr", db)
    payment = PaymentService().create_payment(user.id, "package", package.id, db)
    created = now_ms() - settings.PAYME_TRANSACTION_TIMEOUT_MS - 60_000
    db.add(PaymeTransaction(
        external_id="abandoned", payment_id=payment.id, time=created, amount=payment.amount,
        state=STATE_CREATED, create_time=created, perform_time=0, cancel_time=0,
    ))
    db.commit()

    tasks.cancel_timed_out_transactions()

    db.expire_all()
    tx = db.query(PaymeTransaction).one()
    assert tx.state == -1
    assert tx.reason == 4
    assert db.query(Payment).one().status == "pending"


def test_expire_stale_payments_task(db, user, scheduled_db):
    package = SubscriptionService.get_package_by_name("1hr", db)
    payment = PaymentService().create_payment(user.id, "package", package.id, db)
    payment.created_at = utcnow() - timedelta(hours=settings.PAYMENT_EXPIRY_HOURS, minutes=1)
    db.commit()

    tasks.expire_stale_payments()

    db.expire_all()
    assert db.query(Payment).one().status == "failed"


def test_task_errors_are_logged_not_raised(db, scheduled_db, monkeypatch, caplog):
    def broken(self, db):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(PaymentService, "expire_stale_payments", broken)
    tasks.expire_stale_payments()

    assert "Error in expire_stale_payments: database is gone" in caplog.text


def test_start_scheduler_registers_jobs():
    scheduler = tasks.start_scheduler()
    try:
        names = sorted(job.func.__name__ for job in scheduler.get_jobs())
        assert names == ["cancel_timed_out_transactions", "expire_stale_payments"]
    finally:
        scheduler.shutdown(wait=False)
