import base64
from datetime import timedelta

import pytest

from config import settings
from conftest import bearer, commit_elsewhere, stale_once
from exceptions import BadRequestError
from payment.models import Payment, PaymeTransaction, STATE_CREATED
from payment.services import PaymentService
from subscription.models import MinuteTransaction
from subscription.services import SubscriptionService, utcnow


@pytest.fixture()
def ledger(clock):
    return SubscriptionService(clock=clock)


@pytest.fixture()
def payments(ledger):
    return PaymentService(ledger=ledger)


def _package_id(ledger, db, name="5hr"):
    return ledger.get_package_by_name(name, db).id


def _plan_id(ledger, db, name):
    return ledger.get_plan_by_name(name, db).id


def test_create_package_payment(db, user, payments, ledger):
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db), db)

    assert payment.status == "pending"
    assert payment.kind == "package"
    assert payment.amount == 229000 * 100
    assert payment.provider == "payme"
    assert payment.target_name == "5hr"


def test_create_payment_reuses_pending_payment(db, user, payments, ledger):
    first = payments.create_payment(user.id, "package", _package_id(ledger, db), db)
    second = payments.create_payment(user.id, "package", _package_id(ledger, db), db)

    assert first.id == second.id
    assert db.query(Payment).count() == 1


def test_concurrent_reservation_returns_the_winning_payment(db, user, payments, ledger, session_factory, monkeypatch):
    package = ledger.get_package_by_name("5hr", db)
    [winner_id] = commit_elsewhere(session_factory, Payment(
        user_id=user.id, kind="package", package_id=package.id, amount=package.price_minor,
        provider="payme", status="pending", created_at=utcnow(),
    ))

    # our pending lookup ran before the other reservation was committed
    monkeypatch.setattr(payments, "_find_pending_payment", stale_once(PaymentService._find_pending_payment))
    payment = payments.create_payment(user.id, "package", package.id, db)

    assert payment.id == winner_id
    assert db.query(Payment).count() == 1


def test_free_plan_cannot_be_bought(db, user, payments, ledger):
    with pytest.raises(BadRequestError) as exc:
        payments.create_payment(user.id, "plan", _plan_id(ledger, db, "free"), db)
    assert exc.value.code == "FREE_PLAN_NO_PAYMENT"


def test_active_plan_cannot_be_bought_again(db, user, payments, ledger):
    ledger.activate_plan(user.id, _plan_id(ledger, db, "pro"), db)
    with pytest.raises(BadRequestError) as exc:
        payments.create_payment(user.id, "plan", _plan_id(ledger, db, "pro"), db)
    assert exc.value.code == "PLAN_ALREADY_ACTIVE"


def test_no_plan_switch_during_paid_cycle(db, user, payments, ledger):
    ledger.activate_plan(user.id, _plan_id(ledger, db, "pro"), db)
    with pytest.raises(BadRequestError) as exc:
        payments.create_payment(user.id, "plan", _plan_id(ledger, db, "starter"), db)
    assert exc.value.code == "ACTIVE_PAID_PLAN_EXISTS"


def test_plan_switch_allowed_after_paid_cycle_ends(db, user, payments, ledger, clock):
    ledger.activate_plan(user.id, _plan_id(ledger, db, "pro"), db)
    clock.advance(days=31)
    payment = payments.create_payment(user.id, "plan", _plan_id(ledger, db, "starter"), db)
    assert payment.status == "pending"


def test_free_user_can_upgrade(db, user, payments, ledger):
    ledger.create_free_subscription(user.id, db)
    payment = payments.create_payment(user.id, "plan", _plan_id(ledger, db, "starter"), db)
    assert payment.amount == 9900000


def test_packages_allowed_alongside_paid_plan(db, user, payments, ledger):
    ledger.activate_plan(user.id, _plan_id(ledger, db, "business"), db)
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db, "1hr"), db)
    assert payment.status == "pending"


def test_confirm_package_payment_grants_bonus_once(db, user, payments, ledger):
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db), db)

    confirmed = payments.confirm_payment(payment.id, "payme-tx-1", {"payme_id": "payme-tx-1"}, db)
    assert confirmed.status == "completed"
    assert confirmed.provider_tx_id == "payme-tx-1"
    assert confirmed.provider_response == {"payme_id": "payme-tx-1"}
    assert confirmed.completed_at is not None

    again = payments.confirm_payment(payment.id, "payme-tx-1", None, db)
    assert again.status == "completed"

    assert ledger.get_balance(user.id, db).bonus == 300
    purchases = db.query(MinuteTransaction).filter(MinuteTransaction.type == "package_purchase").all()
    assert len(purchases) == 1
    assert purchases[0].minutes_delta == 300


def test_confirm_plan_payment_activates_plan(db, user, payments, ledger):
    ledger.create_free_subscription(user.id, db)
    payment = payments.create_payment(user.id, "plan", _plan_id(ledger, db, "starter"), db)
    payments.confirm_payment(payment.id, "payme-tx-2", None, db)

    balance = ledger.get_balance(user.id, db)
    assert balance.plan_name == "starter"
    assert balance.plan_total == 300


def test_confirm_failed_payment_is_rejected(db, user, payments, ledger):
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db), db)
    payments.fail_payment(payment.id, "cancelled", db)

    with pytest.raises(BadRequestError) as exc:
        payments.confirm_payment(payment.id, "payme-tx-3", None, db)
    assert exc.value.code == "INVALID_PAYMENT_STATUS"


def test_fail_only_from_pending(db, user, payments, ledger):
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db), db)
    failed = payments.fail_payment(payment.id, "user gave up", db)
    assert failed.status == "failed"
    assert failed.failure_reason == "user gave up"

    with pytest.raises(BadRequestError):
        payments.fail_payment(payment.id, "again", db)


def test_activation_failure_leaves_payment_pending(db, user, payments, ledger, monkeypatch):
    payment = payments.create_payment(user.id, "package", _package_id(ledger, db), db)

    def broken(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(ledger, "purchase_package", broken)
    with pytest.raises(RuntimeError):
        payments.confirm_payment(payment.id, "payme-tx-4", None, db)

    db.refresh(payment)
    assert payment.status == "pending"
    assert payment.provider_tx_id is None


def test_new_payment_allowed_after_previous_failed(db, user, payments, ledger):
    first = payments.create_payment(user.id, "package", _package_id(ledger, db), db)
    payments.fail_payment(first.id, "cancelled", db)
    second = payments.create_payment(user.id, "package", _package_id(ledger, db), db)
    assert second.id != first.id


def test_checkout_url_for_plan(db, user, payments, ledger):
    ledger.create_free_subscription(user.id, db)
    response = payments.create_plan_payment_by_name(user.id, "starter", db)

    base = "https://checkout.test.paycom.uz/"
    assert response.checkout_url.startswith(base)
    decoded = base64.b64decode(response.checkout_url[len(base):]).decode()
    assert decoded == f"m=test-merchant;ac.user_id={user.account_id};ac.plan_id=starter;a=9900000"
    assert response.payment.kind == "plan"


def test_checkout_url_for_package(db, user, payments):
    response = payments.create_package_payment_by_name(user.id, "10hr", db)
    encoded = response.checkout_url.rsplit("/", 1)[1]
    decoded = base64.b64decode(encoded).decode()
    assert decoded == f"m=test-merchant;ac.user_id={user.account_id};ac.package_id=10hr;a=28900000"


def test_checkout_url_uses_production_host(db, user, payments, monkeypatch):
    monkeypatch.setattr(settings, "PAYME_TEST_MODE", False)
    response = payments.create_package_payment_by_name(user.id, "1hr", db)
    assert response.checkout_url.startswith("https://checkout.paycom.uz/")


def test_checkout_requires_merchant_id(db, user, payments, monkeypatch):
    monkeypatch.setattr(settings, "PAYME_MERCHANT_ID", "")
    with pytest.raises(RuntimeError):
        payments.create_package_payment_by_name(user.id, "1hr", db)


def test_user_payment_history(db, user, payments, ledger):
    first = payments.create_payment(user.id, "package", _package_id(ledger, db, "1hr"), db)
    second = payments.create_payment(user.id, "package", _package_id(ledger, db, "5hr"), db)
    payments.confirm_payment(first.id, "tx", None, db)

    history, total = payments.get_user_payments(user.id, db)
    assert total == 2
    assert {p.id for p in history} == {first.id, second.id}
    assert [p.id for p in payments.get_pending_payments(user.id, db)] == [second.id]


def test_expire_stale_payments(db, user, other_user, payments, ledger):
    stale = payments.create_payment(user.id, "package", _package_id(ledger, db, "1hr"), db)
    held = payments.create_payment(other_user.id, "package", _package_id(ledger, db, "1hr"), db)
    fresh = payments.create_payment(user.id, "package", _package_id(ledger, db, "5hr"), db)
    old = utcnow() - timedelta(hours=settings.PAYMENT_EXPIRY_HOURS + 1)
    stale.created_at = old
    held.created_at = old
    db.add(PaymeTransaction(
        external_id="live-tx", payment_id=held.id, time=1, amount=held.amount,
        state=STATE_CREATED, create_time=1, perform_time=0, cancel_time=0,
    ))
    db.commit()

    assert payments.expire_stale_payments(db) == 1

    db.refresh(stale)
    db.refresh(held)
    db.refresh(fresh)
    assert stale.status == "failed"
    assert stale.failure_reason == "expired"
    assert held.status == "pending"
    assert fresh.status == "pending"


def test_payment_routes(client, db, user):
    response = client.post("/payments/package/5hr", headers=bearer(user))
    assert response.status_code == 200
    body = response.json()
    assert body["payment"]["amount"] == 22900000
    assert body["payment"]["status"] == "pending"
    assert body["checkout_url"].startswith("https://checkout.test.paycom.uz/")

    payment_id = body["payment"]["id"]
    response = client.get(f"/payments/{payment_id}", headers=bearer(user))
    assert response.json()["id"] == payment_id

    listing = client.get("/payments/", headers=bearer(user)).json()
    assert listing["total"] == 1


def test_payment_route_errors(client, user):
    response = client.post("/payments/plan/free", headers=bearer(user))
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "FREE_PLAN_NO_PAYMENT"

    response = client.post("/payments/package/100hr", headers=bearer(user))
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "PACKAGE_NOT_FOUND"

    assert client.post("/payments/package/5hr").status_code == 401


def test_balance_route_gives_new_user_free_tier(client, user):
    response = client.get("/subscriptions/balance", headers=bearer(user))
    assert response.status_code == 200
    body = response.json()
    assert body["plan_name"] == "free"
    assert body["plan_display_name"] == "Free"
    assert body["total_available"] == 60

    history = client.get("/subscriptions/transactions", headers=bearer(user)).json()
    assert history["total"] == 1
    assert history["transactions"][0]["type"] == "plan_activation"


def test_pending_payments_route(client, db, user, other_user, payments, ledger):
    waiting = payments.create_payment(user.id, "package", _package_id(ledger, db, "1hr"), db)
    failed = payments.create_payment(user.id, "package", _package_id(ledger, db, "5hr"), db)
    payments.fail_payment(failed.id, "card declined", db)
    payments.create_payment(other_user.id, "package", _package_id(ledger, db, "1hr"), db)

    response = client.get("/payments/pending", headers=bearer(user))
    assert response.status_code == 200
    assert [p["id"] for p in response.json()] == [waiting.id]
    assert client.get("/payments/pending").status_code == 401


def test_check_minutes_route(client, user):
    body = client.get("/subscriptions/check-minutes?duration=3601", headers=bearer(user)).json()
    assert body["has_enough_minutes"] is False
    assert body["required_minutes"] == 61
    assert body["available_minutes"] == 60
    assert body["balance"]["plan_name"] == "free"

    body = client.get("/subscriptions/check-minutes?duration=600", headers=bearer(user)).json()
    assert body["has_enough_minutes"] is True
    assert body["required_minutes"] == 10

    response = client.get("/subscriptions/check-minutes?duration=-5", headers=bearer(user))
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_DURATION"


def test_catalog_routes(client):
    plans = client.get("/subscriptions/plans").json()
    assert [p["name"] for p in plans] == ["free", "starter", "pro", "business"]
    assert client.get("/subscriptions/packages/5hr").json()["minutes"] == 300
