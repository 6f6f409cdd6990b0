import pytest

from auth.models import User
from auth.services import AccountService, AuthService
from conftest import bearer
from exceptions import BadRequestError, NotFoundError
from payment.models import Payment
from payment.services import PaymentService
from subscription.models import MinuteTransaction, Subscription
from subscription.services import SubscriptionService


@pytest.fixture()
def ledger(clock):
    return SubscriptionService(clock=clock)


@pytest.fixture()
def accounts(ledger):
    return AccountService(ledger=ledger)


def test_merge_moves_bonus_and_history(db, user, other_user, ledger, accounts):
    ledger.create_free_subscription(user.id, db)
    ledger.adjust_minutes(user.id, 40, db)
    ledger.purchase_package(other_user.id, ledger.get_package_by_name("5hr", db).id, db)
    source_id = other_user.id

    result = accounts.merge_accounts(user.id, source_id, db)

    assert result.bonus_minutes_moved == 300
    assert result.transactions_moved == 2  # free activation and package purchase
    assert AuthService.get_user(source_id, db) is None
    assert db.query(Subscription).count() == 1

    balance = ledger.get_balance(user.id, db)
    assert balance.bonus == 340
    merge_entry = db.query(MinuteTransaction).filter(MinuteTransaction.user_id == user.id).order_by(
        MinuteTransaction.id.desc()).first()
    assert merge_entry.type == "admin_adjustment"
    assert merge_entry.minutes_delta == 300
    assert merge_entry.bonus_minutes_after == 340
    assert db.query(MinuteTransaction).filter(MinuteTransaction.user_id == source_id).count() == 0


def test_merge_hands_over_source_subscription(db, user, other_user, ledger, accounts):
    ledger.activate_plan(other_user.id, ledger.get_plan_by_name("pro", db).id, db)

    result = accounts.merge_accounts(user.id, other_user.id, db)

    assert result.bonus_minutes_moved == 0
    balance = ledger.get_balance(user.id, db)
    assert balance.plan_name == "pro"
    assert balance.plan_total == 900
    assert ledger.audit_balance(user.id, db).consistent


def test_merged_ledger_passes_audit(db, user, other_user, ledger, accounts):
    ledger.create_free_subscription(user.id, db)
    ledger.create_free_subscription(other_user.id, db)
    ledger.deduct_minutes(other_user.id, "job-1", 600, db)

    accounts.merge_accounts(user.id, other_user.id, db)

    audit = ledger.audit_balance(user.id, db)
    assert audit.consistent
    assert audit.plan_remaining == 60
    assert audit.bonus == 0
    newest = db.query(MinuteTransaction).filter(MinuteTransaction.user_id == user.id).order_by(
        MinuteTransaction.id.desc()).first()
    assert newest.type == "admin_adjustment"
    assert newest.minutes_delta == 0


def test_merge_fails_colliding_pending_payments(db, user, other_user, ledger, accounts):
    payments = PaymentService(ledger=ledger)
    one_hour = ledger.get_package_by_name("1hr", db).id
    five_hours = ledger.get_package_by_name("5hr", db).id
    kept = payments.create_payment(user.id, "package", one_hour, db)
    duplicate = payments.create_payment(other_user.id, "package", one_hour, db)
    moved = payments.create_payment(other_user.id, "package", five_hours, db)

    result = accounts.merge_accounts(user.id, other_user.id, db)
    assert result.payments_moved == 2

    statuses = {p.id: (p.user_id, p.status) for p in db.query(Payment).all()}
    assert statuses == {
        kept.id: (user.id, "pending"),
        duplicate.id: (user.id, "failed"),
        moved.id: (user.id, "pending"),
    }


def test_merge_rejects_self_and_unknown_users(db, user, accounts):
    with pytest.raises(BadRequestError) as exc:
        accounts.merge_accounts(user.id, user.id, db)
    assert exc.value.code == "INVALID_MERGE"

    with pytest.raises(NotFoundError):
        accounts.merge_accounts(user.id, 424242, db)
    assert db.query(User).count() == 1


def test_merge_route_requires_admin(client, user, other_user, admin_user):
    target_id, source_id = user.id, other_user.id
    body = {"target_user_id": target_id, "source_user_id": source_id}
    assert client.post("/admin/users/merge", json=body, headers=bearer(user)).status_code == 403

    response = client.post("/admin/users/merge", json=body, headers=bearer(admin_user))
    assert response.status_code == 200
    assert response.json()["source_user_id"] == source_id

    logs = client.get("/admin/logs", headers=bearer(admin_user)).json()
    assert len(logs) == 1
    assert logs[0]["action"] == f"Merged user {source_id} into {target_id}"


def test_admin_adjustment_route(client, db, user, admin_user):
    body = {"user_id": user.id, "minutes": 45, "type": "promo_credit", "description": "launch promo"}
    response = client.post("/admin/minutes/adjust", json=body, headers=bearer(admin_user))
    assert response.status_code == 200
    assert response.json()["type"] == "promo_credit"
    assert response.json()["bonus_minutes_after"] == 45

    audit = client.get(f"/admin/users/{user.id}/audit", headers=bearer(admin_user)).json()
    assert audit["consistent"] is True

    body["minutes"] = -5
    response = client.post("/admin/minutes/adjust", json=body, headers=bearer(admin_user))
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_ADJUSTMENT"


def test_admin_lookup_by_account_id(client, user, other_user, admin_user):
    response = client.get(f"/admin/users?account_id={other_user.account_id}", headers=bearer(admin_user))
    assert [u["username"] for u in response.json()] == ["bob"]
