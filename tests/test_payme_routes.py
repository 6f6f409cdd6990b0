import pytest

from config import settings
from conftest import payme_auth
from notification.services import NotificationService
from payment.models import Payment
from payme import errors
from subscription.services import SubscriptionService


@pytest.fixture()
def sent(monkeypatch):
    payloads = []

    def record(self, payload):
        payloads.append(payload)
        return True

    monkeypatch.setattr(NotificationService, "send_payment_notification", record)
    return payloads


def rpc(client, method, params, request_id=1, headers=None):
    body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
    return client.post("/payme", json=body, headers=payme_auth() if headers is None else headers)


def test_missing_auth_is_insufficient_privilege(client):
    response = rpc(client, "CheckTransaction", {"id": "x"}, headers={})
    assert response.status_code == 200
    assert response.json()["error"]["code"] == errors.INSUFFICIENT_PRIVILEGE
    assert response.json()["id"] == 1


@pytest.mark.parametrize("headers", [
    payme_auth(password="wrong"),
    payme_auth(login="Merchant"),
    {"Authorization": "Basic !!!not-base64"},
    {"Authorization": "Bearer test-key"},
])
def test_bad_credentials_are_rejected(client, headers):
    response = rpc(client, "CheckTransaction", {"id": "x"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["error"]["code"] == errors.INSUFFICIENT_PRIVILEGE


def test_invalid_json(client):
    response = client.post("/payme", content=b"{not json", headers=payme_auth())
    assert response.status_code == 200
    assert response.json() == errors.error_response(None, errors.INVALID_JSON)


@pytest.mark.parametrize("body", [
    {"id": 3, "method": "CheckTransaction"},
    {"id": 3, "params": {"id": "x"}},
    {"id": 3, "method": 42, "params": {}},
    [1, 2, 3],
])
def test_malformed_envelope(client, body):
    response = client.post("/payme", json=body, headers=payme_auth())
    assert response.json()["error"]["code"] == errors.INVALID_REQUEST


def test_unknown_method_over_http(client):
    response = rpc(client, "ChangePassword", {"password": "x"}, request_id=9)
    assert response.json() == errors.error_response(9, errors.METHOD_NOT_FOUND)


def test_package_purchase_over_http(client, db, user, sent):
    account = {"user_id": str(user.account_id), "plan_id": "0", "package_id": "10hr"}
    amount = 289000 * 100

    check = rpc(client, "CheckPerformTransaction", {"amount": amount, "account": account}).json()
    assert check["result"]["allow"] is True

    created = rpc(client, "CreateTransaction", {
        "id": "6500aa11bb22cc33dd44ee55", "time": 1_767_268_800_000, "amount": amount, "account": account,
    }).json()
    assert created["result"]["state"] == 1

    performed = rpc(client, "PerformTransaction", {"id": "6500aa11bb22cc33dd44ee55"}).json()
    assert performed["result"]["state"] == 2
    assert performed["result"]["transaction"] == created["result"]["transaction"]

    statement = rpc(client, "GetStatement", {"from": 1_767_268_000_000, "to": 1_767_269_000_000}).json()
    assert [t["id"] for t in statement["result"]["transactions"]] == ["6500aa11bb22cc33dd44ee55"]

    assert SubscriptionService().get_balance(user.id, db).bonus == 600
    assert db.query(Payment).one().status == "completed"
    assert len(sent) == 1
    assert sent[0]["telegramId"] == user.telegram_id
    assert sent[0]["paymentType"] == "package"
    assert sent[0]["itemName"] == "10 Hours"


def test_ip_whitelist_outside_test_mode(client, user, monkeypatch):
    monkeypatch.setattr(settings, "PAYME_TEST_MODE", False)
    params = {"id": "missing"}

    denied = rpc(client, "CheckTransaction", params).json()
    assert denied["error"]["code"] == errors.INSUFFICIENT_PRIVILEGE

    headers = {**payme_auth(), "X-Forwarded-For": "185.234.113.5, 10.0.0.1"}
    allowed = rpc(client, "CheckTransaction", params, headers=headers).json()
    assert allowed["error"]["code"] == errors.TRANSACTION_NOT_FOUND

    headers = {**payme_auth(), "X-Forwarded-For": "185.234.113.16"}
    assert rpc(client, "CheckTransaction", params, headers=headers).json()["error"]["code"] == \
        errors.INSUFFICIENT_PRIVILEGE


def test_ip_check_precedes_auth(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYME_TEST_MODE", False)
    response = rpc(client, "CheckTransaction", {"id": "x"}, headers={"X-Forwarded-For": "8.8.8.8"})
    assert response.json()["error"]["code"] == errors.INSUFFICIENT_PRIVILEGE
