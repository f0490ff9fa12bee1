import pytest
from sqlalchemy.exc import SQLAlchemyError

from delivery_app import payments, repository

from .conftest import QR_METHOD_ID, WALLET_METHOD_ID, order_details, payment_payload, set_config


@pytest.fixture
def notified(monkeypatch):
    orders = []
    monkeypatch.setattr("delivery_app.notifications.notify_order_paid", lambda order: orders.append(order.id))
    return orders


# Transactions


def test_create_qr_deposit(client, auth_headers):
    response = client.post(
        "/api/transaction/create",
        json={"companyId": 1, "methodId": QR_METHOD_ID, "amount": 100, "txnType": "deposit"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    txn = response.get_json()["body"]["txn"]
    assert txn["status"] == "pending"
    assert txn["txn_type"] == "deposit"
    assert txn["amount"] == 100.0
    assert txn["expired_at"].endswith("+07:00")


def test_create_balance_payment_debits(client, make_user):
    user = make_user(balance=100)
    response = client.post(
        "/api/transaction/create",
        json={"companyId": 1, "methodId": WALLET_METHOD_ID, "amount": 40, "txnType": "payment"},
        headers=user["headers"],
    )

    assert response.get_json()["body"]["txn"]["status"] == "accepted"
    me = client.get("/api/user/me", headers=user["headers"]).get_json()["body"]["user"]
    assert me["balance"] == 60.0


@pytest.mark.parametrize(
    "payload, status, code",
    [
        ({"companyId": 1, "methodId": QR_METHOD_ID, "amount": 0, "txnType": "deposit"}, 400, "BAD_REQUEST"),
        ({"companyId": 1, "methodId": QR_METHOD_ID, "amount": 10, "txnType": "refund"}, 400, "BAD_REQUEST"),
        ({"companyId": 1, "methodId": 99, "amount": 10, "txnType": "deposit"}, 400, "INVALID_METHOD"),
        ({"companyId": 1, "methodId": WALLET_METHOD_ID, "amount": 10, "txnType": "deposit"}, 400, "BAD_REQUEST"),
        ({"companyId": 1, "methodId": WALLET_METHOD_ID, "amount": 10, "txnType": "payment"}, 400, "INSUFFICIENT_BALANCE"),
    ],
)
def test_create_transaction_rejections(client, auth_headers, payload, status, code):
    response = client.post("/api/transaction/create", json=payload, headers=auth_headers)
    assert response.status_code == status
    assert response.get_json()["code"] == code
    assert response.get_json()["body"] == {"txn": None}


def test_create_transaction_refunds_on_failure(client, make_user, monkeypatch):
    user = make_user(balance=50)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(repository, "create_transaction", broken)
    response = client.post(
        "/api/transaction/create",
        json={"companyId": 1, "methodId": WALLET_METHOD_ID, "amount": 20, "txnType": "payment"},
        headers=user["headers"],
    )

    assert response.status_code == 500
    assert response.get_json()["code"] == "TXN_CREATION_FAILED"
    me = client.get("/api/user/me", headers=user["headers"]).get_json()["body"]["user"]
    assert me["balance"] == 50.0


def _create_txn(client, headers, amount=69, txn_type="payment"):
    response = client.post(
        "/api/transaction/create",
        json={"companyId": 1, "methodId": QR_METHOD_ID, "amount": amount, "txnType": txn_type},
        headers=headers,
    )
    return response.get_json()["body"]["txn"]["id"]


def test_get_transaction_is_owner_only(client, auth_headers, make_user):
    txn_id = _create_txn(client, auth_headers)

    response = client.get(f"/api/transaction/{txn_id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()["body"]["method"]["code"] == "PROMPTPAY_QR"

    stranger = make_user(uid="stranger", email="stranger@example.com")
    assert client.get(f"/api/transaction/{txn_id}", headers=stranger["headers"]).status_code == 404
    assert client.get("/api/transaction/9999", headers=auth_headers).status_code == 404


def test_list_and_details(client, auth_headers):
    first = _create_txn(client, auth_headers, amount=10)
    second = _create_txn(client, auth_headers, amount=20)

    listed = client.get(f"/api/transaction/list?ids={first},{second},9999", headers=auth_headers)
    assert sorted(txn["id"] for txn in listed.get_json()["body"]["transactions"]) == [first, second]

    details = client.post("/api/transaction/details", json={"ids": [second]}, headers=auth_headers)
    txn = details.get_json()["body"]["txns"][0]
    assert txn["id"] == second
    assert txn["isExpired"] is False
    assert txn["method"] == {"id": QR_METHOD_ID, "code": "PROMPTPAY_QR", "name": "PromptPay QR", "type": "qr"}
    assert txn["order"] is None

    empty = client.get("/api/transaction/details", headers=auth_headers)
    assert empty.get_json()["body"] == {"txns": []}


def test_methods(client, auth_headers):
    response = client.get("/api/transaction/method?companyId=1", headers=auth_headers)
    codes = [method["code"] for method in response.get_json()["body"]["methods"]]
    assert codes == ["PROMPTPAY_QR", "WALLET"]

    assert client.get("/api/transaction/method?companyId=x", headers=auth_headers).status_code == 400


# Checkout


def test_qr_payment_creates_pending_order(client, auth_headers, notified):
    response = client.post("/api/payment", json=payment_payload(), headers=auth_headers)

    assert response.status_code == 200
    body = response.get_json()["body"]
    assert body["method"]["type"] == "qr"
    assert body["paymentPayload"] == {"payment_id": "0812345678"}
    assert body["txn"]["status"] == "pending"
    assert body["order"]["status"] == "PENDING"
    assert body["order"]["txn_id"] == body["txn"]["id"]
    assert body["order"]["total"] == 69.0
    assert body["order"]["order_details"]["userId"] is not None
    assert body["order"]["order_details"]["branchId"] == "2"
    assert notified == []


def test_balance_payment_is_accepted_immediately(client, make_user, notified):
    user = make_user(balance=200)
    response = client.post("/api/payment", json=payment_payload(method_id=WALLET_METHOD_ID), headers=user["headers"])

    body = response.get_json()["body"]
    assert response.status_code == 200
    assert body["txn"]["status"] == "accepted"
    assert body["order"]["status"] == "PREPARE"
    assert body["balance"] == 131.0
    assert body["paymentPayload"] is None
    assert notified == [body["order"]["id"]]


def test_balance_payment_requires_funds(client, make_user):
    user = make_user(balance=10)
    response = client.post("/api/payment", json=payment_payload(method_id=WALLET_METHOD_ID), headers=user["headers"])
    assert response.status_code == 400
    assert response.get_json()["code"] == "INSUFFICIENT_BALANCE"


def test_delivery_location_is_recorded(client, auth_headers):
    details = order_details(location={"lat": 13.78, "lng": 100.545, "address": "Soi Ari 1"})
    response = client.post("/api/payment", json=payment_payload(orderDetails=details), headers=auth_headers)

    location = response.get_json()["body"]["order"]["order_details"]["location"]
    assert location["address"] == "Soi Ari 1"
    assert location["distanceKm"] < 1


@pytest.mark.parametrize(
    "overrides, status, code",
    [
        ({"amount": -1}, 400, "BAD_REQUEST"),
        ({"branchId": None}, 400, "BAD_REQUEST"),
        ({"methodId": 42}, 400, "INVALID_METHOD"),
        ({"branchId": 404}, 404, "NOT_FOUND"),
        ({"companyId": 2}, 400, "BAD_REQUEST"),
        ({"orderDetails": {"productList": []}}, 400, "BAD_REQUEST"),
        ({"orderDetails": order_details(branch_id=1)}, 400, "MULTI_BRANCH_NOT_ALLOWED"),
        ({"orderDetails": order_details(qty=11)}, 400, "BAD_REQUEST"),
        ({"orderDetails": order_details(location={"lat": 200, "lng": 0})}, 400, "INVALID_LOCATION"),
    ],
)
def test_payment_rejections(client, auth_headers, overrides, status, code):
    response = client.post("/api/payment", json=payment_payload(**overrides), headers=auth_headers)
    assert response.status_code == status
    assert response.get_json()["code"] == code


def test_multi_branch_allowed_when_configured(app, client, auth_headers):
    set_config(app, "MAXIMUM_BRANCH_ORDER", "0")
    response = client.post(
        "/api/payment", json=payment_payload(orderDetails=order_details(branch_id=1)), headers=auth_headers
    )
    assert response.status_code == 200


def test_closed_branch_rejects_checkout(client, auth_headers, monkeypatch):
    monkeypatch.setattr(payments, "is_branch_open", lambda *args, **kwargs: False)
    response = client.post("/api/payment", json=payment_payload(), headers=auth_headers)
    assert response.status_code == 400
    assert response.get_json()["code"] == "BRANCH_CLOSED"


def test_order_failure_rejects_txn_and_refunds(client, make_user, monkeypatch):
    user = make_user(balance=100)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(repository, "create_order", broken)
    response = client.post("/api/payment", json=payment_payload(method_id=WALLET_METHOD_ID), headers=user["headers"])

    assert response.status_code == 500
    assert response.get_json()["code"] == "ORDER_CREATION_FAILED"
    me = client.get("/api/user/me", headers=user["headers"]).get_json()["body"]["user"]
    assert me["balance"] == 100.0

    txns = client.post("/api/transaction/details", json={"ids": [1]}, headers=user["headers"]).get_json()["body"]
    assert txns["txns"][0]["status"] == "rejected"


def test_unexpected_error_renders_envelope(client, auth_headers, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(repository, "list_active_methods", explode)
    response = client.get("/api/transaction/method?companyId=1", headers=auth_headers)
    assert response.status_code == 500
    assert response.get_json() == {"code": "ERROR", "message": "Internal server error", "body": None}


def test_known_errors_keep_their_status(client, auth_headers):
    response = client.post("/api/payment/slipok", data={"txnId": "1"}, content_type="multipart/form-data")
    assert response.status_code == 401
    assert response.get_json()["code"] == "UNAUTHORIZED"

    response = client.get("/api/transaction/999", headers=auth_headers)
    assert response.status_code == 404
    assert response.get_json() == {"code": "NOT_FOUND", "message": "Transaction not found", "body": None}

    response = client.put("/api/transaction/create", headers=auth_headers)
    assert response.status_code == 405
    assert response.get_json()["code"] == "METHOD_NOT_ALLOWED"


# QR


def test_qr_generate_png(client, auth_headers):
    response = client.post("/api/qr/generate", json={"branchId": 1, "amount": 69}, headers=auth_headers)

    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.data.startswith(b"\x89PNG")


def test_qr_generate_json(client, auth_headers):
    headers = {**auth_headers, "Accept": "application/json"}
    response = client.post("/api/qr/generate", json={"branchId": 1, "amount": "69.5"}, headers=headers)

    body = response.get_json()["body"]
    assert body["amount"] == 69.5
    assert body["payload"].startswith("000201010212")
    assert "540569.50" in body["payload"]
    assert body["pngDataUrl"].startswith("data:image/png;base64,")


def test_qr_generate_without_amount_is_static(client, auth_headers):
    headers = {**auth_headers, "Accept": "application/json"}
    body = client.post("/api/qr/generate", json={"branchId": 1, "amount": 0}, headers=headers).get_json()["body"]
    assert body["amount"] is None
    assert body["payload"].startswith("000201010211")


def test_qr_generate_errors(client, auth_headers):
    assert client.post("/api/qr/generate", json={}, headers=auth_headers).status_code == 400
    assert client.post("/api/qr/generate", json={"branchId": 77}, headers=auth_headers).status_code == 404
    assert client.post("/api/qr/generate", json={"branchId": 1}).status_code == 401


def test_mock_qr(client):
    emv = client.get("/api/mock/qr?emv=1")
    assert emv.mimetype == "text/plain"
    assert emv.get_data(as_text=True).startswith("000201010212")

    png = client.get("/api/mock/qr?id=0812345678&amount=15")
    assert png.mimetype == "image/png"
    assert png.headers["Content-Disposition"] == 'inline; filename="promptpay-0812345678-15.00.png"'

    assert client.get("/api/mock/qr?id=---").status_code == 400


def test_mock_qr_disabled(app, client):
    app.config["ENABLE_MOCK_QR"] = False
    response = client.get("/api/mock/qr")
    assert response.status_code == 404
    assert response.get_json()["code"] == "NOT_FOUND"
