from datetime import timedelta

from delivery_app import repository
from delivery_app.database import db_session
from delivery_app.models import Order
from delivery_app.utils import utcnow

from .conftest import order_details, payment_payload


def _checkout(client, headers):
    body = client.post("/api/payment", json=payment_payload(), headers=headers).get_json()["body"]
    return body["txn"]["id"], body["order"]["id"]


def test_order_by_transaction(client, auth_headers, make_user):
    txn_id, order_id = _checkout(client, auth_headers)

    response = client.get(f"/api/order/by-transaction?txnId={txn_id}", headers=auth_headers)
    assert response.get_json()["body"]["order"]["id"] == order_id

    stranger = make_user(uid="stranger", email="stranger@example.com")
    assert client.get(f"/api/order/by-transaction?txnId={txn_id}", headers=stranger["headers"]).status_code == 404
    assert client.get("/api/order/by-transaction", headers=auth_headers).status_code == 400


def test_order_details_variants(client, auth_headers):
    txn_a, order_a = _checkout(client, auth_headers)
    _, order_b = _checkout(client, auth_headers)

    latest = client.get("/api/order/details", headers=auth_headers).get_json()["body"]["orders"]
    assert [order["id"] for order in latest] == [order_b, order_a]

    by_ids = client.post("/api/order/details", json={"ids": [order_a]}, headers=auth_headers).get_json()["body"]
    dto = by_ids["orders"][0]
    assert dto["id"] == order_a
    assert dto["displayStatus"] == "PENDING"
    assert dto["branch"]["name"] == "ครัวคุณแม่ สาขาอารีย์"
    assert dto["txn"]["id"] == txn_a
    assert dto["txn"]["isExpired"] is False
    assert dto["total"] == 69.0

    by_txn = client.get(f"/api/order/details?txnId={txn_a}", headers=auth_headers).get_json()["body"]
    assert [order["id"] for order in by_txn["orders"]] == [order_a]


def test_order_details_includes_rows_without_user_column(app, client, user, make_user):
    stranger = make_user(uid="stranger", email="stranger@example.com")
    with app.app_context():
        mine = Order(branch_id=2, order_details=order_details(userId=user["id"]))
        theirs = Order(branch_id=2, order_details=order_details(userId=stranger["id"]))
        db_session.add_all([mine, theirs])
        db_session.commit()
        mine_id = mine.id

    orders = client.get("/api/order/details", headers=user["headers"]).get_json()["body"]["orders"]
    assert [order["id"] for order in orders] == [mine_id]
    assert orders[0]["txn"] is None


def test_pending_order_with_expired_txn_displays_expired(app, client, auth_headers):
    txn_id, _ = _checkout(client, auth_headers)
    with app.app_context():
        txn = repository.get_transaction(txn_id)
        txn.expired_at = utcnow() - timedelta(seconds=5)
        db_session.commit()

    orders = client.get(f"/api/order/details?txnId={txn_id}", headers=auth_headers).get_json()["body"]["orders"]
    assert orders[0]["displayStatus"] == "EXPIRED"
    assert orders[0]["txn"]["isExpired"] is True


def test_order_list(client, auth_headers):
    txn_id, order_id = _checkout(client, auth_headers)

    response = client.get(f"/api/order/list?ids={order_id},999", headers=auth_headers)
    orders = response.get_json()["body"]["orders"]
    assert [order["id"] for order in orders] == [order_id]
    assert orders[0]["txn"]["id"] == txn_id
    assert orders[0]["displayStatus"] == "PENDING"

    assert client.get("/api/order/list", headers=auth_headers).get_json()["body"] == {"orders": []}


def test_staff_moves_order_through_lifecycle(client, auth_headers, staff_headers):
    _, order_id = _checkout(client, auth_headers)

    for status in ("PREPARE", "DELIVERY", "COMPLETED"):
        response = client.post(f"/api/order/{order_id}/status", json={"status": status}, headers=staff_headers)
        assert response.status_code == 200
        assert response.get_json()["body"]["order"]["status"] == status


def test_invalid_transition(client, auth_headers, staff_headers):
    _, order_id = _checkout(client, auth_headers)

    response = client.post(f"/api/order/{order_id}/status", json={"status": "COMPLETED"}, headers=staff_headers)

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_TRANSITION"
    assert response.get_json()["body"]["order"]["status"] == "PENDING"


def test_status_update_needs_staff_token(client, auth_headers, staff_headers):
    _, order_id = _checkout(client, auth_headers)

    assert client.post(f"/api/order/{order_id}/status", json={"status": "PREPARE"}, headers=auth_headers).status_code == 401
    assert client.post("/api/order/999/status", json={"status": "PREPARE"}, headers=staff_headers).status_code == 404
    assert client.post(f"/api/order/{order_id}/status", json={"status": "LOST"}, headers=staff_headers).status_code == 400
