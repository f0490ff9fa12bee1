"""
Shared fixtures: an app bound to a throwaway SQLite file with the sample
company seeded, a test client, and bearer headers for seeded users.

Seeded ids in a fresh database:
    company 1 (payment id 0812345678)
    branch 1 Siam (opening hours), branch 2 Ari (always open)
    products 1 noodle, 2 kaprao, 3 thai tea
    methods 1 PROMPTPAY_QR (qr), 2 WALLET (balance)
"""

import pytest

from delivery_app import create_app, repository
from delivery_app.database import db_session
from delivery_app.models import SystemConfig
from delivery_app.tokens import refresh_tokens, sign_access_token

QR_METHOD_ID = 1
WALLET_METHOD_ID = 2
STAFF_TOKEN = "staff-secret-token"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "DATABASE_URL": f"sqlite:///{tmp_path / 'delivery-test.db'}",
            "SEED_SAMPLE_DATA": True,
            "JWT_SECRET": "test-jwt-secret",
            "JWT_EXPIRES_IN": 900,
            "REFRESH_TOKEN_EXPIRES_IN": 3600,
            "STAFF_TOKEN": STAFF_TOKEN,
            "SLIPOK_VERIFY_URL": "https://slipok.test/verify",
            "SLIPOK_TOKEN": "slipok-test-token",
            "SLIPOK_MODE": "",
            "ENABLE_MOCK_QR": True,
            "LINE_CHANNEL_ID": "1650000000",
            "LINE_CHANNEL_ACCESS_TOKEN": None,
            "FIREBASE_API_KEY": "test-api-key",
        }
    )
    yield app
    db_session.remove()
    refresh_tokens.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(uid="firebase-uid-1", email="somchai@example.com", balance=0):
        with app.app_context():
            user = repository.upsert_user(
                firebase_uid=uid,
                email=email,
                phone=None,
                provider="password",
                is_email_verified=True,
                is_phone_verified=False,
            )
            if balance:
                repository.adjust_balance(user.id, balance)
            token = sign_access_token({"uid": user.firebase_uid, "userId": user.id})
            return {"id": user.id, "uid": user.firebase_uid, "headers": {"Authorization": f"Bearer {token}"}}

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def auth_headers(user):
    return user["headers"]


@pytest.fixture
def staff_headers():
    return {"Authorization": f"Bearer {STAFF_TOKEN}"}


def order_details(branch_id=2, qty=1, **extra):
    details = {
        "branchId": str(branch_id),
        "branchName": "ครัวคุณแม่ สาขาอารีย์",
        "productList": [
            {
                "productId": "2",
                "productName": "ข้าวกะเพราหมูสับ",
                "price": 59,
                "qty": qty,
                "productAddOns": [{"name": "ไข่ดาว", "price": 10}],
            }
        ],
    }
    details.update(extra)
    return details


def payment_payload(method_id=QR_METHOD_ID, amount=69, branch_id=2, **overrides):
    payload = {
        "companyId": 1,
        "methodId": method_id,
        "amount": amount,
        "branchId": branch_id,
        "orderDetails": order_details(branch_id=branch_id),
    }
    payload.update(overrides)
    return payload


def set_config(app, name, value):
    with app.app_context():
        row = db_session.query(SystemConfig).filter_by(config_name=name).one()
        row.config_value = value
        db_session.commit()
