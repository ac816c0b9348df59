import json
from decimal import Decimal
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from gymroute import create_app, db
from gymroute.config import TestConfig
from gymroute.errors import GatewayError
from gymroute.models import MerchantAccount, Plan, Profile
from gymroute.signatures import payment_message, sign
from gymroute.store import LedgerStore

MEMBER_ID = "11111111-aaaa-4bbb-8ccc-000000000001"
OWNER_ID = "22222222-aaaa-4bbb-8ccc-000000000002"


class FakeGateway:
    """In-memory stand-in for GatewayClient that records every call."""

    def __init__(self):
        self.calls = []
        self.payments = {}
        self.transfers = {}
        self.account_status = "created"
        self.error = None

    def _record(self, name, arg):
        self.calls.append((name, arg))
        if self.error is not None:
            raise self.error

    def calls_to(self, name):
        return [arg for call, arg in self.calls if call == name]

    def create_order(self, payload):
        self._record("create_order", payload)
        return {
            "id": f"order_{len(self.calls_to('create_order'))}",
            "amount": payload["amount"],
            "currency": payload["currency"],
            "receipt": payload["receipt"],
        }

    def fetch_payment(self, payment_id):
        self._record("fetch_payment", payment_id)
        if payment_id not in self.payments:
            raise GatewayError("Payment gateway rejected request (404)")
        return self.payments[payment_id]

    def fetch_transfers(self, payment_id):
        self._record("fetch_transfers", payment_id)
        return self.transfers.get(payment_id, [])

    def create_linked_account(self, payload):
        self._record("create_linked_account", payload)
        return {"id": f"acc_{len(self.calls_to('create_linked_account'))}", "status": self.account_status}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(TestConfig)
    app.config["GATEWAY_CLIENT_FACTORY"] = lambda config: gateway
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return LedgerStore(db.session)


@pytest.fixture
def make_merchant(app):
    def _make(user_id=OWNER_ID, **overrides):
        values = {
            "gym_name": "Iron Temple",
            "external_account_id": "acc_gym1",
            "account_status": "activated",
            "onboarding_completed": True,
            "is_active": True,
            "commission_percentage": 10,
        }
        values.update(overrides)
        merchant = MerchantAccount(user_id=user_id, **values)
        db.session.add(merchant)
        db.session.commit()
        return merchant

    return _make


@pytest.fixture
def make_plan(app):
    def _make(**overrides):
        values = {"name": "Monthly", "price": Decimal("499.00"), "duration_days": 30, "is_active": True}
        values.update(overrides)
        plan = Plan(**values)
        db.session.add(plan)
        db.session.commit()
        return plan

    return _make


@pytest.fixture
def make_member(app):
    def _make(user_id=MEMBER_ID, gym_id=None):
        profile = Profile(id=user_id, gym_id=gym_id, role="member")
        db.session.add(profile)
        db.session.commit()
        return profile

    return _make


@pytest.fixture
def routed_setup(make_merchant, make_plan, make_member):
    """An activated gym, its 499.00 plan and a member of that gym."""
    merchant = make_merchant()
    plan = make_plan(gym_id=merchant.id)
    make_member(gym_id=merchant.id)
    return merchant, plan


def auth_headers(user_id=MEMBER_ID, secret=TestConfig.AUTH_JWT_SECRET, expires_in=3600):
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": user_id,
            "aud": "authenticated",
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        },
        secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def checkout_signature(order_id, payment_id, secret=TestConfig.GATEWAY_KEY_SECRET):
    return sign(payment_message(order_id, payment_id), secret)


def captured_payment(payment_id, order_id, amount=49900, notes=None, status="captured"):
    return {
        "id": payment_id,
        "order_id": order_id,
        "status": status,
        "amount": amount,
        "currency": "INR",
        "method": "upi",
        "notes": notes or {},
    }


def webhook_body(event_type, entity_key=None, entity=None, account_id="acc_gym1"):
    event = {"entity": "event", "account_id": account_id, "event": event_type, "payload": {}}
    if entity_key is not None:
        event["payload"][entity_key] = {"entity": entity}
    return json.dumps(event, separators=(",", ":")).encode("utf-8")


def webhook_signature(raw_body, secret=TestConfig.GATEWAY_WEBHOOK_SECRET):
    return sign(raw_body, secret)
