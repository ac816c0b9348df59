import logging
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import (
    MEMBER_ID,
    OWNER_ID,
    auth_headers,
    captured_payment,
    checkout_signature,
    webhook_body,
    webhook_signature,
)
import gymroute
from gymroute import db
from gymroute.errors import GatewayError, PersistenceError
from gymroute.models import MerchantAccount, Payment, RouteTransaction, Subscription, utcnow


@pytest.fixture
def subscribed_member(routed_setup):
    """A member with one paid, active subscription to the gym's monthly plan."""
    merchant, plan = routed_setup
    now = utcnow()
    payment = Payment(
        user_id=MEMBER_ID,
        plan_id=plan.id,
        external_order_id="order_H1",
        external_payment_id="pay_H1",
        signature="sig",
        amount=49900,
        currency="INR",
        method="upi",
        payment_date=now - timedelta(days=5),
    )
    subscription = Subscription(
        user_id=MEMBER_ID,
        plan_id=plan.id,
        payment=payment,
        external_subscription_ref="sub_pay_H1",
        start_date=now - timedelta(days=5),
        end_date=now + timedelta(days=25),
    )
    route = RouteTransaction(
        payment=payment,
        external_payment_id="pay_H1",
        merchant_account_id=merchant.id,
        external_account_id="acc_gym1",
        total_amount=49900,
        merchant_amount=44910,
        platform_commission=4990,
        external_transfer_id="trf_H1",
        transfer_status="transferred",
    )
    db.session.add_all([payment, subscription, route])
    db.session.commit()
    return merchant, plan


class TestPublicEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok", "service": "gymroute"}

    def test_gateway_key(self, client):
        response = client.get("/gateway/key")
        assert response.get_json() == {"key_id": "rzp_test_key"}

    def test_cors_header(self, client):
        response = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert response.headers.get("Access-Control-Allow-Origin") in ("*", "http://localhost:3000")

    def test_unknown_route_is_json(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.get_json()["success"] is False


class TestErrorEnvelope:
    def test_package_logger_survives_app_creation(self, app):
        assert isinstance(gymroute.logger, logging.Logger)

    def test_persistence_error_keeps_code_and_payment_id(self, client, make_plan):
        plan = make_plan()
        failure = PersistenceError("Payment recorded but subscription pending reconciliation", payment_id="pay_P1")
        with patch("gymroute.routes.verify_and_activate", side_effect=failure):
            response = client.post(
                "/payments/verify",
                json={"order_id": "order_P1", "payment_id": "pay_P1", "signature": "sig", "plan_id": plan.id},
                headers=auth_headers(),
            )
        assert response.status_code == 500
        assert response.get_json() == {
            "success": False,
            "error": "Payment recorded but subscription pending reconciliation",
            "code": "PERSISTENCE_ERROR",
            "payment_id": "pay_P1",
        }

    def test_unexpected_exception_is_a_plain_500(self, client, make_plan):
        plan = make_plan()
        with patch("gymroute.routes.create_order", side_effect=RuntimeError("boom")):
            response = client.post(
                "/orders",
                json={"plan_id": plan.id, "amount": 49900, "user_id": MEMBER_ID},
                headers=auth_headers(),
            )
        assert response.status_code == 500
        assert response.get_json() == {"success": False, "error": "Internal server error"}


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.post("/orders", json={})
        assert response.status_code == 401
        assert response.get_json() == {
            "success": False,
            "error": "Authorization header missing",
            "code": "UNAUTHORIZED",
        }

    def test_expired_token(self, client):
        response = client.post("/orders", json={}, headers=auth_headers(expires_in=-60))
        assert response.status_code == 401
        assert response.get_json()["error"] == "Token has expired"

    def test_token_signed_with_other_secret(self, client):
        response = client.post("/orders", json={}, headers=auth_headers(secret="x" * 40))
        assert response.status_code == 401
        assert response.get_json()["error"] == "Invalid token"

    def test_non_bearer_scheme(self, client):
        response = client.get("/merchants/me", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401


class TestOrders:
    def test_user_mismatch(self, client, make_plan):
        plan = make_plan()
        response = client.post(
            "/orders",
            json={"plan_id": plan.id, "amount": 49900, "user_id": "someone-else"},
            headers=auth_headers(),
        )
        assert response.status_code == 403
        assert response.get_json()["error"] == "User ID mismatch"

    def test_user_id_required(self, client, make_plan):
        plan = make_plan()
        response = client.post("/orders", json={"plan_id": plan.id, "amount": 49900}, headers=auth_headers())
        assert response.status_code == 400

    def test_platform_order(self, client, gateway, make_plan):
        plan = make_plan()
        response = client.post(
            "/orders",
            json={"plan_id": plan.id, "amount": 49900, "user_id": MEMBER_ID},
            headers=auth_headers(),
        )
        assert response.status_code == 200
        assert response.get_json() == {"order_id": "order_1", "amount": 49900, "currency": "INR"}

    def test_body_must_be_json_object(self, client):
        response = client.post("/orders", data="plan", headers=auth_headers())
        assert response.status_code == 400
        assert response.get_json()["code"] == "VALIDATION_ERROR"

    def test_amount_mismatch(self, client, make_plan):
        plan = make_plan()
        response = client.post(
            "/orders",
            json={"plan_id": plan.id, "amount": 100, "user_id": MEMBER_ID},
            headers=auth_headers(),
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "AMOUNT_MISMATCH"

    def test_routed_order(self, client, gateway, routed_setup):
        _, plan = routed_setup
        response = client.post("/orders/routed", json={"plan_id": plan.id, "amount": 49900}, headers=auth_headers())

        assert response.status_code == 200
        assert response.get_json() == {
            "order_id": "order_1",
            "amount": 49900,
            "currency": "INR",
            "merchant_name": "Iron Temple",
            "plan_name": "Monthly",
        }
        [payload] = gateway.calls_to("create_order")
        assert payload["transfers"][0]["amount"] == 44910

    def test_routed_order_for_unready_gym(self, client, gateway, make_merchant, make_plan, make_member):
        merchant = make_merchant(account_status="created")
        plan = make_plan(gym_id=merchant.id)
        make_member(gym_id=merchant.id)

        response = client.post("/orders/routed", json={"plan_id": plan.id, "amount": 49900}, headers=auth_headers())

        assert response.status_code == 400
        body = response.get_json()
        assert body["code"] == "MERCHANT_NOT_ONBOARDED"
        assert body["account_status"] == "created"
        assert gateway.calls == []

    def test_foreign_currency_is_refused(self, client, gateway, make_plan):
        plan = make_plan()
        response = client.post(
            "/orders",
            json={"plan_id": plan.id, "amount": 49900, "currency": "IDR", "user_id": MEMBER_ID},
            headers=auth_headers(),
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "AMOUNT_MISMATCH"
        assert gateway.calls == []

    def test_gateway_outage(self, client, gateway, make_plan):
        plan = make_plan()
        gateway.error = GatewayError("Payment gateway unavailable")
        response = client.post(
            "/orders",
            json={"plan_id": plan.id, "amount": 49900, "user_id": MEMBER_ID},
            headers=auth_headers(),
        )
        assert response.status_code == 502
        assert response.get_json()["code"] == "GATEWAY_ERROR"


class TestVerifyEndpoint:
    def _body(self, plan, **overrides):
        body = {
            "order_id": "order_V1",
            "payment_id": "pay_V1",
            "signature": checkout_signature("order_V1", "pay_V1"),
            "plan_id": plan.id,
            "user_id": MEMBER_ID,
        }
        body.update(overrides)
        return body

    def test_verifies_and_activates(self, client, gateway, routed_setup):
        _, plan = routed_setup
        gateway.payments["pay_V1"] = captured_payment("pay_V1", "order_V1")
        gateway.transfers["pay_V1"] = [{"id": "trf_V1", "recipient": "acc_gym1", "amount": 44910, "status": "created"}]

        response = client.post("/payments/verify", json=self._body(plan), headers=auth_headers())

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["gym_name"] == "Iron Temple"
        assert body["subscription_id"] == Subscription.query.one().id

        again = client.post("/payments/verify", json=self._body(plan), headers=auth_headers())
        assert again.get_json()["subscription_id"] == body["subscription_id"]

    def test_invalid_signature(self, client, routed_setup):
        _, plan = routed_setup
        response = client.post("/payments/verify", json=self._body(plan, signature="00" * 32), headers=auth_headers())
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_SIGNATURE"

    def test_body_user_must_match_token(self, client, routed_setup):
        _, plan = routed_setup
        response = client.post("/payments/verify", json=self._body(plan, user_id=OWNER_ID), headers=auth_headers())
        assert response.status_code == 403


class TestWebhookEndpoint:
    def test_rejects_bad_signature(self, client):
        raw = webhook_body("account.activated", "account", {"id": "acc_gym1"})
        response = client.post(
            "/webhooks/gateway", data=raw, headers={"x-signature": "bad"}, content_type="application/json"
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_SIGNATURE"

    def test_accepts_signed_event(self, client, make_merchant):
        make_merchant(account_status="created", onboarding_completed=False)
        raw = webhook_body("account.activated", "account", {"id": "acc_gym1"})

        response = client.post(
            "/webhooks/gateway",
            data=raw,
            headers={"x-razorpay-signature": webhook_signature(raw)},
            content_type="application/json",
        )

        assert response.status_code == 200
        assert response.get_json() == {"success": True}
        assert MerchantAccount.query.one().account_status == "activated"


class TestMerchantEndpoints:
    def test_onboard_then_conflict(self, client, gateway):
        body = {
            "gymName": "Iron Temple",
            "email": "owner@irontemple.in",
            "phone": "9876543210",
            "businessType": "individual",
        }
        headers = auth_headers(OWNER_ID)

        first = client.post("/merchants", json=body, headers=headers)
        assert first.status_code == 200
        assert first.get_json()["account_id"] == "acc_1"

        second = client.post("/merchants", json=body, headers=headers)
        assert second.status_code == 409
        assert second.get_json()["code"] == "ACCOUNT_ALREADY_EXISTS"
        assert len(gateway.calls_to("create_linked_account")) == 1

    def test_me_without_account(self, client):
        response = client.get("/merchants/me", headers=auth_headers(OWNER_ID))
        assert response.status_code == 404

    def test_me(self, client, make_merchant):
        make_merchant()
        body = client.get("/merchants/me", headers=auth_headers(OWNER_ID)).get_json()
        assert body["external_account_id"] == "acc_gym1"
        assert body["commission_percentage"] == 10.0

    def test_transactions_and_earnings(self, client, subscribed_member):
        headers = auth_headers(OWNER_ID)

        transactions = client.get("/merchants/me/transactions", headers=headers).get_json()["transactions"]
        assert [tx["external_transfer_id"] for tx in transactions] == ["trf_H1"]

        earnings = client.get("/merchants/me/earnings", headers=headers).get_json()
        assert earnings["transaction_count"] == 1
        assert earnings["merchant_earnings"] == 44910
        assert earnings["transferred_amount"] == 44910
        assert earnings["platform_commission"] == 4990
        assert earnings["commission_percentage"] == 10.0

    def test_transactions_are_scoped_to_caller(self, client, subscribed_member, make_merchant):
        make_merchant(user_id="owner-2", external_account_id="acc_gym2")
        body = client.get("/merchants/me/transactions", headers=auth_headers("owner-2")).get_json()
        assert body == {"transactions": []}


class TestMemberEndpoints:
    def test_current_subscription(self, client, subscribed_member):
        body = client.get("/subscriptions/current", headers=auth_headers()).get_json()
        assert body["active"] is True
        assert body["plan_name"] == "Monthly"
        assert body["days_remaining"] == 25
        assert body["status"] == "active"

    def test_no_subscription(self, client):
        body = client.get("/subscriptions/current", headers=auth_headers()).get_json()
        assert body == {"active": False}

    def test_expired_subscription_is_not_current(self, client, subscribed_member):
        subscription = Subscription.query.one()
        subscription.end_date = utcnow() - timedelta(minutes=1)
        db.session.commit()

        body = client.get("/subscriptions/current", headers=auth_headers()).get_json()
        assert body == {"active": False}

    def test_payment_history(self, client, subscribed_member):
        body = client.get("/payments/history", headers=auth_headers()).get_json()
        [entry] = body["payments"]
        assert entry["payment_id"] == "pay_H1"
        assert entry["amount"] == 49900
        assert entry["plan_name"] == "Monthly"
        assert entry["subscription"]["status"] == "active"

    def test_history_is_per_user(self, client, subscribed_member):
        body = client.get("/payments/history", headers=auth_headers(OWNER_ID)).get_json()
        assert body == {"payments": []}
