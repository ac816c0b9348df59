import logging
import math

from flask import Blueprint, current_app, g, jsonify, request

from . import db
from .auth import ensure_same_user, require_auth
from .errors import MerchantNotFound, PaymentError, ValidationError
from .gateway import build_gateway
from .models import utcnow
from .onboarding import create_merchant_account
from .orders import create_order
from .settlement import summarize_earnings
from .store import LedgerStore
from .verification import verify_and_activate
from .webhooks import handle_event

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)


# ----------------------------------------
# per-request collaborators
# ----------------------------------------
def get_store():
    if "store" not in g:
        g.store = LedgerStore(db.session)
    return g.store


def get_gateway():
    if "gateway" not in g:
        g.gateway = build_gateway(current_app.config)
    return g.gateway


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ----------------------------------------
# API
# ----------------------------------------
@payments_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "service": "gymroute"}), 200


@payments_bp.route("/gateway/key", methods=["GET"])
def gateway_key():
    key_id = current_app.config.get("GATEWAY_KEY_ID")
    if not key_id:
        raise PaymentError("Gateway key not configured")
    return jsonify({"key_id": key_id}), 200


@payments_bp.route("/orders", methods=["POST"])
@require_auth
def post_order():
    """
    Request: {"plan_id": "...", "amount": 49900, "currency": "INR", "user_id": "..."}
    Response: {"order_id": "order_...", "amount": 49900, "currency": "INR"}
    """
    data = json_body()
    if not data.get("user_id"):
        raise ValidationError("user_id is required")
    ensure_same_user(data.get("user_id"))

    result = create_order(
        get_store(),
        get_gateway(),
        plan_id=data.get("plan_id"),
        user_id=g.user_id,
        amount=data.get("amount"),
        currency=current_app.config["DEFAULT_CURRENCY"],
        declared_currency=data.get("currency"),
    )
    return jsonify(result.to_dict()), 200


@payments_bp.route("/orders/routed", methods=["POST"])
@require_auth
def post_routed_order():
    """
    Request: {"plan_id": "...", "amount": 49900, "currency": "INR"}
    Response: {"order_id": ..., "amount": ..., "currency": ..., "merchant_name": ..., "plan_name": ...}
    """
    data = json_body()
    result = create_order(
        get_store(),
        get_gateway(),
        plan_id=data.get("plan_id"),
        user_id=g.user_id,
        amount=data.get("amount"),
        currency=current_app.config["DEFAULT_CURRENCY"],
        declared_currency=data.get("currency"),
        require_routed=True,
    )
    return jsonify(result.to_dict(routed=True)), 200


@payments_bp.route("/payments/verify", methods=["POST"])
@require_auth
def post_verify_payment():
    """
    Request: {"order_id", "payment_id", "signature", "plan_id", "user_id"}
    Response: {"subscription_id": ..., "start_date": ..., "end_date": ...}
    """
    data = json_body()
    ensure_same_user(data.get("user_id"))

    result = verify_and_activate(
        get_store(),
        get_gateway(),
        current_app.config["GATEWAY_KEY_SECRET"],
        order_id=data.get("order_id"),
        payment_id=data.get("payment_id"),
        signature=data.get("signature"),
        plan_id=data.get("plan_id"),
        user_id=g.user_id,
        currency=current_app.config["DEFAULT_CURRENCY"],
    )
    return jsonify(result.to_dict()), 200


@payments_bp.route("/webhooks/gateway", methods=["POST"])
def post_gateway_webhook():
    """No bearer auth: the signature over the raw body is the authentication."""
    signature = request.headers.get("x-signature") or request.headers.get("x-razorpay-signature")
    body = handle_event(
        get_store(),
        current_app.config["GATEWAY_WEBHOOK_SECRET"],
        request.get_data(),
        signature,
    )
    return jsonify(body), 200


@payments_bp.route("/merchants", methods=["POST"])
@require_auth
def post_merchant():
    result = create_merchant_account(
        get_store(),
        get_gateway(),
        g.user_id,
        json_body(),
        current_app.config["ONBOARDING_DASHBOARD_URL"],
    )
    return jsonify(result.to_dict()), 200


@payments_bp.route("/merchants/me", methods=["GET"])
@require_auth
def get_my_merchant():
    merchant = get_store().get_merchant_by_user(g.user_id)
    if merchant is None:
        raise MerchantNotFound("Gym owner not found")
    return jsonify(merchant.to_dict()), 200


@payments_bp.route("/merchants/me/transactions", methods=["GET"])
@require_auth
def get_my_transactions():
    store = get_store()
    merchant = store.get_merchant_by_user(g.user_id)
    if merchant is None:
        raise MerchantNotFound("Gym owner not found")
    transactions = store.route_transactions_for_merchant(merchant.id)
    return jsonify({"transactions": [tx.to_dict() for tx in transactions]}), 200


@payments_bp.route("/merchants/me/earnings", methods=["GET"])
@require_auth
def get_my_earnings():
    store = get_store()
    merchant = store.get_merchant_by_user(g.user_id)
    if merchant is None:
        raise MerchantNotFound("Gym owner not found")
    summary = summarize_earnings(store.route_transactions_for_merchant(merchant.id))
    summary["commission_percentage"] = float(merchant.commission_percentage)
    return jsonify(summary), 200


@payments_bp.route("/subscriptions/current", methods=["GET"])
@require_auth
def get_current_subscription():
    now = utcnow()
    for subscription in get_store().active_subscriptions_for_user(g.user_id):
        if subscription.current_status(now) != "active":
            continue
        body = subscription.to_dict(now)
        body["active"] = True
        body["plan_name"] = subscription.plan.name if subscription.plan else None
        body["days_remaining"] = math.ceil((subscription.end_date - now).total_seconds() / 86400)
        return jsonify(body), 200
    return jsonify({"active": False}), 200


@payments_bp.route("/payments/history", methods=["GET"])
@require_auth
def get_payment_history():
    history = []
    for payment in get_store().payments_for_user(g.user_id):
        subscription = payment.subscription
        history.append(
            {
                "payment_id": payment.external_payment_id,
                "order_id": payment.external_order_id,
                "amount": payment.amount,
                "currency": payment.currency,
                "method": payment.method,
                "status": payment.status,
                "payment_date": payment.payment_date.isoformat(),
                "plan_name": payment.plan.name if payment.plan else None,
                "subscription": subscription.to_dict() if subscription else None,
            }
        )
    return jsonify({"payments": history}), 200
