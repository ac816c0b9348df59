"""
Payment verification.

The client reports a completed checkout with (order_id, payment_id,
signature). Nothing in that report is trusted: the signature is checked
against the platform secret, the payment state is re-read from the
gateway and the plan price is re-derived from the store. Payment,
route transaction and subscription are then written in one commit, keyed
by the gateway payment id so a retried or racing call activates once.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import (
    AmountMismatch,
    CrossTenantViolation,
    ForbiddenError,
    GatewayError,
    InvalidSignature,
    MerchantNotFound,
    PaymentNotCaptured,
    PersistenceError,
    PlanNotFound,
    ValidationError,
)
from .models import (
    TRANSFER_CREATED,
    TRANSFER_FAILED,
    TRANSFER_PROCESSING,
    TRANSFER_TRANSFERRED,
    Payment,
    RouteTransaction,
    Subscription,
    utcnow,
)
from .orders import AMOUNT_TOLERANCE, Split, compute_split, to_minor_units
from .signatures import payment_message, verify

logger = logging.getLogger(__name__)

# gateway transfer status -> local transfer_status
TRANSFER_STATUS_MAP = {
    "created": TRANSFER_CREATED,
    "pending": TRANSFER_PROCESSING,
    "processing": TRANSFER_PROCESSING,
    "processed": TRANSFER_TRANSFERRED,
    "failed": TRANSFER_FAILED,
}


@dataclass
class ActivationResult:
    subscription_id: str
    payment_id: str
    start_date: datetime
    end_date: datetime
    plan_name: str
    merchant_name: Optional[str] = None
    created: bool = True

    def to_dict(self):
        return {
            "success": True,
            "subscription_id": self.subscription_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "plan_name": self.plan_name,
            "gym_name": self.merchant_name,
            "message": "Payment verified and subscription activated",
        }


def subscription_window(start, duration_days):
    return start, start + timedelta(days=duration_days)


def _result_from_payment(payment, user_id):
    if payment.user_id != user_id:
        logger.warning(
            f"[security] payment replay by another user payment_id={payment.external_payment_id} "
            f"owner={payment.user_id} caller={user_id}"
        )
        raise ForbiddenError("Payment belongs to another user")
    subscription = payment.subscription
    if subscription is None:
        # left behind by a partial write; the reconciliation sweep completes it
        raise PersistenceError(
            "Payment recorded but subscription pending reconciliation",
            payment_id=payment.external_payment_id,
        )
    merchant = payment.plan.merchant if payment.plan else None
    return ActivationResult(
        subscription_id=subscription.id,
        payment_id=payment.id,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        plan_name=payment.plan.name if payment.plan else "",
        merchant_name=merchant.gym_name if merchant else None,
        created=False,
    )


def _recorded_split(gateway_payment, transfer, merchant):
    """
    The split instructed at order time (carried back in the payment notes)
    when it is consistent, otherwise recomputed from the commission rate.
    """
    total = int(gateway_payment["amount"])
    notes = gateway_payment.get("notes") or {}
    split = None
    try:
        merchant_amount = int(notes["gym_owner_amount"])
        commission = int(notes["platform_commission"])
        if merchant_amount + commission == total and merchant_amount >= 0 and commission >= 0:
            split = Split(total, merchant_amount, commission)
    except (KeyError, TypeError, ValueError):
        pass
    if split is None:
        split = compute_split(total, merchant.commission_percentage)

    if transfer.get("amount") is not None and int(transfer["amount"]) != split.merchant_amount:
        logger.warning(
            f"[verify] transfer amount differs from split transfer_id={transfer.get('id')} "
            f"transferred={transfer['amount']} expected={split.merchant_amount}"
        )
    return split


def _transfer_created_at(transfer):
    created = transfer.get("created_at")
    if not created:
        return None
    return datetime.fromtimestamp(int(created), tz=timezone.utc).replace(tzinfo=None)


def verify_and_activate(store, gateway, secret, order_id, payment_id, signature,
                        plan_id, user_id, currency="INR", now=None):
    if not order_id or not payment_id or not signature:
        raise ValidationError("Missing payment parameters")
    if not plan_id:
        raise ValidationError("plan_id is required")

    # signature over "{order_id}|{payment_id}"
    if not verify(payment_message(order_id, payment_id), secret, signature):
        logger.warning(f"[security] invalid payment signature order_id={order_id} payment_id={payment_id}")
        raise InvalidSignature("Invalid payment signature")
    logger.info(f"[verify] signature ok payment_id={payment_id}")

    # retried call: answer from the ledger, never re-activate
    existing = store.find_payment(payment_id)
    if existing is not None:
        logger.info(f"[verify] payment already recorded payment_id={payment_id}")
        return _result_from_payment(existing, user_id)

    # authoritative payment state
    gateway_payment = gateway.fetch_payment(payment_id)
    status = gateway_payment.get("status")
    if status != "captured":
        raise PaymentNotCaptured(f"Payment not captured. Status: {status}")
    if gateway_payment.get("order_id") and gateway_payment["order_id"] != order_id:
        raise ValidationError("Payment does not belong to this order")
    if gateway_payment.get("currency") != currency:
        logger.warning(
            f"[security] payment currency mismatch payment_id={payment_id} "
            f"expected={currency} paid={gateway_payment.get('currency')}"
        )
        raise AmountMismatch(f"Currency mismatch: expected {currency}")

    # the order notes were written server-side at checkout and name the buyer and plan
    notes = gateway_payment.get("notes") or {}
    if notes.get("plan_id") and notes["plan_id"] != plan_id:
        logger.warning(
            f"[security] plan differs from order payment_id={payment_id} "
            f"ordered={notes['plan_id']} claimed={plan_id}"
        )
        raise ValidationError("Payment was made for a different plan")
    if notes.get("user_id") and notes["user_id"] != user_id:
        logger.warning(
            f"[security] payment claimed by another user payment_id={payment_id} "
            f"buyer={notes['user_id']} caller={user_id}"
        )
        raise ForbiddenError("Payment belongs to another user")

    # plans deactivated after checkout still resolve
    plan = store.get_plan(plan_id, active_only=False)
    if plan is None:
        raise PlanNotFound("Plan not found")

    paid = int(gateway_payment.get("amount", 0))
    expected = to_minor_units(plan.price)
    if expected - paid > AMOUNT_TOLERANCE:
        logger.warning(
            f"[security] paid amount below plan price payment_id={payment_id} plan_id={plan.id} "
            f"paid={paid} expected={expected}"
        )
        raise AmountMismatch(f"Amount mismatch: expected {expected}, paid {paid}")

    merchant = None
    transfer = None
    if plan.gym_id is not None:
        merchant = store.get_merchant(plan.gym_id)
        if merchant is None:
            raise MerchantNotFound("Gym owner not found")
        transfers = gateway.fetch_transfers(payment_id)
        if not transfers:
            raise GatewayError("No transfer found for routed payment", payment_id=payment_id)
        transfer = transfers[0]
        if transfer.get("recipient") != merchant.external_account_id:
            logger.warning(
                f"[security] transfer recipient differs transfer_id={transfer.get('id')} "
                f"recipient={transfer.get('recipient')} expected={merchant.external_account_id}"
            )
            raise CrossTenantViolation("Transfer was not made to this gym")
        logger.info(f"[verify] transfer found transfer_id={transfer.get('id')}")

    now = now or utcnow()
    start_date, end_date = subscription_window(now, plan.duration_days)

    payment = Payment(
        user_id=user_id,
        plan_id=plan.id,
        external_order_id=order_id,
        external_payment_id=payment_id,
        signature=signature,
        amount=paid,
        currency=currency,
        method=gateway_payment.get("method"),
        status="success",
        payment_date=now,
    )
    subscription = Subscription(
        user_id=user_id,
        plan_id=plan.id,
        payment=payment,
        external_subscription_ref=f"sub_{payment_id}",
        start_date=start_date,
        end_date=end_date,
        status="active",
    )
    route_transaction = None
    if transfer is not None:
        split = _recorded_split(gateway_payment, transfer, merchant)
        route_transaction = RouteTransaction(
            payment=payment,
            external_payment_id=payment_id,
            external_order_id=order_id,
            merchant_account_id=merchant.id,
            external_account_id=merchant.external_account_id,
            total_amount=split.total_amount,
            merchant_amount=split.merchant_amount,
            platform_commission=split.platform_commission,
            external_transfer_id=transfer.get("id"),
            transfer_status=TRANSFER_STATUS_MAP.get(transfer.get("status"), TRANSFER_PROCESSING),
            transfer_created_at=_transfer_created_at(transfer),
            notes={
                "payment_method": gateway_payment.get("method"),
                "gym_name": merchant.gym_name,
                "plan_name": plan.name,
            },
        )

    try:
        saved, created = store.add_activation(payment, subscription, route_transaction)
    except PersistenceError:
        logger.critical(
            f"[verify] captured payment not persisted, needs reconciliation "
            f"payment_id={payment_id} order_id={order_id} user_id={user_id} plan_id={plan.id}"
        )
        raise

    if not created:
        return _result_from_payment(saved, user_id)

    logger.info(
        f"[verify] subscription activated subscription_id={subscription.id} payment_id={payment_id} "
        f"end_date={end_date.isoformat()}"
    )
    return ActivationResult(
        subscription_id=subscription.id,
        payment_id=saved.id,
        start_date=start_date,
        end_date=end_date,
        plan_name=plan.name,
        merchant_name=merchant.gym_name if merchant else None,
    )
