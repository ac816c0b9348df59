import logging
import time
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

from .errors import (
    AmountMismatch,
    CrossTenantViolation,
    GatewayError,
    MerchantNotFound,
    MerchantNotOnboarded,
    PlanNotFound,
    ValidationError,
)
from .receipts import make_receipt

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 1  # minor units


@dataclass
class Split:
    total_amount: int
    merchant_amount: int
    platform_commission: int


@dataclass
class OrderResult:
    order_id: str
    amount: int
    currency: str
    receipt: str
    plan_name: str
    merchant_name: Optional[str] = None
    split: Optional[Split] = None

    def to_dict(self, routed=False):
        body = {"order_id": self.order_id, "amount": self.amount, "currency": self.currency}
        if routed:
            body["merchant_name"] = self.merchant_name
            body["plan_name"] = self.plan_name
        return body


def to_minor_units(price):
    """round(price * 100) with half-up rounding on the decimal value."""
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_split(amount, commission_percentage):
    commission = int(
        (Decimal(amount) * Decimal(str(commission_percentage)) / 100).to_integral_value(
            rounding=ROUND_FLOOR
        )
    )
    return Split(total_amount=amount, merchant_amount=amount - commission, platform_commission=commission)


def check_amount(plan, declared_amount):
    expected = to_minor_units(plan.price)
    if abs(declared_amount - expected) > AMOUNT_TOLERANCE:
        logger.warning(
            f"[security] amount mismatch plan_id={plan.id} expected={expected} received={declared_amount}"
        )
        raise AmountMismatch(f"Amount mismatch: expected {expected}, got {declared_amount}")
    return expected


def check_currency(plan, declared_currency, currency):
    if declared_currency is not None and str(declared_currency).upper() != currency:
        logger.warning(
            f"[security] currency mismatch plan_id={plan.id} expected={currency} received={declared_currency}"
        )
        raise AmountMismatch(f"Currency mismatch: expected {currency}, got {declared_currency}")


def _validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer in minor units")


def create_order(store, gateway, plan_id, user_id, amount, currency="INR",
                 declared_currency=None, require_routed=False, timestamp_ns=None):
    """
    Create a gateway order for plan_id on behalf of user_id.

    Plans are priced in the platform currency; a client that declares any
    other currency is refused.

    A plan owned by a gym is routed: the order carries a transfer of the
    merchant's share to the gym's connected account. No local row is
    written; the gateway holds the order until verification.
    """
    if not plan_id:
        raise ValidationError("plan_id is required")
    _validate_amount(amount)

    plan = store.get_plan(plan_id)
    if plan is None:
        raise PlanNotFound("Plan not found or inactive")

    # the order is always created for the canonical amount, not the declared one
    amount = check_amount(plan, amount)
    check_currency(plan, declared_currency, currency)

    if plan.gym_id is None:
        if require_routed:
            raise ValidationError("Plan is not sold by a gym")
        merchant = None
        split = None
    else:
        merchant = store.get_merchant(plan.gym_id)
        if merchant is None:
            raise MerchantNotFound("Gym owner not found")
        if not merchant.can_receive_transfers:
            logger.info(
                f"[order] merchant not ready merchant_id={merchant.id} "
                f"status={merchant.account_status} onboarded={merchant.onboarding_completed} "
                f"active={merchant.is_active}"
            )
            raise MerchantNotOnboarded(
                "Gym owner has not completed payment setup", account_status=merchant.account_status
            )

        profile = store.get_profile(user_id)
        if profile is None or profile.gym_id != plan.gym_id:
            logger.warning(
                f"[security] cross-tenant order user_id={user_id} plan_gym={plan.gym_id} "
                f"user_gym={profile.gym_id if profile else None}"
            )
            raise CrossTenantViolation("Plan does not belong to your gym")

        split = compute_split(amount, merchant.commission_percentage)

    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    receipt = make_receipt(user_id, timestamp_ns)

    payload = {
        "amount": amount,
        "currency": currency,
        "receipt": receipt,
        "notes": {"user_id": user_id, "plan_id": plan.id, "plan_name": plan.name},
    }
    if split is not None:
        payload["notes"].update(
            {
                "gym_id": plan.gym_id,
                "gym_owner_id": merchant.id,
                "gym_owner_amount": split.merchant_amount,
                "platform_commission": split.platform_commission,
            }
        )
        payload["transfers"] = [
            {
                "account": merchant.external_account_id,
                "amount": split.merchant_amount,
                "currency": currency,
                "notes": {
                    "gym_name": merchant.gym_name,
                    "plan_name": plan.name,
                    "plan_id": plan.id,
                    "user_id": user_id,
                },
                "linked_account_notes": ["gym_name", "plan_name"],
                "on_hold": False,
            }
        ]

    logger.info(
        f"[order] creating order plan_id={plan.id} amount={amount} routed={split is not None} "
        f"receipt={receipt}"
    )
    order = gateway.create_order(payload)
    if not order.get("id"):
        raise GatewayError("Payment gateway returned an order without id")
    logger.info(f"[order] created order_id={order.get('id')}")

    return OrderResult(
        order_id=order["id"],
        amount=order.get("amount", amount),
        currency=order.get("currency", currency),
        receipt=order.get("receipt", receipt),
        plan_name=plan.name,
        merchant_name=merchant.gym_name if merchant else None,
        split=split,
    )
