import uuid
from datetime import datetime, timezone

from . import db


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ----------------------------------------
# account / transfer states
# ----------------------------------------
ACCOUNT_STATUSES = ("none", "created", "needs_clarification", "activated", "suspended", "rejected")

TRANSFER_CREATED = "created"
TRANSFER_PROCESSING = "processing"
TRANSFER_TRANSFERRED = "transferred"
TRANSFER_FAILED = "failed"
TRANSFER_TERMINAL = (TRANSFER_TRANSFERRED, TRANSFER_FAILED)


class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.String(36), primary_key=True)  # auth user id
    gym_id = db.Column(db.String(36), db.ForeignKey("merchant_accounts.id"), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="member")


class MerchantAccount(db.Model):
    """A gym owner's connected account at the gateway."""

    __tablename__ = "merchant_accounts"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), unique=True, nullable=False)

    gym_name = db.Column(db.String(200), nullable=False)
    gym_address = db.Column(db.String(300))
    gym_city = db.Column(db.String(100))
    gym_state = db.Column(db.String(100))
    gym_pincode = db.Column(db.String(20))
    gym_phone = db.Column(db.String(30))
    contact_email = db.Column(db.String(200))
    contact_phone = db.Column(db.String(30))
    business_type = db.Column(db.String(30))
    business_name = db.Column(db.String(200))
    gstin = db.Column(db.String(30))

    external_account_id = db.Column(db.String(64), unique=True, nullable=True)
    account_status = db.Column(db.String(30), nullable=False, default="none")
    onboarding_link = db.Column(db.String(300))
    onboarding_completed = db.Column(db.Boolean, nullable=False, default=False)
    onboarding_completed_at = db.Column(db.DateTime)
    kyc_status = db.Column(db.String(30), nullable=False, default="pending")
    kyc_verified_at = db.Column(db.DateTime)
    commission_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=10)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 100",
            name="ck_merchant_commission_range",
        ),
    )

    @property
    def can_receive_transfers(self):
        return self.account_status == "activated" and self.onboarding_completed and self.is_active

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "gym_name": self.gym_name,
            "business_type": self.business_type,
            "business_name": self.business_name,
            "external_account_id": self.external_account_id,
            "account_status": self.account_status,
            "onboarding_link": self.onboarding_link,
            "onboarding_completed": self.onboarding_completed,
            "kyc_status": self.kyc_status,
            "commission_percentage": float(self.commission_percentage),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class MerchantSettings(db.Model):
    __tablename__ = "merchant_settings"

    id = db.Column(db.Integer, primary_key=True)
    merchant_account_id = db.Column(
        db.String(36), db.ForeignKey("merchant_accounts.id"), unique=True, nullable=False
    )
    payout_schedule = db.Column(db.String(20), nullable=False, default="daily")
    notify_on_payment = db.Column(db.Boolean, nullable=False, default=True)
    notify_on_transfer = db.Column(db.Boolean, nullable=False, default=True)


class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    gym_id = db.Column(db.String(36), db.ForeignKey("merchant_accounts.id"), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    merchant = db.relationship("MerchantAccount")


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    plan_id = db.Column(db.String(36), db.ForeignKey("plans.id"), nullable=False)
    external_order_id = db.Column(db.String(64), nullable=False)
    # sole serialization point between the verify path and the webhook path
    external_payment_id = db.Column(db.String(64), unique=True, nullable=False)
    signature = db.Column(db.String(128), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False)
    method = db.Column(db.String(30))
    status = db.Column(db.String(20), nullable=False, default="success")
    payment_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    plan = db.relationship("Plan")
    subscription = db.relationship("Subscription", back_populates="payment", uselist=False)
    route_transaction = db.relationship("RouteTransaction", back_populates="payment", uselist=False)


class RouteTransaction(db.Model):
    __tablename__ = "route_transactions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), unique=True, nullable=False)
    external_payment_id = db.Column(db.String(64), nullable=False)
    external_order_id = db.Column(db.String(64))
    merchant_account_id = db.Column(
        db.String(36), db.ForeignKey("merchant_accounts.id"), nullable=False, index=True
    )
    external_account_id = db.Column(db.String(64), nullable=False)
    total_amount = db.Column(db.Integer, nullable=False)
    merchant_amount = db.Column(db.Integer, nullable=False)
    platform_commission = db.Column(db.Integer, nullable=False)
    external_transfer_id = db.Column(db.String(64), unique=True, nullable=True)
    transfer_status = db.Column(db.String(20), nullable=False, default=TRANSFER_CREATED)
    transfer_failure_reason = db.Column(db.String(300))
    transfer_created_at = db.Column(db.DateTime)
    transfer_processed_at = db.Column(db.DateTime)
    notes = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "merchant_amount + platform_commission = total_amount", name="ck_route_split_sum"
        ),
    )

    payment = db.relationship("Payment", back_populates="route_transaction")

    def to_dict(self):
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "external_payment_id": self.external_payment_id,
            "external_transfer_id": self.external_transfer_id,
            "total_amount": self.total_amount,
            "merchant_amount": self.merchant_amount,
            "platform_commission": self.platform_commission,
            "transfer_status": self.transfer_status,
            "transfer_failure_reason": self.transfer_failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    plan_id = db.Column(db.String(36), db.ForeignKey("plans.id"), nullable=False)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), unique=True, nullable=False)
    external_subscription_ref = db.Column(db.String(80), unique=True, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    plan = db.relationship("Plan")
    payment = db.relationship("Payment", back_populates="subscription")

    def current_status(self, now=None):
        """Expiry is derived from end_date; the stored status is never polled forward."""
        now = now or utcnow()
        if self.status == "active" and now > self.end_date:
            return "expired"
        return self.status

    def to_dict(self, now=None):
        return {
            "subscription_id": self.id,
            "plan_id": self.plan_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.current_status(now),
        }


class RefundRequest(db.Model):
    __tablename__ = "refund_requests"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), nullable=False)
    user_id = db.Column(db.String(36), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(300))
    status = db.Column(db.String(20), nullable=False, default="pending")
    external_refund_id = db.Column(db.String(64))
    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(60), nullable=False)
    event_id = db.Column(db.String(80), nullable=False)
    external_account_id = db.Column(db.String(64))
    payload = db.Column(db.Text, nullable=False)  # raw body as received
    processed = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (db.UniqueConstraint("event_type", "event_id", name="uq_webhook_event"),)
