"""
Ledger store: the only component that touches persisted payment state.

A LedgerStore wraps one SQLAlchemy session and is created per request.
Updates on shared rows are field-scoped UPDATE statements so that a
webhook and a retried request never overwrite each other's columns.
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import PersistenceError
from .models import (
    MerchantAccount,
    MerchantSettings,
    Payment,
    Plan,
    Profile,
    RefundRequest,
    RouteTransaction,
    Subscription,
    WebhookEvent,
    utcnow,
)

logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(self, session):
        self.session = session

    # --- transaction helpers ---

    def commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[store] commit failed: {e}")
            raise PersistenceError("Failed to save changes") from e

    def rollback(self):
        self.session.rollback()

    # --- reads ---

    def get_plan(self, plan_id, active_only=True):
        query = self.session.query(Plan).filter_by(id=plan_id)
        if active_only:
            query = query.filter_by(is_active=True)
        return query.first()

    def get_profile(self, user_id):
        return self.session.get(Profile, user_id)

    def get_merchant(self, merchant_id):
        if merchant_id is None:
            return None
        return self.session.get(MerchantAccount, merchant_id)

    def get_merchant_by_user(self, user_id):
        return self.session.query(MerchantAccount).filter_by(user_id=user_id).first()

    def get_merchant_by_external_id(self, external_account_id):
        return self.session.query(MerchantAccount).filter_by(external_account_id=external_account_id).first()

    def find_payment(self, external_payment_id):
        return self.session.query(Payment).filter_by(external_payment_id=external_payment_id).first()

    def get_route_by_transfer_id(self, external_transfer_id):
        return self.session.query(RouteTransaction).filter_by(external_transfer_id=external_transfer_id).first()

    def payments_for_user(self, user_id):
        return (
            self.session.query(Payment).filter_by(user_id=user_id)
            .order_by(Payment.created_at.desc())
            .all()
        )

    def active_subscriptions_for_user(self, user_id):
        return (
            self.session.query(Subscription).filter_by(user_id=user_id, status="active")
            .order_by(Subscription.end_date.desc())
            .all()
        )

    def route_transactions_for_merchant(self, merchant_account_id):
        return (
            self.session.query(RouteTransaction).filter_by(merchant_account_id=merchant_account_id)
            .order_by(RouteTransaction.created_at.desc())
            .all()
        )

    def payments_without_subscription(self, created_before):
        return (
            self.session.query(Payment).outerjoin(Subscription, Subscription.payment_id == Payment.id)
            .filter(Subscription.id.is_(None))
            .filter(Payment.status == "success")
            .filter(Payment.created_at <= created_before)
            .all()
        )

    # --- activation ---

    def add_activation(self, payment, subscription, route_transaction=None):
        """
        Commit payment, subscription and the optional route transaction
        together. Returns (payment, created). A concurrent insert of the
        same external_payment_id resolves to the row that won.
        """
        self.session.add(payment)
        self.session.add(subscription)
        if route_transaction is not None:
            self.session.add(route_transaction)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            existing = self.find_payment(payment.external_payment_id)
            if existing is not None:
                logger.info(
                    f"[store] duplicate activation resolved payment_id={payment.external_payment_id}"
                )
                return existing, False
            raise PersistenceError("Failed to record payment") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError("Failed to record payment") from e
        return payment, True

    def add_subscription(self, subscription):
        self.session.add(subscription)
        self.commit()
        return subscription

    # --- merchant accounts ---

    def update_merchant(self, external_account_id, values):
        """Field-scoped update keyed by the gateway account id. Returns rowcount."""
        values = dict(values, updated_at=utcnow())
        return self.session.query(MerchantAccount).filter_by(external_account_id=external_account_id).update(
            values, synchronize_session=False
        )

    def upsert_merchant(self, user_id, values):
        merchant = self.get_merchant_by_user(user_id)
        if merchant is None:
            merchant = MerchantAccount(user_id=user_id, **values)
            self.session.add(merchant)
        else:
            self.session.query(MerchantAccount).filter_by(user_id=user_id).update(
                dict(values, updated_at=utcnow()), synchronize_session=False
            )
        self.commit()
        merchant = self.get_merchant_by_user(user_id)
        self.session.refresh(merchant)
        return merchant

    def ensure_settings(self, merchant_account_id):
        settings = self.session.query(MerchantSettings).filter_by(merchant_account_id=merchant_account_id).first()
        if settings is not None:
            return settings
        settings = MerchantSettings(merchant_account_id=merchant_account_id)
        self.session.add(settings)
        self.commit()
        return settings

    # --- transfers / payments / refunds ---

    def update_transfer(self, external_transfer_id, values, from_statuses):
        """Move a route transaction only when it is in one of from_statuses."""
        values = dict(values, updated_at=utcnow())
        return (
            self.session.query(RouteTransaction).filter_by(external_transfer_id=external_transfer_id)
            .filter(RouteTransaction.transfer_status.in_(from_statuses))
            .update(values, synchronize_session=False)
        )

    def mark_payment_failed(self, external_payment_id):
        return (
            self.session.query(Payment).filter_by(external_payment_id=external_payment_id)
            .filter(Payment.status != "failed")
            .update({"status": "failed"}, synchronize_session=False)
        )

    def process_refund(self, external_payment_id, external_refund_id, amount=None):
        """
        Mark one approved refund request as processed by the gateway refund.

        The request is matched on amount when the refund names one. A refund
        id is only ever stamped on a single request.
        """
        payment = self.find_payment(external_payment_id)
        if payment is None:
            return 0
        if self.session.query(RefundRequest).filter_by(external_refund_id=external_refund_id).count():
            return 0
        query = self.session.query(RefundRequest).filter_by(
            payment_id=payment.id, status="approved", external_refund_id=None
        )
        if amount is not None:
            query = query.filter_by(amount=int(amount))
        refund_request = query.order_by(RefundRequest.created_at.asc()).first()
        if refund_request is None:
            return 0
        return (
            self.session.query(RefundRequest).filter_by(id=refund_request.id, status="approved")
            .update(
                {"status": "processed", "external_refund_id": external_refund_id, "processed_at": utcnow()},
                synchronize_session=False,
            )
        )

    # --- webhook log ---

    def get_event(self, event_type, event_id):
        return self.session.query(WebhookEvent).filter_by(event_type=event_type, event_id=event_id).first()

    def log_event(self, event_type, event_id, external_account_id, raw_payload):
        """Record an incoming event before any dispatch. Returns (event, created)."""
        existing = self.get_event(event_type, event_id)
        if existing is not None:
            return existing, False
        event = WebhookEvent(
            event_type=event_type,
            event_id=event_id,
            external_account_id=external_account_id,
            payload=raw_payload,
        )
        self.session.add(event)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self.get_event(event_type, event_id), False
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError("Failed to log webhook event") from e
        return event, True

    def mark_event_processed(self, event):
        event.processed = True
        event.processed_at = utcnow()
        event.attempts = (event.attempts or 0) + 1
        event.last_error = None

    def record_event_failure(self, event_pk, error):
        self.session.rollback()
        event = self.session.get(WebhookEvent, event_pk)
        if event is None:
            return
        event.attempts = (event.attempts or 0) + 1
        event.last_error = str(error)[:500]
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[store] could not record webhook failure id={event_pk}: {e}")

    def mark_event_unprocessable(self, event_pk, error):
        event = self.session.get(WebhookEvent, event_pk)
        if event is None:
            return
        self.mark_event_processed(event)
        event.last_error = f"unprocessable: {error}"[:500]
        self.commit()

    def pending_events(self, limit=100):
        return (
            self.session.query(WebhookEvent).filter_by(processed=False)
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
            .all()
        )
