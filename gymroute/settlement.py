import logging
from datetime import timedelta

from .models import TRANSFER_FAILED, TRANSFER_TRANSFERRED, Subscription, utcnow
from .verification import subscription_window

logger = logging.getLogger(__name__)


def summarize_earnings(transactions):
    """Totals over a merchant's route transactions, in minor units."""
    summary = {
        "transaction_count": 0,
        "total_collected": 0,
        "merchant_earnings": 0,
        "platform_commission": 0,
        "transferred_amount": 0,
        "pending_amount": 0,
        "failed_amount": 0,
    }
    for tx in transactions:
        summary["transaction_count"] += 1
        summary["total_collected"] += tx.total_amount
        summary["merchant_earnings"] += tx.merchant_amount
        summary["platform_commission"] += tx.platform_commission
        if tx.transfer_status == TRANSFER_TRANSFERRED:
            summary["transferred_amount"] += tx.merchant_amount
        elif tx.transfer_status == TRANSFER_FAILED:
            summary["failed_amount"] += tx.merchant_amount
        else:
            summary["pending_amount"] += tx.merchant_amount
    return summary


def reconcile_payments(store, now=None, grace_minutes=10):
    """
    Complete successful payments that have no subscription.

    Only payments older than the grace period are touched so an in-flight
    verification is never raced. The subscription window starts at the
    payment date. Returns the list of external payment ids completed.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=grace_minutes)
    completed = []
    for payment in store.payments_without_subscription(cutoff):
        plan = payment.plan
        if plan is None:
            logger.error(f"[reconcile] payment without plan payment_id={payment.external_payment_id}")
            continue
        start_date, end_date = subscription_window(payment.payment_date, plan.duration_days)
        store.add_subscription(
            Subscription(
                user_id=payment.user_id,
                plan_id=plan.id,
                payment_id=payment.id,
                external_subscription_ref=f"sub_{payment.external_payment_id}",
                start_date=start_date,
                end_date=end_date,
                status="active",
            )
        )
        logger.warning(
            f"[reconcile] subscription completed payment_id={payment.external_payment_id} "
            f"user_id={payment.user_id}"
        )
        completed.append(payment.external_payment_id)
    logger.info(f"[reconcile] finished completed={len(completed)}")
    return completed
