"""
Gateway webhook reconciliation.

Events arrive at least once and race the synchronous verify path. Each
event is authenticated over the raw body, logged under
(event_type, event_id) before dispatch, applied with field-scoped
updates that are no-ops on replay, and only then marked processed.
"""
import hashlib
import json
import logging

from .errors import InvalidSignature, ValidationError
from .models import (
    TRANSFER_CREATED,
    TRANSFER_FAILED,
    TRANSFER_PROCESSING,
    TRANSFER_TRANSFERRED,
    utcnow,
)
from .signatures import verify

logger = logging.getLogger(__name__)


class UnprocessableEvent(Exception):
    """A signed event that can never be applied; acknowledged so it is not redelivered."""


def derive_event_id(event, raw_body):
    """
    Id of the entity the event type is about ("refund.created" -> refund),
    or SHA-256 of the body when the event carries no such entity.
    """
    key = str(event.get("event", "")).split(".", 1)[0]
    entity = ((event.get("payload") or {}).get(key) or {}).get("entity") or {}
    if entity.get("id"):
        return str(entity["id"])
    return "body_" + hashlib.sha256(raw_body).hexdigest()[:40]


def _entity(event, key):
    entity = ((event.get("payload") or {}).get(key) or {}).get("entity")
    if not entity or not entity.get("id"):
        raise UnprocessableEvent(f"Event {event.get('event')} carries no {key} entity")
    return entity


# ----------------------------------------
# handlers: (store, event) -> rows touched
# ----------------------------------------

def _account_activated(store, event):
    account_id = _entity(event, "account")["id"]
    merchant = store.get_merchant_by_external_id(account_id)
    if merchant is None:
        return 0
    now = utcnow()
    return store.update_merchant(
        account_id,
        {
            "account_status": "activated",
            "onboarding_completed": True,
            "is_active": True,
            "kyc_status": "verified",
            # first activation wins; replays keep the original timestamps
            "kyc_verified_at": merchant.kyc_verified_at or now,
            "onboarding_completed_at": merchant.onboarding_completed_at or now,
        },
    )


def _account_needs_clarification(store, event):
    account_id = _entity(event, "account")["id"]
    return store.update_merchant(
        account_id, {"account_status": "needs_clarification", "kyc_status": "needs_clarification"}
    )


def _account_suspended(store, event):
    account_id = _entity(event, "account")["id"]
    return store.update_merchant(account_id, {"account_status": "suspended", "is_active": False})


def _account_rejected(store, event):
    account_id = _entity(event, "account")["id"]
    return store.update_merchant(account_id, {"account_status": "rejected", "is_active": False})


def _transfer_processed(store, event):
    transfer_id = _entity(event, "transfer")["id"]
    return store.update_transfer(
        transfer_id,
        {"transfer_status": TRANSFER_TRANSFERRED, "transfer_processed_at": utcnow()},
        from_statuses=(TRANSFER_CREATED, TRANSFER_PROCESSING),
    )


def _transfer_failed(store, event):
    entity = _entity(event, "transfer")
    notes = entity.get("notes") or {}
    error = entity.get("error") or {}
    reason = notes.get("failure_reason") or error.get("description") or "Unknown"
    return store.update_transfer(
        entity["id"],
        {"transfer_status": TRANSFER_FAILED, "transfer_failure_reason": str(reason)[:300]},
        from_statuses=(TRANSFER_CREATED, TRANSFER_PROCESSING),
    )


def _payment_captured(store, event):
    # activation happens on the verify path; the log row is the record
    return 0


def _payment_failed(store, event):
    return store.mark_payment_failed(_entity(event, "payment")["id"])


def _refund_created(store, event):
    entity = _entity(event, "refund")
    if not entity.get("payment_id"):
        raise UnprocessableEvent("Refund event carries no payment id")
    return store.process_refund(entity["payment_id"], entity["id"], entity.get("amount"))


HANDLERS = {
    "account.activated": _account_activated,
    "account.needs_clarification": _account_needs_clarification,
    "account.suspended": _account_suspended,
    "account.rejected": _account_rejected,
    "transfer.processed": _transfer_processed,
    "transfer.failed": _transfer_failed,
    "payment.captured": _payment_captured,
    "payment.failed": _payment_failed,
    "refund.created": _refund_created,
}


def parse_event(raw_body):
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(event, dict) or not event.get("event"):
        raise ValidationError("Webhook body has no event type")
    return event


def apply_event(store, webhook_event, event):
    """Dispatch one logged event and mark it processed in the same commit."""
    event_type = event["event"]
    event_pk = webhook_event.id
    event_id = webhook_event.event_id
    handler = HANDLERS.get(event_type)
    try:
        if handler is None:
            logger.info(f"[webhook] unhandled event type={event_type} id={event_id}")
            touched = 0
        else:
            touched = handler(store, event)
            logger.info(
                f"[webhook] applied type={event_type} id={event_id} rows={touched}"
            )
        store.mark_event_processed(webhook_event)
        store.commit()
    except UnprocessableEvent as e:
        logger.warning(f"[webhook] unprocessable event acknowledged type={event_type} id={event_id}: {e}")
        store.rollback()
        store.mark_event_unprocessable(event_pk, e)
        return 0
    except Exception as e:
        logger.error(f"[webhook] processing failed type={event_type} id={event_id}: {e}")
        store.record_event_failure(event_pk, e)
        raise
    return touched


def handle_event(store, secret, raw_body, signature):
    """
    Authenticate, log and apply one gateway event. Returns the ack body.

    Raises InvalidSignature before touching the body when the signature
    does not match the exact bytes received.
    """
    if not signature:
        logger.warning("[security] webhook without signature")
        raise InvalidSignature("Missing signature")
    if not verify(raw_body, secret, signature):
        logger.warning("[security] webhook signature mismatch")
        raise InvalidSignature("Invalid signature")

    event = parse_event(raw_body)
    event_type = event["event"]
    event_id = derive_event_id(event, raw_body)

    webhook_event, created = store.log_event(
        event_type, event_id, event.get("account_id"), raw_body.decode("utf-8", "replace")
    )
    if not created and webhook_event.processed:
        logger.info(f"[webhook] duplicate delivery ignored type={event_type} id={event_id}")
        return {"success": True, "duplicate": True}

    apply_event(store, webhook_event, event)
    return {"success": True}


def replay_pending_events(store, limit=100):
    """Re-dispatch logged events that never reached processed. Returns (done, failed)."""
    done = failed = 0
    for webhook_event in store.pending_events(limit):
        event = json.loads(webhook_event.payload)
        try:
            apply_event(store, webhook_event, event)
        except Exception:
            failed += 1
            continue
        done += 1
    logger.info(f"[webhook] replay finished done={done} failed={failed}")
    return done, failed
