import hashlib

RECEIPT_MAX_LENGTH = 40


def make_receipt(user_id, timestamp_ns, prefix="rcpt"):
    """
    Short receipt id for a gateway order.

    Same inputs give the same receipt; a new timestamp gives a new one.
    The result never exceeds RECEIPT_MAX_LENGTH characters.
    """
    user_id = str(user_id)
    digest = hashlib.sha256(f"{user_id}:{timestamp_ns}".encode("utf-8")).hexdigest()[:12]
    receipt = f"{prefix}_{user_id[:8]}_{digest}"
    return receipt[:RECEIPT_MAX_LENGTH]
