import hashlib
import hmac


def _to_bytes(value):
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def sign(message, secret):
    """HMAC-SHA256 hex digest of message (str or raw bytes)."""
    return hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).hexdigest()


def verify(message, secret, candidate):
    """Fixed-time comparison of candidate against sign(message, secret)."""
    if not candidate or not secret:
        return False
    expected = sign(message, secret)
    return hmac.compare_digest(expected.encode("ascii"), _to_bytes(candidate))


def payment_message(order_id, payment_id):
    return f"{order_id}|{payment_id}"
