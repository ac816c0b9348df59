"""
Error taxonomy shared by every payment operation.

Each error carries the HTTP status and stable code it is rendered with at
the handler boundary: {"success": false, "error": message, "code": code}.
"""


class PaymentError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.extra = extra

    def to_dict(self):
        body = {"success": False, "error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationError(PaymentError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthError(PaymentError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(PaymentError):
    status_code = 404
    code = "NOT_FOUND"


class PlanNotFound(NotFoundError):
    code = "PLAN_NOT_FOUND"


class MerchantNotFound(NotFoundError):
    code = "MERCHANT_NOT_FOUND"


# --- security relevant: always rejected, logged under [security] ---

class AmountMismatch(PaymentError):
    status_code = 400
    code = "AMOUNT_MISMATCH"


class CrossTenantViolation(PaymentError):
    status_code = 403
    code = "CROSS_TENANT_VIOLATION"


class InvalidSignature(PaymentError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class MerchantNotOnboarded(PaymentError):
    status_code = 400
    code = "MERCHANT_NOT_ONBOARDED"


class PaymentNotCaptured(PaymentError):
    status_code = 400
    code = "PAYMENT_NOT_CAPTURED"


class AccountAlreadyExists(PaymentError):
    status_code = 409
    code = "ACCOUNT_ALREADY_EXISTS"


class GatewayError(PaymentError):
    """Upstream failure, including timeouts. Order creation may be retried."""

    status_code = 502
    code = "GATEWAY_ERROR"


class PersistenceError(PaymentError):
    status_code = 500
    code = "PERSISTENCE_ERROR"
