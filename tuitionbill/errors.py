"""Error kinds raised by the billing engine.

Validation and conflict errors are expected results for the caller to act on.
Each carries a stable ``code`` and a ``detail`` dict naming the lesson, credit,
payment or limit involved. Dependency errors are retryable. InvariantViolation
is a bug and is never caught inside the engine.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    code = "billing_error"
    retryable = False

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


# ─── Validation ───────────────────────────────────────────────────────────────
class ValidationError(BillingError, ValueError):
    code = "validation_error"


class UnknownOrganisation(ValidationError):
    code = "unknown_organisation"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class NotFound(ValidationError):
    code = "not_found"


class InvoiceNotFound(NotFound):
    code = "invoice_not_found"


class PaymentNotFound(NotFound):
    code = "payment_not_found"


class RefundNotFound(NotFound):
    code = "refund_not_found"


class InstallmentNotFound(NotFound):
    code = "installment_not_found"


class BillingRunNotFound(NotFound):
    code = "billing_run_not_found"


class CreditNotFound(NotFound):
    code = "credit_not_found"


# ─── Conflict ─────────────────────────────────────────────────────────────────
class ConflictError(BillingError):
    code = "conflict"


class LessonAlreadyBilled(ConflictError):
    code = "lesson_already_billed"


class CreditAlreadyRedeemed(ConflictError):
    code = "credit_already_redeemed"


class CreditExpired(ConflictError):
    code = "credit_expired"


class ExceedsRefundable(ConflictError):
    code = "exceeds_refundable"


class ExceedsOutstanding(ConflictError):
    code = "exceeds_outstanding"


class PlanHasPayments(ConflictError):
    code = "plan_has_payments"


class PlanAlreadyExists(ConflictError):
    code = "plan_already_exists"


class InvalidStatusTransition(ConflictError):
    code = "invalid_status_transition"


class PaymentDeclined(ConflictError):
    code = "payment_declined"


# ─── Dependency ───────────────────────────────────────────────────────────────
class DependencyError(BillingError):
    code = "dependency_error"
    retryable = True


class PaymentGatewayError(DependencyError):
    code = "payment_gateway_error"


class StorageError(DependencyError):
    code = "storage_error"


# ─── Fatal ────────────────────────────────────────────────────────────────────
class InvariantViolation(AssertionError):
    """A money or ledger invariant does not hold. Always a bug."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.detail = detail or {}


def require_positive(amount_minor, field: str = "amount_minor") -> int:
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise InvalidAmount(f"{field} must be an integer number of minor units", field=field, value=amount_minor)
    if amount_minor <= 0:
        raise InvalidAmount(f"{field} must be greater than zero", field=field, value=amount_minor)
    return amount_minor


def require_non_negative(amount_minor, field: str = "amount_minor") -> int:
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise InvalidAmount(f"{field} must be an integer number of minor units", field=field, value=amount_minor)
    if amount_minor < 0:
        raise InvalidAmount(f"{field} must not be negative", field=field, value=amount_minor)
    return amount_minor
