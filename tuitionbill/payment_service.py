"""
Payments and refunds.

Payments are appended, never edited; each one raises invoice.paid_minor with a
guarded increment that cannot pass the invoice total. Refunds reserve their
amount on the payment before they exist:

    UPDATE payments SET refund_reserved_minor = refund_reserved_minor + :amt
     WHERE id = :id AND refund_reserved_minor + :amt <= amount_minor

so pending plus succeeded refunds never exceed what was paid, whatever runs
concurrently. A refund that fails at the gateway gives its reservation back.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import update

from tuitionbill.errors import (
    ExceedsOutstanding,
    ExceedsRefundable,
    InvalidStatusTransition,
    PaymentDeclined,
    PaymentGatewayError,
    PaymentNotFound,
    RefundNotFound,
    ValidationError,
    require_positive,
)
from tuitionbill.events import log_event, E
from tuitionbill.invoice_service import (
    STATUS_DRAFT,
    STATUS_OVERDUE,
    STATUS_PAID,
    STATUS_SENT,
    get_invoice,
    invoice_to_dict,
)
from tuitionbill.installment_service import apply_installment_payment, get_installment
from tuitionbill.log import get_logger
from tuitionbill.models.invoice import Invoice
from tuitionbill.models.payment import Payment, Refund
from tuitionbill import outbox_service

logger = get_logger(__name__)

REFUND_PENDING = "pending"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"

_PAYABLE_STATUSES = [STATUS_DRAFT, STATUS_SENT, STATUS_OVERDUE]


def outstanding_amount(invoice: Invoice) -> int:
    return max(0, int(invoice.total_minor or 0) - int(invoice.paid_minor or 0))


def refundable_amount(payment: Payment) -> int:
    return max(0, int(payment.amount_minor) - int(payment.refund_reserved_minor or 0))


# ─── Payments ─────────────────────────────────────────────────────────────────
def record_payment(
    session,
    org_id: str,
    invoice_id: str,
    amount_minor: int,
    provider: str,
    installment_id: Optional[str] = None,
    provider_reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    require_positive(amount_minor, "amount_minor")
    provider = str(provider or "").strip().lower()
    if not provider:
        raise ValidationError("provider is required")
    now = now or datetime.now()
    invoice = get_invoice(session, org_id, invoice_id)
    if installment_id:
        installment = get_installment(session, org_id, installment_id)
        if installment.invoice_id != invoice.id:
            raise ValidationError("installment belongs to another invoice",
                                  installment_id=installment_id, invoice_id=invoice.id)

    raised = session.execute(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status.in_(_PAYABLE_STATUSES),
            Invoice.paid_minor + amount_minor <= Invoice.total_minor,
        )
        .values(paid_minor=Invoice.paid_minor + amount_minor, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not raised:
        session.rollback()
        current = get_invoice(session, org_id, invoice_id)
        if current.status not in _PAYABLE_STATUSES:
            raise InvalidStatusTransition(f"cannot record a payment on a {current.status} invoice",
                                          invoice_id=invoice.id, current=current.status)
        raise ExceedsOutstanding("payment exceeds the outstanding amount", invoice_id=invoice.id,
                                 requested=amount_minor, outstanding=outstanding_amount(current))

    payment = Payment(
        id=str(uuid.uuid4()),
        org_id=org_id,
        invoice_id=invoice.id,
        installment_id=installment_id or None,
        amount_minor=amount_minor,
        provider=provider[:32],
        provider_reference=(provider_reference or "")[:128] or None,
        refund_reserved_minor=0,
        created_at=now,
    )
    session.add(payment)
    if installment_id or invoice.payment_plan_enabled:
        apply_installment_payment(session, invoice.id, amount_minor, installment_id=installment_id, now=now)

    settled = session.execute(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status.in_(_PAYABLE_STATUSES),
            Invoice.paid_minor >= Invoice.total_minor,
        )
        .values(status=STATUS_PAID, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    outbox_service.enqueue(session, org_id, outbox_service.PAYMENT_RECORDED, payment_to_dict(payment), ref_id=payment.id)
    if settled:
        outbox_service.enqueue(session, org_id, outbox_service.INVOICE_PAID,
                               {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number}, ref_id=invoice.id)
    session.commit()
    log_event(logger, E.PAYMENT_RECORD, org_id=org_id, invoice_id=invoice.id, payment_id=payment.id,
              amount=amount_minor, provider=provider, installment_id=installment_id or "")
    if settled:
        log_event(logger, E.INVOICE_PAID, org_id=org_id, invoice_id=invoice.id)
    return payment


def collect_payment(session, org_id: str, invoice_id: str, gateway, installment_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> Payment:
    """Charges what is outstanding (or the installment's remainder) and records it."""
    invoice = get_invoice(session, org_id, invoice_id)
    amount = outstanding_amount(invoice)
    if installment_id:
        installment = get_installment(session, org_id, installment_id)
        amount = min(amount, max(0, int(installment.amount_minor) - int(installment.paid_minor or 0)))
    if amount <= 0:
        raise ExceedsOutstanding("nothing is outstanding", invoice_id=invoice.id, outstanding=0)
    try:
        result = gateway.charge(invoice.invoice_number, amount, invoice.currency_code)
    except Exception as e:
        log_event(logger, E.PAYMENT_CHARGE_FAIL, level="error", org_id=org_id, invoice_id=invoice.id, error=e)
        raise PaymentGatewayError("payment gateway unavailable", invoice_id=invoice.id) from e
    if not result.succeeded:
        log_event(logger, E.PAYMENT_CHARGE_FAIL, level="warning", org_id=org_id, invoice_id=invoice.id,
                  error=result.error)
        raise PaymentDeclined("payment was declined", invoice_id=invoice.id, reason=result.error)
    return record_payment(session, org_id, invoice.id, amount, gateway.provider, installment_id=installment_id,
                          provider_reference=result.provider_reference, now=now)


def get_payment(session, org_id: str, payment_id: str) -> Payment:
    payment = session.get(Payment, str(payment_id or ""), populate_existing=True)
    if not payment or payment.org_id != org_id:
        raise PaymentNotFound(f"payment {payment_id} not found", payment_id=payment_id)
    return payment


def list_payments(session, org_id: str, invoice_id: str) -> List[Payment]:
    return (
        session.query(Payment)
        .filter(Payment.org_id == org_id, Payment.invoice_id == invoice_id)
        .order_by(Payment.created_at.asc())
        .all()
    )


# ─── Refunds ──────────────────────────────────────────────────────────────────
def _reserve(session, payment_id: str, amount_minor: int) -> bool:
    result = session.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.refund_reserved_minor + amount_minor <= Payment.amount_minor,
        )
        .values(refund_reserved_minor=Payment.refund_reserved_minor + amount_minor)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def issue_refund(
    session,
    org_id: str,
    payment_id: str,
    amount_minor: Optional[int] = None,
    reason: Optional[str] = None,
    gateway=None,
    now: Optional[datetime] = None,
) -> Refund:
    """
    Opens a pending refund. Without an amount the whole remaining refundable
    amount is refunded. With a gateway the refund is submitted after it is
    recorded; a gateway that settles on the spot is confirmed immediately.
    """
    now = now or datetime.now()
    payment = get_payment(session, org_id, payment_id)
    if amount_minor is None:
        amount_minor = refundable_amount(payment)
        if amount_minor <= 0:
            raise ExceedsRefundable("payment has nothing left to refund", payment_id=payment.id,
                                    requested=0, refundable=0)
    require_positive(amount_minor, "amount_minor")

    if not _reserve(session, payment.id, amount_minor):
        session.rollback()
        current = get_payment(session, org_id, payment_id)
        log_event(logger, E.REFUND_REJECT, level="warning", org_id=org_id, payment_id=payment.id,
                  requested=amount_minor, refundable=refundable_amount(current))
        raise ExceedsRefundable("refund exceeds the refundable amount", payment_id=payment.id,
                                requested=amount_minor, refundable=refundable_amount(current))

    refund = Refund(
        id=str(uuid.uuid4()),
        org_id=org_id,
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        amount_minor=amount_minor,
        status=REFUND_PENDING,
        reason=(reason or "").strip()[:1000] or None,
        created_at=now,
        updated_at=now,
    )
    session.add(refund)
    outbox_service.enqueue(session, org_id, outbox_service.REFUND_REQUESTED, refund_to_dict(refund), ref_id=refund.id)
    session.commit()
    log_event(logger, E.REFUND_REQUEST, org_id=org_id, payment_id=payment.id, refund_id=refund.id, amount=amount_minor)

    if gateway is None:
        return refund
    try:
        submission = gateway.refund(payment.provider_reference or payment.id, amount_minor, refund.id)
    except Exception as e:
        confirm_refund(session, org_id, refund.id, succeeded=False, failure_reason=f"gateway error: {e}", now=now)
        raise PaymentGatewayError("payment gateway unavailable", refund_id=refund.id) from e
    refund = get_refund(session, org_id, refund.id)
    refund.provider_reference = (submission.provider_reference or "")[:128] or None
    refund.updated_at = now
    session.commit()
    if submission.status in (REFUND_SUCCEEDED, REFUND_FAILED):
        return confirm_refund(session, org_id, refund.id, succeeded=submission.status == REFUND_SUCCEEDED, now=now)
    return refund


def confirm_refund(
    session,
    org_id: str,
    refund_id: str,
    succeeded: bool,
    failure_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Refund:
    """
    Gateway callback for a pending refund. Success lowers the invoice's paid
    amount and reopens a paid invoice that is no longer covered; failure gives
    the reserved amount back to the payment. Repeating a callback is a no-op.
    """
    now = now or datetime.now()
    refund = get_refund(session, org_id, refund_id)
    target = REFUND_SUCCEEDED if succeeded else REFUND_FAILED
    settled = session.execute(
        update(Refund)
        .where(Refund.id == refund.id, Refund.status == REFUND_PENDING)
        .values(
            status=target,
            settled_at=now,
            updated_at=now,
            failure_reason=None if succeeded else (failure_reason or "failed")[:1000],
        )
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not settled:
        session.rollback()
        current = get_refund(session, org_id, refund_id)
        if current.status == target:
            return current
        raise InvalidStatusTransition(f"refund is already {current.status}", refund_id=refund.id,
                                      current=current.status, target=target)

    reopened = False
    if succeeded:
        session.execute(
            update(Invoice)
            .where(Invoice.id == refund.invoice_id)
            .values(paid_minor=Invoice.paid_minor - refund.amount_minor, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        reopened = session.execute(
            update(Invoice)
            .where(
                Invoice.id == refund.invoice_id,
                Invoice.status == STATUS_PAID,
                Invoice.paid_minor < Invoice.total_minor,
            )
            .values(status=STATUS_SENT, paid_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
    else:
        session.execute(
            update(Payment)
            .where(Payment.id == refund.payment_id)
            .values(refund_reserved_minor=Payment.refund_reserved_minor - refund.amount_minor)
            .execution_options(synchronize_session=False)
        )
    refund = get_refund(session, org_id, refund_id)
    outbox_service.enqueue(session, org_id, outbox_service.REFUND_SETTLED, refund_to_dict(refund), ref_id=refund.id)
    session.commit()
    log_event(logger, E.REFUND_CONFIRM, org_id=org_id, refund_id=refund.id, status=target,
              amount=refund.amount_minor)
    if reopened:
        log_event(logger, E.INVOICE_REOPEN, org_id=org_id, invoice_id=refund.invoice_id)
    return refund


def get_refund(session, org_id: str, refund_id: str) -> Refund:
    refund = session.get(Refund, str(refund_id or ""), populate_existing=True)
    if not refund or refund.org_id != org_id:
        raise RefundNotFound(f"refund {refund_id} not found", refund_id=refund_id)
    return refund


def list_refunds(session, org_id: str, payment_id: str) -> List[Refund]:
    return (
        session.query(Refund)
        .filter(Refund.org_id == org_id, Refund.payment_id == payment_id)
        .order_by(Refund.created_at.asc())
        .all()
    )


def payment_to_dict(payment: Payment) -> Dict:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "installment_id": payment.installment_id,
        "amount_minor": int(payment.amount_minor),
        "provider": payment.provider,
        "provider_reference": payment.provider_reference or "",
        "refundable_minor": refundable_amount(payment),
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


def refund_to_dict(refund: Refund) -> Dict:
    return {
        "id": refund.id,
        "payment_id": refund.payment_id,
        "invoice_id": refund.invoice_id,
        "amount_minor": int(refund.amount_minor),
        "status": refund.status,
        "reason": refund.reason or "",
        "provider_reference": refund.provider_reference or "",
        "failure_reason": refund.failure_reason or "",
        "created_at": refund.created_at.isoformat() if refund.created_at else None,
        "settled_at": refund.settled_at.isoformat() if refund.settled_at else None,
    }


def invoice_balance(session, org_id: str, invoice_id: str) -> Dict:
    invoice = get_invoice(session, org_id, invoice_id)
    data = invoice_to_dict(invoice)
    data["outstanding_minor"] = outstanding_amount(invoice)
    data["payments"] = [payment_to_dict(x) for x in list_payments(session, org_id, invoice.id)]
    return data
