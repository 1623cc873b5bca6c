"""
tuitionbill/events.py — structured event logging

Event type constants (class E) and log_event(), so every billing state change
writes one greppable line:

    event=xxx | key=val | key=val

Usage:
    from tuitionbill.log import get_logger
    from tuitionbill.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.CREDIT_REDEEM, credit_id="c1", lesson_id="l9")
    # → event=credit.redeem | credit_id=c1 | lesson_id=l9
"""

import logging
from typing import Any


class E:
    """Event type constants, grouped by component."""

    # ── Billing run ────────────────────────────────────────────────────────────
    BILLING_RUN_START = "billing.run.start"
    BILLING_RUN_COMPLETE = "billing.run.complete"
    BILLING_RUN_FAIL = "billing.run.fail"
    BILLING_RUN_RETRY = "billing.run.retry"
    BILLING_PAYER_FAIL = "billing.payer.fail"
    BILLING_LEDGER_REGISTER = "billing.ledger.register"
    BILLING_LEDGER_CONFLICT = "billing.ledger.conflict"
    BILLING_LEDGER_RELEASE = "billing.ledger.release"

    # ── Invoice ────────────────────────────────────────────────────────────────
    INVOICE_CREATE = "invoice.create"
    INVOICE_SUPPRESS = "invoice.suppress"
    INVOICE_SEND = "invoice.send"
    INVOICE_VOID = "invoice.void"
    INVOICE_OVERDUE = "invoice.overdue"
    INVOICE_PAID = "invoice.paid"
    INVOICE_REOPEN = "invoice.reopen"

    # ── Make-up credit ─────────────────────────────────────────────────────────
    CREDIT_ISSUE = "credit.issue"
    CREDIT_REDEEM = "credit.redeem"
    CREDIT_REJECT = "credit.reject"
    CREDIT_APPLY = "credit.apply"
    CREDIT_RESTORE = "credit.restore"
    CREDIT_DELETE = "credit.delete"
    CREDIT_EXPIRE_WARNING = "credit.expire_warning"

    # ── Installments ───────────────────────────────────────────────────────────
    INSTALLMENT_PLAN_CREATE = "installment.plan.create"
    INSTALLMENT_PLAN_REMOVE = "installment.plan.remove"
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_OVERDUE = "installment.overdue"

    # ── Payments & refunds ─────────────────────────────────────────────────────
    PAYMENT_RECORD = "payment.record"
    PAYMENT_CHARGE_FAIL = "payment.charge.fail"
    REFUND_REQUEST = "refund.request"
    REFUND_REJECT = "refund.reject"
    REFUND_CONFIRM = "refund.confirm"

    # ── Outbox / notifier ──────────────────────────────────────────────────────
    OUTBOX_ENQUEUE = "outbox.enqueue"
    OUTBOX_DISPATCH = "outbox.dispatch"
    OUTBOX_FAIL = "outbox.fail"

    # ── Jobs / system ──────────────────────────────────────────────────────────
    SWEEP_START = "jobs.sweep.start"
    SWEEP_COMPLETE = "jobs.sweep.complete"
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    Write a structured event line: event=xxx | key=val | key=val

    Example:
        log_event(logger, E.REFUND_REJECT, level="warning",
                  payment_id="p1", requested=5000, refundable=4000)
        # → event=refund.reject | payment_id=p1 | requested=5000 | refundable=4000
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # long values are cut so one event stays one readable line
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
