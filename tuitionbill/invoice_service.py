import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tuitionbill.config import cfg
from tuitionbill.errors import (
    BillingError,
    CreditAlreadyRedeemed,
    CreditExpired,
    InvalidStatusTransition,
    InvariantViolation,
    InvoiceNotFound,
    LessonAlreadyBilled,
)
from tuitionbill.events import log_event, E
from tuitionbill.log import get_logger
from tuitionbill.models.installment import InstallmentPlan
from tuitionbill.models.invoice import Invoice, InvoiceItem
from tuitionbill.money import compute_invoice
from tuitionbill.org_service import (
    BILLING_MODE_UPFRONT,
    OrgSettings,
    find_rate_for_duration,
    list_rate_cards,
    next_invoice_number,
    normalize_billing_mode,
)
from tuitionbill.payer import PayerKey, resolve_payer
from tuitionbill import credit_service, ledger_service, outbox_service

logger = get_logger(__name__)

STATUS_DRAFT = "draft"
STATUS_SENT = "sent"
STATUS_OVERDUE = "overdue"
STATUS_PAID = "paid"
STATUS_VOID = "void"

ALLOWED_TRANSITIONS = {
    STATUS_DRAFT: (STATUS_SENT, STATUS_VOID),
    STATUS_SENT: (STATUS_PAID, STATUS_OVERDUE, STATUS_VOID),
    STATUS_OVERDUE: (STATUS_PAID, STATUS_SENT, STATUS_VOID),
    STATUS_PAID: (),
    STATUS_VOID: (),
}

ATTENDANCE_CANCELLED_BY_TEACHER = "cancelled_by_teacher"


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, ())


def billable_statuses(billing_mode: str) -> Set[str]:
    if normalize_billing_mode(billing_mode) == BILLING_MODE_UPFRONT:
        return {"scheduled", "completed"}
    return {"completed"}


def is_overdue(due_date: Optional[date], today: date) -> bool:
    return due_date is not None and due_date < today


# ─── Payer buckets ────────────────────────────────────────────────────────────
@dataclass
class BucketLine:
    lesson: object
    student_id: str


@dataclass
class PayerBucket:
    payer: PayerKey
    lines: List[BucketLine] = field(default_factory=list)
    lesson_ids: Set[str] = field(default_factory=set)

    def add(self, lesson, student_id: str) -> None:
        # a lesson reaching the same payer through two participants is one line
        if lesson.id in self.lesson_ids:
            return
        self.lesson_ids.add(lesson.id)
        self.lines.append(BucketLine(lesson=lesson, student_id=student_id))

    @property
    def student_ids(self) -> List[str]:
        return sorted({x.student_id for x in self.lines})


@dataclass
class Grouping:
    buckets: "OrderedDict[PayerKey, PayerBucket]"
    skipped_lessons: int = 0
    skipped_for_cancellation: int = 0


def group_by_payer(lessons: Iterable, only_payers: Optional[Set[PayerKey]] = None) -> Grouping:
    buckets: "OrderedDict[PayerKey, PayerBucket]" = OrderedDict()
    skipped_for_cancellation = 0
    placed: Set[str] = set()
    lesson_list = list(lessons)
    for lesson in lesson_list:
        for participant in lesson.participants or []:
            if participant.attendance_status == ATTENDANCE_CANCELLED_BY_TEACHER:
                skipped_for_cancellation += 1
                continue
            payer = resolve_payer(lesson, participant)
            if only_payers is not None and payer not in only_payers:
                continue
            if payer not in buckets:
                buckets[payer] = PayerBucket(payer=payer)
            buckets[payer].add(lesson, participant.student_id)
            placed.add(lesson.id)
    skipped = len([x for x in lesson_list if x.id not in placed])
    return Grouping(buckets=buckets, skipped_lessons=skipped, skipped_for_cancellation=skipped_for_cancellation)


# ─── Build ────────────────────────────────────────────────────────────────────
@dataclass
class BuildResult:
    invoices: List[Invoice] = field(default_factory=list)
    failed_payers: List[Dict] = field(default_factory=list)
    suppressed_payers: List[str] = field(default_factory=list)
    skipped_lessons: int = 0
    skipped_for_cancellation: int = 0
    total_payers: int = 0

    @property
    def total_amount(self) -> int:
        return sum(int(x.total_minor) for x in self.invoices)


_SUPPRESSED = object()


def _create_invoice(session, settings: OrgSettings, bucket: PayerBucket, rate_cards, fallback_rate_minor: int,
                    run_id: Optional[str], now: datetime):
    org_id = settings.org_id
    unbilled = set(ledger_service.filter_unbilled_for_payer(session, org_id, bucket.payer, [x.lesson.id for x in bucket.lines]))
    lines = [x for x in bucket.lines if x.lesson.id in unbilled]
    if not lines:
        return None

    rates = [find_rate_for_duration(x.lesson.duration_mins, rate_cards, fallback_rate_minor) for x in lines]
    gross = compute_invoice([(1, r) for r in rates], settings.vat_enabled, settings.vat_rate_percent)
    credits = []
    if cfg.get("billing.apply_make_up_credits", True) and gross.total_minor > 0:
        available = credit_service.available_credits(session, org_id, sorted({x.student_id for x in lines}), now=now)
        credits = select_credits_to_cover(available, gross.total_minor)
    offset = sum(int(c.credit_value_minor) for c in credits)
    totals = compute_invoice([(1, r) for r in rates], settings.vat_enabled, settings.vat_rate_percent, offset)

    if totals.total_minor == 0 and settings.suppress_zero_invoices:
        return _SUPPRESSED

    today = now.date()
    invoice = Invoice(
        id=str(uuid.uuid4()),
        org_id=org_id,
        invoice_number=next_invoice_number(session, org_id, today=today),
        billing_run_id=run_id,
        payer_type=bucket.payer.payer_type,
        payer_id=bucket.payer.payer_id,
        subtotal_minor=totals.subtotal_minor,
        tax_minor=totals.tax_minor,
        credit_offset_minor=totals.credit_offset_minor,
        total_minor=totals.total_minor,
        paid_minor=0,
        vat_rate_percent=settings.vat_rate_percent if settings.vat_enabled else 0,
        currency_code=settings.currency_code,
        status=STATUS_DRAFT,
        payment_plan_enabled=False,
        issue_date=today,
        due_date=today + timedelta(days=settings.invoice_due_days),
        created_at=now,
        updated_at=now,
    )
    for position, (line, rate) in enumerate(zip(lines, rates)):
        invoice.items.append(
            InvoiceItem(
                id=str(uuid.uuid4()),
                org_id=org_id,
                position=position,
                lesson_id=line.lesson.id,
                student_id=line.student_id,
                description=(line.lesson.title or "Lesson")[:255],
                rate_minor=rate,
                quantity=1,
                amount_minor=rate,
            )
        )
    session.add(invoice)
    session.flush()
    ledger_service.register(session, org_id, invoice.id, bucket.payer, [x.lesson.id for x in lines])
    if credits:
        applied = credit_service.apply_credits_to_invoice(session, org_id, credits, invoice.id, now)
        if applied != invoice.credit_offset_minor:
            raise InvariantViolation("applied credit differs from invoice offset",
                                     {"invoice_id": invoice.id, "applied": applied, "offset": invoice.credit_offset_minor})
    check_invoice_totals(invoice)
    outbox_service.enqueue(session, org_id, outbox_service.INVOICE_CREATED, invoice_to_dict(invoice), ref_id=invoice.id)
    return invoice


def select_credits_to_cover(credits, gross_minor: int) -> list:
    """Takes credits in the given order until their value covers gross_minor."""
    chosen, covered = [], 0
    for credit in credits:
        if covered >= gross_minor:
            break
        chosen.append(credit)
        covered += int(credit.credit_value_minor)
    return chosen


def check_invoice_totals(invoice: Invoice) -> None:
    lines_total = sum(int(x.amount_minor) for x in invoice.items)
    expected = max(0, invoice.subtotal_minor + invoice.tax_minor - invoice.credit_offset_minor)
    if lines_total != invoice.subtotal_minor or invoice.total_minor != expected:
        raise InvariantViolation(
            "invoice totals do not reconcile",
            {"invoice_id": invoice.id, "lines": lines_total, "subtotal": invoice.subtotal_minor, "total": invoice.total_minor},
        )


def persist_bucket(session, settings: OrgSettings, bucket: PayerBucket, rate_cards, fallback_rate_minor: int,
                   run_id: Optional[str] = None, now: Optional[datetime] = None):
    """
    Creates one payer's invoice, its ledger rows and credit claims in a single
    transaction. A lost race on the ledger or on a credit rolls everything back
    and is retried once against fresh state; lessons lost to the race are
    treated as already billed. Returns the invoice, None (nothing left to bill)
    or the suppression marker.
    """
    now = now or datetime.now()
    for attempt in range(2):
        try:
            invoice = _create_invoice(session, settings, bucket, rate_cards, fallback_rate_minor, run_id, now)
            if invoice is _SUPPRESSED:
                session.rollback()
                return invoice
            session.commit()
            if invoice is not None:
                log_event(logger, E.INVOICE_CREATE, org_id=settings.org_id, invoice_id=invoice.id,
                          number=invoice.invoice_number, payer=bucket.payer, lines=len(invoice.items),
                          total=invoice.total_minor)
            return invoice
        except (IntegrityError, CreditAlreadyRedeemed, CreditExpired) as e:
            session.rollback()
            log_event(logger, E.BILLING_LEDGER_CONFLICT, level="warning", org_id=settings.org_id,
                      payer=bucket.payer, attempt=attempt + 1, error=type(e).__name__)
    raise LessonAlreadyBilled("payer bucket kept conflicting with a concurrent run",
                              payer=str(bucket.payer), lesson_ids=sorted(bucket.lesson_ids))


def build_invoices(
    session,
    settings: OrgSettings,
    candidate_lessons: Iterable,
    billing_mode: str,
    fallback_rate_minor: int,
    run_id: Optional[str] = None,
    only_payers: Optional[Set[PayerKey]] = None,
    now: Optional[datetime] = None,
) -> BuildResult:
    """
    Draft invoices, one per payer, for the billable lessons in `candidate_lessons`.

    1. keep lessons whose status the mode bills (cancelled never is)
    2. drop lessons the billing ledger already holds
    3. group lesson places by payer, one line per lesson per payer
    4. price each bucket with the payer's students' available credits as offset
    5. persist invoice + ledger rows + credit claims atomically per payer
    """
    now = now or datetime.now()
    statuses = billable_statuses(billing_mode)
    lessons = [x for x in candidate_lessons if x.status in statuses and x.org_id == settings.org_id]
    if only_payers is None:
        unbilled = set(ledger_service.filter_unbilled(session, settings.org_id, [x.id for x in lessons]))
        lessons = [x for x in lessons if x.id in unbilled]

    grouping = group_by_payer(lessons, only_payers=only_payers)
    result = BuildResult(
        skipped_lessons=grouping.skipped_lessons,
        skipped_for_cancellation=grouping.skipped_for_cancellation,
        total_payers=len(grouping.buckets),
    )
    rate_cards = list_rate_cards(session, settings.org_id)
    for payer, bucket in grouping.buckets.items():
        try:
            invoice = persist_bucket(session, settings, bucket, rate_cards, fallback_rate_minor, run_id=run_id, now=now)
        except (SQLAlchemyError, BillingError) as e:
            session.rollback()
            result.failed_payers.append({"payer": str(payer), "payer_type": payer.payer_type,
                                         "payer_id": payer.payer_id, "error": str(e)})
            log_event(logger, E.BILLING_PAYER_FAIL, level="error", org_id=settings.org_id, payer=payer, error=e)
            continue
        if invoice is _SUPPRESSED:
            result.suppressed_payers.append(str(payer))
            log_event(logger, E.INVOICE_SUPPRESS, org_id=settings.org_id, payer=payer)
        elif invoice is not None:
            result.invoices.append(invoice)
    return result


# ─── Lookup ───────────────────────────────────────────────────────────────────
def get_invoice(session, org_id: str, invoice_id: str) -> Invoice:
    invoice = session.get(Invoice, str(invoice_id or ""), populate_existing=True)
    if not invoice or invoice.org_id != org_id:
        raise InvoiceNotFound(f"invoice {invoice_id} not found", invoice_id=invoice_id)
    return invoice


def list_invoices(session, org_id: str, status: str = "", payer: Optional[PayerKey] = None,
                  billing_run_id: str = "", limit: int = 100) -> List[Invoice]:
    query = session.query(Invoice).filter(Invoice.org_id == org_id)
    if status:
        query = query.filter(Invoice.status == status.strip().lower())
    if payer is not None:
        query = query.filter(Invoice.payer_type == payer.payer_type, Invoice.payer_id == payer.payer_id)
    if billing_run_id:
        query = query.filter(Invoice.billing_run_id == billing_run_id)
    return query.order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc()).limit(max(1, min(int(limit or 100), 500))).all()


# ─── Status transitions ───────────────────────────────────────────────────────
def _cas_status(session, invoice_id: str, allowed_from, target: str, now: datetime, **values) -> bool:
    result = session.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status.in_(list(allowed_from)))
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def send_invoice(session, org_id: str, invoice_id: str, now: Optional[datetime] = None) -> Invoice:
    now = now or datetime.now()
    invoice = get_invoice(session, org_id, invoice_id)
    if invoice.status == STATUS_SENT:
        return invoice
    if invoice.total_minor == 0 and invoice.status == STATUS_DRAFT:
        return _settle_zero_invoice(session, invoice, now)
    if not _cas_status(session, invoice.id, [STATUS_DRAFT, STATUS_OVERDUE], STATUS_SENT, now, sent_at=now):
        session.rollback()
        current = get_invoice(session, org_id, invoice_id)
        raise InvalidStatusTransition(f"cannot send an invoice in status {current.status}",
                                      invoice_id=invoice_id, current=current.status, target=STATUS_SENT)
    session.commit()
    log_event(logger, E.INVOICE_SEND, org_id=org_id, invoice_id=invoice_id)
    return get_invoice(session, org_id, invoice_id)


def _settle_zero_invoice(session, invoice: Invoice, now: datetime) -> Invoice:
    # fully offset by credit: nothing to collect, so sending settles it
    if not _cas_status(session, invoice.id, [STATUS_DRAFT], STATUS_PAID, now, sent_at=now, paid_at=now):
        session.rollback()
        current = get_invoice(session, invoice.org_id, invoice.id)
        raise InvalidStatusTransition(f"cannot send an invoice in status {current.status}",
                                      invoice_id=invoice.id, current=current.status, target=STATUS_SENT)
    outbox_service.enqueue(session, invoice.org_id, outbox_service.INVOICE_PAID,
                           {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number}, ref_id=invoice.id)
    session.commit()
    log_event(logger, E.INVOICE_SEND, org_id=invoice.org_id, invoice_id=invoice.id)
    log_event(logger, E.INVOICE_PAID, org_id=invoice.org_id, invoice_id=invoice.id)
    return get_invoice(session, invoice.org_id, invoice.id)


def void_invoice(session, org_id: str, invoice_id: str, now: Optional[datetime] = None) -> Invoice:
    """
    Voids an unpaid invoice. Its lessons leave the billing ledger and any
    make-up credits that offset it become available again.
    """
    now = now or datetime.now()
    invoice = get_invoice(session, org_id, invoice_id)
    if invoice.status == STATUS_VOID:
        return invoice
    voided = session.execute(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status.in_([STATUS_DRAFT, STATUS_SENT, STATUS_OVERDUE]),
            Invoice.paid_minor == 0,
        )
        .values(status=STATUS_VOID, voided_at=now, updated_at=now, payment_plan_enabled=False)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not voided:
        session.rollback()
        current = get_invoice(session, org_id, invoice_id)
        raise InvalidStatusTransition("only unpaid draft, sent or overdue invoices can be voided",
                                      invoice_id=invoice_id, current=current.status, paid_minor=current.paid_minor)
    ledger_service.release_invoice(session, invoice.id)
    restored = credit_service.restore_invoice_credits(session, invoice.id, now=now)
    plan = session.query(InstallmentPlan).filter(InstallmentPlan.invoice_id == invoice.id).first()
    if plan is not None:
        session.delete(plan)
    outbox_service.enqueue(session, org_id, outbox_service.INVOICE_VOIDED,
                           {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number,
                            "credits_restored": restored}, ref_id=invoice.id)
    session.commit()
    log_event(logger, E.INVOICE_VOID, org_id=org_id, invoice_id=invoice_id, credits_restored=restored)
    return get_invoice(session, org_id, invoice_id)


def transition_invoice(session, org_id: str, invoice_id: str, target: str, now: Optional[datetime] = None) -> Invoice:
    """Manual status change. Paid is reached only by recording payments."""
    target = str(target or "").strip().lower()
    invoice = get_invoice(session, org_id, invoice_id)
    if target == STATUS_VOID:
        return void_invoice(session, org_id, invoice_id, now=now)
    if target == STATUS_SENT:
        return send_invoice(session, org_id, invoice_id, now=now)
    if target == invoice.status:
        return invoice
    raise InvalidStatusTransition(f"cannot move invoice from {invoice.status} to {target}",
                                  invoice_id=invoice_id, current=invoice.status, target=target)


def mark_overdue_invoices(session, today: Optional[date] = None, org_id: str = "") -> List[Invoice]:
    """
    Reclassifies sent invoices whose due date has passed. The stored status is a
    cache of is_overdue(due_date, today), refreshed by this sweep.
    """
    today = today or date.today()
    query = session.query(Invoice).filter(
        Invoice.status == STATUS_SENT,
        Invoice.due_date < today,
        Invoice.paid_minor < Invoice.total_minor,
    )
    if org_id:
        query = query.filter(Invoice.org_id == org_id)
    changed = []
    now = datetime.now()
    for invoice in query.all():
        if _cas_status(session, invoice.id, [STATUS_SENT], STATUS_OVERDUE, now):
            changed.append(invoice)
            payload = invoice_to_dict(invoice)
            payload["status"] = STATUS_OVERDUE
            outbox_service.enqueue(session, invoice.org_id, outbox_service.INVOICE_OVERDUE, payload, ref_id=invoice.id)
            log_event(logger, E.INVOICE_OVERDUE, org_id=invoice.org_id, invoice_id=invoice.id,
                      due_date=invoice.due_date.isoformat())
    session.commit()
    for invoice in changed:
        session.refresh(invoice)
    return changed


def invoice_to_dict(invoice: Invoice) -> Dict:
    return {
        "id": invoice.id,
        "org_id": invoice.org_id,
        "invoice_number": invoice.invoice_number,
        "billing_run_id": invoice.billing_run_id,
        "payer_type": invoice.payer_type,
        "payer_id": invoice.payer_id,
        "subtotal_minor": int(invoice.subtotal_minor or 0),
        "tax_minor": int(invoice.tax_minor or 0),
        "credit_offset_minor": int(invoice.credit_offset_minor or 0),
        "total_minor": int(invoice.total_minor or 0),
        "paid_minor": int(invoice.paid_minor or 0),
        "vat_rate_percent": str(invoice.vat_rate_percent or 0),
        "currency_code": invoice.currency_code,
        "status": invoice.status,
        "payment_plan_enabled": bool(invoice.payment_plan_enabled),
        "issue_date": invoice.issue_date.isoformat() if invoice.issue_date else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "line_items": [
            {
                "lesson_id": x.lesson_id,
                "student_id": x.student_id,
                "description": x.description,
                "rate_minor": int(x.rate_minor),
                "quantity": int(x.quantity),
                "amount_minor": int(x.amount_minor),
            }
            for x in invoice.items
        ],
        "created_at": invoice.created_at.isoformat() if invoice.created_at else None,
    }
