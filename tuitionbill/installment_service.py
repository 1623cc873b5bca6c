import uuid
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, exists, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from tuitionbill.errors import (
    InstallmentNotFound,
    InvalidStatusTransition,
    InvariantViolation,
    PlanAlreadyExists,
    PlanHasPayments,
    ValidationError,
    require_non_negative,
    require_positive,
)
from tuitionbill.events import log_event, E
from tuitionbill.invoice_service import STATUS_DRAFT, STATUS_OVERDUE, STATUS_SENT, get_invoice
from tuitionbill.log import get_logger
from tuitionbill.models.installment import Installment, InstallmentPlan
from tuitionbill.models.invoice import Invoice
from tuitionbill.money import split_evenly
from tuitionbill import outbox_service

logger = get_logger(__name__)

INSTALLMENT_PENDING = "pending"
INSTALLMENT_PAID = "paid"
INSTALLMENT_OVERDUE = "overdue"

PLAN_EQUAL = "equal"
PLAN_CUSTOM = "custom"

FREQUENCIES = ("weekly", "fortnightly", "monthly")

_PLANNABLE_STATUSES = (STATUS_DRAFT, STATUS_SENT, STATUS_OVERDUE)


def _add_months(d: date, months: int) -> date:
    month = int(d.month - 1 + months)
    year = int(d.year + month // 12)
    month = int(month % 12 + 1)
    day = min(
        d.day,
        [31, 29 if year % 4 == 0 and (year % 100 != 0 or year % 400 == 0) else 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31][month - 1],
    )
    return d.replace(year=year, month=month, day=day)


def due_date_for(start: date, frequency: str, index: int) -> date:
    if frequency == "weekly":
        return start + timedelta(days=7 * index)
    if frequency == "fortnightly":
        return start + timedelta(days=14 * index)
    return _add_months(start, index)


def normalize_frequency(frequency: Optional[str]) -> str:
    value = str(frequency or "monthly").strip().lower()
    if value not in FREQUENCIES:
        raise ValidationError(f"unknown installment frequency: {frequency}", frequency=frequency)
    return value


def is_installment_overdue(due_date: date, today: date, status: str = INSTALLMENT_PENDING) -> bool:
    return status != INSTALLMENT_PAID and due_date < today


def _plannable_invoice(session, org_id: str, invoice_id: str) -> Invoice:
    invoice = get_invoice(session, org_id, invoice_id)
    if invoice.status not in _PLANNABLE_STATUSES:
        raise InvalidStatusTransition(f"cannot attach an installment plan to a {invoice.status} invoice",
                                      invoice_id=invoice.id, current=invoice.status)
    if int(invoice.paid_minor or 0) > 0:
        raise PlanHasPayments("invoice already has payments recorded", invoice_id=invoice.id,
                              paid_minor=invoice.paid_minor)
    existing = session.query(InstallmentPlan.id).filter(InstallmentPlan.invoice_id == invoice.id).first()
    if existing:
        raise PlanAlreadyExists("invoice already has an installment plan", invoice_id=invoice.id, plan_id=existing[0])
    return invoice


def _save_plan(session, invoice: Invoice, plan_type: str, frequency: Optional[str],
               rows: Sequence[Tuple[int, date]], now: datetime) -> InstallmentPlan:
    plan = InstallmentPlan(
        id=str(uuid.uuid4()),
        org_id=invoice.org_id,
        invoice_id=invoice.id,
        plan_type=plan_type,
        frequency=frequency,
        installment_count=len(rows),
        created_at=now,
    )
    for seq, (amount, due) in enumerate(rows, start=1):
        plan.installments.append(
            Installment(
                id=str(uuid.uuid4()),
                invoice_id=invoice.id,
                sequence_number=seq,
                amount_minor=amount,
                paid_minor=0,
                due_date=due,
                status=INSTALLMENT_PENDING,
                updated_at=now,
            )
        )
    planned = sum(x.amount_minor for x in plan.installments)
    if planned != invoice.total_minor:
        raise InvariantViolation("installments do not sum to the invoice total",
                                 {"invoice_id": invoice.id, "planned": planned, "total": invoice.total_minor})
    invoice.payment_plan_enabled = True
    invoice.updated_at = now
    session.add(plan)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise PlanAlreadyExists("invoice already has an installment plan", invoice_id=invoice.id)
    log_event(logger, E.INSTALLMENT_PLAN_CREATE, org_id=invoice.org_id, invoice_id=invoice.id, plan_id=plan.id,
              plan_type=plan_type, count=len(rows), total=invoice.total_minor)
    return plan


def create_plan(
    session,
    org_id: str,
    invoice_id: str,
    installment_count: int,
    frequency: str = "monthly",
    start_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> InstallmentPlan:
    """
    Splits the invoice total into near-equal installments, remainder on the last.
    The first installment falls due on start_date (default: the invoice due date).
    """
    require_positive(installment_count, "installment_count")
    freq = normalize_frequency(frequency)
    now = now or datetime.now()
    invoice = _plannable_invoice(session, org_id, invoice_id)
    start = start_date or invoice.due_date or now.date()
    amounts = split_evenly(int(invoice.total_minor), installment_count)
    rows = [(amount, due_date_for(start, freq, i)) for i, amount in enumerate(amounts)]
    return _save_plan(session, invoice, PLAN_EQUAL, freq, rows, now)


def create_custom_plan(
    session,
    org_id: str,
    invoice_id: str,
    rows: Iterable[Tuple[int, date]],
    now: Optional[datetime] = None,
) -> InstallmentPlan:
    rows = [(amount, due) for amount, due in rows]
    if not rows:
        raise ValidationError("a custom plan needs at least one installment")
    for i, (amount, due) in enumerate(rows):
        require_non_negative(amount, "amount_minor")
        if not isinstance(due, date):
            raise ValidationError("due_date must be a date", index=i, due_date=due)
        if i and due <= rows[i - 1][1]:
            raise ValidationError("installment due dates must be strictly ascending", index=i, due_date=due.isoformat())
    now = now or datetime.now()
    invoice = _plannable_invoice(session, org_id, invoice_id)
    planned = sum(x[0] for x in rows)
    if planned != invoice.total_minor:
        raise ValidationError("installment amounts must add up to the invoice total",
                              planned=planned, total=invoice.total_minor)
    return _save_plan(session, invoice, PLAN_CUSTOM, None, rows, now)


def get_plan(session, org_id: str, invoice_id: str) -> InstallmentPlan:
    plan = (
        session.query(InstallmentPlan)
        .filter(InstallmentPlan.org_id == org_id, InstallmentPlan.invoice_id == invoice_id)
        .populate_existing()
        .first()
    )
    if not plan:
        raise InstallmentNotFound(f"invoice {invoice_id} has no installment plan", invoice_id=invoice_id)
    for row in plan.installments:
        session.refresh(row)
    return plan


def get_installment(session, org_id: str, installment_id: str) -> Installment:
    row = session.get(Installment, str(installment_id or ""), populate_existing=True)
    if not row or row.plan is None or row.plan.org_id != org_id:
        raise InstallmentNotFound(f"installment {installment_id} not found", installment_id=installment_id)
    return row


def _credit_installment(session, installment_id: str, amount_minor: int, now: datetime) -> None:
    session.execute(
        update(Installment)
        .where(Installment.id == installment_id)
        .values(paid_minor=Installment.paid_minor + amount_minor, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    paid = session.execute(
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status != INSTALLMENT_PAID,
            Installment.paid_minor >= Installment.amount_minor,
        )
        .values(status=INSTALLMENT_PAID, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if paid.rowcount:
        log_event(logger, E.INSTALLMENT_PAID, installment_id=installment_id)


def apply_installment_payment(session, invoice_id: str, amount_minor: int,
                              installment_id: Optional[str] = None, now: Optional[datetime] = None) -> List[str]:
    """
    Credits a payment to the invoice's installments inside the caller's
    transaction. A named installment takes the whole amount; otherwise the
    amount fills unpaid installments in sequence. Returns the ids credited.
    """
    now = now or datetime.now()
    if installment_id:
        _credit_installment(session, installment_id, amount_minor, now)
        return [installment_id]
    rows = (
        session.query(Installment)
        .filter(Installment.invoice_id == invoice_id, Installment.status != INSTALLMENT_PAID)
        .order_by(Installment.sequence_number.asc())
        .populate_existing()
        .all()
    )
    credited = []
    remaining = amount_minor
    for i, row in enumerate(rows):
        if remaining <= 0:
            break
        last = i == len(rows) - 1
        part = remaining if last else min(remaining, int(row.amount_minor) - int(row.paid_minor or 0))
        if part <= 0:
            continue
        _credit_installment(session, row.id, part, now)
        credited.append(row.id)
        remaining -= part
    return credited


def record_installment_payment(session, org_id: str, installment_id: str, amount_minor: int,
                               provider: str = "manual", now: Optional[datetime] = None):
    """Records a payment against one installment of a plan; returns the installment."""
    from tuitionbill.payment_service import record_payment

    installment = get_installment(session, org_id, installment_id)
    record_payment(session, org_id, installment.invoice_id, amount_minor, provider,
                   installment_id=installment.id, now=now)
    return get_installment(session, org_id, installment_id)


def mark_overdue(session, today: Optional[date] = None, org_id: str = "") -> List[Installment]:
    """
    Pending installments past their due date become overdue. Running it again
    the same day changes nothing. Returns the installments it moved.
    """
    today = today or date.today()
    query = (
        session.query(Installment)
        .join(InstallmentPlan, InstallmentPlan.id == Installment.plan_id)
        .join(Invoice, Invoice.id == Installment.invoice_id)
        .filter(
            Installment.status == INSTALLMENT_PENDING,
            Installment.due_date < today,
            Installment.paid_minor < Installment.amount_minor,
            Invoice.status.in_(list(_PLANNABLE_STATUSES)),
        )
        .order_by(Installment.invoice_id.asc(), Installment.sequence_number.asc())
    )
    if org_id:
        query = query.filter(InstallmentPlan.org_id == org_id)
    moved = []
    now = datetime.now()
    for row in query.all():
        result = session.execute(
            update(Installment)
            .where(Installment.id == row.id, Installment.status == INSTALLMENT_PENDING)
            .values(status=INSTALLMENT_OVERDUE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            moved.append(row)
            payload = installment_to_dict(row, today=today)
            payload["status"] = INSTALLMENT_OVERDUE
            payload["invoice_id"] = row.invoice_id
            outbox_service.enqueue(session, row.plan.org_id, outbox_service.INSTALLMENT_OVERDUE, payload, ref_id=row.id)
            log_event(logger, E.INSTALLMENT_OVERDUE, invoice_id=row.invoice_id, installment_id=row.id,
                      sequence=row.sequence_number, due_date=row.due_date.isoformat())
    session.commit()
    for row in moved:
        session.refresh(row)
    return moved


def remove_plan(session, org_id: str, invoice_id: str) -> None:
    """Removes an invoice's plan unless one of its installments is paid; state is untouched on refusal."""
    plan = get_plan(session, org_id, invoice_id)
    paid = aliased(Installment)
    removed = session.execute(
        delete(Installment)
        .where(
            Installment.plan_id == plan.id,
            ~exists().where(and_(paid.plan_id == plan.id, paid.status == INSTALLMENT_PAID)),
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    if not removed:
        session.rollback()
        paid_rows = [x.sequence_number for x in get_plan(session, org_id, invoice_id).installments if x.status == INSTALLMENT_PAID]
        raise PlanHasPayments("installment plan has paid installments", invoice_id=invoice_id,
                              paid_sequences=paid_rows)
    session.execute(
        delete(InstallmentPlan).where(InstallmentPlan.id == plan.id).execution_options(synchronize_session=False)
    )
    session.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id)
        .values(payment_plan_enabled=False, updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    log_event(logger, E.INSTALLMENT_PLAN_REMOVE, org_id=org_id, invoice_id=invoice_id, plan_id=plan.id)


def installment_to_dict(row: Installment, today: Optional[date] = None) -> Dict:
    today = today or date.today()
    return {
        "id": row.id,
        "sequence_number": int(row.sequence_number),
        "amount_minor": int(row.amount_minor),
        "paid_minor": int(row.paid_minor or 0),
        "due_date": row.due_date.isoformat() if row.due_date else None,
        "status": row.status,
        "is_overdue": is_installment_overdue(row.due_date, today, row.status),
        "paid_at": row.paid_at.isoformat() if row.paid_at else None,
    }


def plan_to_dict(plan: InstallmentPlan, today: Optional[date] = None) -> Dict:
    return {
        "id": plan.id,
        "invoice_id": plan.invoice_id,
        "plan_type": plan.plan_type,
        "frequency": plan.frequency,
        "installment_count": int(plan.installment_count),
        "installments": [installment_to_dict(x, today=today) for x in plan.installments],
        "created_at": plan.created_at.isoformat() if plan.created_at else None,
    }
