"""
Make-up credit ledger.

A credit is issued, then either redeemed (terminal) or expired. Expiry is not a
stored transition: a credit is expired when now > expires_at.

Redemption is one conditional UPDATE guarded by the credit id:

    UPDATE make_up_credits SET redeemed_at = :now, ...
     WHERE id = :id AND redeemed_at IS NULL
       AND (expires_at IS NULL OR expires_at >= :now)

The database applies it atomically, so of two concurrent attempts exactly one
sees rowcount == 1. The loser re-reads the row to report why it lost.
"""

import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, update

from tuitionbill.config import cfg
from tuitionbill.errors import (
    CreditAlreadyRedeemed,
    CreditExpired,
    CreditNotFound,
    NotFound,
    ValidationError,
    require_positive,
)
from tuitionbill.events import log_event, E
from tuitionbill.log import get_logger
from tuitionbill.models.credit import MakeUpCredit
from tuitionbill.models.lesson import Lesson
from tuitionbill import org_service, outbox_service

logger = get_logger(__name__)


# ─── Eligibility ──────────────────────────────────────────────────────────────
def hours_notice(lesson_start_at: datetime, cancelled_at: datetime) -> int:
    """Whole hours between cancellation and lesson start, truncated."""
    delta = lesson_start_at - cancelled_at
    if delta < timedelta(0):
        return -(-delta // timedelta(hours=1))
    return delta // timedelta(hours=1)


def check_eligibility(lesson_start_at: datetime, cancelled_at: datetime, org_notice_hours: int) -> bool:
    if cancelled_at >= lesson_start_at:
        return False
    return hours_notice(lesson_start_at, cancelled_at) >= int(org_notice_hours)


def eligibility_details(lesson_start_at: datetime, cancelled_at: datetime, org_notice_hours: int) -> Dict:
    return {
        "eligible": check_eligibility(lesson_start_at, cancelled_at, org_notice_hours),
        "hours_notice": hours_notice(lesson_start_at, cancelled_at),
        "required_hours": int(org_notice_hours),
    }


# ─── Queries ──────────────────────────────────────────────────────────────────
def _unexpired(now: datetime):
    return or_(MakeUpCredit.expires_at.is_(None), MakeUpCredit.expires_at >= now)


def is_available(credit: MakeUpCredit, now: datetime) -> bool:
    return credit.redeemed_at is None and (credit.expires_at is None or credit.expires_at >= now)


def available_credits(session, org_id: str, student_ids, now: Optional[datetime] = None) -> List[MakeUpCredit]:
    """Unredeemed, unexpired credits for one student id or a list of them, soonest expiry first."""
    now = now or datetime.now()
    ids = [student_ids] if isinstance(student_ids, str) else [x for x in student_ids if x]
    if not ids:
        return []
    rows = (
        session.query(MakeUpCredit)
        .filter(
            MakeUpCredit.org_id == org_id,
            MakeUpCredit.student_id.in_(ids),
            MakeUpCredit.redeemed_at.is_(None),
            _unexpired(now),
        )
        .all()
    )
    # no-expiry credits last; stable on issue time
    return sorted(rows, key=lambda c: (c.expires_at is None, c.expires_at or now, c.issued_at))


def total_available_value(session, org_id: str, student_ids, now: Optional[datetime] = None) -> int:
    return sum(int(c.credit_value_minor) for c in available_credits(session, org_id, student_ids, now=now))


def list_credits(session, org_id: str, student_id: str = "", limit: int = 200) -> List[MakeUpCredit]:
    query = session.query(MakeUpCredit).filter(MakeUpCredit.org_id == org_id)
    if student_id:
        query = query.filter(MakeUpCredit.student_id == student_id)
    return query.order_by(MakeUpCredit.created_at.desc()).limit(max(1, min(int(limit or 200), 1000))).all()


def get_credit(session, org_id: str, credit_id: str) -> MakeUpCredit:
    credit = session.get(MakeUpCredit, str(credit_id or ""), populate_existing=True)
    if not credit or credit.org_id != org_id:
        raise CreditNotFound(f"credit {credit_id} not found", credit_id=credit_id)
    return credit


# ─── Issue ────────────────────────────────────────────────────────────────────
def issue_credit(
    session,
    org_id: str,
    student_id: str,
    issued_for_lesson_id: Optional[str],
    value_minor: int,
    expires_at: Optional[datetime] = None,
    notes: str = "",
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MakeUpCredit:
    org_service.get_org(session, org_id)
    student = str(student_id or "").strip()
    if not student:
        raise ValidationError("student_id is required")
    require_positive(value_minor, "credit_value_minor")
    now = now or datetime.now()
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at must be in the future", expires_at=expires_at.isoformat())

    credit = MakeUpCredit(
        id=str(uuid.uuid4()),
        org_id=org_id,
        student_id=student,
        issued_for_lesson_id=issued_for_lesson_id or None,
        credit_value_minor=value_minor,
        issued_at=now,
        expires_at=expires_at,
        notes=(notes or "").strip()[:1000] or None,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(credit)
    outbox_service.enqueue(
        session,
        org_id,
        outbox_service.CREDIT_ISSUED,
        credit_to_dict(credit),
        ref_id=credit.id,
    )
    session.commit()
    log_event(logger, E.CREDIT_ISSUE, org_id=org_id, credit_id=credit.id, student_id=student,
              value=value_minor, lesson_id=issued_for_lesson_id or "")
    return credit


def issue_credit_for_cancellation(
    session,
    org_id: str,
    lesson_id: str,
    student_id: str,
    cancelled_at: datetime,
    value_minor: Optional[int] = None,
    expires_in_days: Optional[int] = None,
    created_by: Optional[str] = None,
) -> Optional[MakeUpCredit]:
    """
    Issues a credit when the cancellation gave enough notice, else returns None.
    The value defaults to the lesson's rate-card price.
    """
    settings = org_service.get_org_settings(session, org_id)
    lesson = _get_lesson(session, org_id, lesson_id)
    if not check_eligibility(lesson.start_at, cancelled_at, settings.cancellation_notice_hours):
        log_event(logger, E.CREDIT_REJECT, org_id=org_id, lesson_id=lesson_id, student_id=student_id,
                  reason="insufficient_notice", hours=hours_notice(lesson.start_at, cancelled_at))
        return None
    if value_minor is None:
        value_minor = org_service.find_rate_for_duration(
            lesson.duration_mins,
            org_service.list_rate_cards(session, org_id),
            int(cfg.get("billing.fallback_rate_minor", 3000)),
        )
    expires_at = cancelled_at + timedelta(days=int(expires_in_days)) if expires_in_days else None
    return issue_credit(
        session,
        org_id,
        student_id,
        lesson_id,
        value_minor,
        expires_at=expires_at,
        notes="Cancellation with notice",
        created_by=created_by,
        now=cancelled_at,
    )


def _get_lesson(session, org_id: str, lesson_id: str) -> Lesson:
    lesson = session.get(Lesson, str(lesson_id or ""))
    if not lesson or lesson.org_id != org_id:
        raise NotFound(f"lesson {lesson_id} not found", lesson_id=lesson_id)
    return lesson


# ─── Redeem ───────────────────────────────────────────────────────────────────
def _claim(session, org_id: str, credit_id: str, now: datetime, **values) -> bool:
    result = session.execute(
        update(MakeUpCredit)
        .where(
            MakeUpCredit.id == credit_id,
            MakeUpCredit.org_id == org_id,
            MakeUpCredit.redeemed_at.is_(None),
            _unexpired(now),
        )
        .values(redeemed_at=now, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _rejection(session, org_id: str, credit_id: str, now: datetime):
    credit = session.get(MakeUpCredit, credit_id, populate_existing=True)
    if not credit or credit.org_id != org_id:
        return CreditNotFound(f"credit {credit_id} not found", credit_id=credit_id)
    if credit.redeemed_at is not None:
        return CreditAlreadyRedeemed(
            "this make-up credit has already been redeemed",
            credit_id=credit_id,
            redeemed_at=credit.redeemed_at.isoformat(),
            redeemed_lesson_id=credit.redeemed_lesson_id,
            applied_invoice_id=credit.applied_invoice_id,
        )
    return CreditExpired(
        "this make-up credit has expired",
        credit_id=credit_id,
        expires_at=credit.expires_at.isoformat() if credit.expires_at else None,
    )


def redeem_credit(session, org_id: str, credit_id: str, target_lesson_id: str, now: Optional[datetime] = None) -> MakeUpCredit:
    """
    Redeems a credit against a lesson. Raises CreditNotFound, CreditAlreadyRedeemed
    or CreditExpired on rejection; state is untouched in every rejection.

    The claim runs in the session's current transaction: pending work already in
    the session is committed along with it, and rolled back with it on rejection.
    """
    now = now or datetime.now()
    _get_lesson(session, org_id, target_lesson_id)
    if not _claim(session, org_id, credit_id, now, redeemed_lesson_id=target_lesson_id):
        session.rollback()
        error = _rejection(session, org_id, credit_id, now)
        log_event(logger, E.CREDIT_REJECT, level="warning", org_id=org_id, credit_id=credit_id,
                  lesson_id=target_lesson_id, reason=error.code)
        raise error
    session.commit()
    log_event(logger, E.CREDIT_REDEEM, org_id=org_id, credit_id=credit_id, lesson_id=target_lesson_id)
    return get_credit(session, org_id, credit_id)


def apply_credits_to_invoice(session, org_id: str, credits: Iterable[MakeUpCredit], invoice_id: str, now: datetime) -> int:
    """
    Claims each credit for an invoice inside the caller's transaction. Raises
    the rejection for the first credit lost to a concurrent redemption; the
    caller rolls back.
    """
    applied = 0
    for credit in credits:
        if not _claim(session, org_id, credit.id, now, applied_invoice_id=invoice_id):
            raise _rejection(session, org_id, credit.id, now)
        applied += int(credit.credit_value_minor)
        log_event(logger, E.CREDIT_APPLY, org_id=org_id, credit_id=credit.id, invoice_id=invoice_id,
                  value=credit.credit_value_minor)
    return applied


def restore_invoice_credits(session, invoice_id: str, now: Optional[datetime] = None) -> int:
    """Un-redeems credits that offset a voided invoice, inside the caller's transaction."""
    now = now or datetime.now()
    result = session.execute(
        update(MakeUpCredit)
        .where(MakeUpCredit.applied_invoice_id == invoice_id)
        .values(redeemed_at=None, applied_invoice_id=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        log_event(logger, E.CREDIT_RESTORE, invoice_id=invoice_id, count=result.rowcount)
    return int(result.rowcount or 0)


def delete_credit(session, org_id: str, credit_id: str) -> None:
    """Deletes an unredeemed credit. Redeemed credits are kept for audit."""
    result = session.execute(
        delete(MakeUpCredit)
        .where(
            MakeUpCredit.id == credit_id,
            MakeUpCredit.org_id == org_id,
            MakeUpCredit.redeemed_at.is_(None),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        credit = get_credit(session, org_id, credit_id)
        raise CreditAlreadyRedeemed(
            "redeemed credits cannot be deleted",
            credit_id=credit_id,
            redeemed_at=credit.redeemed_at.isoformat() if credit.redeemed_at else None,
        )
    session.commit()
    log_event(logger, E.CREDIT_DELETE, org_id=org_id, credit_id=credit_id)


# ─── Expiry warnings ──────────────────────────────────────────────────────────
def warn_expiring_credits(session, now: Optional[datetime] = None, days: Optional[int] = None) -> int:
    """Queues one credit.expiring notification per unredeemed credit expiring within `days`."""
    now = now or datetime.now()
    window = int(days if days is not None else cfg.get("credits.expiry_warning_days", 3))
    rows = (
        session.query(MakeUpCredit)
        .filter(
            MakeUpCredit.redeemed_at.is_(None),
            MakeUpCredit.expires_at.isnot(None),
            MakeUpCredit.expires_at >= now,
            MakeUpCredit.expires_at <= now + timedelta(days=window),
            MakeUpCredit.expiry_warned_at.is_(None),
        )
        .all()
    )
    for credit in rows:
        credit.expiry_warned_at = now
        outbox_service.enqueue(session, credit.org_id, outbox_service.CREDIT_EXPIRING, credit_to_dict(credit), ref_id=credit.id)
        log_event(logger, E.CREDIT_EXPIRE_WARNING, org_id=credit.org_id, credit_id=credit.id,
                  expires_at=credit.expires_at.isoformat())
    if rows:
        session.commit()
    return len(rows)


def credit_to_dict(credit: MakeUpCredit, now: Optional[datetime] = None) -> Dict:
    now = now or datetime.now()
    if credit.redeemed_at is not None:
        state = "redeemed"
    elif credit.expires_at is not None and credit.expires_at < now:
        state = "expired"
    else:
        state = "issued"
    return {
        "id": credit.id,
        "org_id": credit.org_id,
        "student_id": credit.student_id,
        "issued_for_lesson_id": credit.issued_for_lesson_id,
        "credit_value_minor": int(credit.credit_value_minor or 0),
        "issued_at": credit.issued_at.isoformat() if credit.issued_at else None,
        "expires_at": credit.expires_at.isoformat() if credit.expires_at else None,
        "redeemed_at": credit.redeemed_at.isoformat() if credit.redeemed_at else None,
        "redeemed_lesson_id": credit.redeemed_lesson_id,
        "applied_invoice_id": credit.applied_invoice_id,
        "state": state,
        "notes": credit.notes or "",
    }
