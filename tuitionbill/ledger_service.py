"""
Billing ledger: which lessons are already on a non-void invoice.

`billed_lessons` holds one row per (lesson, payer) and carries a unique
constraint on (org_id, lesson_id, payer_type, payer_id). A concurrent run that
loses the race to register the same pair gets an IntegrityError on flush; the
billing run treats those lessons as already billed.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Set

from tuitionbill.events import log_event, E
from tuitionbill.log import get_logger
from tuitionbill.models.invoice import BilledLesson
from tuitionbill.payer import PayerKey

logger = get_logger(__name__)

_IN_BATCH = 500


def _chunks(ids: List[str]):
    for i in range(0, len(ids), _IN_BATCH):
        yield ids[i:i + _IN_BATCH]


def _unique(ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for x in ids:
        if x and x not in seen:
            seen.add(x)
            ordered.append(x)
    return ordered


def billed_lesson_ids(session, org_id: str, lesson_ids: Iterable[str]) -> Set[str]:
    candidates = _unique(lesson_ids)
    billed: Set[str] = set()
    for batch in _chunks(candidates):
        rows = (
            session.query(BilledLesson.lesson_id)
            .filter(BilledLesson.org_id == org_id, BilledLesson.lesson_id.in_(batch))
            .all()
        )
        billed.update(r[0] for r in rows)
    return billed


def filter_unbilled(session, org_id: str, candidate_lesson_ids: Iterable[str]) -> List[str]:
    """
    Lesson ids not yet attached to a non-void invoice in this org, in input order.

    A lesson seen again (a retried or overlapping run) is dropped silently.
    """
    candidates = _unique(candidate_lesson_ids)
    billed = billed_lesson_ids(session, org_id, candidates)
    return [x for x in candidates if x not in billed]


def filter_unbilled_for_payer(session, org_id: str, payer: PayerKey, candidate_lesson_ids: Iterable[str]) -> List[str]:
    """Like filter_unbilled but only against this payer's ledger rows."""
    candidates = _unique(candidate_lesson_ids)
    billed: Set[str] = set()
    for batch in _chunks(candidates):
        rows = (
            session.query(BilledLesson.lesson_id)
            .filter(
                BilledLesson.org_id == org_id,
                BilledLesson.payer_type == payer.payer_type,
                BilledLesson.payer_id == payer.payer_id,
                BilledLesson.lesson_id.in_(batch),
            )
            .all()
        )
        billed.update(r[0] for r in rows)
    return [x for x in candidates if x not in billed]


def register(session, org_id: str, invoice_id: str, payer: PayerKey, lesson_ids: Iterable[str]) -> int:
    """
    Adds ledger rows for an invoice inside the caller's transaction and flushes,
    so a lost race raises IntegrityError before the caller commits.
    """
    now = datetime.now()
    ids = _unique(lesson_ids)
    for lesson_id in ids:
        session.add(
            BilledLesson(
                id=str(uuid.uuid4()),
                org_id=org_id,
                lesson_id=lesson_id,
                payer_type=payer.payer_type,
                payer_id=payer.payer_id,
                invoice_id=invoice_id,
                created_at=now,
            )
        )
    session.flush()
    log_event(logger, E.BILLING_LEDGER_REGISTER, org_id=org_id, invoice_id=invoice_id, payer=payer, lessons=len(ids))
    return len(ids)


def release_invoice(session, invoice_id: str) -> int:
    """Removes an invoice's ledger rows (invoice voided) inside the caller's transaction."""
    released = (
        session.query(BilledLesson)
        .filter(BilledLesson.invoice_id == invoice_id)
        .delete(synchronize_session=False)
    )
    log_event(logger, E.BILLING_LEDGER_RELEASE, invoice_id=invoice_id, lessons=released)
    return int(released or 0)
