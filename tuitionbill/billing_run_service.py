"""
Billing runs: scan an org's lessons over a date range and mode, build one draft
invoice per payer and keep a BillingRun record with the outcome.

Each payer bucket commits on its own, so a failing payer never takes the rest of
the run down with it. A run with failed payers ends `partial` and can be retried
for just those payers; lessons already billed are skipped by the ledger, which
makes reruns over the same range a no-op.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from tuitionbill.config import cfg
from tuitionbill.errors import (
    BillingRunNotFound,
    StorageError,
    ValidationError,
    require_non_negative,
)
from tuitionbill.events import log_event, E
from tuitionbill.invoice_service import billable_statuses, build_invoices
from tuitionbill.log import get_logger, trace_ctx
from tuitionbill.models.invoice import BillingRun, Invoice
from tuitionbill.models.lesson import Lesson
from tuitionbill.org_service import get_org_settings, normalize_billing_mode
from tuitionbill.payer import PayerKey

logger = get_logger(__name__)

RUN_PROCESSING = "processing"
RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"


@dataclass
class BillingRunResult:
    run: BillingRun
    invoices: List[Invoice] = field(default_factory=list)

    @property
    def summary(self) -> Dict:
        return run_summary(self.run)


def _as_date(value, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a date (YYYY-MM-DD)", **{field_name: value})


def select_candidate_lessons(session, org_id: str, start_date: date, end_date: date, billing_mode: str) -> List[Lesson]:
    """Lessons starting within [start_date, end_date] inclusive, in a status the mode bills."""
    return (
        session.query(Lesson)
        .filter(
            Lesson.org_id == org_id,
            Lesson.start_at >= datetime.combine(start_date, time.min),
            Lesson.start_at < datetime.combine(end_date + timedelta(days=1), time.min),
            Lesson.status.in_(sorted(billable_statuses(billing_mode))),
        )
        .order_by(Lesson.start_at.asc(), Lesson.id.asc())
        .all()
    )


def _summarize(build, lesson_count: int) -> Dict:
    return {
        "lesson_count": lesson_count,
        "invoice_count": len(build.invoices),
        "invoice_ids": [x.id for x in build.invoices],
        "total_amount_minor": build.total_amount,
        "total_payers": build.total_payers,
        "skipped_lessons": build.skipped_lessons,
        "skipped_for_cancellation": build.skipped_for_cancellation,
        "suppressed_payers": list(build.suppressed_payers),
        "failed_payers": list(build.failed_payers),
    }


def _merge_retry(summary: Dict, build, retried) -> Dict:
    retried = {str(x) for x in retried}
    merged = dict(summary)
    merged["invoice_ids"] = list(summary.get("invoice_ids") or []) + [x.id for x in build.invoices]
    merged["invoice_count"] = len(merged["invoice_ids"])
    merged["total_amount_minor"] = int(summary.get("total_amount_minor") or 0) + build.total_amount
    merged["suppressed_payers"] = list(summary.get("suppressed_payers") or []) + build.suppressed_payers
    merged["failed_payers"] = [
        x for x in summary.get("failed_payers") or [] if x.get("payer") not in retried
    ] + list(build.failed_payers)
    merged["retries"] = int(summary.get("retries") or 0) + 1
    return merged


def _final_status(summary: Dict) -> str:
    if not summary.get("failed_payers"):
        return RUN_COMPLETED
    return RUN_PARTIAL if summary.get("invoice_count") else RUN_FAILED


def _mark_failed(session, run_id: str, error: Exception) -> None:
    session.rollback()
    try:
        run = session.get(BillingRun, run_id)
        if run is not None:
            run.status = RUN_FAILED
            run.summary_json = json.dumps({"error": str(error)}, ensure_ascii=False)
            run.updated_at = datetime.now()
            session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("could not record failure for billing run %s", run_id)


def execute_billing_run(
    session,
    org_id: str,
    start_date,
    end_date,
    billing_mode: Optional[str] = None,
    fallback_rate_minor: Optional[int] = None,
    run_type: str = "manual",
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BillingRunResult:
    settings = get_org_settings(session, org_id)
    start = _as_date(start_date, "start_date")
    end = _as_date(end_date, "end_date")
    if start > end:
        raise ValidationError("start_date must not be after end_date", start_date=start.isoformat(), end_date=end.isoformat())
    mode = normalize_billing_mode(billing_mode or settings.billing_mode)
    fallback = fallback_rate_minor if fallback_rate_minor is not None else int(cfg.get("billing.fallback_rate_minor", 3000))
    require_non_negative(fallback, "fallback_rate_minor")
    now = now or datetime.now()

    run = BillingRun(
        id=str(uuid.uuid4()),
        org_id=settings.org_id,
        run_type=(run_type or "manual")[:32],
        billing_mode=mode,
        start_date=start,
        end_date=end,
        fallback_rate_minor=fallback,
        status=RUN_PROCESSING,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(run)
    session.commit()

    with trace_ctx(run.id[:8]):
        log_event(logger, E.BILLING_RUN_START, org_id=org_id, run_id=run.id, mode=mode,
                  start=start.isoformat(), end=end.isoformat())
        try:
            lessons = select_candidate_lessons(session, org_id, start, end, mode)
            build = build_invoices(session, settings, lessons, mode, fallback, run_id=run.id, now=now)
        except SQLAlchemyError as e:
            _mark_failed(session, run.id, e)
            log_event(logger, E.BILLING_RUN_FAIL, level="error", org_id=org_id, run_id=run.id, error=e)
            raise StorageError("billing run could not read or write storage", run_id=run.id) from e

        summary = _summarize(build, len(lessons))
        run.status = _final_status(summary)
        run.summary_json = json.dumps(summary, ensure_ascii=False)
        run.updated_at = datetime.now()
        session.commit()
        log_event(logger, E.BILLING_RUN_COMPLETE, org_id=org_id, run_id=run.id, status=run.status,
                  invoices=summary["invoice_count"], total=summary["total_amount_minor"],
                  failed=len(summary["failed_payers"]))
    return BillingRunResult(run=run, invoices=build.invoices)


def run_billing(session, org_id: str, start_date, end_date, mode: Optional[str] = None, **kwargs) -> List[Invoice]:
    """The exported runBilling: the invoices a run created, empty when nothing was billable."""
    return execute_billing_run(session, org_id, start_date, end_date, billing_mode=mode, **kwargs).invoices


def get_billing_run(session, org_id: str, run_id: str) -> BillingRun:
    run = session.get(BillingRun, str(run_id or ""), populate_existing=True)
    if not run or run.org_id != org_id:
        raise BillingRunNotFound(f"billing run {run_id} not found", run_id=run_id)
    return run


def list_billing_runs(session, org_id: str, limit: int = 50) -> List[BillingRun]:
    return (
        session.query(BillingRun)
        .filter(BillingRun.org_id == org_id)
        .order_by(BillingRun.created_at.desc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )


def run_summary(run: BillingRun) -> Dict:
    try:
        return json.loads(run.summary_json) if run.summary_json else {}
    except ValueError:
        return {}


def retry_billing_run(
    session,
    org_id: str,
    run_id: str,
    payer_keys: Optional[Iterable] = None,
    now: Optional[datetime] = None,
) -> BillingRunResult:
    """
    Re-bills a run's range for the given payers, by default the ones that failed.
    Invoices created here belong to the original run and its summary is merged.
    """
    run = get_billing_run(session, org_id, run_id)
    summary = run_summary(run)
    if payer_keys is None:
        payer_keys = [x.get("payer") for x in summary.get("failed_payers") or []]
    payers = {x if isinstance(x, PayerKey) else PayerKey.parse(str(x)) for x in payer_keys if x}
    if not payers:
        return BillingRunResult(run=run, invoices=[])
    settings = get_org_settings(session, org_id)
    now = now or datetime.now()

    with trace_ctx(run.id[:8]):
        log_event(logger, E.BILLING_RUN_RETRY, org_id=org_id, run_id=run.id, payers=len(payers))
        try:
            lessons = select_candidate_lessons(session, org_id, run.start_date, run.end_date, run.billing_mode)
            build = build_invoices(session, settings, lessons, run.billing_mode, run.fallback_rate_minor,
                                   run_id=run.id, only_payers=payers, now=now)
        except SQLAlchemyError as e:
            session.rollback()
            log_event(logger, E.BILLING_RUN_FAIL, level="error", org_id=org_id, run_id=run.id, error=e)
            raise StorageError("billing run retry could not read or write storage", run_id=run.id) from e

        merged = _merge_retry(summary, build, payers)
        run = get_billing_run(session, org_id, run_id)
        run.status = _final_status(merged)
        run.summary_json = json.dumps(merged, ensure_ascii=False)
        run.updated_at = datetime.now()
        session.commit()
        log_event(logger, E.BILLING_RUN_COMPLETE, org_id=org_id, run_id=run.id, status=run.status,
                  invoices=merged["invoice_count"], failed=len(merged["failed_payers"]))
    return BillingRunResult(run=run, invoices=build.invoices)


def billing_run_to_dict(run: BillingRun) -> Dict:
    return {
        "id": run.id,
        "org_id": run.org_id,
        "run_type": run.run_type,
        "billing_mode": run.billing_mode,
        "start_date": run.start_date.isoformat() if run.start_date else None,
        "end_date": run.end_date.isoformat() if run.end_date else None,
        "fallback_rate_minor": int(run.fallback_rate_minor or 0),
        "status": run.status,
        "summary": run_summary(run),
        "created_by": run.created_by,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "updated_at": run.updated_at.isoformat() if run.updated_at else None,
    }
