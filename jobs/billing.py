import time
from datetime import date, datetime
from threading import Thread
from typing import Dict, Optional

from tuitionbill.config import cfg
from tuitionbill.db import DB
from tuitionbill.credit_service import warn_expiring_credits
from tuitionbill.installment_service import mark_overdue
from tuitionbill.invoice_service import mark_overdue_invoices
from tuitionbill.log import get_logger, trace_ctx
from tuitionbill.events import log_event, E
from tuitionbill.notifier import build_notifier
from tuitionbill import outbox_service

logger = get_logger(__name__)


def run_sweep_once(session, today: Optional[date] = None, now: Optional[datetime] = None) -> Dict:
    """One overdue + expiry pass. Safe to run repeatedly; a second run the same day does nothing."""
    now = now or datetime.now()
    today = today or now.date()
    log_event(logger, E.SWEEP_START, today=today.isoformat())

    installments = mark_overdue(session, today=today)
    invoices = mark_overdue_invoices(session, today=today)

    warned = warn_expiring_credits(session, now=now)
    result = {
        "installments_overdue": len(installments),
        "invoices_overdue": len(invoices),
        "credits_expiring": warned,
    }
    log_event(logger, E.SWEEP_COMPLETE, **result)
    return result


def run_dispatch_once(session, notifier=None) -> Dict:
    return outbox_service.dispatch_pending(session, notifier or build_notifier())


def _sweep_loop():
    interval = max(60, int(cfg.get("jobs.sweep_interval_seconds", 3600) or 3600))
    while True:
        session = None
        try:
            with trace_ctx("sweep"):
                session = DB.get_session()
                run_sweep_once(session)
        except Exception:
            logger.exception("billing sweep failed")
        finally:
            if session is not None:
                session.close()
        time.sleep(interval)


def _dispatch_loop():
    interval = max(5, int(cfg.get("jobs.dispatch_interval_seconds", 60) or 60))
    notifier = build_notifier()
    while True:
        session = None
        try:
            with trace_ctx("outbox"):
                session = DB.get_session()
                result = run_dispatch_once(session, notifier)
                if result.get("delivered") or result.get("failed"):
                    logger.info("outbox dispatch: %s", result)
        except Exception:
            logger.exception("outbox dispatch failed")
        finally:
            if session is not None:
                session.close()
        time.sleep(interval)


def start_billing_workers():
    threads = []
    for target in (_sweep_loop, _dispatch_loop):
        t = Thread(target=target, daemon=True)
        t.start()
        threads.append(t)
    return threads
