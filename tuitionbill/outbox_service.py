"""
Notification outbox.

State changes append an OutboxEvent in their own transaction, so the record
commits or rolls back with the billing change. dispatch_pending() delivers
after commit; a notifier failure only touches the outbox row.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from tuitionbill.config import cfg
from tuitionbill.events import log_event, E
from tuitionbill.log import get_logger
from tuitionbill.models.outbox import OutboxEvent

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"

# notification types seen by the Notifier
INVOICE_CREATED = "invoice.created"
INVOICE_OVERDUE = "invoice.overdue"
INVOICE_PAID = "invoice.paid"
INVOICE_VOIDED = "invoice.voided"
INSTALLMENT_OVERDUE = "installment.overdue"
CREDIT_ISSUED = "credit.issued"
CREDIT_EXPIRING = "credit.expiring"
PAYMENT_RECORDED = "payment.recorded"
REFUND_REQUESTED = "refund.requested"
REFUND_SETTLED = "refund.settled"


def enqueue(session, org_id: str, event_type: str, payload: Dict[str, Any], ref_id: Optional[str] = None) -> OutboxEvent:
    """Adds an event to the caller's transaction. Does not commit."""
    row = OutboxEvent(
        id=str(uuid.uuid4()),
        org_id=org_id,
        event_type=event_type,
        ref_id=str(ref_id)[:64] if ref_id else None,
        payload_json=json.dumps(payload, ensure_ascii=False, default=str),
        status=STATUS_PENDING,
        attempts=0,
        created_at=datetime.now(),
    )
    session.add(row)
    log_event(logger, E.OUTBOX_ENQUEUE, org_id=org_id, type=event_type, ref_id=ref_id or "")
    return row


def list_pending(session, limit: int = 100) -> List[OutboxEvent]:
    return (
        session.query(OutboxEvent)
        .filter(OutboxEvent.status == STATUS_PENDING)
        .order_by(OutboxEvent.created_at.asc())
        .limit(max(1, min(int(limit or 100), 1000)))
        .all()
    )


def dispatch_pending(session, notifier, limit: int = None) -> Dict[str, int]:
    max_attempts = int(cfg.get("outbox.max_attempts", 5) or 5)
    batch = limit or int(cfg.get("outbox.batch_size", 100) or 100)
    delivered = failed = 0
    for row in list_pending(session, limit=batch):
        try:
            notifier.send(row.event_type, json.loads(row.payload_json or "{}"))
        except Exception as e:
            row.attempts = int(row.attempts or 0) + 1
            row.last_error = str(e)[:1000]
            if row.attempts >= max_attempts:
                row.status = STATUS_FAILED
            failed += 1
            log_event(logger, E.OUTBOX_FAIL, level="warning", event_id=row.id, type=row.event_type,
                      attempts=row.attempts, error=e)
        else:
            row.status = STATUS_DELIVERED
            row.attempts = int(row.attempts or 0) + 1
            row.delivered_at = datetime.now()
            delivered += 1
            log_event(logger, E.OUTBOX_DISPATCH, event_id=row.id, type=row.event_type)
        session.commit()
    return {"delivered": delivered, "failed": failed}
