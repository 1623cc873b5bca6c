import unittest
from datetime import date, datetime

from jobs.billing import run_dispatch_once, run_sweep_once
from tuitionbill import outbox_service
from tuitionbill.billing_run_service import execute_billing_run
from tuitionbill.credit_service import issue_credit
from tuitionbill.installment_service import create_plan, get_plan
from tuitionbill.invoice_service import get_invoice, send_invoice
from tuitionbill.models.outbox import OutboxEvent
from tests.support import BillingDBMixin


class SweepJobTestCase(BillingDBMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.add_lesson(start_at=datetime(2026, 3, 2, 16, 0))
        self.add_lesson(start_at=datetime(2026, 3, 3, 16, 0), participants=(("s2", "g2", True),))
        result = execute_billing_run(self.session, self.org_id, date(2026, 3, 1), date(2026, 3, 31),
                                     fallback_rate_minor=6000, now=datetime(2026, 4, 1, 9, 0))
        self.sent, self.planned = sorted(result.invoices, key=lambda x: x.payer_id)
        send_invoice(self.session, self.org_id, self.sent.id)
        create_plan(self.session, self.org_id, self.planned.id, 2, start_date=date(2026, 4, 15))

    def _count(self, event_type):
        return self.session.query(OutboxEvent).filter(OutboxEvent.event_type == event_type).count()

    def test_sweep_marks_and_notifies_once(self):
        issue_credit(self.session, self.org_id, "s1", None, 3000, expires_at=datetime(2026, 4, 22, 9, 0),
                     now=datetime(2026, 4, 19, 9, 0))
        now = datetime(2026, 4, 20, 9, 0)

        result = run_sweep_once(self.session, now=now)
        self.assertEqual(result, {"installments_overdue": 1, "invoices_overdue": 1, "credits_expiring": 1})
        self.assertEqual(get_invoice(self.session, self.org_id, self.sent.id).status, "overdue")
        # the draft invoice with the plan stays draft
        self.assertEqual(get_invoice(self.session, self.org_id, self.planned.id).status, "draft")
        rows = get_plan(self.session, self.org_id, self.planned.id).installments
        self.assertEqual([x.status for x in rows], ["overdue", "pending"])
        self.assertEqual(self._count(outbox_service.INSTALLMENT_OVERDUE), 1)
        self.assertEqual(self._count(outbox_service.INVOICE_OVERDUE), 1)
        self.assertEqual(self._count(outbox_service.CREDIT_EXPIRING), 1)

        again = run_sweep_once(self.session, now=now)
        self.assertEqual(again, {"installments_overdue": 0, "invoices_overdue": 0, "credits_expiring": 0})
        self.assertEqual(self._count(outbox_service.INVOICE_OVERDUE), 1)

    def test_nothing_due_yet(self):
        result = run_sweep_once(self.session, now=datetime(2026, 4, 15, 9, 0))
        self.assertEqual(result, {"installments_overdue": 0, "invoices_overdue": 0, "credits_expiring": 0})

    def test_dispatch_once(self):
        sent = []

        class _Notifier:
            def send(self, event_type, payload):
                sent.append(event_type)

        pending = len(outbox_service.list_pending(self.session))
        result = run_dispatch_once(self.session, _Notifier())
        self.assertEqual(result["delivered"], pending)
        self.assertEqual(sent.count(outbox_service.INVOICE_CREATED), 2)
        self.assertEqual(outbox_service.list_pending(self.session), [])


if __name__ == "__main__":
    unittest.main()
