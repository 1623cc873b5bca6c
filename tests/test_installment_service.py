import json
import unittest
from datetime import date, datetime

from tuitionbill import installment_service, outbox_service
from tuitionbill.billing_run_service import execute_billing_run
from tuitionbill.errors import (
    InstallmentNotFound,
    InvalidStatusTransition,
    PlanAlreadyExists,
    PlanHasPayments,
    ValidationError,
)
from tuitionbill.installment_service import (
    create_custom_plan,
    create_plan,
    is_installment_overdue,
    mark_overdue,
    record_installment_payment,
    remove_plan,
)
from tuitionbill.invoice_service import get_invoice, void_invoice
from tuitionbill.models.outbox import OutboxEvent
from tuitionbill.payment_service import record_payment
from tests.support import BillingDBMixin


class DueDateTestCase(unittest.TestCase):
    def test_monthly_clamps_to_month_end(self):
        start = date(2026, 1, 31)
        dues = [installment_service.due_date_for(start, "monthly", i) for i in range(4)]
        self.assertEqual(dues, [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)])

    def test_weekly_and_fortnightly(self):
        start = date(2026, 3, 2)
        self.assertEqual(installment_service.due_date_for(start, "weekly", 2), date(2026, 3, 16))
        self.assertEqual(installment_service.due_date_for(start, "fortnightly", 2), date(2026, 3, 30))

    def test_overdue_predicate(self):
        self.assertTrue(is_installment_overdue(date(2026, 3, 1), date(2026, 3, 2), "pending"))
        self.assertFalse(is_installment_overdue(date(2026, 3, 1), date(2026, 3, 2), "paid"))
        self.assertFalse(is_installment_overdue(date(2026, 3, 2), date(2026, 3, 2), "pending"))


class InstallmentPlanTestCase(BillingDBMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        for day in (2, 9, 16):
            self.add_lesson(start_at=datetime(2026, 3, day, 16, 0))
        result = execute_billing_run(self.session, self.org_id, date(2026, 3, 1), date(2026, 3, 31),
                                     fallback_rate_minor=3333, now=datetime(2026, 4, 1, 9, 0))
        self.invoice = result.invoices[0]

    def test_installments_sum_to_total(self):
        self.assertEqual(self.invoice.total_minor, 9999)
        plan = create_plan(self.session, self.org_id, self.invoice.id, 4, start_date=date(2026, 4, 15))
        amounts = [x.amount_minor for x in plan.installments]
        self.assertEqual(amounts, [2499, 2499, 2499, 2502])
        self.assertEqual(sum(amounts), self.invoice.total_minor)
        self.assertEqual([x.sequence_number for x in plan.installments], [1, 2, 3, 4])
        self.assertEqual(plan.installments[1].due_date, date(2026, 5, 15))
        self.assertTrue(get_invoice(self.session, self.org_id, self.invoice.id).payment_plan_enabled)

    def test_sum_invariant_for_many_counts(self):
        for count in range(1, 13):
            with self.subTest(count=count):
                plan = create_plan(self.session, self.org_id, self.invoice.id, count, frequency="weekly")
                self.assertEqual(sum(x.amount_minor for x in plan.installments), 9999)
                self.assertEqual(len(plan.installments), count)
                remove_plan(self.session, self.org_id, self.invoice.id)

    def test_default_start_is_invoice_due_date(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 2)
        self.assertEqual(plan.installments[0].due_date, self.invoice.due_date)

    def test_one_plan_per_invoice(self):
        create_plan(self.session, self.org_id, self.invoice.id, 2)
        with self.assertRaises(PlanAlreadyExists):
            create_plan(self.session, self.org_id, self.invoice.id, 3)

    def test_bad_input(self):
        with self.assertRaises(ValidationError):
            create_plan(self.session, self.org_id, self.invoice.id, 0)
        with self.assertRaises(ValidationError):
            create_plan(self.session, self.org_id, self.invoice.id, 3, frequency="daily")

    def test_custom_plan(self):
        plan = create_custom_plan(self.session, self.org_id, self.invoice.id,
                                  [(5000, date(2026, 4, 10)), (4999, date(2026, 5, 10))])
        self.assertEqual(plan.plan_type, "custom")
        self.assertEqual([x.amount_minor for x in plan.installments], [5000, 4999])

    def test_custom_plan_validation(self):
        with self.assertRaises(ValidationError):
            create_custom_plan(self.session, self.org_id, self.invoice.id, [])
        with self.assertRaises(ValidationError):
            create_custom_plan(self.session, self.org_id, self.invoice.id, [(5000, date(2026, 4, 10)), (4000, date(2026, 5, 10))])
        with self.assertRaises(ValidationError):
            create_custom_plan(self.session, self.org_id, self.invoice.id, [(5000, date(2026, 5, 10)), (4999, date(2026, 4, 10))])

    def test_plan_on_partly_paid_invoice_is_refused(self):
        record_payment(self.session, self.org_id, self.invoice.id, 100, "card")
        with self.assertRaises(PlanHasPayments):
            create_plan(self.session, self.org_id, self.invoice.id, 2)

    def test_plan_on_void_invoice_is_refused(self):
        void_invoice(self.session, self.org_id, self.invoice.id)
        with self.assertRaises(InvalidStatusTransition):
            create_plan(self.session, self.org_id, self.invoice.id, 2)

    def test_partial_payment_leaves_installment_pending(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 3)
        first = plan.installments[0]
        row = record_installment_payment(self.session, self.org_id, first.id, 1000)
        self.assertEqual(row.status, "pending")
        self.assertEqual(row.paid_minor, 1000)

        row = record_installment_payment(self.session, self.org_id, first.id, first.amount_minor - 1000)
        self.assertEqual(row.status, "paid")
        self.assertIsNotNone(row.paid_at)

    def test_unallocated_payment_fills_installments_in_order(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 3)
        record_payment(self.session, self.org_id, self.invoice.id, 4000, "card")
        rows = installment_service.get_plan(self.session, self.org_id, self.invoice.id).installments
        self.assertEqual([x.paid_minor for x in rows], [3333, 667, 0])
        self.assertEqual([x.status for x in rows], ["paid", "pending", "pending"])
        self.assertEqual(len(plan.installments), 3)

    def test_mark_overdue_is_idempotent(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 3, start_date=date(2026, 4, 15))
        moved = mark_overdue(self.session, today=date(2026, 5, 20))
        self.assertEqual([x.sequence_number for x in moved], [1, 2])
        self.assertEqual(mark_overdue(self.session, today=date(2026, 5, 20)), [])
        rows = installment_service.get_plan(self.session, self.org_id, self.invoice.id).installments
        self.assertEqual([x.status for x in rows], ["overdue", "overdue", "pending"])
        self.assertEqual(len(plan.installments), 3)

    def test_paid_installment_is_not_marked_overdue(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 2, start_date=date(2026, 4, 15))
        record_installment_payment(self.session, self.org_id, plan.installments[0].id, plan.installments[0].amount_minor)
        moved = mark_overdue(self.session, today=date(2026, 4, 20))
        self.assertEqual(moved, [])

    def test_zero_amount_installment_is_not_marked_overdue(self):
        create_custom_plan(self.session, self.org_id, self.invoice.id,
                           [(0, date(2026, 4, 10)), (9999, date(2026, 5, 10))])
        moved = mark_overdue(self.session, today=date(2026, 5, 20))
        self.assertEqual([x.sequence_number for x in moved], [2])
        rows = installment_service.get_plan(self.session, self.org_id, self.invoice.id).installments
        self.assertEqual([x.status for x in rows], ["pending", "overdue"])

    def test_mark_overdue_queues_notification_with_status_change(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 2, start_date=date(2026, 4, 15))
        mark_overdue(self.session, today=date(2026, 4, 20))
        # visible from another connection, so committed together with the status
        other = self.new_session()
        try:
            events = other.query(OutboxEvent).filter(OutboxEvent.event_type == outbox_service.INSTALLMENT_OVERDUE).all()
            self.assertEqual([x.ref_id for x in events], [plan.installments[0].id])
            self.assertEqual(json.loads(events[0].payload_json)["status"], "overdue")
        finally:
            other.close()

    def test_overdue_installment_can_still_be_paid(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 2, start_date=date(2026, 4, 15))
        mark_overdue(self.session, today=date(2026, 4, 20))
        row = record_installment_payment(self.session, self.org_id, plan.installments[0].id, plan.installments[0].amount_minor)
        self.assertEqual(row.status, "paid")

    def test_remove_plan_without_payments(self):
        create_plan(self.session, self.org_id, self.invoice.id, 3)
        remove_plan(self.session, self.org_id, self.invoice.id)
        with self.assertRaises(InstallmentNotFound):
            installment_service.get_plan(self.session, self.org_id, self.invoice.id)
        self.assertFalse(get_invoice(self.session, self.org_id, self.invoice.id).payment_plan_enabled)

    def test_remove_plan_after_an_installment_is_paid(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 3)
        record_installment_payment(self.session, self.org_id, plan.installments[0].id, plan.installments[0].amount_minor)

        with self.assertRaises(PlanHasPayments):
            remove_plan(self.session, self.org_id, self.invoice.id)
        rows = installment_service.get_plan(self.session, self.org_id, self.invoice.id).installments
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[0].status, "paid")

    def test_plan_dict(self):
        plan = create_plan(self.session, self.org_id, self.invoice.id, 2, start_date=date(2026, 4, 15))
        data = installment_service.plan_to_dict(plan, today=date(2026, 4, 20))
        self.assertEqual([x["is_overdue"] for x in data["installments"]], [True, False])
        self.assertEqual(data["frequency"], "monthly")


if __name__ == "__main__":
    unittest.main()
