import threading
import unittest
from datetime import date, datetime

from tuitionbill import outbox_service
from tuitionbill.billing_run_service import execute_billing_run
from tuitionbill.errors import (
    ExceedsOutstanding,
    ExceedsRefundable,
    InvalidAmount,
    InvalidStatusTransition,
    PaymentDeclined,
    PaymentGatewayError,
    PaymentNotFound,
)
from tuitionbill.gateway import MockGateway
from tuitionbill.invoice_service import get_invoice, void_invoice
from tuitionbill.models.outbox import OutboxEvent
from tuitionbill.payment_service import (
    collect_payment,
    confirm_refund,
    get_payment,
    invoice_balance,
    issue_refund,
    list_payments,
    list_refunds,
    record_payment,
)
from tests.support import BillingDBMixin


class PaymentTestCase(BillingDBMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.add_lesson(start_at=datetime(2026, 3, 2, 16, 0))
        result = execute_billing_run(self.session, self.org_id, date(2026, 3, 1), date(2026, 3, 31),
                                     fallback_rate_minor=10000, now=datetime(2026, 4, 1, 9, 0))
        self.invoice = result.invoices[0]

    def _events(self, event_type):
        return self.session.query(OutboxEvent).filter(OutboxEvent.event_type == event_type).all()

    def test_partial_then_full_payment(self):
        record_payment(self.session, self.org_id, self.invoice.id, 4000, "bank_transfer")
        invoice = get_invoice(self.session, self.org_id, self.invoice.id)
        self.assertEqual(invoice.status, "draft")
        self.assertEqual(invoice.paid_minor, 4000)

        record_payment(self.session, self.org_id, self.invoice.id, 6000, "card")
        invoice = get_invoice(self.session, self.org_id, self.invoice.id)
        self.assertEqual(invoice.status, "paid")
        self.assertIsNotNone(invoice.paid_at)
        self.assertEqual(len(list_payments(self.session, self.org_id, self.invoice.id)), 2)
        self.assertEqual(len(self._events(outbox_service.PAYMENT_RECORDED)), 2)
        self.assertEqual(len(self._events(outbox_service.INVOICE_PAID)), 1)

    def test_overpayment_is_rejected(self):
        record_payment(self.session, self.org_id, self.invoice.id, 9000, "card")
        with self.assertRaises(ExceedsOutstanding) as ctx:
            record_payment(self.session, self.org_id, self.invoice.id, 1001, "card")
        self.assertEqual(ctx.exception.detail["outstanding"], 1000)
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).paid_minor, 9000)

    def test_payment_validation(self):
        with self.assertRaises(InvalidAmount):
            record_payment(self.session, self.org_id, self.invoice.id, 0, "card")
        with self.assertRaises(InvalidAmount):
            record_payment(self.session, self.org_id, self.invoice.id, 10.5, "card")

    def test_payment_on_void_invoice(self):
        void_invoice(self.session, self.org_id, self.invoice.id)
        with self.assertRaises(InvalidStatusTransition):
            record_payment(self.session, self.org_id, self.invoice.id, 100, "card")

    def test_balance(self):
        record_payment(self.session, self.org_id, self.invoice.id, 2500, "card")
        data = invoice_balance(self.session, self.org_id, self.invoice.id)
        self.assertEqual(data["outstanding_minor"], 7500)
        self.assertEqual(data["payments"][0]["refundable_minor"], 2500)

    def test_collect_payment_charges_outstanding(self):
        gateway = MockGateway()
        payment = collect_payment(self.session, self.org_id, self.invoice.id, gateway)
        self.assertEqual(payment.amount_minor, 10000)
        self.assertEqual(payment.provider, "mock")
        self.assertTrue(payment.provider_reference.startswith("mock_ch_"))
        self.assertEqual(gateway.charges[0][1], 10000)
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).status, "paid")

        with self.assertRaises(ExceedsOutstanding):
            collect_payment(self.session, self.org_id, self.invoice.id, gateway)

    def test_declined_charge_records_nothing(self):
        with self.assertRaises(PaymentDeclined):
            collect_payment(self.session, self.org_id, self.invoice.id, MockGateway(decline=True))
        self.assertEqual(list_payments(self.session, self.org_id, self.invoice.id), [])

    def test_gateway_down(self):
        with self.assertRaises(PaymentGatewayError) as ctx:
            collect_payment(self.session, self.org_id, self.invoice.id, MockGateway(unavailable=True))
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).paid_minor, 0)


class RefundTestCase(BillingDBMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.add_lesson(start_at=datetime(2026, 3, 2, 16, 0))
        result = execute_billing_run(self.session, self.org_id, date(2026, 3, 1), date(2026, 3, 31),
                                     fallback_rate_minor=10000, now=datetime(2026, 4, 1, 9, 0))
        self.invoice = result.invoices[0]
        self.payment = record_payment(self.session, self.org_id, self.invoice.id, 10000, "card")

    def test_refunds_cannot_exceed_payment(self):
        first = issue_refund(self.session, self.org_id, self.payment.id, 6000)
        self.assertEqual(first.status, "pending")
        with self.assertRaises(ExceedsRefundable) as ctx:
            issue_refund(self.session, self.org_id, self.payment.id, 5000)
        self.assertEqual(ctx.exception.detail["refundable"], 4000)
        self.assertEqual(len(list_refunds(self.session, self.org_id, self.payment.id)), 1)

    def test_concurrent_refunds_never_exceed_the_payment(self):
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            session = self.new_session()
            try:
                barrier.wait(timeout=10)
                issue_refund(session, self.org_id, self.payment.id, 6000)
                result = "ok"
            except ExceedsRefundable:
                result = "exceeds"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(sorted(outcomes), ["exceeds", "ok"])
        payment = get_payment(self.session, self.org_id, self.payment.id)
        self.assertEqual(payment.refund_reserved_minor, 6000)
        self.assertLessEqual(payment.refund_reserved_minor, payment.amount_minor)
        self.assertEqual([x.amount_minor for x in list_refunds(self.session, self.org_id, self.payment.id)], [6000])

    def test_nothing_left_after_full_refund(self):
        issue_refund(self.session, self.org_id, self.payment.id, 10000)
        for amount in (1, 5000):
            with self.subTest(amount=amount):
                with self.assertRaises(ExceedsRefundable):
                    issue_refund(self.session, self.org_id, self.payment.id, amount)
        with self.assertRaises(ExceedsRefundable):
            issue_refund(self.session, self.org_id, self.payment.id)

    def test_default_amount_is_what_remains(self):
        issue_refund(self.session, self.org_id, self.payment.id, 3000)
        rest = issue_refund(self.session, self.org_id, self.payment.id, reason="lesson cancelled")
        self.assertEqual(rest.amount_minor, 7000)
        self.assertEqual(rest.reason, "lesson cancelled")

    def test_confirmed_refund_reopens_invoice(self):
        refund = issue_refund(self.session, self.org_id, self.payment.id, 4000)
        settled = confirm_refund(self.session, self.org_id, refund.id, succeeded=True)
        self.assertEqual(settled.status, "succeeded")
        invoice = get_invoice(self.session, self.org_id, self.invoice.id)
        self.assertEqual(invoice.status, "sent")
        self.assertEqual(invoice.paid_minor, 6000)
        self.assertIsNone(invoice.paid_at)
        self.assertEqual(len(self.session.query(OutboxEvent)
                             .filter(OutboxEvent.event_type == outbox_service.REFUND_SETTLED).all()), 1)

    def test_failed_refund_releases_reservation(self):
        refund = issue_refund(self.session, self.org_id, self.payment.id, 10000)
        failed = confirm_refund(self.session, self.org_id, refund.id, succeeded=False, failure_reason="card closed")
        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.failure_reason, "card closed")
        self.assertEqual(get_payment(self.session, self.org_id, self.payment.id).refund_reserved_minor, 0)
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).status, "paid")

        again = issue_refund(self.session, self.org_id, self.payment.id, 10000)
        self.assertEqual(again.amount_minor, 10000)

    def test_confirm_is_idempotent(self):
        refund = issue_refund(self.session, self.org_id, self.payment.id, 2000)
        confirm_refund(self.session, self.org_id, refund.id, succeeded=True)
        confirm_refund(self.session, self.org_id, refund.id, succeeded=True)
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).paid_minor, 8000)
        with self.assertRaises(InvalidStatusTransition):
            confirm_refund(self.session, self.org_id, refund.id, succeeded=False)

    def test_gateway_that_settles_immediately(self):
        gateway = MockGateway(settle_refunds="succeeded")
        refund = issue_refund(self.session, self.org_id, self.payment.id, 10000, gateway=gateway)
        self.assertEqual(refund.status, "succeeded")
        self.assertTrue(refund.provider_reference.startswith("mock_re_"))
        self.assertEqual(get_invoice(self.session, self.org_id, self.invoice.id).paid_minor, 0)

    def test_gateway_leaves_refund_pending(self):
        refund = issue_refund(self.session, self.org_id, self.payment.id, 500, gateway=MockGateway())
        self.assertEqual(refund.status, "pending")
        self.assertIsNotNone(refund.provider_reference)

    def test_gateway_error_fails_refund(self):
        with self.assertRaises(PaymentGatewayError):
            issue_refund(self.session, self.org_id, self.payment.id, 500, gateway=MockGateway(unavailable=True))
        refunds = list_refunds(self.session, self.org_id, self.payment.id)
        self.assertEqual([x.status for x in refunds], ["failed"])
        self.assertEqual(get_payment(self.session, self.org_id, self.payment.id).refund_reserved_minor, 0)

    def test_unknown_payment(self):
        with self.assertRaises(PaymentNotFound):
            issue_refund(self.session, self.org_id, "missing", 100)


if __name__ == "__main__":
    unittest.main()
