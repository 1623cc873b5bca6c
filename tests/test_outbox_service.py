import unittest
from unittest import mock

import requests

from tuitionbill import outbox_service
from tuitionbill.models.outbox import OutboxEvent
from tuitionbill.notifier import LogNotifier, NotifierError, WebhookNotifier, build_notifier
from tests.support import BillingDBMixin


class _RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, event_type, payload):
        if self.fail:
            raise NotifierError("receiver down")
        self.sent.append((event_type, payload))


class OutboxDispatchTestCase(BillingDBMixin, unittest.TestCase):
    def _enqueue(self, event_type=outbox_service.INVOICE_CREATED, payload=None):
        row = outbox_service.enqueue(self.session, self.org_id, event_type, payload or {"invoice_id": "inv_1"},
                                     ref_id="inv_1")
        self.session.commit()
        return row

    def test_enqueue_does_not_commit(self):
        outbox_service.enqueue(self.session, self.org_id, outbox_service.CREDIT_ISSUED, {"credit_id": "c1"})
        self.session.rollback()
        self.assertEqual(self.session.query(OutboxEvent).count(), 0)

    def test_dispatch_delivers_in_order(self):
        self._enqueue(outbox_service.INVOICE_CREATED, {"n": 1})
        self._enqueue(outbox_service.INVOICE_PAID, {"n": 2})
        notifier = _RecordingNotifier()

        result = outbox_service.dispatch_pending(self.session, notifier)
        self.assertEqual(result, {"delivered": 2, "failed": 0})
        self.assertEqual([x[0] for x in notifier.sent], ["invoice.created", "invoice.paid"])
        self.assertEqual(notifier.sent[1][1], {"n": 2})

        self.assertEqual(outbox_service.dispatch_pending(self.session, notifier), {"delivered": 0, "failed": 0})
        rows = self.session.query(OutboxEvent).all()
        self.assertTrue(all(x.status == "delivered" and x.delivered_at for x in rows))

    def test_failures_are_retried_until_max_attempts(self):
        self.override_config("outbox.max_attempts", 2)
        row = self._enqueue()
        notifier = _RecordingNotifier(fail=True)

        self.assertEqual(outbox_service.dispatch_pending(self.session, notifier)["failed"], 1)
        self.session.refresh(row)
        self.assertEqual(row.status, "pending")
        self.assertEqual(row.attempts, 1)
        self.assertIn("receiver down", row.last_error)

        outbox_service.dispatch_pending(self.session, notifier)
        self.session.refresh(row)
        self.assertEqual(row.status, "failed")
        self.assertEqual(row.attempts, 2)
        self.assertEqual(outbox_service.list_pending(self.session), [])


class NotifierTestCase(unittest.TestCase):
    def test_webhook_posts_event(self):
        http = mock.Mock()
        http.post.return_value = mock.Mock(status_code=204, text="")
        WebhookNotifier("https://hooks.example.com/billing", timeout=3, session=http).send(
            "invoice.paid", {"invoice_id": "inv_1"})
        http.post.assert_called_once_with(
            "https://hooks.example.com/billing",
            json={"event": "invoice.paid", "data": {"invoice_id": "inv_1"}},
            timeout=3,
        )

    def test_webhook_error_status(self):
        http = mock.Mock()
        http.post.return_value = mock.Mock(status_code=500, text="boom")
        with self.assertRaises(NotifierError):
            WebhookNotifier("https://hooks.example.com/billing", session=http).send("invoice.paid", {})

    def test_webhook_connection_error(self):
        http = mock.Mock()
        http.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(NotifierError):
            WebhookNotifier("https://hooks.example.com/billing", session=http).send("invoice.paid", {})

    def test_build_notifier_defaults_to_log(self):
        values = {"notifier.webhook_url": "", "notifier.timeout_seconds": 5}
        with mock.patch("tuitionbill.notifier.cfg.get", side_effect=lambda key, default=None: values.get(key, default)):
            self.assertIsInstance(build_notifier(), LogNotifier)
            values["notifier.webhook_url"] = "https://hooks.example.com/billing"
            self.assertIsInstance(build_notifier(), WebhookNotifier)


if __name__ == "__main__":
    unittest.main()
