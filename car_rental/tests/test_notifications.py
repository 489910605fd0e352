import os
import sys
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch


os.environ.setdefault("CAR_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.document_service import render_booking_summary
from services.notification_service import (
    NotificationDispatcher,
    NotificationIntent,
    env_flag,
    render_notification,
)


BOOKING_DATA = {
    "bookingID": 1,
    "bookingNumber": "BKG-00001",
    "customerName": "Ana Novak",
    "customerEmail": "ana@example.com",
    "customerPhone": "+385 91 000 000",
    "billingAddress": "Ilica 1, Zagreb",
    "drivingLicense": "DL-1",
    "vehicleName": "Porsche 911",
    "vehicleCategory": "Sports",
    "vehicleColor": "Black",
    "licensePlate": "ZG-911-P",
    "vin": "WP0ZZZ99ZTS392124",
    "startDate": "2025-03-01",
    "endDate": "2025-03-03",
    "dailyRate": "100.00",
    "depositAmount": "200.00",
    "totalCost": "300.00",
    "amountPaid": "0.00",
    "bookingStatus": "PENDING",
    "paymentStatus": "PENDING",
}


class RecordingSender:
    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = fail_for
        self._lock = threading.Lock()

    def send(self, recipient, subject, body, attachment=None, attachment_name=None):
        if recipient == self.fail_for:
            raise ConnectionError("smtp down")
        with self._lock:
            self.sent.append((recipient, subject, body, attachment, attachment_name))


class BlockingSender(RecordingSender):
    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.entered = threading.Event()

    def send(self, recipient, subject, body, attachment=None, attachment_name=None):
        self.entered.set()
        self.gate.wait(5)
        super().send(recipient, subject, body, attachment, attachment_name)


class RenderTests(unittest.TestCase):
    def test_render_booking_confirmed(self):
        subject, body = render_notification("booking_confirmed", BOOKING_DATA)
        self.assertIn("BKG-00001", subject + body)
        self.assertIn("Ana Novak", body)

    def test_unknown_template_raises(self):
        with self.assertRaises(KeyError):
            render_notification("no_such_template", {})

    def test_booking_summary_is_pdf(self):
        document = render_booking_summary(BOOKING_DATA)
        self.assertTrue(document.startswith(b"%PDF"))


class NotificationDispatcherTests(unittest.TestCase):
    def test_created_notification_carries_pdf_attachment(self):
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(sender, max_queue_size=10, worker_count=1)
        try:
            dispatcher.dispatch(NotificationIntent("ana@example.com", "booking_created", dict(BOOKING_DATA)))
            dispatcher.join()
        finally:
            dispatcher.stop()

        self.assertEqual(len(sender.sent), 1)
        recipient, _subject, _body, attachment, attachment_name = sender.sent[0]
        self.assertEqual(recipient, "ana@example.com")
        self.assertTrue(attachment.startswith(b"%PDF"))
        self.assertEqual(attachment_name, "BookingConfirmation.pdf")

    def test_delivery_failure_does_not_stop_workers(self):
        sender = RecordingSender(fail_for="broken@example.com")
        dispatcher = NotificationDispatcher(sender, max_queue_size=10, worker_count=1)
        try:
            dispatcher.notify("broken@example.com", "booking_cancelled", dict(BOOKING_DATA, refundAmount="0.00"))
            dispatcher.notify("ana@example.com", "booking_cancelled", dict(BOOKING_DATA, refundAmount="0.00"))
            dispatcher.join()
        finally:
            dispatcher.stop()

        self.assertEqual([item[0] for item in sender.sent], ["ana@example.com"])

    def test_missing_recipient_is_skipped(self):
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(sender, max_queue_size=10, worker_count=1)
        try:
            dispatcher.notify(None, "booking_confirmed", dict(BOOKING_DATA))
            dispatcher.join()
        finally:
            dispatcher.stop()
        self.assertEqual(sender.sent, [])

    def test_full_queue_drops_instead_of_blocking(self):
        sender = BlockingSender()
        dispatcher = NotificationDispatcher(sender, max_queue_size=1, worker_count=1)
        try:
            for index in range(5):
                dispatcher.notify(f"user{index}@example.com", "booking_confirmed", dict(BOOKING_DATA))
            sender.gate.set()
            dispatcher.join()
        finally:
            dispatcher.stop()

        self.assertGreaterEqual(len(sender.sent), 1)
        self.assertLess(len(sender.sent), 5)

    def test_stop_gives_up_when_queue_stays_full(self):
        sender = BlockingSender()
        dispatcher = NotificationDispatcher(sender, max_queue_size=1, worker_count=1)
        dispatcher.notify("user0@example.com", "booking_confirmed", dict(BOOKING_DATA))
        self.assertTrue(sender.entered.wait(2))
        dispatcher.notify("user1@example.com", "booking_confirmed", dict(BOOKING_DATA))

        started = time.monotonic()
        with self.assertLogs("car_rental.notifications", level="WARNING") as logs:
            dispatcher.stop(timeout=0.2)
        elapsed = time.monotonic() - started
        sender.gate.set()

        self.assertLess(elapsed, 2)
        self.assertTrue(any("still full at shutdown" in line for line in logs.output))


class EnvFlagTests(unittest.TestCase):
    def test_truthy_and_falsy_values(self):
        with patch.dict(os.environ, {"CAR_RENTAL_TEST_FLAG": " Yes "}):
            self.assertTrue(env_flag("CAR_RENTAL_TEST_FLAG", "false"))
        with patch.dict(os.environ, {"CAR_RENTAL_TEST_FLAG": "0"}):
            self.assertFalse(env_flag("CAR_RENTAL_TEST_FLAG", "true"))
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("CAR_RENTAL_TEST_FLAG", None)
            self.assertTrue(env_flag("CAR_RENTAL_TEST_FLAG", "on"))


if __name__ == "__main__":
    unittest.main()
