from __future__ import annotations

import logging
import os
import queue
import smtplib
import threading
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Protocol

from services.document_service import render_booking_summary

NOTIFICATION_LOGGER = logging.getLogger("car_rental.notifications")

_SIGNATURE = "\n\nLuxury Car Rental Team"

TEMPLATES: dict[str, dict[str, str]] = {
    "booking_created": {
        "subject": "Booking Created - Luxury Car Rental",
        "body": (
            "Hi {customerName},\n\n"
            "Your booking {bookingNumber} for {vehicleName} has been created. "
            "It is now pending confirmation and payment.\n"
            "From: {startDate} To: {endDate}\n"
            "Deposit: {depositAmount}\n"
            "Total Cost: {totalCost}"
        ),
        "attachment": "booking_summary",
    },
    "booking_confirmed": {
        "subject": "Booking Confirmed - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} for {vehicleName} from {startDate} to {endDate} has been confirmed.\n"
            "Deposit charged: {depositAmount}\n\n"
            "Thank you for choosing us!"
        ),
    },
    "booking_paid": {
        "subject": "Booking Paid - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} has been paid and confirmed.\n"
            "From: {startDate} To: {endDate}\n"
            "Deposit: {depositAmount}\n"
            "Total Cost: {totalCost}\n"
            "Amount charged: {amountPaid}"
        ),
    },
    "booking_payment_failed": {
        "subject": "Payment Failed - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "The payment for booking {bookingNumber} could not be completed because your balance "
            "does not cover {amountDue}. The booking cannot be paid anymore; please contact us "
            "or make a new reservation."
        ),
    },
    "booking_completed": {
        "subject": "Booking Completed - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} has been completed successfully.\n"
            "Total Cost: {totalCost}\n\n"
            "We hope you enjoyed your experience. If you have any feedback, please feel free to contact us."
        ),
    },
    "booking_cancelled": {
        "subject": "Booking Cancelled - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} has been cancelled successfully.\n"
            "Refunded: {refundAmount}\n\n"
            "If you have any questions or wish to make a new reservation, please contact our support team."
        ),
    },
    "booking_rejected": {
        "subject": "Booking Rejected - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "We regret to inform you that your booking {bookingNumber} has been rejected.\n"
            "{reasonLine}"
            "Refunded: {refundAmount}\n\n"
            "If you have any questions or would like to make a new reservation, please contact our support team."
        ),
    },
    "booking_updated": {
        "subject": "Booking Updated - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} has been updated.\n"
            "Vehicle: {vehicleName}\n"
            "From: {startDate} To: {endDate}\n"
            "Total Cost: {totalCost}"
        ),
    },
    "booking_removed": {
        "subject": "Booking Removed - Luxury Car Rental",
        "body": (
            "Dear {customerName},\n\n"
            "Your booking {bookingNumber} has been removed.\n"
            "Refunded: {refundAmount}"
        ),
    },
    "customer_welcome": {
        "subject": "Welcome to Luxury Car Rental!",
        "body": (
            "Hi {firstName},\n\n"
            "Your account has been successfully created.\n"
            "Email: {email}\n"
            "Phone: {phoneNumber}\n"
            "Driving License: {drivingLicenseNumber}"
        ),
    },
    "balance_topped_up": {
        "subject": "Balance Updated - Luxury Car Rental",
        "body": (
            "Hi {firstName},\n\n"
            "{amount} has been added to your account. Your balance is now {balance}."
        ),
    },
}


@dataclass(frozen=True)
class NotificationIntent:
    recipient: str
    template: str
    data: dict[str, Any] = field(default_factory=dict)
    attachment: bytes | None = None


class EmailSender(Protocol):
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: bytes | None = None,
        attachment_name: str | None = None,
    ) -> None: ...


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        use_tls: bool = True,
        timeout: int = 20,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username or "no-reply@localhost"
        self.use_tls = use_tls
        self.timeout = timeout

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: bytes | None = None,
        attachment_name: str | None = None,
    ) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        if attachment:
            message.add_attachment(
                attachment,
                maintype="application",
                subtype="pdf",
                filename=attachment_name or "BookingConfirmation.pdf",
            )

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            if self.use_tls:
                client.starttls()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message)


class LoggingEmailSender:
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: bytes | None = None,
        attachment_name: str | None = None,
    ) -> None:
        NOTIFICATION_LOGGER.info(
            "Mail to %s: %s (%d chars, attachment=%s)",
            recipient,
            subject,
            len(body),
            attachment_name if attachment else None,
        )


def env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def build_email_sender_from_env() -> EmailSender:
    host = (os.environ.get("SMTP_HOST") or "").strip()
    if not host:
        NOTIFICATION_LOGGER.warning("SMTP_HOST is not set; notifications are written to the log only.")
        return LoggingEmailSender()
    return SmtpEmailSender(
        host=host,
        port=int(os.environ.get("SMTP_PORT") or "587"),
        username=(os.environ.get("SMTP_USERNAME") or "").strip() or None,
        password=os.environ.get("SMTP_PASSWORD") or None,
        sender=(os.environ.get("SMTP_SENDER") or "").strip() or None,
        use_tls=env_flag("SMTP_USE_TLS", "true"),
    )


def render_notification(template: str, data: dict[str, Any]) -> tuple[str, str]:
    entry = TEMPLATES.get(template)
    if entry is None:
        raise KeyError(f"Unknown notification template: {template}")
    subject = entry["subject"].format(**data)
    body = entry["body"].format(**data) + _SIGNATURE
    return subject, body


_STOP = object()


class NotificationDispatcher:
    def __init__(self, sender: EmailSender, max_queue_size: int = 200, worker_count: int = 2):
        self.sender = sender
        self._queue: queue.Queue = queue.Queue(maxsize=max(max_queue_size, 1))
        self._worker_count = max(worker_count, 1)
        self._workers: list[threading.Thread] = []
        self._start_lock = threading.Lock()

    def start(self) -> None:
        with self._start_lock:
            if self._workers:
                return
            for index in range(self._worker_count):
                worker = threading.Thread(
                    target=self._run,
                    name=f"notification-worker-{index}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)

    def notify(self, recipient: str | None, template: str, data: dict[str, Any], attachment: bytes | None = None) -> None:
        if not recipient:
            NOTIFICATION_LOGGER.warning("Skipping %s notification without recipient.", template)
            return
        self.start()
        intent = NotificationIntent(recipient=recipient, template=template, data=dict(data), attachment=attachment)
        try:
            self._queue.put_nowait(intent)
        except queue.Full:
            NOTIFICATION_LOGGER.warning("Notification queue full; dropping %s for %s.", template, recipient)

    def dispatch(self, intent: NotificationIntent) -> None:
        self.notify(intent.recipient, intent.template, intent.data, intent.attachment)

    def join(self) -> None:
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            workers = list(self._workers)
            self._workers = []
        deadline = time.monotonic() + timeout
        for _ in workers:
            try:
                self._queue.put(_STOP, timeout=max(deadline - time.monotonic(), 0))
            except queue.Full:
                NOTIFICATION_LOGGER.warning(
                    "Notification queue still full at shutdown; %d pending messages abandoned.",
                    self._queue.qsize(),
                )
                break
        for worker in workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0))

    def _run(self) -> None:
        while True:
            intent = self._queue.get()
            try:
                if intent is _STOP:
                    return
                self._deliver(intent)
            except Exception:
                NOTIFICATION_LOGGER.exception(
                    "Failed to deliver %s notification to %s.", intent.template, intent.recipient
                )
            finally:
                self._queue.task_done()

    def _deliver(self, intent: NotificationIntent) -> None:
        subject, body = render_notification(intent.template, intent.data)
        attachment = intent.attachment
        attachment_name = None
        if attachment is None and TEMPLATES[intent.template].get("attachment") == "booking_summary":
            try:
                attachment = render_booking_summary(intent.data)
            except Exception:
                NOTIFICATION_LOGGER.exception("Could not render booking summary for %s.", intent.recipient)
                attachment = None
        if attachment:
            attachment_name = "BookingConfirmation.pdf"
        self.sender.send(intent.recipient, subject, body, attachment, attachment_name)
        NOTIFICATION_LOGGER.info("Sent %s notification to %s.", intent.template, intent.recipient)
