import os
import sys
import tempfile
import threading
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path


os.environ.setdefault("CAR_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import select

from db.base import Base
from db.session import build_engine, build_session_factory
from models.rental_models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    BOOKING_REJECTED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    VEHICLE_AVAILABLE,
    VEHICLE_UNAVAILABLE,
    AuditLog,
    Booking,
    Customer,
    Vehicle,
    VehicleType,
)
from schemas.bookings import BookingPatch
from services.booking_service import BookingService, _store_errors
from services.errors import Busy, Conflict, InsufficientFunds, InvalidInput, InvalidState, NotFound, Unavailable
from services.lock_service import CUSTOMER


class FakeDispatcher:
    """Records intents together with the booking row visible at dispatch time."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.intents = []
        self.visible_status = []
        self._lock = threading.Lock()

    def dispatch(self, intent):
        status = None
        booking_id = intent.data.get("bookingID")
        if booking_id is not None:
            db = self.session_factory()
            try:
                booking = db.get(Booking, booking_id)
                status = booking.BookingStatus if booking else None
            finally:
                db.close()
        with self._lock:
            self.intents.append(intent)
            self.visible_status.append(status)

    def notify(self, recipient, template, data, attachment=None):
        pass

    def templates(self):
        return [intent.template for intent in self.intents]


class BookingServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite+pysqlite:///{Path(self.tmp.name) / 'rental.db'}")
        Base.metadata.create_all(self.engine)
        self.Session = build_session_factory(self.engine)
        self.dispatcher = FakeDispatcher(self.Session)
        self.service = BookingService(
            self.Session,
            self.dispatcher,
            lock_timeout=2,
            max_attempts=3,
            retry_backoff=0.01,
        )
        self.vehicle_id = self.add_vehicle("ZG-911-P")
        self.customer_id = self.add_customer("ana@example.com", "1000.00")

    def tearDown(self):
        self.engine.dispose()
        self.tmp.cleanup()

    def add_vehicle(self, plate, price="100.00", deposit="200.00"):
        db = self.Session()
        try:
            vehicle_type = VehicleType(Category="Sports", Brand="Porsche", Model="911")
            vehicle = Vehicle(
                VehicleType=vehicle_type,
                LicensePlate=plate,
                DailyRentalPrice=Decimal(price),
                DepositAmount=Decimal(deposit),
                Status=VEHICLE_AVAILABLE,
            )
            db.add(vehicle)
            db.commit()
            return vehicle.VehicleID
        finally:
            db.close()

    def add_customer(self, email, balance):
        db = self.Session()
        try:
            customer = Customer(
                FirstName="Ana",
                LastName="Novak",
                Email=email,
                PhoneNumber=email,
                DrivingLicenseNumber=email,
                Balance=Decimal(balance),
            )
            db.add(customer)
            db.commit()
            return customer.CustomerID
        finally:
            db.close()

    def balance(self, customer_id):
        db = self.Session()
        try:
            return db.get(Customer, customer_id).Balance
        finally:
            db.close()

    def vehicle_status(self, vehicle_id):
        db = self.Session()
        try:
            return db.get(Vehicle, vehicle_id).Status
        finally:
            db.close()

    def audit_actions(self, booking_id):
        db = self.Session()
        try:
            stmt = (
                select(AuditLog.Action)
                .where(AuditLog.EntityType == "Booking")
                .where(AuditLog.EntityID == booking_id)
                .order_by(AuditLog.AuditID)
            )
            return [row[0] for row in db.execute(stmt).all()]
        finally:
            db.close()

    def create(self, customer_id=None, vehicle_id=None, end=date(2025, 3, 3)):
        return self.service.create(
            customer_id or self.customer_id,
            vehicle_id or self.vehicle_id,
            date(2025, 3, 1),
            end,
        )


class WorkflowThroughStoreTests(BookingServiceTestCase):
    def test_create_confirm_complete(self):
        booking = self.create()
        self.assertEqual(booking.BookingNumber, "BKG-00001")
        self.assertEqual(booking.TotalCost, Decimal("300.00"))
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))

        confirmed = self.service.confirm(booking.BookingID)
        self.assertEqual(confirmed.BookingStatus, BOOKING_CONFIRMED)
        self.assertEqual(self.balance(self.customer_id), Decimal("800.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_UNAVAILABLE)

        self.assertIsNone(self.service.complete(booking.BookingID))
        self.assertEqual(self.balance(self.customer_id), Decimal("700.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)
        self.assertEqual(self.service.get_booking(booking.BookingID).BookingStatus, BOOKING_COMPLETED)

        self.assertEqual(self.dispatcher.templates(), ["booking_created", "booking_confirmed", "booking_completed"])
        self.assertEqual(
            self.audit_actions(booking.BookingID),
            ["CreateBooking", "ConfirmBooking", "CompleteBooking"],
        )

    def test_notifications_are_queued_after_commit(self):
        booking = self.create()
        self.service.confirm(booking.BookingID)
        self.service.cancel(booking.BookingID)

        self.assertEqual(self.dispatcher.visible_status, [BOOKING_PENDING, BOOKING_CONFIRMED, BOOKING_CANCELLED])

    def test_failed_confirm_leaves_store_untouched(self):
        poor_id = self.add_customer("poor@example.com", "150.00")
        booking = self.create(customer_id=poor_id)

        with self.assertRaises(InsufficientFunds):
            self.service.confirm(booking.BookingID)

        self.assertEqual(self.balance(poor_id), Decimal("150.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)
        self.assertEqual(self.service.get_booking(booking.BookingID).BookingStatus, BOOKING_PENDING)
        self.assertEqual(self.dispatcher.templates(), ["booking_created"])
        self.assertNotIn("ConfirmBooking", self.audit_actions(booking.BookingID))

    def test_declined_payment_is_persisted_and_notified(self):
        poor_id = self.add_customer("poor@example.com", "400.00")
        booking = self.create(customer_id=poor_id)

        with self.assertRaises(InsufficientFunds):
            self.service.pay(booking.BookingID)

        stored = self.service.get_booking(booking.BookingID)
        self.assertEqual(stored.PaymentStatus, PAYMENT_FAILED)
        self.assertEqual(stored.BookingStatus, BOOKING_PENDING)
        self.assertEqual(self.balance(poor_id), Decimal("400.00"))
        self.assertIn("PaymentFailed", self.audit_actions(booking.BookingID))
        self.assertEqual(self.dispatcher.templates()[-1], "booking_payment_failed")

    def test_pay_then_reject_refunds_everything(self):
        booking = self.create(end=date(2025, 3, 5))
        self.service.pay(booking.BookingID)
        self.assertEqual(self.balance(self.customer_id), Decimal("300.00"))

        rejected = self.service.reject(booking.BookingID, "documents expired")
        self.assertEqual(rejected.BookingStatus, BOOKING_REJECTED)
        self.assertEqual(rejected.PaymentStatus, PAYMENT_REFUNDED)
        self.assertEqual(rejected.Notes, "Rejected: documents expired")
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)

    def test_second_cancel_is_invalid_state(self):
        booking = self.create()
        self.service.confirm(booking.BookingID)
        self.service.cancel(booking.BookingID)

        with self.assertRaises(InvalidState):
            self.service.cancel(booking.BookingID)
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))

    def test_missing_entities_raise_not_found(self):
        with self.assertRaises(NotFound):
            self.service.create(9999, self.vehicle_id, date(2025, 3, 1), date(2025, 3, 2))
        with self.assertRaises(NotFound):
            self.service.get_booking(9999)
        with self.assertRaises(NotFound):
            self.service.confirm(9999)

    def test_list_bookings_filters(self):
        other_customer = self.add_customer("ben@example.com", "500.00")
        first = self.create()
        self.create(customer_id=other_customer)

        self.assertEqual(len(self.service.list_bookings()), 2)
        self.assertEqual(
            [booking.BookingID for booking in self.service.list_bookings(customer_id=self.customer_id)],
            [first.BookingID],
        )
        self.assertEqual(len(self.service.list_bookings(vehicle_id=self.vehicle_id)), 2)


class UpdateRemoveTopUpTests(BookingServiceTestCase):
    def test_reassign_customer_moves_deposit(self):
        other_customer = self.add_customer("ben@example.com", "500.00")
        booking = self.create()
        self.service.confirm(booking.BookingID)

        updated = self.service.update(booking.BookingID, BookingPatch(customerID=other_customer))
        self.assertEqual(updated.CustomerID, other_customer)
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))
        self.assertEqual(self.balance(other_customer), Decimal("300.00"))

    def test_reassign_to_missing_vehicle_is_not_found(self):
        booking = self.create()
        with self.assertRaises(NotFound):
            self.service.update(booking.BookingID, BookingPatch(vehicleID=9999))

    def test_vehicle_swap_to_held_vehicle_is_unavailable(self):
        other_vehicle = self.add_vehicle("ZG-718-C")
        other_customer = self.add_customer("ben@example.com", "500.00")
        holder = self.create(customer_id=other_customer, vehicle_id=other_vehicle)
        self.service.confirm(holder.BookingID)
        booking = self.create()

        with self.assertRaises(Unavailable):
            self.service.update(booking.BookingID, BookingPatch(vehicleID=other_vehicle))
        self.assertEqual(self.service.get_booking(booking.BookingID).VehicleID, self.vehicle_id)

    def test_date_change_recomputes_total(self):
        booking = self.create()
        updated = self.service.update(booking.BookingID, BookingPatch(endDate=date(2025, 3, 10), notes="longer"))
        self.assertEqual(updated.TotalCost, Decimal("1000.00"))
        self.assertEqual(updated.Notes, "longer")

    def test_remove_refunds_and_releases(self):
        booking = self.create()
        self.service.confirm(booking.BookingID)

        self.assertTrue(self.service.remove(booking.BookingID))
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)
        self.assertFalse(self.service.remove(booking.BookingID))
        with self.assertRaises(NotFound):
            self.service.get_booking(booking.BookingID)

    def test_top_up(self):
        customer = self.service.top_up(self.customer_id, Decimal("250.50"))
        self.assertEqual(customer.Balance, Decimal("1250.50"))
        self.assertEqual(self.dispatcher.templates(), ["balance_topped_up"])

        with self.assertRaises(InvalidInput):
            self.service.top_up(self.customer_id, Decimal("0"))
        with self.assertRaises(NotFound):
            self.service.top_up(9999, Decimal("10"))


class ConcurrencyTests(BookingServiceTestCase):
    def _race(self, calls):
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def run(index, call):
            barrier.wait(5)
            try:
                outcomes[index] = call()
            except Exception as exc:
                outcomes[index] = exc

        threads = [threading.Thread(target=run, args=(index, call)) for index, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(20)
        return outcomes

    def test_two_bookings_cannot_both_take_the_vehicle(self):
        other_customer = self.add_customer("ben@example.com", "1000.00")
        first = self.create()
        second = self.create(customer_id=other_customer)

        outcomes = self._race([
            lambda: self.service.confirm(first.BookingID),
            lambda: self.service.confirm(second.BookingID),
        ])

        successes = [item for item in outcomes if isinstance(item, Booking)]
        failures = [item for item in outcomes if isinstance(item, Exception)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], Unavailable)
        total = self.balance(self.customer_id) + self.balance(other_customer)
        self.assertEqual(total, Decimal("1800.00"))

    def test_same_booking_confirmed_once(self):
        booking = self.create()

        outcomes = self._race([lambda: self.service.confirm(booking.BookingID) for _ in range(4)])

        self.assertEqual(sum(isinstance(item, Booking) for item in outcomes), 1)
        self.assertTrue(all(isinstance(item, (Booking, InvalidState)) for item in outcomes))
        self.assertEqual(self.balance(self.customer_id), Decimal("800.00"))

    def test_held_lock_surfaces_busy(self):
        booking = self.create()
        impatient = BookingService(
            self.Session,
            self.dispatcher,
            lock_manager=self.service.locks,
            lock_timeout=0.05,
            max_attempts=2,
            retry_backoff=0.01,
        )

        with self.service.locks.hold([(CUSTOMER, self.customer_id)], timeout=1):
            with self.assertRaises(Busy):
                impatient.confirm(booking.BookingID)

        self.assertEqual(self.service.get_booking(booking.BookingID).BookingStatus, BOOKING_PENDING)
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))

    def test_confirm_losing_to_remove_is_invalid_state(self):
        booking = self.create()
        resolve = self.service._booking_owners

        def resolve_then_lose_race(booking_id):
            owners = resolve(booking_id)
            self.service._booking_owners = resolve
            self.assertTrue(self.service.remove(booking_id))
            return owners

        self.service._booking_owners = resolve_then_lose_race
        with self.assertRaises(InvalidState):
            self.service.confirm(booking.BookingID)

        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)
        with self.assertRaises(NotFound):
            self.service.get_booking(booking.BookingID)

    def test_confirm_racing_remove_leaves_balance_whole(self):
        booking = self.create()

        outcomes = self._race([
            lambda: self.service.confirm(booking.BookingID),
            lambda: self.service.remove(booking.BookingID),
        ])

        self.assertIs(outcomes[1], True)
        self.assertTrue(isinstance(outcomes[0], (Booking, InvalidState, NotFound)), outcomes[0])
        self.assertEqual(self.balance(self.customer_id), Decimal("1000.00"))
        self.assertEqual(self.vehicle_status(self.vehicle_id), VEHICLE_AVAILABLE)

    def test_conflict_is_retried(self):
        calls = []

        def apply(db):
            calls.append(1)
            if len(calls) == 1:
                raise Conflict("changed underneath")
            return "done", []

        self.assertEqual(self.service._run("RetryOnConflict", lambda: [], apply), "done")
        self.assertEqual(len(calls), 2)

    def test_stale_version_maps_to_conflict(self):
        first = self.Session()
        second = self.Session()
        try:
            stale = first.get(Customer, self.customer_id)
            fresh = second.get(Customer, self.customer_id)
            fresh.Balance = Decimal("10.00")
            second.commit()

            stale.Balance = Decimal("20.00")
            with self.assertRaises(Conflict):
                with _store_errors("StaleCommit"):
                    first.commit()
        finally:
            first.rollback()
            first.close()
            second.close()
        self.assertEqual(self.balance(self.customer_id), Decimal("10.00"))


if __name__ == "__main__":
    unittest.main()
