from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import date
from typing import Callable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import Booking, Customer, Vehicle
from services.audit_service import log_audit
from services.booking_workflow import (
    cancel_booking,
    complete_booking,
    confirm_booking,
    create_booking,
    created_notification,
    pay_booking,
    reject_booking,
    remove_booking,
    update_booking,
)
from services.errors import BookingError, Busy, Conflict, InvalidInput, InvalidState, NotFound, StoreFailure
from services.ledger_service import to_money, transfer_balance
from services.lock_service import BOOKING, CUSTOMER, VEHICLE, EntityLockManager
from services.notification_service import NotificationDispatcher, NotificationIntent

BOOKINGS_LOGGER = logging.getLogger("car_rental.bookings")


def booking_number_for(booking_id: int) -> str:
    return f"BKG-{booking_id:05d}"


def serialize_booking(booking: Booking) -> dict:
    return {
        "bookingID": booking.BookingID,
        "bookingNumber": booking.BookingNumber,
        "vehicleID": booking.VehicleID,
        "customerID": booking.CustomerID,
        "startDate": booking.StartDate,
        "endDate": booking.EndDate,
        "dailyRate": booking.DailyRate,
        "totalCost": booking.TotalCost,
        "depositAmount": booking.DepositAmount,
        "amountPaid": booking.AmountPaid,
        "bookingStatus": booking.BookingStatus,
        "paymentStatus": booking.PaymentStatus,
        "notes": booking.Notes,
        "createdDate": booking.CreatedDate,
        "updatedDate": booking.UpdatedDate,
    }


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "locked" in message or "lock wait timeout" in message or "deadlock" in message


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except StaleDataError as exc:
        raise Conflict(f"{action}: entity changed concurrently.") from exc
    except OperationalError as exc:
        if _is_lock_error(exc):
            raise Busy(f"{action}: store is busy.") from exc
        raise StoreFailure(f"{action}: store failure.") from exc
    except SQLAlchemyError as exc:
        raise StoreFailure(f"{action}: store failure.") from exc


class BookingService:
    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        lock_manager: EntityLockManager | None = None,
        lock_timeout: float = 5.0,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.locks = lock_manager or EntityLockManager()
        self.lock_timeout = lock_timeout
        self.max_attempts = max(max_attempts, 1)
        self.retry_backoff = retry_backoff

    # ---- queries ----

    def get_booking(self, booking_id: int) -> Booking:
        with self._read_session("GetBooking") as db:
            booking = db.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def list_bookings(self, customer_id: int | None = None, vehicle_id: int | None = None) -> list[Booking]:
        stmt = select(Booking).order_by(Booking.BookingID)
        if customer_id is not None:
            stmt = stmt.where(Booking.CustomerID == customer_id)
        if vehicle_id is not None:
            stmt = stmt.where(Booking.VehicleID == vehicle_id)
        with self._read_session("ListBookings") as db:
            return list(db.execute(stmt).scalars().all())

    # ---- workflow operations ----

    def create(
        self,
        customer_id: int,
        vehicle_id: int,
        start_date: date | None,
        end_date: date | None,
        notes: str | None = None,
    ) -> Booking:
        def resolve() -> list:
            return [(CUSTOMER, customer_id), (VEHICLE, vehicle_id)]

        def apply(db: Session):
            customer = db.get(Customer, customer_id)
            if customer is None:
                raise NotFound("Customer does not exist")
            vehicle = db.get(Vehicle, vehicle_id)
            if vehicle is None:
                raise NotFound("Vehicle does not exist")

            booking = create_booking(customer, vehicle, start_date, end_date, "TEMP", notes)
            db.add(booking)
            db.flush()
            booking.BookingNumber = booking_number_for(booking.BookingID)
            log_audit(
                db,
                "Booking",
                booking.BookingID,
                "CreateBooking",
                f"Vehicle {vehicle_id} for customer {customer_id}, {start_date} to {end_date}, total {booking.TotalCost}",
            )
            return booking, created_notification(booking, vehicle, customer)

        return self._run("CreateBooking", resolve, apply)

    def confirm(self, booking_id: int) -> Booking:
        def step(db, booking, vehicle, customer):
            intents = confirm_booking(booking, vehicle, customer)
            log_audit(db, "Booking", booking_id, "ConfirmBooking", f"Deposit {booking.DepositAmount} charged")
            return booking, intents

        return self._run_on_booking("ConfirmBooking", booking_id, step)

    def pay(self, booking_id: int) -> Booking:
        def step(db, booking, vehicle, customer):
            try:
                intents = pay_booking(booking, vehicle, customer)
            except BookingError as exc:
                if exc.record_failure:
                    log_audit(db, "Booking", booking_id, "PaymentFailed", exc.message)
                raise
            log_audit(db, "Booking", booking_id, "PayBooking", f"Charged {booking.AmountPaid}")
            return booking, intents

        return self._run_on_booking("PayBooking", booking_id, step)

    def complete(self, booking_id: int) -> None:
        def step(db, booking, vehicle, customer):
            intents = complete_booking(booking, vehicle, customer)
            log_audit(db, "Booking", booking_id, "CompleteBooking", f"Settled at {booking.AmountPaid}")
            return None, intents

        self._run_on_booking("CompleteBooking", booking_id, step)

    def cancel(self, booking_id: int) -> None:
        def step(db, booking, vehicle, customer):
            intents = cancel_booking(booking, vehicle, customer)
            log_audit(db, "Booking", booking_id, "CancelBooking", "Booking cancelled")
            return None, intents

        self._run_on_booking("CancelBooking", booking_id, step)

    def reject(self, booking_id: int, reason: str | None = None) -> Booking:
        def step(db, booking, vehicle, customer):
            intents = reject_booking(booking, vehicle, customer, reason)
            log_audit(db, "Booking", booking_id, "RejectBooking", reason or None)
            return booking, intents

        return self._run_on_booking("RejectBooking", booking_id, step)

    def update(self, booking_id: int, patch) -> Booking:
        extra_keys = []
        if patch.customerID is not None:
            extra_keys.append((CUSTOMER, patch.customerID))
        if patch.vehicleID is not None:
            extra_keys.append((VEHICLE, patch.vehicleID))

        def step(db, booking, vehicle, customer):
            new_vehicle = None
            new_customer = None
            if patch.vehicleID is not None and patch.vehicleID != vehicle.VehicleID:
                new_vehicle = db.get(Vehicle, patch.vehicleID)
                if new_vehicle is None:
                    raise NotFound("New vehicle does not exist")
            if patch.customerID is not None and patch.customerID != customer.CustomerID:
                new_customer = db.get(Customer, patch.customerID)
                if new_customer is None:
                    raise NotFound("New customer does not exist")
            intents = update_booking(booking, patch, vehicle, customer, new_vehicle, new_customer)
            log_audit(
                db,
                "Booking",
                booking_id,
                "UpdateBooking",
                f"vehicle={booking.VehicleID} customer={booking.CustomerID} {booking.StartDate}..{booking.EndDate}",
            )
            return booking, intents

        return self._run_on_booking("UpdateBooking", booking_id, step, extra_keys)

    def remove(self, booking_id: int) -> bool:
        def step(db, booking, vehicle, customer):
            intents = remove_booking(booking, vehicle, customer)
            db.delete(booking)
            log_audit(db, "Booking", booking_id, "RemoveBooking", f"Removed in status {booking.BookingStatus}")
            return True, intents

        try:
            return self._run_on_booking("RemoveBooking", booking_id, step, vanished=NotFound)
        except NotFound:
            return False

    def top_up(self, customer_id: int, amount) -> Customer:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidInput("Top-up amount must be positive.")

        def resolve() -> list:
            return [(CUSTOMER, customer_id)]

        def apply(db: Session):
            customer = db.get(Customer, customer_id)
            if customer is None:
                raise NotFound("Customer not found")
            balance = transfer_balance(customer, amount)
            log_audit(db, "Customer", customer_id, "TopUp", f"+{amount} -> {balance}")
            intent = NotificationIntent(
                recipient=customer.Email,
                template="balance_topped_up",
                data={"firstName": customer.FirstName, "amount": str(amount), "balance": str(balance)},
            )
            return customer, [intent]

        return self._run("TopUp", resolve, apply)

    # ---- plumbing ----

    @contextmanager
    def _read_session(self, action: str) -> Iterator[Session]:
        db = self.session_factory()
        try:
            with _store_errors(action):
                yield db
        finally:
            db.close()

    def _booking_owners(self, booking_id: int) -> tuple[int, int]:
        stmt = select(Booking.CustomerID, Booking.VehicleID).where(Booking.BookingID == booking_id)
        with self._read_session("ResolveBooking") as db:
            row = db.execute(stmt).first()
        if row is None:
            raise NotFound("Booking not found")
        return row[0], row[1]

    def _run_on_booking(
        self,
        action: str,
        booking_id: int,
        step: Callable,
        extra_keys=(),
        vanished: type[BookingError] = InvalidState,
    ):
        owners: dict[str, int] = {}

        def resolve() -> list:
            customer_id, vehicle_id = self._booking_owners(booking_id)
            owners["customer"] = customer_id
            owners["vehicle"] = vehicle_id
            return [(CUSTOMER, customer_id), (VEHICLE, vehicle_id), (BOOKING, booking_id), *extra_keys]

        def apply(db: Session):
            booking = db.get(Booking, booking_id)
            if booking is None:
                # Removed by whoever held the lock before us.
                raise vanished(f"{action}: booking {booking_id} was removed.")
            if booking.CustomerID != owners["customer"] or booking.VehicleID != owners["vehicle"]:
                raise Conflict(f"{action}: booking {booking_id} was reassigned while waiting.")
            vehicle = db.get(Vehicle, booking.VehicleID)
            customer = db.get(Customer, booking.CustomerID)
            if vehicle is None or customer is None:
                raise StoreFailure(f"Booking {booking_id} references a missing vehicle or customer.")
            return step(db, booking, vehicle, customer)

        return self._run(action, resolve, apply)

    def _run(self, action: str, resolve: Callable[[], list], apply: Callable):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(action, resolve, apply)
            except (Busy, Conflict) as exc:
                if attempt >= self.max_attempts:
                    BOOKINGS_LOGGER.warning("%s gave up after %d attempts: %s", action, attempt, exc)
                    raise Busy(f"{action} is busy, please retry.") from exc
                delay = self.retry_backoff * (2 ** (attempt - 1))
                BOOKINGS_LOGGER.info("%s attempt %d failed (%s); retrying in %.3fs", action, attempt, exc, delay)
                time.sleep(delay)
        raise Busy(f"{action} is busy, please retry.")

    def _attempt(self, action: str, resolve: Callable[[], list], apply: Callable):
        keys = resolve()
        failure: BookingError | None = None
        result = None
        with self.locks.hold(keys, self.lock_timeout):
            db = self.session_factory()
            try:
                try:
                    with _store_errors(action):
                        result, intents = apply(db)
                except BookingError as exc:
                    if not exc.record_failure:
                        raise
                    failure = exc
                    intents = exc.intents
                with _store_errors(action):
                    db.commit()
            except BaseException:
                db.rollback()
                raise
            finally:
                db.close()

        if failure is not None:
            BOOKINGS_LOGGER.info("%s recorded failure: %s", action, failure.message)
        else:
            BOOKINGS_LOGGER.info("%s committed for %s", action, keys)
        self._queue(intents)
        if failure is not None:
            raise failure
        return result

    def _queue(self, intents: list[NotificationIntent]) -> None:
        for intent in intents:
            try:
                self.dispatcher.dispatch(intent)
            except Exception:
                BOOKINGS_LOGGER.exception("Could not queue %s notification.", intent.template)
