from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from models.rental_models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    BOOKING_REJECTED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCESSFUL,
    VEHICLE_AVAILABLE,
    Booking,
    Customer,
    Vehicle,
)
from services.errors import InsufficientFunds, InvalidInput, InvalidState, Unavailable
from services.ledger_service import (
    can_cover,
    charge_for_booking,
    refund_booking,
    set_vehicle_availability,
    to_money,
    transfer_balance,
)
from services.notification_service import NotificationIntent

TERMINAL_STATES = {BOOKING_COMPLETED, BOOKING_CANCELLED, BOOKING_REJECTED}
ACTIVE_STATES = {BOOKING_PENDING, BOOKING_CONFIRMED}
STATE_TRANSITIONS = {
    BOOKING_PENDING: {BOOKING_CONFIRMED, BOOKING_CANCELLED, BOOKING_REJECTED},
    BOOKING_CONFIRMED: {BOOKING_COMPLETED, BOOKING_CANCELLED, BOOKING_REJECTED},
    BOOKING_COMPLETED: set(),
    BOOKING_CANCELLED: set(),
    BOOKING_REJECTED: set(),
}
PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_SUCCESSFUL, PAYMENT_FAILED},
    PAYMENT_SUCCESSFUL: {PAYMENT_REFUNDED},
    PAYMENT_FAILED: set(),
    PAYMENT_REFUNDED: set(),
}


class PaymentDeclined(InsufficientFunds):
    """Insufficient funds at pay time; the FAILED payment status is kept."""

    record_failure = True


def rental_days(start_date: date, end_date: date) -> int:
    return (end_date - start_date).days + 1


def calculate_total_cost(daily_rate, start_date: date, end_date: date) -> Decimal:
    return to_money(to_money(daily_rate) * rental_days(start_date, end_date))


def validate_dates(start_date: date | None, end_date: date | None) -> None:
    if start_date is None or end_date is None:
        raise InvalidInput("Start date and end date are required.")
    if end_date < start_date:
        raise InvalidInput("endDate must be on or after startDate.")


def holds_vehicle(booking: Booking) -> bool:
    return booking.BookingStatus == BOOKING_CONFIRMED


def _transition_state(booking: Booking, target_state: str) -> None:
    current = booking.BookingStatus
    if target_state not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Invalid booking transition: {current} -> {target_state}")
    booking.BookingStatus = target_state
    booking.UpdatedDate = datetime.now()


def _transition_payment(booking: Booking, target_state: str) -> None:
    current = booking.PaymentStatus
    if target_state not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Invalid payment transition: {current} -> {target_state}")
    booking.PaymentStatus = target_state


def _require_state(booking: Booking, allowed: set[str], action: str) -> None:
    if booking.BookingStatus not in allowed:
        raise InvalidState(f"Cannot {action} a booking in status {booking.BookingStatus}.")


def _require_payable(booking: Booking, vehicle: Vehicle, action: str) -> None:
    _require_state(booking, {BOOKING_PENDING}, action)
    if booking.PaymentStatus != PAYMENT_PENDING:
        raise InvalidState(f"Cannot {action} a booking with payment status {booking.PaymentStatus}.")
    if vehicle.Status != VEHICLE_AVAILABLE:
        raise Unavailable(f"Vehicle {vehicle.VehicleID} is not available.")


def vehicle_display_name(vehicle: Vehicle) -> str:
    vehicle_type = vehicle.VehicleType
    if vehicle_type is not None:
        return f"{vehicle_type.Brand} {vehicle_type.Model}"
    return vehicle.LicensePlate or f"Vehicle #{vehicle.VehicleID}"


def booking_notification_data(booking: Booking, vehicle: Vehicle, customer: Customer, **extra) -> dict:
    vehicle_type = vehicle.VehicleType
    data = {
        "bookingID": booking.BookingID,
        "bookingNumber": booking.BookingNumber,
        "customerName": f"{customer.FirstName} {customer.LastName}",
        "customerEmail": customer.Email,
        "customerPhone": customer.PhoneNumber,
        "billingAddress": customer.BillingAddress,
        "drivingLicense": customer.DrivingLicenseNumber,
        "vehicleName": vehicle_display_name(vehicle),
        "vehicleCategory": vehicle_type.Category if vehicle_type is not None else None,
        "vehicleColor": vehicle.Color,
        "licensePlate": vehicle.LicensePlate,
        "vin": vehicle.Vin,
        "startDate": booking.StartDate.isoformat() if booking.StartDate else None,
        "endDate": booking.EndDate.isoformat() if booking.EndDate else None,
        "dailyRate": str(to_money(booking.DailyRate)),
        "depositAmount": str(to_money(booking.DepositAmount)),
        "totalCost": str(to_money(booking.TotalCost)),
        "amountPaid": str(to_money(booking.AmountPaid)),
        "bookingStatus": booking.BookingStatus,
        "paymentStatus": booking.PaymentStatus,
    }
    data.update(extra)
    return data


def _intent(template: str, booking: Booking, vehicle: Vehicle, customer: Customer, **extra) -> NotificationIntent:
    return NotificationIntent(
        recipient=customer.Email,
        template=template,
        data=booking_notification_data(booking, vehicle, customer, **extra),
    )


def create_booking(
    customer: Customer,
    vehicle: Vehicle,
    start_date: date | None,
    end_date: date | None,
    booking_number: str,
    notes: str | None = None,
) -> Booking:
    validate_dates(start_date, end_date)
    if vehicle.Status != VEHICLE_AVAILABLE:
        raise Unavailable(f"Vehicle {vehicle.VehicleID} is not available.")

    now = datetime.now()
    daily_rate = to_money(vehicle.DailyRentalPrice)
    return Booking(
        BookingNumber=booking_number,
        VehicleID=vehicle.VehicleID,
        CustomerID=customer.CustomerID,
        StartDate=start_date,
        EndDate=end_date,
        DailyRate=daily_rate,
        TotalCost=calculate_total_cost(daily_rate, start_date, end_date),
        DepositAmount=to_money(vehicle.DepositAmount),
        AmountPaid=Decimal("0.00"),
        BookingStatus=BOOKING_PENDING,
        PaymentStatus=PAYMENT_PENDING,
        Notes=notes,
        CreatedDate=now,
        UpdatedDate=now,
    )


def created_notification(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    return [_intent("booking_created", booking, vehicle, customer)]


def confirm_booking(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    _require_payable(booking, vehicle, "confirm")
    deposit = to_money(booking.DepositAmount)
    if not can_cover(customer, deposit):
        raise InsufficientFunds("Insufficient balance for deposit.")

    charge_for_booking(booking, customer, deposit)
    set_vehicle_availability(vehicle, False)
    _transition_state(booking, BOOKING_CONFIRMED)
    _transition_payment(booking, PAYMENT_SUCCESSFUL)
    return [_intent("booking_confirmed", booking, vehicle, customer)]


def pay_booking(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    _require_payable(booking, vehicle, "pay for")
    amount = to_money(booking.DepositAmount) + to_money(booking.TotalCost)
    if not can_cover(customer, amount):
        _transition_payment(booking, PAYMENT_FAILED)
        booking.UpdatedDate = datetime.now()
        declined = PaymentDeclined("Insufficient balance.")
        declined.intents = [_intent("booking_payment_failed", booking, vehicle, customer, amountDue=str(amount))]
        raise declined

    charge_for_booking(booking, customer, amount)
    set_vehicle_availability(vehicle, False)
    _transition_state(booking, BOOKING_CONFIRMED)
    _transition_payment(booking, PAYMENT_SUCCESSFUL)
    return [_intent("booking_paid", booking, vehicle, customer)]


def complete_booking(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    _require_state(booking, {BOOKING_CONFIRMED}, "complete")
    # Settle to the rental cost: the deposit-only path owes the rest, a prepaid booking gets the excess back.
    remaining = to_money(booking.TotalCost) - to_money(booking.AmountPaid)
    if remaining > 0 and not can_cover(customer, remaining):
        raise InsufficientFunds("Insufficient balance to complete booking.")

    if remaining > 0:
        charge_for_booking(booking, customer, remaining)
    elif remaining < 0:
        transfer_balance(customer, -remaining)
        booking.AmountPaid = to_money(booking.AmountPaid) + remaining
    set_vehicle_availability(vehicle, True)
    _transition_state(booking, BOOKING_COMPLETED)
    return [_intent("booking_completed", booking, vehicle, customer)]


def cancel_booking(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    _require_state(booking, ACTIVE_STATES, "cancel")
    held = holds_vehicle(booking)

    refund = refund_booking(booking, customer)
    if booking.PaymentStatus == PAYMENT_SUCCESSFUL:
        _transition_payment(booking, PAYMENT_REFUNDED)
    if held:
        set_vehicle_availability(vehicle, True)
    _transition_state(booking, BOOKING_CANCELLED)
    return [_intent("booking_cancelled", booking, vehicle, customer, refundAmount=str(refund))]


def reject_booking(
    booking: Booking,
    vehicle: Vehicle,
    customer: Customer,
    reason: str | None = None,
) -> list[NotificationIntent]:
    if booking.BookingStatus in TERMINAL_STATES:
        raise InvalidState(f"Booking already {booking.BookingStatus.lower()}.")
    held = holds_vehicle(booking)

    refund = Decimal("0.00")
    if booking.PaymentStatus == PAYMENT_SUCCESSFUL:
        refund = refund_booking(booking, customer)
        _transition_payment(booking, PAYMENT_REFUNDED)
    if held:
        set_vehicle_availability(vehicle, True)
    _transition_state(booking, BOOKING_REJECTED)

    reason = (reason or "").strip()
    if reason:
        booking.Notes = (booking.Notes + "\n" if booking.Notes else "") + f"Rejected: {reason}"
    return [
        _intent(
            "booking_rejected",
            booking,
            vehicle,
            customer,
            refundAmount=str(refund),
            reasonLine=f"Reason: {reason}\n" if reason else "",
        )
    ]


def update_booking(
    booking: Booking,
    patch,
    vehicle: Vehicle,
    customer: Customer,
    new_vehicle: Vehicle | None = None,
    new_customer: Customer | None = None,
) -> list[NotificationIntent]:
    """Apply an explicit patch to an active booking.

    All checks run before the first mutation. A customer change moves the
    money captured for the booking: the new customer is checked first, then
    the old customer is refunded and the new one charged.
    """
    _require_state(booking, ACTIVE_STATES, "update")
    start_date = patch.startDate if patch.startDate is not None else booking.StartDate
    end_date = patch.endDate if patch.endDate is not None else booking.EndDate
    validate_dates(start_date, end_date)

    swap_vehicle = new_vehicle is not None and new_vehicle.VehicleID != vehicle.VehicleID
    swap_customer = new_customer is not None and new_customer.CustomerID != customer.CustomerID
    if swap_vehicle and new_vehicle.Status != VEHICLE_AVAILABLE:
        raise Unavailable(f"Vehicle {new_vehicle.VehicleID} is not available.")
    held_amount = to_money(booking.AmountPaid)
    if swap_customer and not can_cover(new_customer, held_amount):
        raise InsufficientFunds("New customer has insufficient balance.")

    if swap_vehicle:
        if holds_vehicle(booking):
            set_vehicle_availability(vehicle, True)
            set_vehicle_availability(new_vehicle, False)
        booking.VehicleID = new_vehicle.VehicleID
        vehicle = new_vehicle
    if swap_customer:
        transfer_balance(customer, held_amount)
        transfer_balance(new_customer, -held_amount)
        booking.CustomerID = new_customer.CustomerID
        customer = new_customer

    booking.StartDate = start_date
    booking.EndDate = end_date
    booking.TotalCost = calculate_total_cost(booking.DailyRate, start_date, end_date)
    if patch.notes is not None:
        booking.Notes = patch.notes
    booking.UpdatedDate = datetime.now()
    return [_intent("booking_updated", booking, vehicle, customer)]


def remove_booking(booking: Booking, vehicle: Vehicle, customer: Customer) -> list[NotificationIntent]:
    refund = Decimal("0.00")
    if booking.BookingStatus in ACTIVE_STATES:
        held = holds_vehicle(booking)
        refund = refund_booking(booking, customer)
        if held:
            set_vehicle_availability(vehicle, True)
    return [_intent("booking_removed", booking, vehicle, customer, refundAmount=str(refund))]
