from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from models.rental_models import VEHICLE_AVAILABLE, VEHICLE_UNAVAILABLE, Booking, Customer, Vehicle
from services.errors import InsufficientFunds

LEDGER_LOGGER = logging.getLogger("car_rental.ledger")

_CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def can_cover(customer: Customer, amount) -> bool:
    return to_money(customer.Balance) >= to_money(amount)


def transfer_balance(customer: Customer, amount) -> Decimal:
    """Move ``amount`` into the customer's balance (negative charges it).

    Raises InsufficientFunds without touching the customer when the
    resulting balance would go negative.
    """
    delta = to_money(amount)
    current = to_money(customer.Balance)
    if delta == 0:
        return current
    updated = current + delta
    if updated < 0:
        raise InsufficientFunds(
            f"Customer {customer.CustomerID} balance {current} cannot cover {-delta}."
        )
    customer.Balance = updated
    LEDGER_LOGGER.debug("Customer %s balance %s -> %s", customer.CustomerID, current, updated)
    return updated


def set_vehicle_availability(vehicle: Vehicle, available: bool) -> None:
    target = VEHICLE_AVAILABLE if available else VEHICLE_UNAVAILABLE
    if vehicle.Status == target:
        return
    LEDGER_LOGGER.debug("Vehicle %s status %s -> %s", vehicle.VehicleID, vehicle.Status, target)
    vehicle.Status = target


def charge_for_booking(booking: Booking, customer: Customer, amount) -> None:
    transfer_balance(customer, -to_money(amount))
    booking.AmountPaid = to_money(booking.AmountPaid) + to_money(amount)


def refund_booking(booking: Booking, customer: Customer) -> Decimal:
    refund = to_money(booking.AmountPaid)
    if refund <= 0:
        return Decimal("0.00")
    transfer_balance(customer, refund)
    booking.AmountPaid = Decimal("0.00")
    return refund
