from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import VEHICLE_STATUSES, Booking, Customer, Vehicle, VehicleType
from schemas.fleet import CustomerUpsert, VehicleTypeUpsert, VehicleUpsert
from services.ledger_service import to_money

_VEHICLE_TYPE_FIELDS = {
    "category": "Category",
    "brand": "Brand",
    "model": "Model",
    "engine": "Engine",
    "power": "Power",
    "maxSpeed": "MaxSpeed",
    "acceleration": "Acceleration",
    "weight": "Weight",
    "driveType": "DriveType",
    "transmission": "Transmission",
    "seats": "Seats",
    "description": "Description",
}

_VEHICLE_FIELDS = {
    "vehicleTypeID": "VehicleTypeID",
    "licensePlate": "LicensePlate",
    "imageUrl": "ImageUrl",
    "registrationDate": "RegistrationDate",
    "lastMaintenanceDate": "LastMaintenanceDate",
    "vin": "Vin",
    "color": "Color",
    "insuranceExpiryDate": "InsuranceExpiryDate",
}

_CUSTOMER_FIELDS = {
    "firstName": "FirstName",
    "lastName": "LastName",
    "email": "Email",
    "phoneNumber": "PhoneNumber",
    "drivingLicenseNumber": "DrivingLicenseNumber",
    "drivingLicenseExpiryDate": "DrivingLicenseExpiryDate",
    "age": "Age",
    "billingAddress": "BillingAddress",
}


def _split_features(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def apply_vehicle_type_payload(vehicle_type: VehicleType, payload: VehicleTypeUpsert) -> None:
    for field, column in _VEHICLE_TYPE_FIELDS.items():
        value = getattr(payload, field)
        if value is not None:
            setattr(vehicle_type, column, value)
    if payload.features is not None:
        vehicle_type.Features = ",".join(item.strip() for item in payload.features if item.strip())


def apply_vehicle_payload(vehicle: Vehicle, payload: VehicleUpsert) -> None:
    for field, column in _VEHICLE_FIELDS.items():
        value = getattr(payload, field)
        if value is not None:
            setattr(vehicle, column, value)
    if payload.dailyRentalPrice is not None:
        vehicle.DailyRentalPrice = to_money(payload.dailyRentalPrice)
    if payload.depositAmount is not None:
        vehicle.DepositAmount = to_money(payload.depositAmount)
    vehicle.UpdatedDate = datetime.now()


def apply_customer_payload(customer: Customer, payload: CustomerUpsert) -> None:
    for field, column in _CUSTOMER_FIELDS.items():
        value = getattr(payload, field)
        if value is not None:
            setattr(customer, column, value)


def find_customer_conflict(db: Session, payload: CustomerUpsert, exclude_id: int | None = None) -> str | None:
    checks = [
        (payload.email, Customer.Email, "Email already exists"),
        (payload.phoneNumber, Customer.PhoneNumber, "Phone number already exists"),
        (payload.drivingLicenseNumber, Customer.DrivingLicenseNumber, "Driving license already exists"),
    ]
    for value, column, message in checks:
        if value is None:
            continue
        stmt = select(Customer.CustomerID).where(column == value)
        if exclude_id is not None:
            stmt = stmt.where(Customer.CustomerID != exclude_id)
        if db.execute(stmt).first():
            return message
    return None


def count_bookings(db: Session, vehicle_id: int | None = None, customer_id: int | None = None) -> int:
    stmt = select(func.count(Booking.BookingID))
    if vehicle_id is not None:
        stmt = stmt.where(Booking.VehicleID == vehicle_id)
    if customer_id is not None:
        stmt = stmt.where(Booking.CustomerID == customer_id)
    return int(db.execute(stmt).scalar() or 0)


def vehicle_type_in_use(db: Session, vehicle_type_id: int) -> bool:
    stmt = select(Vehicle.VehicleID).where(Vehicle.VehicleTypeID == vehicle_type_id)
    return db.execute(stmt).first() is not None


def search_vehicles(
    db: Session,
    q: str | None = None,
    status: str | None = None,
    min_price: Decimal | None = None,
    max_price: Decimal | None = None,
    vehicle_type_id: int | None = None,
) -> list[Vehicle]:
    stmt = select(Vehicle).outerjoin(VehicleType, VehicleType.VehicleTypeID == Vehicle.VehicleTypeID)
    normalized_status = (status or "").strip().upper()
    if normalized_status:
        if normalized_status not in VEHICLE_STATUSES:
            return []
        stmt = stmt.where(Vehicle.Status == normalized_status)
    if min_price is not None:
        stmt = stmt.where(Vehicle.DailyRentalPrice >= min_price)
    if max_price is not None:
        stmt = stmt.where(Vehicle.DailyRentalPrice <= max_price)
    if vehicle_type_id is not None:
        stmt = stmt.where(Vehicle.VehicleTypeID == vehicle_type_id)
    vehicles = list(db.execute(stmt.order_by(Vehicle.VehicleID)).scalars().all())

    term = (q or "").strip().lower()
    if not term:
        return vehicles
    return [vehicle for vehicle in vehicles if _matches_term(vehicle, term)]


def _matches_term(vehicle: Vehicle, term: str) -> bool:
    candidates = [vehicle.LicensePlate, vehicle.Vin, vehicle.Color, str(vehicle.VehicleID)]
    vehicle_type = vehicle.VehicleType
    if vehicle_type is not None:
        candidates.extend([vehicle_type.Brand, vehicle_type.Model, vehicle_type.Category])
    if vehicle.DailyRentalPrice is not None:
        candidates.append(str(vehicle.DailyRentalPrice))
    return any(term in value.lower() for value in candidates if value)


def serialize_vehicle_type(vehicle_type: VehicleType) -> dict:
    return {
        "vehicleTypeID": vehicle_type.VehicleTypeID,
        "category": vehicle_type.Category,
        "brand": vehicle_type.Brand,
        "model": vehicle_type.Model,
        "engine": vehicle_type.Engine,
        "power": vehicle_type.Power,
        "maxSpeed": vehicle_type.MaxSpeed,
        "acceleration": vehicle_type.Acceleration,
        "weight": vehicle_type.Weight,
        "driveType": vehicle_type.DriveType,
        "transmission": vehicle_type.Transmission,
        "seats": vehicle_type.Seats,
        "description": vehicle_type.Description,
        "features": _split_features(vehicle_type.Features),
    }


def serialize_vehicle(vehicle: Vehicle) -> dict:
    vehicle_type = vehicle.VehicleType
    return {
        "vehicleID": vehicle.VehicleID,
        "vehicleTypeID": vehicle.VehicleTypeID,
        "licensePlate": vehicle.LicensePlate,
        "dailyRentalPrice": vehicle.DailyRentalPrice,
        "depositAmount": vehicle.DepositAmount,
        "status": vehicle.Status,
        "imageUrl": vehicle.ImageUrl,
        "registrationDate": vehicle.RegistrationDate,
        "lastMaintenanceDate": vehicle.LastMaintenanceDate,
        "vin": vehicle.Vin,
        "color": vehicle.Color,
        "insuranceExpiryDate": vehicle.InsuranceExpiryDate,
        "vehicleType": {
            "vehicleTypeID": vehicle_type.VehicleTypeID,
            "brand": vehicle_type.Brand,
            "model": vehicle_type.Model,
            "category": vehicle_type.Category,
        } if vehicle_type else None,
    }


def serialize_customer(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "firstName": customer.FirstName,
        "lastName": customer.LastName,
        "email": customer.Email,
        "phoneNumber": customer.PhoneNumber,
        "drivingLicenseNumber": customer.DrivingLicenseNumber,
        "drivingLicenseExpiryDate": customer.DrivingLicenseExpiryDate,
        "age": customer.Age,
        "verifiedIdentity": bool(customer.VerifiedIdentity),
        "billingAddress": customer.BillingAddress,
        "balance": customer.Balance,
        "creationDate": customer.CreationDate,
    }
