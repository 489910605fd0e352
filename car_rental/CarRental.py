import logging
import os
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from decimal import Decimal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_rental_db
from db.session import SessionLocalRental, engine_rental
from models.rental_models import VEHICLE_AVAILABLE, Customer, Vehicle, VehicleType
from schemas.bookings import BookingPatch, CreateBookingDto, TopUpRequest
from schemas.fleet import CustomerUpsert, VehicleTypeUpsert, VehicleUpsert
from services.audit_service import list_audit_entries, log_audit, serialize_audit_entry
from services.booking_service import BookingService, serialize_booking
from services.errors import BookingError
from services.fleet_service import (
    apply_customer_payload,
    apply_vehicle_payload,
    apply_vehicle_type_payload,
    count_bookings,
    find_customer_conflict,
    search_vehicles,
    serialize_customer,
    serialize_vehicle,
    serialize_vehicle_type,
    vehicle_type_in_use,
)
from services.ledger_service import to_money
from services.lock_service import CUSTOMER, VEHICLE
from services.notification_service import NotificationDispatcher, build_email_sender_from_env, env_flag


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    API_LOGGER.info("Stopping notification dispatcher.")
    _BOOKING_SERVICE.dispatcher.stop(timeout=NOTIFICATION_SHUTDOWN_TIMEOUT_SECONDS)


app = FastAPI(lifespan=lifespan)

API_LOGGER = logging.getLogger("car_rental.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

BOOKING_LOCK_TIMEOUT_SECONDS = float(os.environ.get("BOOKING_LOCK_TIMEOUT_SECONDS") or "5")
BOOKING_MAX_ATTEMPTS = int(os.environ.get("BOOKING_MAX_ATTEMPTS") or "3")
BOOKING_RETRY_BACKOFF_SECONDS = float(os.environ.get("BOOKING_RETRY_BACKOFF_SECONDS") or "0.05")
NOTIFICATION_QUEUE_SIZE = int(os.environ.get("NOTIFICATION_QUEUE_SIZE") or "200")
NOTIFICATION_WORKERS = int(os.environ.get("NOTIFICATION_WORKERS") or "2")
NOTIFICATION_SHUTDOWN_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATION_SHUTDOWN_TIMEOUT_SECONDS") or "5")

if env_flag("CAR_RENTAL_CREATE_SCHEMA", "false"):
    Base.metadata.create_all(engine_rental)

_BOOKING_SERVICE = BookingService(
    SessionLocalRental,
    NotificationDispatcher(
        build_email_sender_from_env(),
        max_queue_size=NOTIFICATION_QUEUE_SIZE,
        worker_count=NOTIFICATION_WORKERS,
    ),
    lock_timeout=BOOKING_LOCK_TIMEOUT_SECONDS,
    max_attempts=BOOKING_MAX_ATTEMPTS,
    retry_backoff=BOOKING_RETRY_BACKOFF_SECONDS,
)


def get_booking_service() -> BookingService:
    return _BOOKING_SERVICE


@contextmanager
def _entity_ownership(service: BookingService, kind: str, entity_id: int):
    with service.locks.hold([(kind, entity_id)], service.lock_timeout):
        yield


@app.exception_handler(BookingError)
def handle_booking_error(request: Request, exc: BookingError):
    API_LOGGER.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "errorType": type(exc).__name__,
            "code": exc.code,
            "message": exc.message,
            "timestamp": datetime.now().isoformat(),
            "path": request.url.path,
        },
        headers=headers,
    )


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# ---- vehicle types ----

@app.get("/api/vehicle-types")
def get_vehicle_types(db: Session = Depends(get_rental_db)):
    rows = db.execute(select(VehicleType).order_by(VehicleType.VehicleTypeID)).scalars().all()
    return [serialize_vehicle_type(row) for row in rows]


@app.get("/api/vehicle-types/{vehicle_type_id}")
def get_vehicle_type(vehicle_type_id: int, db: Session = Depends(get_rental_db)):
    vehicle_type = db.get(VehicleType, vehicle_type_id)
    if not vehicle_type:
        raise HTTPException(status_code=404, detail="VehicleType not found")
    return serialize_vehicle_type(vehicle_type)


@app.post("/api/vehicle-types")
def create_vehicle_type(payload: VehicleTypeUpsert, db: Session = Depends(get_rental_db)):
    if not payload.brand or not payload.model:
        raise HTTPException(status_code=400, detail="brand and model are required.")
    vehicle_type = VehicleType(CreatedDate=datetime.now())
    apply_vehicle_type_payload(vehicle_type, payload)
    db.add(vehicle_type)
    db.commit()
    db.refresh(vehicle_type)
    return serialize_vehicle_type(vehicle_type)


@app.put("/api/vehicle-types/{vehicle_type_id}")
def update_vehicle_type(vehicle_type_id: int, payload: VehicleTypeUpsert, db: Session = Depends(get_rental_db)):
    vehicle_type = db.get(VehicleType, vehicle_type_id)
    if not vehicle_type:
        raise HTTPException(status_code=404, detail="VehicleType not found")
    apply_vehicle_type_payload(vehicle_type, payload)
    db.commit()
    return serialize_vehicle_type(vehicle_type)


@app.delete("/api/vehicle-types/{vehicle_type_id}")
def delete_vehicle_type(vehicle_type_id: int, db: Session = Depends(get_rental_db)):
    vehicle_type = db.get(VehicleType, vehicle_type_id)
    if not vehicle_type:
        raise HTTPException(status_code=404, detail="VehicleType not found")
    if vehicle_type_in_use(db, vehicle_type_id):
        raise HTTPException(status_code=400, detail="Cannot delete VehicleType: there are vehicles still using this type")
    db.delete(vehicle_type)
    db.commit()
    return {"message": "VehicleType deleted"}


# ---- vehicles ----

@app.get("/api/vehicles")
def get_vehicles(
    q: str | None = Query(None),
    status: str | None = Query(None),
    min_price: Decimal | None = Query(None, alias="minPrice"),
    max_price: Decimal | None = Query(None, alias="maxPrice"),
    vehicle_type_id: int | None = Query(None, alias="vehicleTypeID"),
    db: Session = Depends(get_rental_db),
):
    vehicles = search_vehicles(db, q, status, min_price, max_price, vehicle_type_id)
    return [serialize_vehicle(vehicle) for vehicle in vehicles]


@app.get("/api/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: int, db: Session = Depends(get_rental_db)):
    vehicle = db.get(Vehicle, vehicle_id)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return serialize_vehicle(vehicle)


@app.post("/api/vehicles")
def create_vehicle(payload: VehicleUpsert, db: Session = Depends(get_rental_db)):
    if payload.vehicleTypeID is None:
        raise HTTPException(status_code=400, detail="VehicleType must be provided")
    if not db.get(VehicleType, payload.vehicleTypeID):
        raise HTTPException(status_code=400, detail="VehicleType does not exist")
    if not payload.licensePlate or payload.dailyRentalPrice is None or payload.depositAmount is None:
        raise HTTPException(status_code=400, detail="licensePlate, dailyRentalPrice and depositAmount are required.")

    vehicle = Vehicle(Status=VEHICLE_AVAILABLE, CreatedDate=datetime.now())
    apply_vehicle_payload(vehicle, payload)
    db.add(vehicle)
    db.flush()
    log_audit(db, "Vehicle", vehicle.VehicleID, "CreateVehicle", f"Plate {vehicle.LicensePlate}")
    db.commit()
    db.refresh(vehicle)
    return serialize_vehicle(vehicle)


@app.put("/api/vehicles/{vehicle_id}")
def update_vehicle(
    vehicle_id: int,
    payload: VehicleUpsert,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    with _entity_ownership(service, VEHICLE, vehicle_id):
        vehicle = db.get(Vehicle, vehicle_id)
        if not vehicle:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        if payload.vehicleTypeID is not None and not db.get(VehicleType, payload.vehicleTypeID):
            raise HTTPException(status_code=400, detail="VehicleType does not exist")
        apply_vehicle_payload(vehicle, payload)
        log_audit(db, "Vehicle", vehicle_id, "UpdateVehicle", None)
        db.commit()
        return serialize_vehicle(vehicle)


@app.delete("/api/vehicles/{vehicle_id}")
def delete_vehicle(
    vehicle_id: int,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    with _entity_ownership(service, VEHICLE, vehicle_id):
        vehicle = db.get(Vehicle, vehicle_id)
        if not vehicle:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        if count_bookings(db, vehicle_id=vehicle_id):
            raise HTTPException(status_code=400, detail="Cannot delete Vehicle: there are existing bookings linked to this vehicle")
        db.delete(vehicle)
        log_audit(db, "Vehicle", vehicle_id, "DeleteVehicle", None)
        db.commit()
    return {"message": "Vehicle deleted"}


# ---- customers ----

@app.get("/api/customers")
def get_customers(db: Session = Depends(get_rental_db)):
    rows = db.execute(select(Customer).order_by(Customer.CustomerID)).scalars().all()
    return [serialize_customer(row) for row in rows]


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: int, db: Session = Depends(get_rental_db)):
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return serialize_customer(customer)


@app.post("/api/customers")
def create_customer(
    payload: CustomerUpsert,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    if not payload.firstName or not payload.lastName or not payload.email:
        raise HTTPException(status_code=400, detail="firstName, lastName and email are required.")
    conflict = find_customer_conflict(db, payload)
    if conflict:
        raise HTTPException(status_code=400, detail=conflict)

    customer = Customer(
        Balance=to_money(payload.initialBalance),
        VerifiedIdentity=False,
        CreationDate=datetime.now(),
    )
    apply_customer_payload(customer, payload)
    db.add(customer)
    db.flush()
    log_audit(db, "Customer", customer.CustomerID, "CreateCustomer", f"Opening balance {customer.Balance}")
    db.commit()

    service.dispatcher.notify(
        customer.Email,
        "customer_welcome",
        {
            "firstName": customer.FirstName,
            "email": customer.Email,
            "phoneNumber": customer.PhoneNumber or "-",
            "drivingLicenseNumber": customer.DrivingLicenseNumber or "-",
        },
    )
    return serialize_customer(customer)


@app.put("/api/customers/{customer_id}")
def update_customer(
    customer_id: int,
    payload: CustomerUpsert,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    with _entity_ownership(service, CUSTOMER, customer_id):
        customer = db.get(Customer, customer_id)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        conflict = find_customer_conflict(db, payload, exclude_id=customer_id)
        if conflict:
            raise HTTPException(status_code=400, detail=conflict)
        apply_customer_payload(customer, payload)
        log_audit(db, "Customer", customer_id, "UpdateCustomer", None)
        db.commit()
        return serialize_customer(customer)


@app.delete("/api/customers/{customer_id}")
def delete_customer(
    customer_id: int,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    with _entity_ownership(service, CUSTOMER, customer_id):
        customer = db.get(Customer, customer_id)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        if count_bookings(db, customer_id=customer_id):
            raise HTTPException(status_code=400, detail="Cannot delete customer with active bookings")
        db.delete(customer)
        log_audit(db, "Customer", customer_id, "DeleteCustomer", None)
        db.commit()
    return {"message": "Customer deleted"}


@app.post("/api/customers/{customer_id}/verify")
def verify_customer(
    customer_id: int,
    db: Session = Depends(get_rental_db),
    service: BookingService = Depends(get_booking_service),
):
    with _entity_ownership(service, CUSTOMER, customer_id):
        customer = db.get(Customer, customer_id)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        customer.VerifiedIdentity = True
        log_audit(db, "Customer", customer_id, "VerifyIdentity", None)
        db.commit()
        return serialize_customer(customer)


@app.post("/api/customers/{customer_id}/top-up")
def top_up_customer(
    customer_id: int,
    payload: TopUpRequest,
    service: BookingService = Depends(get_booking_service),
):
    customer = service.top_up(customer_id, payload.amount)
    return serialize_customer(customer)


# ---- bookings ----

@app.get("/api/bookings")
def get_bookings(service: BookingService = Depends(get_booking_service)):
    return [serialize_booking(booking) for booking in service.list_bookings()]


@app.get("/api/bookings/customer/{customer_id}")
def get_bookings_by_customer(customer_id: int, service: BookingService = Depends(get_booking_service)):
    return [serialize_booking(booking) for booking in service.list_bookings(customer_id=customer_id)]


@app.get("/api/bookings/vehicle/{vehicle_id}")
def get_bookings_by_vehicle(vehicle_id: int, service: BookingService = Depends(get_booking_service)):
    return [serialize_booking(booking) for booking in service.list_bookings(vehicle_id=vehicle_id)]


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    return serialize_booking(service.get_booking(booking_id))


@app.get("/api/bookings/{booking_id}/audit")
def get_booking_audit(booking_id: int, db: Session = Depends(get_rental_db)):
    return [serialize_audit_entry(entry) for entry in list_audit_entries(db, "Booking", booking_id)]


@app.post("/api/bookings")
def create_booking(payload: CreateBookingDto, service: BookingService = Depends(get_booking_service)):
    booking = service.create(
        payload.customerID,
        payload.vehicleID,
        payload.startDate,
        payload.endDate,
        payload.notes,
    )
    return serialize_booking(booking)


@app.put("/api/bookings/{booking_id}")
def update_booking(booking_id: int, payload: BookingPatch, service: BookingService = Depends(get_booking_service)):
    return serialize_booking(service.update(booking_id, payload))


@app.delete("/api/bookings/{booking_id}")
def remove_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    if not service.remove(booking_id):
        raise HTTPException(status_code=404, detail="Booking not found")
    return {"message": "Booking removed successfully"}


@app.post("/api/bookings/{booking_id}/confirm")
def confirm_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    return serialize_booking(service.confirm(booking_id))


@app.post("/api/bookings/{booking_id}/pay")
def pay_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    return serialize_booking(service.pay(booking_id))


@app.post("/api/bookings/{booking_id}/complete")
def complete_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    service.complete(booking_id)
    return {"message": "Booking completed successfully"}


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    service.cancel(booking_id)
    return {"message": "Booking canceled and deposit refunded"}


@app.post("/api/bookings/{booking_id}/reject")
def reject_booking(
    booking_id: int,
    reason: str | None = Query(None),
    service: BookingService = Depends(get_booking_service),
):
    return serialize_booking(service.reject(booking_id, reason))
