from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


VEHICLE_AVAILABLE = "AVAILABLE"
VEHICLE_UNAVAILABLE = "UNAVAILABLE"
VEHICLE_STATUSES = {VEHICLE_AVAILABLE, VEHICLE_UNAVAILABLE}

BOOKING_PENDING = "PENDING"
BOOKING_CONFIRMED = "CONFIRMED"
BOOKING_COMPLETED = "COMPLETED"
BOOKING_CANCELLED = "CANCELLED"
BOOKING_REJECTED = "REJECTED"

PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCESSFUL = "SUCCESSFUL"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"

DRIVE_TYPES = {"FWD", "RWD", "AWD"}
TRANSMISSIONS = {"MANUAL", "AUTOMATIC"}


class VehicleType(Base):
    __tablename__ = "VehicleTypes"

    VehicleTypeID = Column(Integer, primary_key=True)
    Category = Column(String(100))
    Brand = Column(String(100), nullable=False)
    Model = Column(String(100), nullable=False)
    Engine = Column(String(100))
    Power = Column(Integer)
    MaxSpeed = Column(Integer)
    Acceleration = Column(Float)
    Weight = Column(Float)
    DriveType = Column(String(10))
    Transmission = Column(String(20))
    Seats = Column(Integer)
    Description = Column(String(2000))
    Features = Column(String(2000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Vehicles = relationship("Vehicle", back_populates="VehicleType")


class Vehicle(Base):
    __tablename__ = "Vehicles"

    VehicleID = Column(Integer, primary_key=True)
    VehicleTypeID = Column(Integer, ForeignKey("VehicleTypes.VehicleTypeID"), nullable=False)
    LicensePlate = Column(String(20), nullable=False)
    DailyRentalPrice = Column(Numeric(12, 2), nullable=False)
    DepositAmount = Column(Numeric(12, 2), nullable=False)
    Status = Column(String(20), nullable=False, default=VEHICLE_AVAILABLE)
    ImageUrl = Column(String(500))
    RegistrationDate = Column(Date)
    LastMaintenanceDate = Column(Date)
    Vin = Column(String(50))
    Color = Column(String(50))
    InsuranceExpiryDate = Column(Date)
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    VehicleType = relationship("VehicleType", back_populates="Vehicles")
    Bookings = relationship("Booking", back_populates="Vehicle")

    __mapper_args__ = {"version_id_col": Version}


class Customer(Base):
    __tablename__ = "Customers"

    CustomerID = Column(Integer, primary_key=True)
    FirstName = Column(String(100), nullable=False)
    LastName = Column(String(100), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    PhoneNumber = Column(String(50), unique=True)
    DrivingLicenseNumber = Column(String(50), unique=True)
    DrivingLicenseExpiryDate = Column(Date)
    Age = Column(Integer)
    VerifiedIdentity = Column(Boolean, default=False)
    BillingAddress = Column(String(500))
    Balance = Column(Numeric(12, 2), nullable=False, default=0)
    Version = Column(Integer, nullable=False)
    CreationDate = Column(DateTime, server_default=func.now())

    Bookings = relationship("Booking", back_populates="Customer")

    __mapper_args__ = {"version_id_col": Version}


class Booking(Base):
    __tablename__ = "Bookings"

    BookingID = Column(Integer, primary_key=True)
    BookingNumber = Column(String(50), nullable=False)
    VehicleID = Column(Integer, ForeignKey("Vehicles.VehicleID"), nullable=False)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    DailyRate = Column(Numeric(12, 2), nullable=False)
    TotalCost = Column(Numeric(12, 2), nullable=False)
    DepositAmount = Column(Numeric(12, 2), nullable=False)
    AmountPaid = Column(Numeric(12, 2), nullable=False, default=0)
    BookingStatus = Column(String(20), nullable=False, default=BOOKING_PENDING)
    PaymentStatus = Column(String(20), nullable=False, default=PAYMENT_PENDING)
    Notes = Column(String(1000))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Vehicle = relationship("Vehicle", back_populates="Bookings")
    Customer = relationship("Customer", back_populates="Bookings")

    __mapper_args__ = {"version_id_col": Version}


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
