from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class VehicleTypeUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    engine: Optional[str] = None
    power: Optional[int] = Field(default=None, gt=0)
    maxSpeed: Optional[int] = Field(default=None, gt=0)
    acceleration: Optional[float] = Field(default=None, gt=0)
    weight: Optional[float] = Field(default=None, gt=0)
    driveType: Optional[Literal["FWD", "RWD", "AWD"]] = None
    transmission: Optional[Literal["MANUAL", "AUTOMATIC"]] = None
    seats: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    features: Optional[List[str]] = None


class VehicleUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vehicleTypeID: Optional[int] = None
    licensePlate: Optional[str] = None
    dailyRentalPrice: Optional[Decimal] = Field(default=None, gt=0)
    depositAmount: Optional[Decimal] = Field(default=None, ge=0)
    imageUrl: Optional[str] = None
    registrationDate: Optional[date] = None
    lastMaintenanceDate: Optional[date] = None
    vin: Optional[str] = None
    color: Optional[str] = None
    insuranceExpiryDate: Optional[date] = None


class CustomerUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[EmailStr] = None
    phoneNumber: Optional[str] = None
    drivingLicenseNumber: Optional[str] = None
    drivingLicenseExpiryDate: Optional[date] = None
    age: Optional[int] = Field(default=None, gt=0)
    billingAddress: Optional[str] = None
    initialBalance: Optional[Decimal] = Field(default=None, ge=0)
