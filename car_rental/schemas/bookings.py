from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int
    vehicleID: int
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    notes: Optional[str] = None


class BookingPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    vehicleID: Optional[int] = None
    customerID: Optional[int] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    notes: Optional[str] = None


class TopUpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
