#!/usr/bin/env python3
"""Create the car rental schema and optionally load a small demo fleet."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from db.base import Base
from models.rental_models import VEHICLE_AVAILABLE, Customer, Vehicle, VehicleType


DEMO_FLEET = [
    {
        "type": {
            "Category": "Sports",
            "Brand": "Porsche",
            "Model": "911 Carrera S",
            "Engine": "3.0 Twin-Turbo Flat-6",
            "Power": 450,
            "MaxSpeed": 308,
            "Acceleration": 3.5,
            "DriveType": "RWD",
            "Transmission": "AUTOMATIC",
            "Seats": 4,
            "Features": "Sport Chrono,Bose Surround,Adaptive Cruise",
        },
        "vehicles": [
            {"LicensePlate": "ZG-911-S", "DailyRentalPrice": "450.00", "DepositAmount": "1500.00", "Color": "Guards Red"},
        ],
    },
    {
        "type": {
            "Category": "SUV",
            "Brand": "Range Rover",
            "Model": "Sport P530",
            "Engine": "4.4 V8",
            "Power": 530,
            "MaxSpeed": 250,
            "Acceleration": 4.5,
            "DriveType": "AWD",
            "Transmission": "AUTOMATIC",
            "Seats": 5,
            "Features": "Air Suspension,Meridian Audio,Panoramic Roof",
        },
        "vehicles": [
            {"LicensePlate": "ZG-530-RR", "DailyRentalPrice": "320.00", "DepositAmount": "1000.00", "Color": "Santorini Black"},
            {"LicensePlate": "ZG-531-RR", "DailyRentalPrice": "320.00", "DepositAmount": "1000.00", "Color": "Fuji White"},
        ],
    },
]

DEMO_CUSTOMERS = [
    {
        "FirstName": "Ana",
        "LastName": "Novak",
        "Email": "ana.novak@example.com",
        "PhoneNumber": "+385910000001",
        "DrivingLicenseNumber": "HR-DL-0001",
        "Age": 34,
        "Balance": "5000.00",
    },
    {
        "FirstName": "Marko",
        "LastName": "Horvat",
        "Email": "marko.horvat@example.com",
        "PhoneNumber": "+385910000002",
        "DrivingLicenseNumber": "HR-DL-0002",
        "Age": 41,
        "Balance": "800.00",
    },
]


def _seed_demo(session_factory) -> int:
    created = 0
    db = session_factory()
    try:
        now = datetime.now()
        for entry in DEMO_FLEET:
            type_fields = entry["type"]
            vehicle_type = db.execute(
                select(VehicleType)
                .where(VehicleType.Brand == type_fields["Brand"])
                .where(VehicleType.Model == type_fields["Model"])
            ).scalars().first()
            if vehicle_type is None:
                vehicle_type = VehicleType(CreatedDate=now, **type_fields)
                db.add(vehicle_type)
                created += 1
            for vehicle_fields in entry["vehicles"]:
                exists = db.execute(
                    select(Vehicle.VehicleID).where(Vehicle.LicensePlate == vehicle_fields["LicensePlate"])
                ).first()
                if exists:
                    continue
                db.add(
                    Vehicle(
                        VehicleType=vehicle_type,
                        LicensePlate=vehicle_fields["LicensePlate"],
                        DailyRentalPrice=Decimal(vehicle_fields["DailyRentalPrice"]),
                        DepositAmount=Decimal(vehicle_fields["DepositAmount"]),
                        Color=vehicle_fields["Color"],
                        Status=VEHICLE_AVAILABLE,
                        CreatedDate=now,
                        UpdatedDate=now,
                    )
                )
                created += 1

        for customer_fields in DEMO_CUSTOMERS:
            exists = db.execute(select(Customer.CustomerID).where(Customer.Email == customer_fields["Email"])).first()
            if exists:
                continue
            fields = dict(customer_fields)
            fields["Balance"] = Decimal(fields["Balance"])
            db.add(Customer(VerifiedIdentity=True, CreationDate=now, **fields))
            created += 1

        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return created


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create car rental tables and optional demo data.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("CAR_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to CAR_RENTAL_DB_URL env var.",
    )
    parser.add_argument("--seed-demo", action="store_true", help="Insert demo vehicle types, vehicles and customers.")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    if not args.db_url:
        print("CAR_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(engine)
    print(f"Schema ready: {', '.join(sorted(Base.metadata.tables))}")

    if args.seed_demo:
        created = _seed_demo(sessionmaker(bind=engine, autoflush=False, future=True))
        print(f"Demo rows created: {created}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
