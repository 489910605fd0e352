import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Workflow sessions are opened from request threads and retry loops.
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


CAR_RENTAL_DB_URL = _require_env("CAR_RENTAL_DB_URL")

engine_rental = build_engine(CAR_RENTAL_DB_URL)

SessionLocalRental = build_session_factory(engine_rental)
