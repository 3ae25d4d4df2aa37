"""Pytest configuration and shared fixtures."""

import os
import sqlite3
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

# app.py initializes its database at import time; keep that out of the repo.
os.environ.setdefault("CARRENTAL_DB_PATH", str(Path(tempfile.mkdtemp()) / "import.db"))

import reservations as store
from availability import ReservationWindow
from lifecycle import Reservation, Status
from models import RenterContact
from payments import CaptureResult, PaymentGateway
from pricing import price

T0 = datetime(2024, 5, 1, 9, 0)


class Clock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingGateway(PaymentGateway):
    """Payment double that records calls and can be told to decline captures."""

    def __init__(self) -> None:
        self.calls = []
        self.declines = 0

    def authorize_hold(self, reservation_id, amount):
        self.calls.append(("authorize", reservation_id, amount))

    def release_hold(self, reservation_id):
        self.calls.append(("release", reservation_id, None))

    def capture(self, reservation_id, amount):
        self.calls.append(("capture", reservation_id, amount))
        if self.declines:
            self.declines -= 1
            return CaptureResult(success=False, reason="Card declined")
        return CaptureResult(success=True, reference=f"test-{reservation_id}")

    def refund(self, reservation_id, amount):
        self.calls.append(("refund", reservation_id, amount))

    def count(self, kind, reservation_id=None):
        return sum(
            1
            for call_kind, call_id, _ in self.calls
            if call_kind == kind and (reservation_id is None or call_id == reservation_id)
        )


def seed_fleet(conn):
    return SimpleNamespace(
        instant=store.add_vehicle(
            conn, owner_id=1, name="Dacia Duster", rate_per_day=500, deposit_amount=3000
        ),
        manual=store.add_vehicle(
            conn,
            owner_id=2,
            name="Peugeot 208",
            rate_per_day=500,
            deposit_amount=3000,
            confirmation_mode="manual",
        ),
        long_stay=store.add_vehicle(
            conn, owner_id=1, name="Renault Clio", rate_per_day=300, min_rental_days=3
        ),
        airport=store.add_location(conn, kind="airport", name="Casablanca Mohammed V", code="cmn", delivery_fee=100),
        city=store.add_location(conn, kind="city", name="Rabat", delivery_fee=0),
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "booking.db"


@pytest.fixture
def conn(db_path):
    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    store.ensure_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def fleet(conn):
    return seed_fleet(conn)


@pytest.fixture
def make_reservation():
    def factory(start="2024-05-10", end="2024-05-12", status=Status.DRAFT, mode="instant", **overrides):
        window = ReservationWindow(date.fromisoformat(start), date.fromisoformat(end))
        fields = dict(
            vehicle_id=1,
            window=window,
            pickup_location_id=1,
            dropoff_location_id=1,
            contact=RenterContact("+212600000000", 30),
            confirmation_mode=mode,
            price=price(window.start, window.end, Decimal("500"), Decimal("100"), deposit_amount=3000),
            created_at=T0,
            status=status,
        )
        fields.update(overrides)
        return Reservation(**fields)

    return factory


@pytest.fixture
def api(tmp_path, clock, gateway):
    from app import app, get_db, init_db

    app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "api.db"),
        CLOCK=clock,
        PAYMENT_GATEWAY=gateway,
    )
    with app.app_context():
        init_db()
        fleet = seed_fleet(get_db())
    return SimpleNamespace(app=app, client=app.test_client(), fleet=fleet, clock=clock, gateway=gateway)
