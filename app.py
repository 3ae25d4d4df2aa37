"""Car rental booking service: availability, pricing and reservation lifecycle over HTTP."""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import click
from flask import Flask, abort, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from availability import ReservationWindow, has_overlap, normalize_day
from booking_flow import BookingFlow, ReservationCandidate, validate_contact, validate_time
from errors import BookingError, ValidationError
from lifecycle import Deadlines, Reservation
from models import Location, location_payload
from payments import LedgerPaymentGateway, PaymentGateway
from pricing import price_for_vehicle
import reservations as store

DATA_ROOT = Path(os.environ.get("CARRENTAL_DATA_DIR") or Path(__file__).with_name("data"))
DATABASE = Path(os.environ.get("CARRENTAL_DB_PATH") or DATA_ROOT.joinpath("car_rental.db"))
DATABASE.parent.mkdir(parents=True, exist_ok=True)


def naive_utcnow() -> datetime:
    """Return a timezone-naive UTC timestamp compatible with stored data."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get("CARRENTAL_SECRET_KEY", "replace-with-a-secure-random-value"),
    DATABASE=str(DATABASE),
    OWNER_DECISION_WINDOW_HOURS=float(os.environ.get("OWNER_DECISION_WINDOW_HOURS", "3")),
    PAYMENT_WINDOW_HOURS=float(os.environ.get("PAYMENT_WINDOW_HOURS", "1")),
    MIN_RENTER_AGE=18,
    MAX_RENTER_AGE=100,
    PAYMENT_GATEWAY=None,
    CLOCK=naive_utcnow,
)
app.logger.setLevel("INFO")


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["DATABASE"], timeout=10)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


@app.teardown_appcontext
def close_db(_: BaseException | None) -> None:
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    store.ensure_schema(get_db())


def now() -> datetime:
    return current_app.config["CLOCK"]()


def get_gateway() -> PaymentGateway:
    gateway = current_app.config.get("PAYMENT_GATEWAY")
    if gateway is None:
        gateway = LedgerPaymentGateway(current_app.config["DATABASE"])
    return gateway


def get_deadlines() -> Deadlines:
    return Deadlines.from_hours(
        current_app.config["OWNER_DECISION_WINDOW_HOURS"],
        current_app.config["PAYMENT_WINDOW_HOURS"],
    )


def parse_int(value: object) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def request_payload() -> Dict[str, object]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def location_id(payload: Dict[str, object], prefix: str) -> Optional[int]:
    for key in (f"{prefix}LocationId", f"{prefix}AirportId", f"{prefix}CityId"):
        value = parse_int(payload.get(key))
        if value is not None:
            return value
    return None


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def reservation_payload(reservation: Reservation) -> Dict[str, object]:
    deadline = reservation.active_deadline()
    remaining = None
    if deadline is not None:
        remaining = max(0, int((deadline - now()).total_seconds()))
    return {
        "id": reservation.id,
        "carId": reservation.vehicle_id,
        "startDate": reservation.window.start.isoformat(),
        "endDate": reservation.window.end.isoformat(),
        "pickupTime": reservation.pickup_time,
        "returnTime": reservation.return_time,
        "pickupLocationId": reservation.pickup_location_id,
        "dropoffLocationId": reservation.dropoff_location_id,
        "clientPhone": reservation.contact.phone,
        "clientAge": reservation.contact.age,
        "notes": reservation.contact.notes,
        "confirmationMode": reservation.confirmation_mode,
        "status": reservation.status.value,
        "price": reservation.price.as_dict(),
        "createdAt": iso_or_none(reservation.created_at),
        "submittedAt": iso_or_none(reservation.submitted_at),
        "ownerDecisionDeadline": iso_or_none(reservation.owner_decision_deadline),
        "ownerDecidedAt": iso_or_none(reservation.owner_decided_at),
        "paymentDeadline": iso_or_none(reservation.payment_deadline),
        "timeRemainingSeconds": remaining,
        "paymentFailed": reservation.payment_failed,
        "paymentFailureReason": reservation.payment_failure_reason,
        "paymentAttempts": reservation.payment_attempts,
        "holdStatus": reservation.hold_status.value,
        "confirmedAt": iso_or_none(reservation.confirmed_at),
        "expiryReason": reservation.expiry_reason,
        "cancelledBy": reservation.cancelled_by,
        "reason": reservation.status_reason,
    }


def load_vehicle(vehicle_id: int):
    vehicle = store.get_vehicle(get_db(), vehicle_id)
    if vehicle is None:
        abort(404)
    return vehicle


@app.errorhandler(BookingError)
def handle_booking_error(exc: BookingError):
    app.logger.info("Booking request refused (%s): %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    return (
        jsonify({"success": False, "code": exc.name.upper().replace(" ", "_"), "message": exc.description}),
        exc.code,
    )


@app.route("/api/locations")
def locations():
    return jsonify({"locations": [location_payload(loc) for loc in store.list_locations(get_db())]})


@app.route("/api/bookings/cars/<int:car_id>/unavailable-dates")
def unavailable_dates(car_id: int):
    load_vehicle(car_id)
    windows = store.list_blocking_windows(get_db(), car_id, now=now(), gateway=get_gateway())
    return jsonify({"carId": car_id, "unavailablePeriods": [window.as_dict() for window in windows]})


def quoted_location(db, location_id_value: Optional[int], field: str) -> Optional[Location]:
    if location_id_value is None:
        return None
    location = store.get_location(db, location_id_value)
    if location is None:
        raise ValidationError("Unknown pickup or drop-off location.", field=field, code="UNKNOWN_LOCATION")
    return location


@app.route("/api/bookings/quote", methods=["POST"])
def quote():
    payload = request_payload()
    vehicle_id = parse_int(payload.get("carId"))
    if vehicle_id is None:
        raise ValidationError("Please choose a car.", field="carId")
    vehicle = load_vehicle(vehicle_id)
    db = get_db()
    pickup = quoted_location(db, location_id(payload, "pickup"), "pickupLocationId")
    dropoff = quoted_location(db, location_id(payload, "dropoff"), "dropoffLocationId") or pickup
    windows = store.list_blocking_windows(db, vehicle.id, now=now(), gateway=get_gateway())
    flow = BookingFlow(vehicle, windows)
    window = ReservationWindow(normalize_day(payload.get("startDate")), normalize_day(payload.get("endDate")))
    available = not has_overlap(window, windows)
    if available:
        draft = flow.choose_dates(
            flow.start(),
            window.start,
            window.end,
            pickup,
            dropoff,
            pickup_time=str(payload.get("pickupTime") or ""),
            return_time=str(payload.get("returnTime") or ""),
        )
        breakdown = draft.quote
    else:
        if pickup is None:
            raise ValidationError("Please select a pickup location.", field="pickupLocationId")
        breakdown = price_for_vehicle(vehicle, window, pickup)
    return jsonify(
        {
            "success": True,
            "available": available,
            "confirmationMode": vehicle.confirmation_mode,
            "pickupLocation": location_payload(pickup),
            "dropoffLocation": location_payload(dropoff),
            "price": breakdown.as_dict(),
        }
    )


@app.route("/api/bookings", methods=["POST"])
def create_booking():
    payload = request_payload()
    vehicle_id = parse_int(payload.get("carId"))
    if vehicle_id is None:
        raise ValidationError("Please choose a car.", field="carId")
    pickup_id = location_id(payload, "pickup")
    dropoff_id = location_id(payload, "dropoff") or pickup_id
    if pickup_id is None:
        raise ValidationError("Please select pickup and drop-off locations.", field="pickupLocationId")
    contact = validate_contact(
        payload.get("clientPhone"),  # type: ignore[arg-type]
        payload.get("clientAge"),
        str(payload.get("notes") or ""),
        min_age=current_app.config["MIN_RENTER_AGE"],
        max_age=current_app.config["MAX_RENTER_AGE"],
    )
    candidate = ReservationCandidate(
        vehicle_id=vehicle_id,
        window=ReservationWindow(normalize_day(payload.get("startDate")), normalize_day(payload.get("endDate"))),
        pickup_location_id=pickup_id,
        dropoff_location_id=dropoff_id,
        contact=contact,
        pickup_time=validate_time(payload.get("pickupTime"), "pickupTime"),  # type: ignore[arg-type]
        return_time=validate_time(payload.get("returnTime"), "returnTime"),  # type: ignore[arg-type]
    )
    reservation = store.submit_reservation(
        get_db(), candidate, now=now(), gateway=get_gateway(), deadlines=get_deadlines()
    )
    app.logger.info("Booking %s submitted for car %s", reservation.id, vehicle_id)
    return jsonify({"success": True, "booking": reservation_payload(reservation)}), 201


@app.route("/api/bookings")
def list_bookings():
    vehicle_id = parse_int(request.args.get("vehicle_id"))
    if vehicle_id is None:
        raise ValidationError("vehicle_id is required.", field="vehicle_id")
    load_vehicle(vehicle_id)
    bookings = store.list_reservations(get_db(), vehicle_id, now=now(), gateway=get_gateway())
    return jsonify({"success": True, "bookings": [reservation_payload(res) for res in bookings]})


@app.route("/api/bookings/<int:booking_id>")
def booking_details(booking_id: int):
    reservation = store.get_reservation(get_db(), booking_id, now=now(), gateway=get_gateway())
    if reservation is None:
        abort(404)
    return jsonify({"success": True, "booking": reservation_payload(reservation)})


@app.route("/api/bookings/<int:booking_id>/accept", methods=["PUT"])
def accept_booking(booking_id: int):
    reservation = store.owner_decide(
        get_db(), booking_id, "accept", now=now(), gateway=get_gateway(), deadlines=get_deadlines()
    )
    return jsonify({"message": "Booking accepted.", "booking": reservation_payload(reservation)})


@app.route("/api/bookings/<int:booking_id>/reject", methods=["PUT"])
def reject_booking(booking_id: int):
    reason = str(request_payload().get("reason") or "")
    reservation = store.owner_decide(
        get_db(), booking_id, "reject", now=now(), gateway=get_gateway(), deadlines=get_deadlines(), reason=reason
    )
    return jsonify({"message": "Booking rejected.", "booking": reservation_payload(reservation)})


@app.route("/api/bookings/<int:booking_id>/pay", methods=["POST"])
def pay_booking(booking_id: int):
    reservation = store.capture_payment(get_db(), booking_id, now=now(), gateway=get_gateway())
    return jsonify({"success": True, "booking": reservation_payload(reservation)})


@app.route("/api/bookings/<int:booking_id>/cancel", methods=["PATCH"])
def cancel_booking(booking_id: int):
    payload = request_payload()
    actor = str(payload.get("cancelledBy") or "renter")
    reservation = store.cancel_reservation(
        get_db(),
        booking_id,
        actor=actor,
        now=now(),
        gateway=get_gateway(),
        reason=str(payload.get("reason") or ""),
    )
    return jsonify({"message": "Booking cancelled.", "booking": reservation_payload(reservation)})


@app.cli.command("init-db")
def init_db_command() -> None:
    """Create the booking tables."""
    init_db()
    click.echo(f"Initialized {current_app.config['DATABASE']}")


@app.cli.command("sweep-expired")
def sweep_expired_command() -> None:
    """Expire reservations whose owner or payment deadline has elapsed."""
    expired = store.expire_overdue(get_db(), now=now(), gateway=get_gateway())
    for reservation in expired:
        click.echo(f"Expired booking {reservation.id} ({reservation.expiry_reason})")
    click.echo(f"{len(expired)} bookings expired.")


with app.app_context():
    init_db()


def main() -> None:
    app.run(debug=True, port=5000)


if __name__ == "__main__":
    main()
