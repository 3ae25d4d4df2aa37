"""sqlite-backed reservation store.

This is the authoritative side of the booking engine: submission re-checks
overlap inside a ``BEGIN IMMEDIATE`` transaction, so of two racing renters
only one insert can succeed. Status updates are compare-and-set on the
previous status, which keeps expiry idempotent when a read and the sweep
evaluate the same reservation. Hold releases and refunds are stored as
pending with the status change and settled against the gateway afterwards,
so a failed gateway call is retried by later reads and the sweep.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from availability import ReservationWindow, find_overlap, unavailable_windows, validate_window
from booking_flow import ReservationCandidate, validate_contact
from errors import ConflictError, NotFoundError, PaymentError, TransitionError, ValidationError
from lifecycle import (
    BLOCKING_STATUSES,
    SETTLED_HOLDS,
    Deadlines,
    Effect,
    Event,
    Hold,
    Reservation,
    Status,
    Transition,
    evaluate_expiry,
    transition,
)
from models import (
    CONFIRMATION_MODES,
    LOCATION_KINDS,
    Location,
    RenterContact,
    Vehicle,
    location_from_row,
    to_money,
    vehicle_from_row,
)
from payments import PaymentGateway, ensure_payment_schema
from pricing import PriceBreakdown, price_for_vehicle

logger = logging.getLogger(__name__)

CAPTURE_CLAIM_TIMEOUT = timedelta(minutes=5)

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS vehicles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    rate_per_day TEXT NOT NULL DEFAULT '0.00',
    deposit_amount TEXT NOT NULL DEFAULT '0.00',
    min_rental_days INTEGER NOT NULL DEFAULT 1,
    confirmation_mode TEXT NOT NULL DEFAULT 'instant'
        CHECK(confirmation_mode IN ('instant', 'manual')),
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL CHECK(kind IN ('airport', 'city')),
    code TEXT DEFAULT '',
    name TEXT NOT NULL,
    delivery_fee TEXT NOT NULL DEFAULT '0.00',
    UNIQUE(kind, name)
);

CREATE TABLE IF NOT EXISTS reservations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vehicle_id INTEGER NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    pickup_time TEXT DEFAULT '',
    return_time TEXT DEFAULT '',
    pickup_location_id INTEGER NOT NULL,
    dropoff_location_id INTEGER NOT NULL,
    renter_phone TEXT NOT NULL,
    renter_age INTEGER NOT NULL CHECK(renter_age >= 18),
    notes TEXT DEFAULT '',
    confirmation_mode TEXT NOT NULL CHECK(confirmation_mode IN ('instant', 'manual')),
    status TEXT NOT NULL CHECK(status IN (
        'submitted', 'awaiting_owner', 'pending_payment',
        'confirmed', 'rejected', 'expired', 'cancelled'
    )),
    days INTEGER NOT NULL,
    rate_per_day TEXT NOT NULL,
    subtotal TEXT NOT NULL,
    delivery_fee TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    deposit_amount TEXT NOT NULL,
    created_at TEXT NOT NULL,
    submitted_at TEXT,
    owner_decision_deadline TEXT,
    owner_decided_at TEXT,
    payment_deadline TEXT,
    payment_attempts INTEGER NOT NULL DEFAULT 0,
    payment_failed_at TEXT,
    payment_failure_reason TEXT DEFAULT '',
    hold_status TEXT NOT NULL DEFAULT 'none',
    capture_claimed_at TEXT,
    confirmed_at TEXT,
    closed_at TEXT,
    expiry_reason TEXT DEFAULT '',
    cancelled_by TEXT DEFAULT '',
    status_reason TEXT DEFAULT '',
    updated_at TEXT,
    CHECK(start_date < end_date),
    FOREIGN KEY (vehicle_id) REFERENCES vehicles(id) ON DELETE CASCADE,
    FOREIGN KEY (pickup_location_id) REFERENCES locations(id),
    FOREIGN KEY (dropoff_location_id) REFERENCES locations(id)
);

CREATE INDEX IF NOT EXISTS idx_reservations_vehicle_status
    ON reservations(vehicle_id, status);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reservation_id INTEGER NOT NULL,
    recipient TEXT NOT NULL CHECK(recipient IN ('renter', 'owner')),
    event TEXT NOT NULL,
    message TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(reservation_id, recipient, event),
    FOREIGN KEY (reservation_id) REFERENCES reservations(id) ON DELETE CASCADE
);
"""

NOTIFICATION_MESSAGES: Dict[Status, Tuple[Tuple[str, str], ...]] = {
    Status.AWAITING_OWNER: (
        ("owner", "New booking request for {car}. Please accept or reject it before {deadline}."),
        ("renter", "Booking request sent for {car}. The owner has until {deadline} to respond."),
    ),
    Status.PENDING_PAYMENT: (
        ("renter", "Your booking for {car} is ready for payment. Please pay before {deadline}."),
    ),
    Status.CONFIRMED: (
        ("renter", "Payment received. Your booking for {car} is confirmed."),
        ("owner", "Booking for {car} is confirmed and paid."),
    ),
    Status.REJECTED: (
        ("renter", "The owner declined your booking for {car}. Held funds were released."),
    ),
    Status.EXPIRED: (
        ("renter", "Your booking for {car} expired. Held funds were released."),
        ("owner", "The booking request for {car} expired."),
    ),
    Status.CANCELLED: (
        ("renter", "Booking for {car} was cancelled."),
        ("owner", "Booking for {car} was cancelled."),
    ),
}


MIGRATIONS = (
    "ALTER TABLE reservations ADD COLUMN capture_claimed_at TEXT",
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    for statement in MIGRATIONS:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError:
            # Column already present.
            pass
    ensure_payment_schema(conn)
    conn.commit()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block under sqlite's reserved write lock."""
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def add_vehicle(
    conn: sqlite3.Connection,
    *,
    owner_id: int,
    name: str,
    rate_per_day,
    deposit_amount=0,
    min_rental_days: int = 1,
    confirmation_mode: str = "instant",
) -> Vehicle:
    if confirmation_mode not in CONFIRMATION_MODES:
        raise ValidationError(f"Unknown confirmation mode {confirmation_mode!r}", field="confirmation_mode")
    cursor = conn.execute(
        """
        INSERT INTO vehicles (owner_id, name, rate_per_day, deposit_amount, min_rental_days, confirmation_mode)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            owner_id,
            name,
            str(to_money(rate_per_day)),
            str(to_money(deposit_amount)),
            max(1, int(min_rental_days)),
            confirmation_mode,
        ),
    )
    conn.commit()
    vehicle = get_vehicle(conn, cursor.lastrowid)
    if vehicle is None:
        raise NotFoundError(f"Vehicle {cursor.lastrowid} vanished after insert.")
    return vehicle


def add_location(conn: sqlite3.Connection, *, kind: str, name: str, delivery_fee=0, code: str = "") -> Location:
    if kind not in LOCATION_KINDS:
        raise ValidationError(f"Unknown location type {kind!r}", field="kind")
    fee = to_money(delivery_fee)
    if fee < 0:
        raise ValidationError("Delivery fee cannot be negative.", field="delivery_fee")
    cursor = conn.execute(
        "INSERT INTO locations (kind, code, name, delivery_fee) VALUES (?, ?, ?, ?)",
        (kind, code.strip().upper(), name.strip(), str(fee)),
    )
    conn.commit()
    location = get_location(conn, cursor.lastrowid)
    if location is None:
        raise NotFoundError(f"Location {cursor.lastrowid} vanished after insert.")
    return location


def get_vehicle(conn: sqlite3.Connection, vehicle_id: int) -> Optional[Vehicle]:
    row = conn.execute("SELECT * FROM vehicles WHERE id = ?", (vehicle_id,)).fetchone()
    return vehicle_from_row(row) if row is not None else None


def get_location(conn: sqlite3.Connection, location_id: int) -> Optional[Location]:
    row = conn.execute("SELECT * FROM locations WHERE id = ?", (location_id,)).fetchone()
    return location_from_row(row) if row is not None else None


def list_locations(conn: sqlite3.Connection) -> List[Location]:
    rows = conn.execute("SELECT * FROM locations ORDER BY kind, name").fetchall()
    return [location_from_row(row) for row in rows]


def reservation_from_row(row: sqlite3.Row) -> Reservation:
    return Reservation(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        window=ReservationWindow(
            date.fromisoformat(row["start_date"]),
            date.fromisoformat(row["end_date"]),
            row["id"],
            row["status"],
        ),
        pickup_location_id=row["pickup_location_id"],
        dropoff_location_id=row["dropoff_location_id"],
        contact=RenterContact(row["renter_phone"], row["renter_age"], row["notes"] or ""),
        confirmation_mode=row["confirmation_mode"],
        price=PriceBreakdown(
            days=row["days"],
            rate_per_day=to_money(row["rate_per_day"]),
            subtotal=to_money(row["subtotal"]),
            delivery_fee=to_money(row["delivery_fee"]),
            total=to_money(row["total_amount"]),
            deposit_amount=to_money(row["deposit_amount"]),
        ),
        created_at=_parse(row["created_at"]),
        status=Status(row["status"]),
        pickup_time=row["pickup_time"] or "",
        return_time=row["return_time"] or "",
        submitted_at=_parse(row["submitted_at"]),
        owner_decision_deadline=_parse(row["owner_decision_deadline"]),
        owner_decided_at=_parse(row["owner_decided_at"]),
        payment_deadline=_parse(row["payment_deadline"]),
        payment_attempts=row["payment_attempts"],
        payment_failed_at=_parse(row["payment_failed_at"]),
        payment_failure_reason=row["payment_failure_reason"] or "",
        hold_status=Hold(row["hold_status"]),
        confirmed_at=_parse(row["confirmed_at"]),
        closed_at=_parse(row["closed_at"]),
        expiry_reason=row["expiry_reason"] or "",
        cancelled_by=row["cancelled_by"] or "",
        status_reason=row["status_reason"] or "",
        updated_at=_parse(row["updated_at"]),
    )


def _insert(conn: sqlite3.Connection, res: Reservation) -> int:
    cursor = conn.execute(
        """
        INSERT INTO reservations (
            vehicle_id, start_date, end_date, pickup_time, return_time,
            pickup_location_id, dropoff_location_id,
            renter_phone, renter_age, notes, confirmation_mode, status,
            days, rate_per_day, subtotal, delivery_fee, total_amount, deposit_amount,
            created_at, submitted_at, owner_decision_deadline, payment_deadline,
            hold_status, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            res.vehicle_id,
            res.window.start.isoformat(),
            res.window.end.isoformat(),
            res.pickup_time,
            res.return_time,
            res.pickup_location_id,
            res.dropoff_location_id,
            res.contact.phone,
            res.contact.age,
            res.contact.notes,
            res.confirmation_mode,
            res.status.value,
            res.price.days,
            str(res.price.rate_per_day),
            str(res.price.subtotal),
            str(res.price.delivery_fee),
            str(res.price.total),
            str(res.price.deposit_amount),
            _iso(res.created_at),
            _iso(res.submitted_at),
            _iso(res.owner_decision_deadline),
            _iso(res.payment_deadline),
            res.hold_status.value,
            _iso(res.updated_at),
        ),
    )
    return int(cursor.lastrowid)


def _compare_and_set(conn: sqlite3.Connection, change: Transition) -> bool:
    """Persist *change* only if the row still holds the state it was computed from."""
    res = change.reservation
    cursor = conn.execute(
        """
        UPDATE reservations
        SET status = ?,
            owner_decision_deadline = ?,
            owner_decided_at = ?,
            payment_deadline = ?,
            payment_attempts = ?,
            payment_failed_at = ?,
            payment_failure_reason = ?,
            hold_status = ?,
            confirmed_at = ?,
            closed_at = ?,
            expiry_reason = ?,
            cancelled_by = ?,
            status_reason = ?,
            updated_at = ?,
            capture_claimed_at = NULL
        WHERE id = ? AND status = ? AND payment_attempts = ?
        """,
        (
            res.status.value,
            _iso(res.owner_decision_deadline),
            _iso(res.owner_decided_at),
            _iso(res.payment_deadline),
            res.payment_attempts,
            _iso(res.payment_failed_at),
            res.payment_failure_reason,
            res.hold_status.value,
            _iso(res.confirmed_at),
            _iso(res.closed_at),
            res.expiry_reason,
            res.cancelled_by,
            res.status_reason,
            _iso(res.updated_at),
            res.id,
            change.previous.value,
            res.payment_attempts - (1 if change.event in (Event.PAYMENT_FAILED, Event.PAYMENT_CAPTURED) else 0),
        ),
    )
    return cursor.rowcount == 1


def _load(conn: sqlite3.Connection, reservation_id: int) -> Optional[Reservation]:
    row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
    return reservation_from_row(row) if row is not None else None


def _require(conn: sqlite3.Connection, reservation_id: int) -> Reservation:
    reservation = _load(conn, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Booking {reservation_id} not found.")
    return reservation


def notify(conn: sqlite3.Connection, reservation: Reservation, now: datetime) -> None:
    """Write the notifications for *reservation*'s current status, at most once each."""
    templates = NOTIFICATION_MESSAGES.get(reservation.status, ())
    if not templates:
        return
    vehicle = get_vehicle(conn, reservation.vehicle_id)
    deadline = reservation.active_deadline()
    context = {
        "car": vehicle.name if vehicle else f"vehicle #{reservation.vehicle_id}",
        "deadline": deadline.strftime("%Y-%m-%d %H:%M") if deadline else "-",
    }
    with write_transaction(conn):
        conn.executemany(
            """
            INSERT OR IGNORE INTO notifications (reservation_id, recipient, event, message, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (reservation.id, recipient, reservation.status.value, template.format(**context), now.isoformat())
                for recipient, template in templates
            ],
        )


def settle_hold(conn: sqlite3.Connection, reservation: Reservation, gateway: PaymentGateway) -> Reservation:
    """Carry out a pending hold release or refund.

    The pending marker is committed together with the status change, so a
    gateway failure here leaves it in place and the next read or sweep
    retries. The ledger records each release and refund once, which makes
    a repeated call harmless.
    """
    settled = SETTLED_HOLDS.get(reservation.hold_status)
    if settled is None:
        return reservation
    try:
        if reservation.hold_status is Hold.RELEASE_PENDING:
            gateway.release_hold(reservation.id)
        else:
            gateway.refund(reservation.id, reservation.price.total)
    except Exception as exc:
        logger.warning(
            "Could not settle %s for reservation %s, will retry: %s",
            reservation.hold_status.value,
            reservation.id,
            exc,
        )
        return reservation
    with write_transaction(conn):
        conn.execute(
            "UPDATE reservations SET hold_status = ? WHERE id = ? AND hold_status = ?",
            (settled.value, reservation.id, reservation.hold_status.value),
        )
    logger.info("Reservation %s hold %s", reservation.id, settled.value)
    return replace(reservation, hold_status=settled)


def settle_pending_holds(
    conn: sqlite3.Connection, *, gateway: PaymentGateway, vehicle_id: Optional[int] = None
) -> List[Reservation]:
    """Retry every release or refund a gateway failure left pending."""
    pending = tuple(hold.value for hold in SETTLED_HOLDS)
    query = "SELECT * FROM reservations WHERE hold_status IN (?, ?)"
    params: List[object] = list(pending)
    if vehicle_id is not None:
        query += " AND vehicle_id = ?"
        params.append(vehicle_id)
    settled: List[Reservation] = []
    for row in conn.execute(query, params).fetchall():
        reservation = settle_hold(conn, reservation_from_row(row), gateway)
        if reservation.hold_status not in SETTLED_HOLDS:
            settled.append(reservation)
    return settled


def _commit_transition(
    conn: sqlite3.Connection, change: Transition, gateway: PaymentGateway, now: datetime
) -> Optional[Reservation]:
    with write_transaction(conn):
        stored = _compare_and_set(conn, change)
    if not stored:
        logger.info(
            "Reservation %s changed concurrently; %s not applied",
            change.reservation.id,
            change.event.value,
        )
        return None
    reservation = settle_hold(conn, change.reservation, gateway)
    if change.changed_status:
        notify(conn, reservation, now)
    return reservation


def refresh(
    conn: sqlite3.Connection, reservation: Reservation, *, now: datetime, gateway: PaymentGateway
) -> Reservation:
    """Apply a due expiry to *reservation* and return its current stored state."""
    change = evaluate_expiry(reservation, now)
    if change is None:
        return settle_hold(conn, reservation, gateway)
    _commit_transition(conn, change, gateway, now)
    return _require(conn, reservation.id)


def get_reservation(
    conn: sqlite3.Connection, reservation_id: int, *, now: datetime, gateway: PaymentGateway
) -> Optional[Reservation]:
    reservation = _load(conn, reservation_id)
    if reservation is None:
        return None
    return refresh(conn, reservation, now=now, gateway=gateway)


def list_reservations(
    conn: sqlite3.Connection, vehicle_id: int, *, now: datetime, gateway: PaymentGateway
) -> List[Reservation]:
    rows = conn.execute(
        "SELECT * FROM reservations WHERE vehicle_id = ? ORDER BY start_date, id",
        (vehicle_id,),
    ).fetchall()
    return [refresh(conn, reservation_from_row(row), now=now, gateway=gateway) for row in rows]


def expire_overdue(
    conn: sqlite3.Connection,
    *,
    now: datetime,
    gateway: PaymentGateway,
    vehicle_id: Optional[int] = None,
) -> List[Reservation]:
    """Expire every reservation whose owner or payment deadline has elapsed."""
    query = """
        SELECT * FROM reservations
        WHERE ((status = 'awaiting_owner' AND owner_decision_deadline < ?)
            OR (status = 'pending_payment' AND payment_deadline < ?))
    """
    params: List[object] = [now.isoformat(), now.isoformat()]
    if vehicle_id is not None:
        query += " AND vehicle_id = ?"
        params.append(vehicle_id)
    settle_pending_holds(conn, gateway=gateway, vehicle_id=vehicle_id)
    expired: List[Reservation] = []
    for row in conn.execute(query, params).fetchall():
        change = evaluate_expiry(reservation_from_row(row), now)
        if change is None:
            continue
        updated = _commit_transition(conn, change, gateway, now)
        if updated is not None:
            expired.append(updated)
    if expired:
        logger.info("Expired %s overdue reservations", len(expired))
    return expired


def _blocking_rows(conn: sqlite3.Connection, vehicle_id: int) -> List[Reservation]:
    placeholders = ",".join("?" for _ in BLOCKING_STATUSES)
    rows = conn.execute(
        f"SELECT * FROM reservations WHERE vehicle_id = ? AND status IN ({placeholders})",
        (vehicle_id, *(status.value for status in BLOCKING_STATUSES)),
    ).fetchall()
    return [reservation_from_row(row) for row in rows]


def list_blocking_windows(
    conn: sqlite3.Connection, vehicle_id: int, *, now: datetime, gateway: PaymentGateway
) -> List[ReservationWindow]:
    """Availability index for *vehicle_id*, with overdue reservations expired first."""
    expire_overdue(conn, now=now, gateway=gateway, vehicle_id=vehicle_id)
    return unavailable_windows(_blocking_rows(conn, vehicle_id))


def _authorize_hold(conn: sqlite3.Connection, reservation: Reservation, gateway: PaymentGateway) -> None:
    """Place the owner-decision hold, withdrawing the reservation if the gateway refuses."""
    try:
        gateway.authorize_hold(reservation.id, reservation.price.total)
    except Exception as exc:
        logger.warning("Hold authorization for reservation %s failed: %s", reservation.id, exc)
        with write_transaction(conn):
            conn.execute(
                "DELETE FROM reservations WHERE id = ? AND status = ?",
                (reservation.id, reservation.status.value),
            )
        raise PaymentError(
            "The payment hold could not be placed and your dates were not reserved. Please retry.",
            reservation_id=reservation.id,
        ) from exc


def submit_reservation(
    conn: sqlite3.Connection,
    candidate: ReservationCandidate,
    *,
    now: datetime,
    gateway: PaymentGateway,
    deadlines: Deadlines = Deadlines(),
) -> Reservation:
    """Create a reservation if its window is still free.

    The overlap check and the insert share one write transaction, so a
    concurrent submission for the same dates gets a :class:`ConflictError`
    naming the reservation that won.
    """
    vehicle = get_vehicle(conn, candidate.vehicle_id)
    if vehicle is None:
        raise ValidationError("Unknown vehicle.", field="carId", code="UNKNOWN_VEHICLE")
    pickup = get_location(conn, candidate.pickup_location_id)
    dropoff = get_location(conn, candidate.dropoff_location_id)
    if pickup is None or dropoff is None:
        raise ValidationError("Unknown pickup or drop-off location.", field="pickupLocationId", code="UNKNOWN_LOCATION")
    window = validate_window(ReservationWindow(candidate.window.start, candidate.window.end))
    contact = validate_contact(candidate.contact.phone, candidate.contact.age, candidate.contact.notes)
    breakdown = price_for_vehicle(vehicle, window, pickup)

    expire_overdue(conn, now=now, gateway=gateway, vehicle_id=vehicle.id)

    draft = Reservation(
        vehicle_id=vehicle.id,
        window=window,
        pickup_location_id=pickup.id,
        dropoff_location_id=dropoff.id,
        contact=contact,
        confirmation_mode=vehicle.confirmation_mode,
        price=breakdown,
        created_at=now,
        pickup_time=candidate.pickup_time,
        return_time=candidate.return_time,
    )
    submitted = transition(draft, Event.SUBMIT, now=now, deadlines=deadlines).reservation
    routed = transition(submitted, Event.ROUTE, now=now, deadlines=deadlines)

    with write_transaction(conn):
        clash = find_overlap(window, unavailable_windows(_blocking_rows(conn, vehicle.id)))
        if clash is not None:
            logger.warning(
                "Rejected submission for vehicle %s %s..%s: overlaps reservation %s",
                vehicle.id,
                window.start,
                window.end,
                clash.reservation_id,
            )
            raise ConflictError(
                "These dates were just booked by someone else. Please choose new dates.",
                conflicting_reservation_id=clash.reservation_id,
            )
        reservation_id = _insert(conn, routed.reservation)

    stored = _require(conn, reservation_id)
    logger.info(
        "Reservation %s created for vehicle %s (%s..%s) as %s",
        reservation_id,
        vehicle.id,
        window.start,
        window.end,
        stored.status.value,
    )
    if Effect.AUTHORIZE_HOLD in routed.effects:
        _authorize_hold(conn, stored, gateway)
    notify(conn, stored, now)
    return stored


def apply_event(
    conn: sqlite3.Connection,
    reservation_id: int,
    event: Event,
    *,
    now: datetime,
    gateway: PaymentGateway,
    deadlines: Deadlines = Deadlines(),
    reason: str = "",
    actor: str = "",
) -> Reservation:
    current = get_reservation(conn, reservation_id, now=now, gateway=gateway)
    if current is None:
        raise NotFoundError(f"Booking {reservation_id} not found.")
    change = transition(current, event, now=now, deadlines=deadlines, reason=reason, actor=actor)
    updated = _commit_transition(conn, change, gateway, now)
    if updated is None:
        raise TransitionError("The reservation was updated by someone else. Please reload it.", code="STALE_RESERVATION")
    return updated


def owner_decide(
    conn: sqlite3.Connection,
    reservation_id: int,
    decision: str,
    *,
    now: datetime,
    gateway: PaymentGateway,
    deadlines: Deadlines = Deadlines(),
    reason: str = "",
) -> Reservation:
    events = {"accept": Event.OWNER_ACCEPT, "reject": Event.OWNER_REJECT}
    if decision not in events:
        raise ValidationError("Decision must be 'accept' or 'reject'.", field="decision")
    return apply_event(
        conn,
        reservation_id,
        events[decision],
        now=now,
        gateway=gateway,
        deadlines=deadlines,
        reason=reason,
    )


def _claim_capture(conn: sqlite3.Connection, reservation: Reservation, now: datetime) -> bool:
    """Mark *reservation* as being charged; only one caller at a time gets the claim."""
    with write_transaction(conn):
        cursor = conn.execute(
            """
            UPDATE reservations
            SET capture_claimed_at = ?
            WHERE id = ? AND status = ? AND payment_attempts = ?
              AND (capture_claimed_at IS NULL OR capture_claimed_at < ?)
            """,
            (
                now.isoformat(),
                reservation.id,
                Status.PENDING_PAYMENT.value,
                reservation.payment_attempts,
                (now - CAPTURE_CLAIM_TIMEOUT).isoformat(),
            ),
        )
    return cursor.rowcount == 1


def _refund_orphaned_capture(conn: sqlite3.Connection, reservation_id: int, gateway: PaymentGateway) -> None:
    # The capture consumed any hold; only the refund is left to settle.
    with write_transaction(conn):
        conn.execute(
            "UPDATE reservations SET hold_status = ? WHERE id = ?",
            (Hold.REFUND_PENDING.value, reservation_id),
        )
    settle_hold(conn, _require(conn, reservation_id), gateway)


def capture_payment(
    conn: sqlite3.Connection,
    reservation_id: int,
    *,
    now: datetime,
    gateway: PaymentGateway,
) -> Reservation:
    """Charge the renter; a failure keeps the dates blocked and raises PaymentError.

    The reservation is claimed before the gateway is called, so a second
    concurrent payment request is refused instead of charging twice. If the
    reservation expired or was cancelled while the charge was in flight, the
    captured amount is refunded.
    """
    current = get_reservation(conn, reservation_id, now=now, gateway=gateway)
    if current is None:
        raise NotFoundError(f"Booking {reservation_id} not found.")
    if current.status is not Status.PENDING_PAYMENT:
        raise TransitionError(
            f"Cannot pay a reservation in status {current.status.value}."
        )
    if not _claim_capture(conn, current, now):
        raise TransitionError(
            "A payment for this booking is already in progress.", code="CAPTURE_IN_PROGRESS"
        )
    try:
        result = gateway.capture(current.id, current.price.total)
        success, failure_reason = result.success, result.reason
    except Exception as exc:
        logger.warning("Capture for reservation %s raised: %s", current.id, exc)
        success, failure_reason = False, str(exc)

    if success:
        confirmed = _commit_transition(
            conn, transition(current, Event.PAYMENT_CAPTURED, now=now), gateway, now
        )
        if confirmed is None:
            logger.warning("Reservation %s changed during capture; refunding", current.id)
            _refund_orphaned_capture(conn, current.id, gateway)
            raise TransitionError(
                "The booking changed while the payment was processed. The charge is being refunded.",
                code="STALE_RESERVATION",
            )
        return confirmed

    failed = _commit_transition(
        conn, transition(current, Event.PAYMENT_FAILED, now=now, reason=failure_reason), gateway, now
    )
    if failed is None:
        raise TransitionError("The reservation was updated by someone else. Please reload it.", code="STALE_RESERVATION")
    logger.warning("Payment failed for reservation %s: %s", current.id, failure_reason)
    raise PaymentError(
        "Payment could not be completed. Your dates are still held; please retry.",
        reservation_id=current.id,
    )


def cancel_reservation(
    conn: sqlite3.Connection,
    reservation_id: int,
    *,
    actor: str,
    now: datetime,
    gateway: PaymentGateway,
    reason: str = "",
) -> Reservation:
    return apply_event(
        conn,
        reservation_id,
        Event.CANCEL,
        now=now,
        gateway=gateway,
        reason=reason,
        actor=actor,
    )


def list_notifications(conn: sqlite3.Connection, reservation_id: int) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM notifications WHERE reservation_id = ? ORDER BY id",
        (reservation_id,),
    ).fetchall()


__all__ = [
    "ensure_schema",
    "write_transaction",
    "add_vehicle",
    "add_location",
    "get_vehicle",
    "get_location",
    "list_locations",
    "get_reservation",
    "list_reservations",
    "list_blocking_windows",
    "expire_overdue",
    "submit_reservation",
    "apply_event",
    "owner_decide",
    "capture_payment",
    "cancel_reservation",
    "list_notifications",
    "notify",
    "settle_hold",
    "settle_pending_holds",
]
