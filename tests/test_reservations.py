import random
import sqlite3
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

import reservations as store
from availability import ReservationWindow, overlaps
from booking_flow import ReservationCandidate
from errors import ConflictError, NotFoundError, PaymentError, TransitionError, ValidationError
from lifecycle import Deadlines, Event, Hold, Status, transition
from models import RenterContact
from payments import LedgerPaymentGateway

from conftest import T0


def candidate(vehicle, location, start="2024-05-10", end="2024-05-13", age=30):
    return ReservationCandidate(
        vehicle_id=vehicle.id,
        window=ReservationWindow.from_values(start, end),
        pickup_location_id=location.id,
        dropoff_location_id=location.id,
        contact=RenterContact("+212600000000", age),
    )


def blocking_ids(conn, vehicle, clock, gateway):
    windows = store.list_blocking_windows(conn, vehicle.id, now=clock(), gateway=gateway)
    return [window.reservation_id for window in windows]


def test_instant_and_manual_vehicles_take_different_routes(conn, fleet, clock, gateway):
    instant = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    manual = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)

    assert instant.status is Status.PENDING_PAYMENT
    assert instant.payment_deadline == T0 + timedelta(hours=1)
    assert manual.status is Status.AWAITING_OWNER
    assert manual.owner_decision_deadline == T0 + timedelta(hours=3)
    assert manual.hold_status is Hold.HELD
    assert gateway.count("authorize", manual.id) == 1
    assert gateway.count("authorize", instant.id) == 0

    for field in ("window", "pickup_location_id", "dropoff_location_id", "contact", "price"):
        assert getattr(instant, field) == getattr(manual, field)
    assert instant.price.total == Decimal("1600.00")


def test_overlapping_submission_is_a_conflict(conn, fleet, clock, gateway):
    first = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    with pytest.raises(ConflictError) as excinfo:
        store.submit_reservation(
            conn, candidate(fleet.instant, fleet.city, "2024-05-12", "2024-05-15"), now=clock(), gateway=gateway
        )
    assert excinfo.value.conflicting_reservation_id == first.id
    assert blocking_ids(conn, fleet.instant, clock, gateway) == [first.id]


def test_back_to_back_bookings_are_allowed(conn, fleet, clock, gateway):
    store.submit_reservation(conn, candidate(fleet.instant, fleet.airport, "2024-05-10", "2024-05-12"), now=clock(), gateway=gateway)
    second = store.submit_reservation(
        conn, candidate(fleet.instant, fleet.airport, "2024-05-12", "2024-05-15"), now=clock(), gateway=gateway
    )
    assert second.status is Status.PENDING_PAYMENT


def test_other_vehicles_are_independent(conn, fleet, clock, gateway):
    store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    other = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    assert other.is_blocking


def test_concurrent_submissions_only_one_wins(db_path, fleet, clock, gateway):
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def attempt(start, end):
        connection = sqlite3.connect(db_path, timeout=10)
        connection.row_factory = sqlite3.Row
        try:
            barrier.wait()
            result = store.submit_reservation(
                connection, candidate(fleet.instant, fleet.airport, start, end), now=clock(), gateway=gateway
            )
            outcome = ("ok", result.id)
        except ConflictError as exc:
            outcome = ("conflict", exc.conflicting_reservation_id)
        finally:
            connection.close()
        with lock:
            outcomes.append(outcome)

    threads = [
        threading.Thread(target=attempt, args=("2024-05-10", "2024-05-13")),
        threading.Thread(target=attempt, args=("2024-05-12", "2024-05-14")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    kinds = sorted(kind for kind, _ in outcomes)
    assert kinds == ["conflict", "ok"]
    winner = next(value for kind, value in outcomes if kind == "ok")
    loser_points_at = next(value for kind, value in outcomes if kind == "conflict")
    assert loser_points_at == winner


def test_minimum_stay_is_enforced_on_submission(conn, fleet, clock, gateway):
    with pytest.raises(ValidationError) as excinfo:
        store.submit_reservation(
            conn, candidate(fleet.long_stay, fleet.city, "2024-05-10", "2024-05-12"), now=clock(), gateway=gateway
        )
    assert excinfo.value.code == "MIN_RENTAL_DAYS"
    assert store.list_reservations(conn, fleet.long_stay.id, now=clock(), gateway=gateway) == []


def test_unknown_vehicle_and_underage_renter_are_rejected(conn, fleet, clock, gateway):
    ghost = candidate(fleet.instant, fleet.airport)
    ghost = ReservationCandidate(999, ghost.window, ghost.pickup_location_id, ghost.dropoff_location_id, ghost.contact)
    with pytest.raises(ValidationError) as excinfo:
        store.submit_reservation(conn, ghost, now=clock(), gateway=gateway)
    assert excinfo.value.code == "UNKNOWN_VEHICLE"

    with pytest.raises(ValidationError) as excinfo:
        store.submit_reservation(conn, candidate(fleet.instant, fleet.airport, age=17), now=clock(), gateway=gateway)
    assert excinfo.value.code == "AGE_OUT_OF_RANGE"


def test_owner_timeout_expires_on_read_and_frees_dates(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    clock.advance(hours=3)
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).status is Status.AWAITING_OWNER

    clock.advance(seconds=1)
    expired = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert expired.status is Status.EXPIRED
    assert expired.expiry_reason == "owner"
    assert expired.hold_status is Hold.RELEASED
    assert blocking_ids(conn, fleet.manual, clock, gateway) == []
    assert gateway.count("release", res.id) == 1

    clock.advance(minutes=5)
    store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert store.expire_overdue(conn, now=clock(), gateway=gateway) == []
    assert gateway.count("release", res.id) == 1

    expired_notes = [row for row in store.list_notifications(conn, res.id) if row["event"] == "expired"]
    assert sorted(row["recipient"] for row in expired_notes) == ["owner", "renter"]


def test_sweep_expires_every_overdue_reservation(conn, fleet, clock, gateway):
    manual = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    instant = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)

    clock.advance(hours=1, seconds=1)
    first = store.expire_overdue(conn, now=clock(), gateway=gateway)
    assert [res.id for res in first] == [instant.id]
    assert first[0].expiry_reason == "payment"

    clock.advance(hours=2)
    second = store.expire_overdue(conn, now=clock(), gateway=gateway)
    assert [res.id for res in second] == [manual.id]
    assert store.expire_overdue(conn, now=clock(), gateway=gateway) == []


def test_expired_dates_can_be_booked_again(conn, fleet, clock, gateway):
    store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    clock.advance(hours=4)
    again = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    assert again.status is Status.AWAITING_OWNER


def test_owner_accept_and_payment_confirm(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    clock.advance(hours=2)
    accepted = store.owner_decide(conn, res.id, "accept", now=clock(), gateway=gateway)
    assert accepted.status is Status.PENDING_PAYMENT
    assert accepted.payment_deadline == clock() + timedelta(hours=1)

    clock.advance(minutes=30)
    confirmed = store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    assert confirmed.status is Status.CONFIRMED
    assert ("capture", res.id, Decimal("1600.00")) in gateway.calls
    assert blocking_ids(conn, fleet.manual, clock, gateway) == [res.id]

    # Confirmed bookings never expire.
    clock.advance(days=30)
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).status is Status.CONFIRMED


def test_owner_reject_releases_hold_and_dates(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    rejected = store.owner_decide(conn, res.id, "reject", now=clock(), gateway=gateway, reason="Maintenance")
    assert rejected.status is Status.REJECTED
    assert rejected.status_reason == "Maintenance"
    assert gateway.count("release", res.id) == 1
    assert blocking_ids(conn, fleet.manual, clock, gateway) == []

    with pytest.raises(TransitionError):
        store.owner_decide(conn, res.id, "accept", now=clock(), gateway=gateway)


def test_owner_decision_must_be_accept_or_reject(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    with pytest.raises(ValidationError):
        store.owner_decide(conn, res.id, "maybe", now=clock(), gateway=gateway)


def test_failed_payment_keeps_window_until_deadline(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    gateway.declines = 1
    clock.advance(minutes=10)
    with pytest.raises(PaymentError) as excinfo:
        store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    assert excinfo.value.reservation_id == res.id

    failed = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert failed.status is Status.PENDING_PAYMENT
    assert failed.payment_failed
    assert failed.payment_failure_reason == "Card declined"
    with pytest.raises(ConflictError):
        store.submit_reservation(conn, candidate(fleet.instant, fleet.city), now=clock(), gateway=gateway)

    clock.advance(minutes=51)
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).status is Status.EXPIRED
    retry = store.submit_reservation(conn, candidate(fleet.instant, fleet.city), now=clock(), gateway=gateway)
    assert retry.status is Status.PENDING_PAYMENT


def test_payment_retry_after_failure_confirms(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    gateway.declines = 1
    with pytest.raises(PaymentError):
        store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    confirmed = store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    assert confirmed.status is Status.CONFIRMED
    assert confirmed.payment_attempts == 2
    assert not confirmed.payment_failed


def test_gateway_exception_counts_as_failed_capture(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)

    def broken(reservation_id, amount):
        raise RuntimeError("gateway timeout")

    gateway.capture = broken
    with pytest.raises(PaymentError):
        store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).payment_failure_reason == "gateway timeout"


def test_pay_requires_pending_payment(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    with pytest.raises(TransitionError):
        store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    with pytest.raises(NotFoundError):
        store.capture_payment(conn, 999, now=clock(), gateway=gateway)


def test_cancelling_confirmed_booking_refunds_and_frees_dates(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    cancelled = store.cancel_reservation(conn, res.id, actor="renter", now=clock(), gateway=gateway, reason="Plans changed")
    assert cancelled.status is Status.CANCELLED
    assert cancelled.cancelled_by == "renter"
    assert gateway.count("refund", res.id) == 1
    assert blocking_ids(conn, fleet.instant, clock, gateway) == []

    with pytest.raises(TransitionError):
        store.cancel_reservation(conn, res.id, actor="renter", now=clock(), gateway=gateway)


def test_notifications_are_written_once_per_status(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    store.notify(conn, res, clock())
    rows = store.list_notifications(conn, res.id)
    assert sorted((row["recipient"], row["event"]) for row in rows) == [
        ("owner", "awaiting_owner"),
        ("renter", "awaiting_owner"),
    ]
    assert "Peugeot 208" in rows[0]["message"]


def test_stale_update_is_not_applied(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    stale = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    store.owner_decide(conn, res.id, "reject", now=clock(), gateway=gateway)

    change = transition(stale, Event.OWNER_ACCEPT, now=clock())
    assert not store._commit_transition(conn, change, gateway, clock())
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).status is Status.REJECTED


def test_blocking_windows_never_overlap(conn, fleet, clock, gateway):
    rng = random.Random(7)
    base = date(2024, 6, 1)
    vehicles = [fleet.instant, fleet.manual]
    for _ in range(60):
        vehicle = rng.choice(vehicles)
        action = rng.random()
        if action < 0.5:
            start = base + timedelta(days=rng.randrange(0, 30))
            end = start + timedelta(days=rng.randrange(1, 6))
            try:
                store.submit_reservation(
                    conn, candidate(vehicle, fleet.city, start.isoformat(), end.isoformat()), now=clock(), gateway=gateway
                )
            except ConflictError:
                pass
        else:
            current = store.list_reservations(conn, vehicle.id, now=clock(), gateway=gateway)
            live = [res for res in current if res.is_blocking and not res.is_terminal]
            if live:
                target = rng.choice(live)
                if target.status is Status.AWAITING_OWNER:
                    store.owner_decide(conn, target.id, rng.choice(["accept", "reject"]), now=clock(), gateway=gateway)
                elif rng.random() < 0.5:
                    store.capture_payment(conn, target.id, now=clock(), gateway=gateway)
                else:
                    store.cancel_reservation(conn, target.id, actor="renter", now=clock(), gateway=gateway)
            clock.advance(minutes=rng.randrange(5, 120))

        for each in vehicles:
            windows = store.list_blocking_windows(conn, each.id, now=clock(), gateway=gateway)
            for i, left in enumerate(windows):
                for right in windows[i + 1:]:
                    assert not overlaps(left, right)


def test_ledger_gateway_records_release_once(db_path, conn, fleet, clock):
    ledger = LedgerPaymentGateway(str(db_path))
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=ledger)
    ledger.release_hold(res.id)
    ledger.release_hold(res.id)
    kinds = [row["kind"] for row in conn.execute(
        "SELECT kind FROM payment_events WHERE reservation_id = ? ORDER BY id", (res.id,)
    )]
    assert kinds == ["authorize", "release"]


def test_custom_deadlines(conn, fleet, clock, gateway):
    res = store.submit_reservation(
        conn,
        candidate(fleet.manual, fleet.airport),
        now=clock(),
        gateway=gateway,
        deadlines=Deadlines.from_hours(1, 1),
    )
    assert res.owner_decision_deadline == T0 + timedelta(hours=1)


def test_failed_hold_authorization_frees_the_dates(conn, fleet, clock, gateway):
    def broken(reservation_id, amount):
        raise RuntimeError("gateway down")

    gateway.authorize_hold = broken
    with pytest.raises(PaymentError) as excinfo:
        store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    assert excinfo.value.reservation_id is not None
    assert conn.execute("SELECT COUNT(*) FROM reservations").fetchone()[0] == 0
    assert blocking_ids(conn, fleet.manual, clock, gateway) == []

    del gateway.authorize_hold
    retry = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)
    assert retry.status is Status.AWAITING_OWNER
    assert retry.hold_status is Hold.HELD
    assert gateway.count("authorize", retry.id) == 1


def test_failed_release_is_retried_on_the_next_read(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)

    def broken(reservation_id):
        raise RuntimeError("gateway down")

    gateway.release_hold = broken
    clock.advance(hours=3, seconds=1)
    expired = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert expired.status is Status.EXPIRED
    assert expired.hold_status is Hold.RELEASE_PENDING
    assert blocking_ids(conn, fleet.manual, clock, gateway) == []

    del gateway.release_hold
    settled = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert settled.hold_status is Hold.RELEASED
    assert gateway.count("release", res.id) == 1


def test_sweep_retries_pending_releases(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.manual, fleet.airport), now=clock(), gateway=gateway)

    def broken(reservation_id):
        raise RuntimeError("gateway down")

    gateway.release_hold = broken
    clock.advance(hours=3, seconds=1)
    assert [r.id for r in store.expire_overdue(conn, now=clock(), gateway=gateway)] == [res.id]
    assert store.settle_pending_holds(conn, gateway=gateway) == []

    del gateway.release_hold
    assert store.expire_overdue(conn, now=clock(), gateway=gateway) == []
    assert gateway.count("release", res.id) == 1
    assert store.settle_pending_holds(conn, gateway=gateway) == []
    assert store.get_reservation(conn, res.id, now=clock(), gateway=gateway).hold_status is Hold.RELEASED


def test_failed_refund_stays_pending_until_settled(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    store.capture_payment(conn, res.id, now=clock(), gateway=gateway)

    def broken(reservation_id, amount):
        raise RuntimeError("gateway down")

    gateway.refund = broken
    cancelled = store.cancel_reservation(conn, res.id, actor="owner", now=clock(), gateway=gateway)
    assert cancelled.status is Status.CANCELLED
    assert cancelled.hold_status is Hold.REFUND_PENDING

    del gateway.refund
    settled = store.settle_pending_holds(conn, gateway=gateway)
    assert [r.id for r in settled] == [res.id]
    assert settled[0].hold_status is Hold.REFUNDED
    assert gateway.count("refund", res.id) == 1


def second_connection(db_path):
    other = sqlite3.connect(db_path)
    other.row_factory = sqlite3.Row
    return other


def test_concurrent_payment_is_charged_once(db_path, conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    other = second_connection(db_path)
    refused = []
    capture = gateway.capture

    def capture_with_second_request(reservation_id, amount):
        try:
            store.capture_payment(other, reservation_id, now=clock(), gateway=gateway)
        except TransitionError as exc:
            refused.append(exc.code)
        return capture(reservation_id, amount)

    gateway.capture = capture_with_second_request
    try:
        confirmed = store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    finally:
        other.close()

    assert refused == ["CAPTURE_IN_PROGRESS"]
    assert confirmed.status is Status.CONFIRMED
    assert gateway.count("capture", res.id) == 1


def test_abandoned_capture_claim_can_be_retaken(conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    assert store._claim_capture(conn, res, clock())
    with pytest.raises(TransitionError) as excinfo:
        store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    assert excinfo.value.code == "CAPTURE_IN_PROGRESS"

    clock.advance(minutes=6)
    assert store.capture_payment(conn, res.id, now=clock(), gateway=gateway).status is Status.CONFIRMED


def test_capture_after_cancellation_is_refunded(db_path, conn, fleet, clock, gateway):
    res = store.submit_reservation(conn, candidate(fleet.instant, fleet.airport), now=clock(), gateway=gateway)
    other = second_connection(db_path)
    capture = gateway.capture

    def capture_after_cancel(reservation_id, amount):
        store.cancel_reservation(other, reservation_id, actor="renter", now=clock(), gateway=gateway)
        return capture(reservation_id, amount)

    gateway.capture = capture_after_cancel
    try:
        with pytest.raises(TransitionError) as excinfo:
            store.capture_payment(conn, res.id, now=clock(), gateway=gateway)
    finally:
        other.close()

    assert excinfo.value.code == "STALE_RESERVATION"
    current = store.get_reservation(conn, res.id, now=clock(), gateway=gateway)
    assert current.status is Status.CANCELLED
    assert current.hold_status is Hold.REFUNDED
    assert gateway.count("refund", res.id) == 1
