"""Reservation lifecycle state machine.

All status changes go through :func:`transition`. It is pure: it returns the
next reservation plus the side effects the caller must carry out (hold
release, refund) and never touches storage or the payment gateway itself.

::

    draft -> submitted -> awaiting_owner  -> pending_payment -> confirmed
                       \\-> pending_payment                 \\-> expired (payment)
    awaiting_owner -> rejected | expired (owner)
    awaiting_owner | pending_payment | confirmed -> cancelled
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from availability import ReservationWindow
from errors import TransitionError
from models import INSTANT, MANUAL, RenterContact
from pricing import PriceBreakdown

logger = logging.getLogger(__name__)

OWNER_DECISION_WINDOW = timedelta(hours=3)
PAYMENT_WINDOW = timedelta(hours=1)


class Status(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    AWAITING_OWNER = "awaiting_owner"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Event(str, Enum):
    SUBMIT = "submit"
    ROUTE = "route"
    OWNER_ACCEPT = "owner_accept"
    OWNER_REJECT = "owner_reject"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_FAILED = "payment_failed"
    EXPIRE = "expire"
    CANCEL = "cancel"


class Effect(str, Enum):
    AUTHORIZE_HOLD = "authorize_hold"
    RELEASE_HOLD = "release_hold"
    REFUND = "refund"


class Hold(str, Enum):
    NONE = "none"
    HELD = "held"
    RELEASE_PENDING = "release_pending"
    RELEASED = "released"
    CAPTURED = "captured"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


# Pending holds are settled by the store once the gateway confirms.
SETTLED_HOLDS = {Hold.RELEASE_PENDING: Hold.RELEASED, Hold.REFUND_PENDING: Hold.REFUNDED}


BLOCKING_STATUSES = frozenset(
    {Status.SUBMITTED, Status.AWAITING_OWNER, Status.PENDING_PAYMENT, Status.CONFIRMED}
)
TERMINAL_STATUSES = frozenset(
    {Status.CONFIRMED, Status.REJECTED, Status.EXPIRED, Status.CANCELLED}
)
CANCELLABLE_STATUSES = frozenset(
    {Status.AWAITING_OWNER, Status.PENDING_PAYMENT, Status.CONFIRMED}
)


@dataclass(frozen=True)
class Deadlines:
    owner_decision: timedelta = OWNER_DECISION_WINDOW
    payment: timedelta = PAYMENT_WINDOW

    @classmethod
    def from_hours(cls, owner_hours: float, payment_hours: float) -> "Deadlines":
        return cls(timedelta(hours=owner_hours), timedelta(hours=payment_hours))


@dataclass(frozen=True)
class Reservation:
    vehicle_id: int
    window: ReservationWindow
    pickup_location_id: int
    dropoff_location_id: int
    contact: RenterContact
    confirmation_mode: str
    price: PriceBreakdown
    created_at: datetime
    status: Status = Status.DRAFT
    id: Optional[int] = None
    pickup_time: str = ""
    return_time: str = ""
    submitted_at: Optional[datetime] = None
    owner_decision_deadline: Optional[datetime] = None
    owner_decided_at: Optional[datetime] = None
    payment_deadline: Optional[datetime] = None
    payment_attempts: int = 0
    payment_failed_at: Optional[datetime] = None
    payment_failure_reason: str = ""
    hold_status: Hold = Hold.NONE
    confirmed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    expiry_reason: str = ""
    cancelled_by: str = ""
    status_reason: str = ""
    updated_at: Optional[datetime] = None

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def payment_failed(self) -> bool:
        return self.status is Status.PENDING_PAYMENT and self.payment_failed_at is not None

    def active_deadline(self) -> Optional[datetime]:
        if self.status is Status.AWAITING_OWNER:
            return self.owner_decision_deadline
        if self.status is Status.PENDING_PAYMENT:
            return self.payment_deadline
        return None


@dataclass(frozen=True)
class Transition:
    previous: Status
    reservation: Reservation
    event: Event
    effects: Tuple[Effect, ...] = field(default_factory=tuple)

    @property
    def changed_status(self) -> bool:
        return self.previous is not self.reservation.status


def _release_if_held(reservation: Reservation) -> Tuple[Hold, List[Effect]]:
    if reservation.hold_status is Hold.HELD:
        return Hold.RELEASE_PENDING, [Effect.RELEASE_HOLD]
    return reservation.hold_status, []


def _submit(res: Reservation, now: datetime, deadlines: Deadlines, **_) -> Tuple[Reservation, List[Effect]]:
    return replace(res, status=Status.SUBMITTED, submitted_at=now), []


def _route(res: Reservation, now: datetime, deadlines: Deadlines, **_) -> Tuple[Reservation, List[Effect]]:
    submitted_at = res.submitted_at or now
    if res.confirmation_mode == MANUAL:
        routed = replace(
            res,
            status=Status.AWAITING_OWNER,
            owner_decision_deadline=submitted_at + deadlines.owner_decision,
            hold_status=Hold.HELD,
        )
        return routed, [Effect.AUTHORIZE_HOLD]
    if res.confirmation_mode == INSTANT:
        return replace(
            res,
            status=Status.PENDING_PAYMENT,
            payment_deadline=submitted_at + deadlines.payment,
        ), []
    raise TransitionError(f"Unknown confirmation mode {res.confirmation_mode!r}")


def _owner_accept(res: Reservation, now: datetime, deadlines: Deadlines, **_) -> Tuple[Reservation, List[Effect]]:
    if res.owner_decision_deadline is not None and now > res.owner_decision_deadline:
        raise TransitionError("The owner decision window has elapsed.", code="DECISION_WINDOW_ELAPSED")
    return replace(
        res,
        status=Status.PENDING_PAYMENT,
        owner_decided_at=now,
        payment_deadline=now + deadlines.payment,
    ), []


def _owner_reject(res: Reservation, now: datetime, deadlines: Deadlines, reason: str = "", **_) -> Tuple[Reservation, List[Effect]]:
    if res.owner_decision_deadline is not None and now > res.owner_decision_deadline:
        raise TransitionError("The owner decision window has elapsed.", code="DECISION_WINDOW_ELAPSED")
    hold, effects = _release_if_held(res)
    return replace(
        res,
        status=Status.REJECTED,
        owner_decided_at=now,
        closed_at=now,
        hold_status=hold,
        status_reason=reason,
    ), effects


def _payment_captured(res: Reservation, now: datetime, deadlines: Deadlines, **_) -> Tuple[Reservation, List[Effect]]:
    return replace(
        res,
        status=Status.CONFIRMED,
        confirmed_at=now,
        closed_at=now,
        hold_status=Hold.CAPTURED,
        payment_attempts=res.payment_attempts + 1,
        payment_failed_at=None,
        payment_failure_reason="",
    ), []


def _payment_failed(res: Reservation, now: datetime, deadlines: Deadlines, reason: str = "", **_) -> Tuple[Reservation, List[Effect]]:
    # Dates stay blocked; only the payment deadline can free them.
    return replace(
        res,
        payment_attempts=res.payment_attempts + 1,
        payment_failed_at=now,
        payment_failure_reason=reason or "Payment capture failed",
    ), []


def _expire(res: Reservation, now: datetime, deadlines: Deadlines, **_) -> Tuple[Reservation, List[Effect]]:
    deadline = res.active_deadline()
    if deadline is None or now <= deadline:
        raise TransitionError("Reservation deadline has not elapsed yet.", code="DEADLINE_NOT_ELAPSED")
    reason = "owner" if res.status is Status.AWAITING_OWNER else "payment"
    hold, effects = _release_if_held(res)
    return replace(
        res,
        status=Status.EXPIRED,
        expiry_reason=reason,
        closed_at=now,
        hold_status=hold,
    ), effects


def _cancel(res: Reservation, now: datetime, deadlines: Deadlines, reason: str = "", actor: str = "", **_) -> Tuple[Reservation, List[Effect]]:
    if actor not in ("renter", "owner"):
        raise TransitionError("Cancellation must come from the renter or the owner.", code="INVALID_ACTOR")
    hold, effects = _release_if_held(res)
    if res.hold_status is Hold.CAPTURED:
        hold = Hold.REFUND_PENDING
        effects.append(Effect.REFUND)
    return replace(
        res,
        status=Status.CANCELLED,
        cancelled_by=actor,
        status_reason=reason,
        closed_at=now,
        hold_status=hold,
    ), effects


Handler = Callable[..., Tuple[Reservation, List[Effect]]]

TRANSITIONS: Dict[Tuple[Status, Event], Handler] = {
    (Status.DRAFT, Event.SUBMIT): _submit,
    (Status.SUBMITTED, Event.ROUTE): _route,
    (Status.AWAITING_OWNER, Event.OWNER_ACCEPT): _owner_accept,
    (Status.AWAITING_OWNER, Event.OWNER_REJECT): _owner_reject,
    (Status.AWAITING_OWNER, Event.EXPIRE): _expire,
    (Status.AWAITING_OWNER, Event.CANCEL): _cancel,
    (Status.PENDING_PAYMENT, Event.PAYMENT_CAPTURED): _payment_captured,
    (Status.PENDING_PAYMENT, Event.PAYMENT_FAILED): _payment_failed,
    (Status.PENDING_PAYMENT, Event.EXPIRE): _expire,
    (Status.PENDING_PAYMENT, Event.CANCEL): _cancel,
    (Status.CONFIRMED, Event.CANCEL): _cancel,
}


def allowed_events(status: Status) -> List[Event]:
    return [event for (source, event) in TRANSITIONS if source is status]


def transition(
    reservation: Reservation,
    event: Event,
    *,
    now: datetime,
    deadlines: Deadlines = Deadlines(),
    reason: str = "",
    actor: str = "",
) -> Transition:
    """Apply *event* to *reservation* and return the resulting transition."""
    handler = TRANSITIONS.get((reservation.status, event))
    if handler is None:
        raise TransitionError(
            f"Cannot apply {event.value} to a reservation in status {reservation.status.value}."
        )
    updated, effects = handler(
        reservation, now, deadlines, reason=reason.strip(), actor=actor
    )
    updated = replace(updated, updated_at=now)
    logger.info(
        "Reservation %s: %s --%s--> %s",
        reservation.id,
        reservation.status.value,
        event.value,
        updated.status.value,
    )
    return Transition(reservation.status, updated, event, tuple(effects))


def evaluate_expiry(reservation: Reservation, now: datetime) -> Optional[Transition]:
    """Return the expiry transition if *reservation* is past its deadline.

    Terminal reservations and those still inside their window yield ``None``,
    so evaluating an already-expired reservation again is a no-op.
    """
    deadline = reservation.active_deadline()
    if deadline is None or now <= deadline:
        logger.debug("Reservation %s not due for expiry", reservation.id)
        return None
    return transition(reservation, Event.EXPIRE, now=now)


__all__ = [
    "Status",
    "Event",
    "Effect",
    "Hold",
    "SETTLED_HOLDS",
    "Deadlines",
    "Reservation",
    "Transition",
    "BLOCKING_STATUSES",
    "TERMINAL_STATUSES",
    "CANCELLABLE_STATUSES",
    "allowed_events",
    "transition",
    "evaluate_expiry",
]
