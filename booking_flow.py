"""Renter-facing booking steps: dates and locations, contact, review.

The flow never owns mutable state. Each call takes a :class:`BookingDraft`
and returns a new one, so a candidate reservation can always be rebuilt from
its inputs. Overlap checks here are advisory; the store repeats them inside
the submitting transaction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple

from availability import DayLike, ReservationWindow, find_overlap, normalize_day
from errors import ConflictError, ValidationError
from models import Location, RenterContact, Vehicle
from pricing import PriceBreakdown, price_for_vehicle

logger = logging.getLogger(__name__)

MIN_RENTER_AGE = 18
MAX_RENTER_AGE = 100
PHONE_PATTERN = re.compile(r"^\+\d{6,15}$")
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class Step(str, Enum):
    DATES = "dates"
    CONTACT = "contact"
    REVIEW = "review"


STEP_ORDER = (Step.DATES, Step.CONTACT, Step.REVIEW)


def normalize_phone(raw: Optional[str]) -> str:
    cleaned = re.sub(r"\s+", "", raw or "")
    if cleaned and not cleaned.startswith("+"):
        cleaned = f"+{cleaned}"
    return cleaned


def validate_contact(
    phone: Optional[str],
    age: object,
    notes: str = "",
    *,
    min_age: int = MIN_RENTER_AGE,
    max_age: int = MAX_RENTER_AGE,
) -> RenterContact:
    normalized = normalize_phone(phone)
    if not normalized:
        raise ValidationError("Please enter a phone number.", field="clientPhone", code="PHONE_REQUIRED")
    if not PHONE_PATTERN.match(normalized):
        raise ValidationError("Phone number is not valid.", field="clientPhone", code="PHONE_INVALID")
    try:
        age_value = int(age)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError("Please enter your age.", field="clientAge", code="AGE_REQUIRED")
    if age_value < min_age or age_value > max_age:
        raise ValidationError(
            f"Renter age must be between {min_age} and {max_age}.",
            field="clientAge",
            code="AGE_OUT_OF_RANGE",
        )
    return RenterContact(phone=normalized, age=age_value, notes=(notes or "").strip())


def validate_time(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if value and not TIME_PATTERN.match(value):
        raise ValidationError("Time must use the HH:MM format.", field=field)
    return value


@dataclass(frozen=True)
class ReservationCandidate:
    vehicle_id: int
    window: ReservationWindow
    pickup_location_id: int
    dropoff_location_id: int
    contact: RenterContact
    pickup_time: str = ""
    return_time: str = ""

    def as_payload(self) -> dict:
        return {
            "carId": self.vehicle_id,
            "startDate": self.window.start.isoformat(),
            "endDate": self.window.end.isoformat(),
            "pickupLocationId": self.pickup_location_id,
            "dropoffLocationId": self.dropoff_location_id,
            "clientPhone": self.contact.phone,
            "clientAge": self.contact.age,
            "notes": self.contact.notes,
            "pickupTime": self.pickup_time,
            "returnTime": self.return_time,
        }


@dataclass(frozen=True)
class BookingDraft:
    vehicle: Vehicle
    step: Step = Step.DATES
    window: Optional[ReservationWindow] = None
    pickup: Optional[Location] = None
    dropoff: Optional[Location] = None
    pickup_time: str = ""
    return_time: str = ""
    quote: Optional[PriceBreakdown] = None
    phone: str = ""
    age: Optional[int] = None
    notes: str = ""
    terms_accepted: bool = False


class BookingFlow:
    """Validates each step of a booking against one vehicle's blocked dates."""

    def __init__(self, vehicle: Vehicle, blocking: Iterable[ReservationWindow] = ()) -> None:
        self.vehicle = vehicle
        self.blocking: Tuple[ReservationWindow, ...] = tuple(blocking)

    def start(self) -> BookingDraft:
        return BookingDraft(vehicle=self.vehicle)

    def with_blocking(self, blocking: Iterable[ReservationWindow]) -> "BookingFlow":
        return BookingFlow(self.vehicle, blocking)

    def quote(self, window: ReservationWindow, pickup: Location) -> PriceBreakdown:
        clash = find_overlap(window, self.blocking)
        if clash is not None:
            raise ValidationError(
                "The selected dates are not available.",
                field="startDate",
                code="UNAVAILABLE_DATES",
            )
        return price_for_vehicle(self.vehicle, window, pickup)

    def choose_dates(
        self,
        draft: BookingDraft,
        start: DayLike,
        end: DayLike,
        pickup: Optional[Location],
        dropoff: Optional[Location] = None,
        *,
        pickup_time: str = "",
        return_time: str = "",
    ) -> BookingDraft:
        """Record a date/location choice, re-validated on every change."""
        window = ReservationWindow(normalize_day(start), normalize_day(end))
        if pickup is None:
            raise ValidationError("Please select a pickup location.", field="pickupLocationId")
        dropoff = dropoff or pickup
        quote = self.quote(window, pickup)
        return replace(
            draft,
            window=window,
            pickup=pickup,
            dropoff=dropoff,
            pickup_time=validate_time(pickup_time, "pickupTime"),
            return_time=validate_time(return_time, "returnTime"),
            quote=quote,
        )

    def enter_contact(self, draft: BookingDraft, phone: str, age: object, notes: str = "") -> BookingDraft:
        try:
            age_value: Optional[int] = int(age)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            age_value = None
        return replace(draft, phone=normalize_phone(phone), age=age_value, notes=(notes or "").strip())

    def accept_terms(self, draft: BookingDraft, accepted: bool = True) -> BookingDraft:
        return replace(draft, terms_accepted=bool(accepted))

    def validate_step(self, draft: BookingDraft, step: Optional[Step] = None) -> None:
        step = step or draft.step
        if step is Step.DATES:
            if draft.window is None:
                raise ValidationError("Please select your rental dates.", field="startDate", code="DATES_REQUIRED")
            if draft.pickup is None or draft.dropoff is None:
                raise ValidationError(
                    "Please select pickup and drop-off locations.",
                    field="pickupLocationId",
                    code="LOCATIONS_REQUIRED",
                )
            self.quote(draft.window, draft.pickup)
        elif step is Step.CONTACT:
            validate_contact(draft.phone, draft.age, draft.notes)
        elif step is Step.REVIEW:
            if not draft.terms_accepted:
                raise ValidationError("Please accept the terms and conditions.", field="acceptTerms", code="TERMS_REQUIRED")

    def advance(self, draft: BookingDraft) -> BookingDraft:
        self.validate_step(draft)
        index = STEP_ORDER.index(draft.step)
        if index == len(STEP_ORDER) - 1:
            return draft
        return replace(draft, step=STEP_ORDER[index + 1])

    def back(self, draft: BookingDraft) -> BookingDraft:
        index = STEP_ORDER.index(draft.step)
        return replace(draft, step=STEP_ORDER[max(0, index - 1)])

    def candidate(self, draft: BookingDraft) -> ReservationCandidate:
        for step in STEP_ORDER:
            self.validate_step(draft, step)
        contact = validate_contact(draft.phone, draft.age, draft.notes)
        return ReservationCandidate(
            vehicle_id=self.vehicle.id,
            window=draft.window,
            pickup_location_id=draft.pickup.id,
            dropoff_location_id=draft.dropoff.id,
            contact=contact,
            pickup_time=draft.pickup_time,
            return_time=draft.return_time,
        )

    def submit(self, draft: BookingDraft, submit_reservation: Callable[[ReservationCandidate], object]):
        """Hand the assembled candidate to the authoritative submission."""
        candidate = self.candidate(draft)
        try:
            return submit_reservation(candidate)
        except ConflictError as exc:
            logger.warning(
                "Submission for vehicle %s lost to reservation %s",
                self.vehicle.id,
                exc.conflicting_reservation_id,
            )
            raise


__all__ = [
    "Step",
    "BookingDraft",
    "BookingFlow",
    "ReservationCandidate",
    "normalize_phone",
    "validate_contact",
    "validate_time",
    "MIN_RENTER_AGE",
    "MAX_RENTER_AGE",
]
