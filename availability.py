"""Availability index and overlap detection for vehicle reservations.

Every window is a half-open interval ``[start, end)`` of calendar days: a
booking that ends on the 12th and another that starts on the 12th do not
clash. Time of day never takes part in the comparison.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from errors import ValidationError

logger = logging.getLogger(__name__)

DayLike = Union[date, datetime, str]


def normalize_day(value: DayLike) -> date:
    """Return the calendar day of *value* (a date, datetime or ISO string)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            return datetime.fromisoformat(raw).date()
        except ValueError:
            pass
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            pass
    raise ValidationError(f"Invalid date: {value!r}", field="date", code="INVALID_DATE")


@dataclass(frozen=True)
class ReservationWindow:
    start: date
    end: date
    reservation_id: Optional[int] = field(default=None, compare=False)
    status: str = field(default="", compare=False)

    @classmethod
    def from_values(
        cls,
        start: DayLike,
        end: DayLike,
        *,
        reservation_id: Optional[int] = None,
        status: str = "",
    ) -> "ReservationWindow":
        return cls(normalize_day(start), normalize_day(end), reservation_id, status)

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def as_dict(self) -> dict:
        return {
            "startDate": self.start.isoformat(),
            "endDate": self.end.isoformat(),
            "status": self.status,
        }


def validate_window(window: ReservationWindow) -> ReservationWindow:
    """Reject zero-length and inverted windows before any overlap check."""
    if window.start >= window.end:
        raise ValidationError(
            "Return date must be after the pickup date.",
            field="endDate",
            code="INVALID_WINDOW",
        )
    return window


def overlaps(candidate: ReservationWindow, existing: ReservationWindow) -> bool:
    return existing.start < candidate.end and existing.end > candidate.start


def find_overlap(
    candidate: ReservationWindow, existing: Iterable[ReservationWindow]
) -> Optional[ReservationWindow]:
    """Return the first window in *existing* that intersects *candidate*."""
    validate_window(candidate)
    for window in existing:
        if overlaps(candidate, window):
            logger.debug(
                "Window %s..%s clashes with reservation %s (%s..%s)",
                candidate.start,
                candidate.end,
                window.reservation_id,
                window.start,
                window.end,
            )
            return window
    return None


def has_overlap(candidate: ReservationWindow, existing: Iterable[ReservationWindow]) -> bool:
    return find_overlap(candidate, existing) is not None


def is_date_unavailable(day: DayLike, windows: Iterable[ReservationWindow]) -> bool:
    """Whether renting *day* as a pickup night would clash with *windows*.

    Used to grey out calendar cells. The return day of an existing booking
    stays selectable because the interval is half-open.
    """
    checked = normalize_day(day)
    return any(window.start <= checked < window.end for window in windows)


def unavailable_windows(reservations: Iterable) -> List[ReservationWindow]:
    """Build the availability index from a vehicle's reservations.

    Only reservations whose ``is_blocking`` flag is set contribute; rejected,
    expired and cancelled ones never appear.
    """
    windows = [
        ReservationWindow(
            reservation.window.start,
            reservation.window.end,
            reservation.id,
            reservation.status.value,
        )
        for reservation in reservations
        if reservation.is_blocking
    ]
    windows.sort(key=lambda window: (window.start, window.end))
    return windows


__all__ = [
    "ReservationWindow",
    "normalize_day",
    "validate_window",
    "overlaps",
    "find_overlap",
    "has_overlap",
    "is_date_unavailable",
    "unavailable_windows",
]
