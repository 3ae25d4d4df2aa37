"""Error taxonomy shared by the booking engine and the HTTP layer."""

from __future__ import annotations

from typing import Dict, Optional


class BookingError(Exception):
    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, object]:
        return {"success": False, "code": self.code, "message": self.message}


class ValidationError(BookingError):
    """Local, recoverable input problem. Never reaches the network."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, *, field: str = "", code: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.field = field

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class ConflictError(BookingError):
    """The candidate window lost a race against an existing blocking reservation."""

    code = "OVERLAPPING_BOOKING"
    status_code = 409

    def __init__(self, message: str, *, conflicting_reservation_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.conflicting_reservation_id = conflicting_reservation_id

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload["overlappingBookingId"] = self.conflicting_reservation_id
        return payload


class PaymentError(BookingError):
    code = "PAYMENT_FAILED"
    status_code = 402

    def __init__(self, message: str, *, reservation_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.reservation_id = reservation_id

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload["bookingId"] = self.reservation_id
        return payload


class TransitionError(BookingError):
    code = "INVALID_TRANSITION"
    status_code = 409


class NotFoundError(BookingError):
    code = "NOT_FOUND"
    status_code = 404


__all__ = [
    "BookingError",
    "ValidationError",
    "ConflictError",
    "PaymentError",
    "TransitionError",
    "NotFoundError",
]
