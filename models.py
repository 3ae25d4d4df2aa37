from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from errors import ValidationError

CENT = Decimal("0.01")
INSTANT = "instant"
MANUAL = "manual"
CONFIRMATION_MODES = (INSTANT, MANUAL)
LOCATION_KINDS = ("airport", "city")


def to_money(value: Union[Decimal, float, int, str, None], field: str = "amount") -> Decimal:
    """Return *value* as a two-decimal fixed-point amount."""
    if value in (None, ""):
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount for {field}: {value!r}", field=field)
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount for {field}: {value!r}", field=field)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Vehicle:
    id: int
    owner_id: int
    name: str
    rate_per_day: Decimal
    deposit_amount: Decimal
    min_rental_days: int = 1
    confirmation_mode: str = INSTANT

    @property
    def requires_owner_validation(self) -> bool:
        return self.confirmation_mode == MANUAL


@dataclass(frozen=True)
class Location:
    id: int
    kind: str
    name: str
    delivery_fee: Decimal
    code: str = ""

    @property
    def display_name(self) -> str:
        if self.kind == "airport" and self.code:
            return f"{self.name} ({self.code})"
        return self.name


@dataclass(frozen=True)
class RenterContact:
    phone: str
    age: int
    notes: str = ""


def vehicle_from_row(row) -> Vehicle:
    return Vehicle(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        rate_per_day=to_money(row["rate_per_day"]),
        deposit_amount=to_money(row["deposit_amount"]),
        min_rental_days=int(row["min_rental_days"] or 1),
        confirmation_mode=row["confirmation_mode"],
    )


def location_from_row(row) -> Location:
    return Location(
        id=row["id"],
        kind=row["kind"],
        name=row["name"],
        delivery_fee=to_money(row["delivery_fee"]),
        code=row["code"] or "",
    )


def location_payload(location: Optional[Location]) -> Optional[dict]:
    if location is None:
        return None
    return {
        "id": location.id,
        "type": location.kind,
        "code": location.code,
        "name": location.name,
        "displayName": location.display_name,
        "deliveryFee": str(location.delivery_fee),
    }
