"""Deterministic price breakdown for a rental window.

The deposit is reported next to the total but never added to it: it is
collected at vehicle handover through a separate channel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from math import ceil
from typing import Dict, Union

from availability import DayLike, ReservationWindow, normalize_day, validate_window
from errors import ValidationError
from models import Location, Vehicle, to_money

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class PriceBreakdown:
    days: int
    rate_per_day: Decimal
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal
    deposit_amount: Decimal

    def as_dict(self) -> Dict[str, object]:
        return {
            "days": self.days,
            "pricePerDay": str(self.rate_per_day),
            "subtotal": str(self.subtotal),
            "deliveryFee": str(self.delivery_fee),
            "total": str(self.total),
            "depositAmount": str(self.deposit_amount),
        }


def rental_days(start: DayLike, end: DayLike) -> int:
    """Count rental days between two calendar-normalized endpoints."""
    window = validate_window(ReservationWindow(normalize_day(start), normalize_day(end)))
    start_dt = datetime.combine(window.start, datetime.min.time())
    end_dt = datetime.combine(window.end, datetime.min.time())
    elapsed_ms = (end_dt - start_dt).total_seconds() * 1000
    return ceil(elapsed_ms / MS_PER_DAY)


def price(
    start: DayLike,
    end: DayLike,
    rate_per_day: Union[Decimal, float, int, str],
    delivery_fee: Union[Decimal, float, int, str] = 0,
    *,
    min_rental_days: int = 1,
    deposit_amount: Union[Decimal, float, int, str] = 0,
) -> PriceBreakdown:
    days = rental_days(start, end)
    if days < max(1, min_rental_days):
        raise ValidationError(
            f"Minimum rental duration is {min_rental_days} days.",
            field="endDate",
            code="MIN_RENTAL_DAYS",
        )
    rate = to_money(rate_per_day, "rate_per_day")
    fee = to_money(delivery_fee, "delivery_fee")
    if rate < 0:
        raise ValidationError("Daily rate cannot be negative.", field="rate_per_day")
    if fee < 0:
        raise ValidationError("Delivery fee cannot be negative.", field="delivery_fee")
    subtotal = to_money(rate * days)
    return PriceBreakdown(
        days=days,
        rate_per_day=rate,
        subtotal=subtotal,
        delivery_fee=fee,
        total=to_money(subtotal + fee),
        deposit_amount=to_money(deposit_amount, "deposit_amount"),
    )


def price_for_vehicle(
    vehicle: Vehicle, window: ReservationWindow, pickup: Location
) -> PriceBreakdown:
    """Price *window* for *vehicle*, charging the pickup location's delivery fee."""
    breakdown = price(
        window.start,
        window.end,
        vehicle.rate_per_day,
        pickup.delivery_fee,
        min_rental_days=vehicle.min_rental_days,
        deposit_amount=vehicle.deposit_amount,
    )
    logger.debug(
        "Priced vehicle %s for %s days: total=%s deposit=%s",
        vehicle.id,
        breakdown.days,
        breakdown.total,
        breakdown.deposit_amount,
    )
    return breakdown


__all__ = ["PriceBreakdown", "rental_days", "price", "price_for_vehicle"]
