from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from common.exceptions import InvalidRequest

from .conf import billing_setting
from .models import Plan, Price
from .money import round_half_up


@dataclass(frozen=True)
class PriceQuote:
    """
    Monthly-equivalent pricing of one subscription configuration.

    `amount` is the base recurring amount (MRR before discounts);
    `plan_amount` and `per_seat_amount` are its components, kept so invoices
    can itemise the charge without recomputing (and re-rounding) it.
    """
    amount: int
    plan_amount: int
    per_seat_amount: int
    seats: int
    currency: str
    price_interval: Optional[str] = None

    @property
    def has_seat_pricing(self) -> bool:
        return self.per_seat_amount > 0


def validate_seats(seats) -> int:
    if isinstance(seats, bool) or not isinstance(seats, (int, str)):
        raise InvalidRequest("Seats must be a positive integer", field="seats")
    try:
        value = int(seats)
    except ValueError:
        raise InvalidRequest("Seats must be a positive integer", field="seats")
    if value < 1:
        raise InvalidRequest("Seats must be at least 1", field="seats")
    return value


def select_price(plan: Plan, billing_cycle: str) -> Optional[Price]:
    """Base price whose interval matches the cycle, else the first base price."""
    prices = [p for p in plan.prices.all() if p.pricing_type == "base"]
    for price in prices:
        if price.interval == billing_cycle:
            return price
    return prices[0] if prices else None


def resolve_base_amount(plan: Plan, price: Optional[Price], billing_cycle: str, seats) -> PriceQuote:
    seats = validate_seats(seats)
    if price is None:
        return PriceQuote(amount=0, plan_amount=0, per_seat_amount=0, seats=seats,
                          currency=billing_setting("CURRENCY"))

    plan_amount = price.amount
    if price.interval == Price.Interval.YEARLY:
        # the only place a yearly figure becomes monthly; never re-rounded downstream
        plan_amount = round_half_up(price.amount, 12)

    per_seat = price.per_seat_amount or 0
    return PriceQuote(
        amount=plan_amount + per_seat * seats,
        plan_amount=plan_amount,
        per_seat_amount=per_seat,
        seats=seats,
        currency=price.currency or billing_setting("CURRENCY"),
        price_interval=price.interval,
    )
