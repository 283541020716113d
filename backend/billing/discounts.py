from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from .models import Coupon
from .money import percent_of

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"
MONETARY_KINDS = (PERCENTAGE, FIXED_AMOUNT)


@dataclass(frozen=True)
class AccountDiscount:
    kind: str            # percentage | fixed_amount
    value: int
    is_recurring: bool = True
    notes: Optional[str] = None


@dataclass(frozen=True)
class DiscountBreakdown:
    base_amount: int
    account_discount_amount: int
    coupon_discount_amount: int
    net_amount: int

    def as_metadata(self) -> dict:
        return {
            "baseMRR": self.base_amount,
            "customerDiscountAmount": self.account_discount_amount,
            "couponDiscountAmount": self.coupon_discount_amount,
            "finalMRR": self.net_amount,
        }


def account_discount_of(customer) -> Optional[AccountDiscount]:
    kind = getattr(customer, "discount_type", None)
    if not kind:
        return None
    return AccountDiscount(
        kind=kind,
        value=customer.discount_value or 0,
        is_recurring=customer.discount_is_recurring,
        notes=customer.discount_notes,
    )


def discount_amount(base_amount: int, kind: str, value: int) -> int:
    """
    Money taken off `base_amount` by one discount source. Kinds outside
    percentage/fixed_amount are period adjustments and are worth 0 here.
    """
    if kind == PERCENTAGE:
        return min(percent_of(base_amount, value), base_amount)
    if kind == FIXED_AMOUNT:
        return min(value, base_amount)
    return 0


def apply_discounts(base_amount: int, account_discount: Optional[AccountDiscount] = None,
                    coupon: Optional[Coupon] = None) -> DiscountBreakdown:
    """
    Both discounts are taken from the original base (additive stacking, no
    discount-on-discount); only the net is floored at zero.
    """
    account_amount = 0
    if account_discount is not None:
        account_amount = discount_amount(base_amount, account_discount.kind, account_discount.value)

    coupon_amount = 0
    if coupon is not None:
        coupon_amount = discount_amount(base_amount, coupon.discount_type, coupon.discount_value)

    return DiscountBreakdown(
        base_amount=base_amount,
        account_discount_amount=account_amount,
        coupon_discount_amount=coupon_amount,
        net_amount=max(0, base_amount - account_amount - coupon_amount),
    )


# ---- Non-monetary coupons ----

def period_adjustment(coupon: Optional[Coupon]) -> Optional[relativedelta]:
    """Free months push the period end by N months, trial extensions by N days."""
    if coupon is None or not coupon.discount_value:
        return None
    if coupon.discount_type == Coupon.DiscountType.FREE_MONTHS:
        return relativedelta(months=coupon.discount_value)
    if coupon.discount_type == Coupon.DiscountType.TRIAL_EXTENSION:
        return relativedelta(days=coupon.discount_value)
    return None


def extend_period(period_end: datetime, coupon: Optional[Coupon]) -> datetime:
    delta = period_adjustment(coupon)
    return period_end + delta if delta else period_end
