from datetime import datetime, timezone as dt_timezone

import pytest

from billing.discounts import AccountDiscount, apply_discounts, account_discount_of, extend_period
from billing.models import Coupon


def _coupon(kind, value):
    return Coupon(code="X", discount_type=kind, discount_value=value)


def test_no_discounts_keeps_base():
    result = apply_discounts(9900)
    assert result.net_amount == 9900
    assert result.account_discount_amount == 0
    assert result.coupon_discount_amount == 0


def test_discounts_stack_on_the_original_base():
    result = apply_discounts(
        9900,
        AccountDiscount(kind="percentage", value=10),
        _coupon(Coupon.DiscountType.PERCENTAGE, 20),
    )
    assert result.account_discount_amount == 990
    assert result.coupon_discount_amount == 1980
    assert result.net_amount == 6930
    assert result.as_metadata() == {
        "baseMRR": 9900, "customerDiscountAmount": 990, "couponDiscountAmount": 1980, "finalMRR": 6930,
    }


def test_fixed_amount_is_capped_at_base():
    result = apply_discounts(5000, coupon=_coupon(Coupon.DiscountType.FIXED_AMOUNT, 8000))
    assert result.coupon_discount_amount == 5000
    assert result.net_amount == 0


def test_net_never_goes_negative():
    result = apply_discounts(
        1000,
        AccountDiscount(kind="fixed_amount", value=800),
        _coupon(Coupon.DiscountType.PERCENTAGE, 50),
    )
    assert result.net_amount == 0


@pytest.mark.parametrize("kind", [Coupon.DiscountType.FREE_MONTHS, Coupon.DiscountType.TRIAL_EXTENSION])
def test_period_coupons_are_worth_nothing_in_money(kind):
    result = apply_discounts(9900, coupon=_coupon(kind, 2))
    assert result.coupon_discount_amount == 0
    assert result.net_amount == 9900


def test_free_months_and_trial_extension_move_period_end():
    end = datetime(2026, 1, 31, tzinfo=dt_timezone.utc)
    assert extend_period(end, _coupon(Coupon.DiscountType.FREE_MONTHS, 1)) == datetime(2026, 2, 28, tzinfo=dt_timezone.utc)
    assert extend_period(end, _coupon(Coupon.DiscountType.TRIAL_EXTENSION, 14)) == datetime(2026, 2, 14, tzinfo=dt_timezone.utc)
    assert extend_period(end, _coupon(Coupon.DiscountType.PERCENTAGE, 20)) == end
    assert extend_period(end, None) == end


@pytest.mark.django_db
def test_account_discount_of_customer(customer):
    assert account_discount_of(customer) is None
    customer.discount_type = "percentage"
    customer.discount_value = 15
    discount = account_discount_of(customer)
    assert discount.kind == "percentage"
    assert discount.value == 15
