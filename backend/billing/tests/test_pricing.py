import pytest

from billing.money import format_amount, percent_of, round_half_up
from billing.models import Plan
from billing.pricing import resolve_base_amount, select_price, validate_seats
from common.exceptions import InvalidRequest


@pytest.mark.parametrize("numerator,denominator,expected", [
    (118800, 12, 9900),
    (10, 4, 3),      # 2.5 rounds up
    (9, 4, 2),       # 2.25 rounds down
    (-10, 4, -3),
    (0, 7, 0),
])
def test_round_half_up(numerator, denominator, expected):
    assert round_half_up(numerator, denominator) == expected


def test_round_half_up_rejects_non_positive_denominator():
    with pytest.raises(ValueError):
        round_half_up(1, 0)


def test_percent_of_and_format():
    assert percent_of(9900, 20) == 1980
    assert percent_of(999, 15) == 150
    assert format_amount(123456, "USD") == "USD 1,234.56"
    assert format_amount(-990, "EUR") == "-EUR 9.90"


@pytest.mark.parametrize("raw", [0, -1, "abc", None, True, 2.5])
def test_validate_seats_rejects(raw):
    with pytest.raises(InvalidRequest) as err:
        validate_seats(raw)
    assert err.value.field == "seats"


def test_validate_seats_accepts_numeric_strings():
    assert validate_seats("3") == 3
    assert validate_seats(1) == 1


@pytest.mark.django_db
def test_select_price_prefers_matching_interval(plan):
    assert select_price(plan, "yearly").amount == 118800
    assert select_price(plan, "monthly").amount == 9900


@pytest.mark.django_db
def test_yearly_price_is_monthly_equivalent(plan):
    quote = resolve_base_amount(plan, select_price(plan, "yearly"), "yearly", 1)
    assert quote.amount == 9900
    assert quote.plan_amount == 9900
    assert quote.price_interval == "yearly"


@pytest.mark.django_db
def test_per_seat_amount_is_added_per_seat(seat_plan):
    quote = resolve_base_amount(seat_plan, select_price(seat_plan, "monthly"), "monthly", 3)
    assert quote.amount == 5000 + 3 * 1000
    assert quote.has_seat_pricing


@pytest.mark.django_db
def test_plan_without_price_quotes_zero(tenant):
    bare = Plan.objects.create(tenant=tenant, code="free", name="Free")
    quote = resolve_base_amount(bare, select_price(bare, "monthly"), "monthly", 5)
    assert quote.amount == 0
    assert quote.currency == "USD"


@pytest.mark.django_db
def test_yearly_cycle_falls_back_to_first_base_price(seat_plan):
    # only a monthly price exists; it is used as is
    quote = resolve_base_amount(seat_plan, select_price(seat_plan, "yearly"), "yearly", 1)
    assert quote.amount == 6000
