"""
Integer minor-unit arithmetic. Amounts never touch floats: every division goes
through `round_half_up`, so a value is rounded exactly once where it is derived.
"""


def round_half_up(numerator: int, denominator: int) -> int:
    """numerator / denominator rounded to the nearest integer, halves away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    if numerator < 0:
        return -round_half_up(-numerator, denominator)
    return (2 * numerator + denominator) // (2 * denominator)


def percent_of(amount: int, percent: int) -> int:
    return round_half_up(amount * percent, 100)


def format_amount(amount: int, currency: str = "USD") -> str:
    """12345 -> 'USD 123.45'; -990 -> '-USD 9.90'."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(int(amount)), 100)
    return f"{sign}{currency} {major:,}.{minor:02d}"
