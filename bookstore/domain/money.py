"""Money helpers.

Amounts are integer minor units everywhere. Percentages are applied through
Decimal with half-up rounding so the result is a whole number of minor units.
"""
from decimal import Decimal, ROUND_HALF_UP


def percent_of(amount: int, percent: int | float | Decimal) -> int:
    value = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(amount: int) -> str:
    units, cents = divmod(abs(amount), 100)
    sign = "-" if amount < 0 else ""
    return f"{sign}${units:,}.{cents:02d}"
