"""
School Ledger - Money Helpers

Amounts inside the ledger are integer cents. These helpers are the only
place cents are turned into display text or parsed back from user input.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from app.config import settings


def format_cents(cents: int, currency: str = None) -> str:
    """Render cents as ``KES 1,234.56``."""
    currency = currency or settings.currency_code
    sign = "-" if cents < 0 else ""
    units, minor = divmod(abs(int(cents)), 100)
    return f"{currency} {sign}{units:,}.{minor:02d}"


def to_cents(value: Union[str, int, Decimal]) -> int:
    """
    Parse a display amount ("1,234.56") into cents.
    
    Raises ValueError for anything with more than two decimal places.
    """
    if isinstance(value, int):
        return value * 100
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    cents = amount * 100
    if cents != cents.to_integral_value():
        raise ValueError(f"Amount has more than two decimal places: {value!r}")
    return int(cents)


def percentage(part: int, whole: int) -> float:
    """Utilization percentage for display, rounded to 2 places."""
    if whole <= 0:
        return 100.0 if part > 0 else 0.0
    return round(part * 100 / whole, 2)
