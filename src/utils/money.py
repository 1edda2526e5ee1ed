import os
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from src.utils.errors import InternalError, ValidationError

USD_MIN_CENTS = 50
USD_MAX_CENTS = 2_000_000

_NON_NUMERIC = re.compile(r"[^0-9.]")


def assert_usd() -> str:
    """Return the configured checkout currency; only USD is supported."""
    currency = (os.environ.get("STRIPE_CURRENCY") or "usd").lower()
    if currency != "usd":
        raise InternalError(f"Only USD is supported, got: {currency}")
    return "usd"


def price_to_cents(value: Any) -> int:
    """
    Convert a display price into integer cents.

    Accepts numbers or strings such as "24", "24.9", "$24.99" or " 24.99 USD ".
    Rounds half-up to the cent and enforces the 50 cent floor and the
    $20,000 ceiling.

    Raises:
        ValidationError: missing, unparseable or out of range price
    """
    if value is None:
        raise ValidationError("Missing price")
    if isinstance(value, bool):
        raise ValidationError(f"Invalid price: {value!r}")

    cleaned = _NON_NUMERIC.sub("", str(value)).strip()
    if not cleaned:
        raise ValidationError(f"Invalid price: {value!r}")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValidationError(f"Invalid price: {value!r}")

    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    if cents < USD_MIN_CENTS:
        raise ValidationError(f"Price too low: {cents} cents")
    if cents > USD_MAX_CENTS:
        raise ValidationError(f"Price too high: {cents} cents")
    return cents


def cents_to_usd(cents: int) -> str:
    """Format integer cents as a dollar string, 2499 -> "24.99"."""
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise ValidationError("cents must be an integer")
    return str((Decimal(cents) / 100).quantize(Decimal("0.01")))
