"""Value objects and helpers for amounts and order references."""

import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENT = Decimal("0.01")
_ORDER_NO_ALPHABET = string.ascii_uppercase + string.digits
_BASE36_DIGITS = string.digits + string.ascii_uppercase


def to_decimal_amount(value: Decimal | int | float | str) -> Decimal:
    """Normalize an amount to a two-decimal ``Decimal``.

    Args:
        value: Amount in major units.

    Returns:
        Amount quantized to cents, rounding half up.
    """
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | int | float | str) -> str:
    """Format an amount the way the gateway expects it (``"10.00"``).

    Args:
        value: Amount in major units.

    Returns:
        String with exactly two decimals.
    """
    return f"{to_decimal_amount(value):.2f}"


def to_minor_units(value: Decimal | int | float | str | None) -> int | None:
    """Convert an amount to integer minor units (cents).

    Rounds to the nearest cent, half up. Anything that is not a finite
    number yields None so the caller can reject it.

    Args:
        value: Amount in major units, usually a string from the wire.

    Returns:
        Amount in cents, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def generate_order_no(now_ms: int | None = None) -> str:
    """Generate a merchant order number.

    Format: ``LD`` + base36 epoch milliseconds + 6 random characters,
    all uppercase.

    Args:
        now_ms: Epoch milliseconds; defaults to the current time.

    Returns:
        New order number.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ORDER_NO_ALPHABET) for _ in range(6))
    return f"LD{_base36(now_ms)}{suffix}"
