"""
Module: posting_kernel.db.types
Responsibility: Annotated column aliases and the money rounding helper shared
    by models, domain and services.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/ or
    services/.

Invariants enforced:
    - No floats anywhere in the kernel.  All monetary amounts are Decimal.
    - round_money() is the ONLY sanctioned rounding function for amounts
      sent to the external ledger.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import String

# ISO 4217 currency code (e.g., "SEK", "EUR")
Currency = Annotated[str, String(3)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for error messages
LongText = Annotated[str, String(4000)]

MONEY_DECIMAL_PLACES = 2

ZERO = Decimal("0")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = ROUND_HALF_UP,
) -> Decimal:
    """
    Round a monetary value to the specified decimal places.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_decimal(value: object, default: Decimal = ZERO) -> Decimal:
    """
    Coerce an upstream numeric value to Decimal.

    Floats are converted through ``str`` so ``0.1`` stays ``0.1``.  ``None``,
    blanks and unparseable values return ``default``.
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip().replace(" ", "").replace(",", ".")
    if not text:
        return default
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return default
    return parsed if parsed.is_finite() else default
