"""
Module: stock_kernel.db.types
Responsibility: Annotated type aliases and helpers for quantity and cost
    columns.  Centralizes precision so that every model and service uses
    identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    CRITICAL: No floats anywhere in the stock kernel.  Quantities and costs
    use Decimal with explicit precision.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String


# Signed quantity in a unit of measure
# 38 digits total, 9 decimal places
Quantity = Annotated[Decimal, Numeric(38, 9)]

# Unit cost / price
Cost = Annotated[Decimal, Numeric(38, 9)]

# Unit conversion factor (more decimals for e.g. g -> t)
Factor = Annotated[Decimal, Numeric(38, 18)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# Short identifier strings (SKU, unit, status codes)
ShortCode = Annotated[str, String(50)]

# Long text for notes and error messages
LongText = Annotated[str, String(4000)]


QUANTITY_DECIMAL_PLACES = 9
DEFAULT_ROUNDING = ROUND_HALF_UP

_QUANTUM = Decimal(1).scaleb(-QUANTITY_DECIMAL_PLACES)


def to_quantity(value: Decimal | int | str) -> Decimal:
    """
    Coerce a value to a Decimal quantity at storage precision.

    Floats are rejected; callers must pass Decimal, int or a numeric string.

    Raises:
        TypeError: If value is a float.
        ValueError: If value is not numeric or not finite.
    """
    if isinstance(value, float):
        raise TypeError("Quantities must not be float; use Decimal or str")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric quantity: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"Quantity must be finite: {value!r}")
    return round_quantity(dec)


def round_quantity(value: Decimal) -> Decimal:
    """Round a quantity to the storage precision (9 decimal places)."""
    return value.quantize(_QUANTUM, rounding=DEFAULT_ROUNDING)


def normalize(value: Decimal) -> Decimal:
    """
    Strip trailing zeros for display without switching to exponent notation.

    Example:
        normalize(Decimal("50000.000000000")) -> Decimal("50000")
    """
    if value == value.to_integral_value():
        return value.quantize(Decimal(1))
    return value.normalize()
