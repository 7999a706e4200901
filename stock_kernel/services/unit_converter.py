"""
UnitConverter -- converts quantities between units of measure.

Lookup rules, in order:
    1. identical units               -> factor 1
    2. stored pair (from, to)        -> factor
    3. stored pair (to, from)        -> 1 / factor
    4. anything else                 -> UnitConversionError

There is no silent 1:1 fallback: a missing conversion is a data error that
would otherwise corrupt the ledger by orders of magnitude.
"""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db.types import round_quantity
from stock_kernel.exceptions import UnitConversionError, ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.item import UnitConversion

logger = get_logger("services.unit_converter")


class UnitConverter:
    def __init__(self, session: Session):
        self._session = session

    def factor(self, from_unit: str, to_unit: str) -> Decimal:
        """Multiplier that turns a quantity in from_unit into to_unit."""
        if from_unit == to_unit:
            return Decimal("1")

        direct = self._session.execute(
            select(UnitConversion.conversion_factor).where(
                UnitConversion.from_unit == from_unit,
                UnitConversion.to_unit == to_unit,
            )
        ).scalar_one_or_none()
        if direct is not None:
            return Decimal(direct)

        inverse = self._session.execute(
            select(UnitConversion.conversion_factor).where(
                UnitConversion.from_unit == to_unit,
                UnitConversion.to_unit == from_unit,
            )
        ).scalar_one_or_none()
        if inverse is not None:
            return Decimal("1") / Decimal(inverse)

        logger.warning(
            "unit_conversion_missing",
            extra={"from_unit": from_unit, "to_unit": to_unit},
        )
        raise UnitConversionError(from_unit, to_unit)

    def convert(self, quantity: Decimal, from_unit: str, to_unit: str) -> Decimal:
        """Convert a quantity, rounded to storage precision."""
        return round_quantity(quantity * self.factor(from_unit, to_unit))

    def register(
        self, from_unit: str, to_unit: str, conversion_factor: Decimal
    ) -> UnitConversion:
        """
        Store (or update) the factor for a unit pair.

        Raises:
            ValidationError: If the factor is not positive or units are equal.
        """
        if isinstance(conversion_factor, float):
            raise ValidationError("Conversion factor must not be float", field="conversion_factor")
        conversion_factor = Decimal(conversion_factor)
        if conversion_factor <= 0:
            raise ValidationError(
                f"Conversion factor must be positive, got {conversion_factor}",
                field="conversion_factor",
            )
        if from_unit == to_unit:
            raise ValidationError("Cannot register a conversion to the same unit", field="to_unit")

        existing = self._session.execute(
            select(UnitConversion).where(
                UnitConversion.from_unit == from_unit,
                UnitConversion.to_unit == to_unit,
            )
        ).scalar_one_or_none()
        if existing is None:
            existing = UnitConversion(
                from_unit=from_unit,
                to_unit=to_unit,
                conversion_factor=conversion_factor,
            )
            self._session.add(existing)
        else:
            existing.conversion_factor = conversion_factor
        self._session.flush()
        logger.info(
            "unit_conversion_registered",
            extra={
                "from_unit": from_unit,
                "to_unit": to_unit,
                "conversion_factor": str(conversion_factor),
            },
        )
        return existing
