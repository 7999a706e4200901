"""
AdjustmentService -- manual stock corrections and returns.

Every operation here is a thin, validated front for ``LedgerService.append``:
a counted-stock adjustment is turned into a signed delta under the item lock,
supplier returns are negative ``return`` movements, customer returns are
positive ones.
"""

from decimal import Decimal
from uuid import UUID

from stock_kernel.db.types import to_quantity
from stock_kernel.domain.dtos import DEFAULT_LOCATION, MovementDraft, MovementRecord
from stock_kernel.domain.enums import AdjustmentDirection, MovementType
from stock_kernel.exceptions import ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry, lock_item
from stock_kernel.services.ledger_service import LedgerService
from stock_kernel.services.unit_converter import UnitConverter

logger = get_logger("services.adjustments")

ADJUSTMENT_REFERENCE = "manual_adjustment"
SUPPLIER_RETURN_REFERENCE = "supplier_return"
CUSTOMER_RETURN_REFERENCE = "customer_return"


class AdjustmentService(BaseService):
    def __init__(
        self,
        session,
        clock=None,
        ledger: LedgerService | None = None,
        locks: ItemLockRegistry | None = None,
    ):
        super().__init__(session, clock)
        self._locks = locks or default_registry
        self._ledger = ledger or LedgerService(session, self.clock, self._locks)
        self._converter = UnitConverter(session)

    def adjust_stock(
        self,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        direction: AdjustmentDirection | str = AdjustmentDirection.IN,
        unit: str | None = None,
        reason: str | None = None,
        batch_number: str | None = None,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> MovementRecord:
        """
        Correct an item's stock.

        ``IN``/``OUT`` apply ``quantity`` as a positive/negative delta.
        ``SET`` treats ``quantity`` as the counted on-hand figure and books
        the difference from the current counter.

        Raises:
            ValidationError: If the resulting delta is zero or quantity is negative.
            InsufficientStockError / InsufficientAvailableStockError: On an
                outbound delta larger than stock allows.
        """
        direction = AdjustmentDirection(direction)
        quantity = to_quantity(quantity)
        if quantity < 0:
            raise ValidationError("Adjustment quantity must not be negative", field="quantity")

        with self._locks.hold([item_id]):
            if direction == AdjustmentDirection.SET:
                item = lock_item(self.session, item_id)
                counted = self._converter.convert(quantity, unit or item.unit, item.unit)
                delta = counted - item.stock_quantity
                draft_unit = item.unit
            else:
                delta = quantity if direction == AdjustmentDirection.IN else -quantity
                draft_unit = unit

            if delta == 0:
                raise ValidationError("Adjustment does not change stock", field="quantity")

            record = self._ledger.append(
                MovementDraft(
                    item_id=item_id,
                    movement_type=MovementType.ADJUSTMENT,
                    quantity=delta,
                    unit=draft_unit,
                    batch_number=batch_number,
                    warehouse_location=warehouse_location,
                    reference_type=ADJUSTMENT_REFERENCE,
                    notes=reason,
                ),
                actor_id,
            )

        logger.info(
            "stock_adjusted",
            extra={
                "item_id": str(item_id),
                "direction": direction.value,
                "delta": record.quantity_in_base_unit,
                "movement_id": str(record.id),
            },
        )
        return record

    def return_to_supplier(
        self,
        item_id: UUID,
        quantity: Decimal,
        supplier_reference: str,
        actor_id: UUID,
        unit: str | None = None,
        batch_number: str | None = None,
        reason: str | None = None,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> MovementRecord:
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise ValidationError("Return quantity must be positive", field="quantity")
        if not supplier_reference:
            raise ValidationError("Supplier reference is required", field="supplier_reference")
        return self._ledger.append(
            MovementDraft(
                item_id=item_id,
                movement_type=MovementType.RETURN,
                quantity=-quantity,
                unit=unit,
                batch_number=batch_number,
                warehouse_location=warehouse_location,
                reference_type=SUPPLIER_RETURN_REFERENCE,
                supplier_reference=supplier_reference,
                notes=reason,
            ),
            actor_id,
        )

    def customer_return(
        self,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        unit: str | None = None,
        reference_id: str | None = None,
        batch_number: str | None = None,
        reason: str | None = None,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> MovementRecord:
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise ValidationError("Return quantity must be positive", field="quantity")
        return self._ledger.append(
            MovementDraft(
                item_id=item_id,
                movement_type=MovementType.RETURN,
                quantity=quantity,
                unit=unit,
                batch_number=batch_number,
                warehouse_location=warehouse_location,
                reference_type=CUSTOMER_RETURN_REFERENCE,
                reference_id=reference_id,
                notes=reason,
            ),
            actor_id,
        )
