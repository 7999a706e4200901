"""
QuantityProjector -- keeps Item.stock_quantity equal to the ledger sum.

Responsibility:
    ``apply`` adds one movement's base-unit quantity to its item's counter in
    the same transaction as the append.  ``verify`` and ``rebuild`` recompute
    Σ movements and compare with / repair the cached counter.

Architecture position:
    Kernel > Services.  Called by LedgerService; the only writer of
    Item.stock_quantity.

Invariants enforced:
    - Σ Movement.quantity_in_base_unit over an item == Item.stock_quantity.
    - reserved_quantity is never touched here (ReservationManager owns it).
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.db.types import normalize
from stock_kernel.domain.dtos import LedgerCheck
from stock_kernel.exceptions import (
    InsufficientStockError,
    ItemNotFoundError,
    LedgerCounterMismatchError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.item import Item
from stock_kernel.models.movement import Movement
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import lock_item

logger = get_logger("services.quantity_projector")


class QuantityProjector(BaseService):
    """Projects ledger movements onto item counters."""

    def apply(self, item: Item, movement: Movement) -> Decimal:
        """
        Add the movement to the item's stock counter.

        Preconditions: ``item`` is row-locked by the caller.

        Raises:
            InsufficientStockError: If the counter would go negative.
        """
        new_quantity = item.stock_quantity + movement.quantity_in_base_unit
        if new_quantity < 0:
            raise InsufficientStockError(
                item_id=str(item.id),
                on_hand=item.stock_quantity,
                requested=-movement.quantity_in_base_unit,
            )
        item.stock_quantity = new_quantity
        self.session.flush()
        logger.debug(
            "stock_counter_projected",
            extra={
                "item_id": str(item.id),
                "movement_id": str(movement.id),
                "delta": movement.quantity_in_base_unit,
                "stock_quantity": new_quantity,
            },
        )
        return new_quantity

    def ledger_sum(self, item_id: UUID) -> Decimal:
        total = self.session.execute(
            select(func.sum(Movement.quantity_in_base_unit)).where(
                Movement.item_id == item_id
            )
        ).scalar_one()
        return Decimal(total) if total is not None else Decimal("0")

    def check(self, item_id: UUID) -> LedgerCheck:
        item = self.session.get(Item, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return LedgerCheck(
            item_id=item.id,
            sku=item.sku,
            stock_quantity=Decimal(item.stock_quantity),
            ledger_sum=self.ledger_sum(item.id),
        )

    def verify(self, item_id: UUID) -> LedgerCheck:
        """
        Raises:
            LedgerCounterMismatchError: If the counter differs from the ledger sum.
        """
        result = self.check(item_id)
        if not result.consistent:
            logger.error(
                "ledger_counter_mismatch",
                extra={
                    "item_id": str(item_id),
                    "stock_quantity": result.stock_quantity,
                    "ledger_sum": result.ledger_sum,
                },
            )
            raise LedgerCounterMismatchError(
                item_id=str(item_id),
                counter=result.stock_quantity,
                ledger_sum=result.ledger_sum,
            )
        return result

    def rebuild(self, item_id: UUID) -> LedgerCheck:
        """Overwrite the cached counter with the ledger sum (row-locked)."""
        item = lock_item(self.session, item_id)
        before = Decimal(item.stock_quantity)
        ledger_sum = self.ledger_sum(item.id)
        if before != ledger_sum:
            item.stock_quantity = ledger_sum
            self.session.flush()
            logger.warning(
                "stock_counter_rebuilt",
                extra={
                    "item_id": str(item_id),
                    "previous": normalize(before),
                    "rebuilt": normalize(ledger_sum),
                },
            )
        return LedgerCheck(
            item_id=item.id,
            sku=item.sku,
            stock_quantity=ledger_sum,
            ledger_sum=ledger_sum,
        )
