"""
BatchTracker -- batch expiry flags and write-offs.

Responsibility:
    Marks received batches expired (or reinstates them) and writes off the
    remaining quantity of an expired batch through a compensating
    ``write_off`` movement.  Marking a batch expired never changes stock;
    the write-off is the only path that removes expired stock.

Architecture position:
    Kernel > Services.  Only touches the mutable expiry fields of a
    Movement; the ledger fields stay protected by db.immutability.

Invariants enforced:
    - Only receipt movements carrying a batch number can be marked expired.
    - A written-off batch cannot be reinstated or written off again.
    - The write-off quantity never exceeds stock - reserved - the remaining
      quantity of other expired batches of the item still awaiting write-off.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.dtos import MovementDraft, MovementRecord
from stock_kernel.domain.enums import MovementType
from stock_kernel.exceptions import (
    BatchAlreadyWrittenOffError,
    BatchNotExpiredError,
    MovementNotFoundError,
    ValidationError,
    WriteOffExceedsStockError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.movement import Movement
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry, lock_item
from stock_kernel.services.ledger_service import MOVEMENT_REFERENCE, LedgerService

logger = get_logger("services.batches")


class BatchTracker(BaseService):
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

    def _lock_movement(self, movement_id: UUID) -> Movement:
        movement = self.session.execute(
            select(Movement)
            .where(Movement.id == movement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if movement is None:
            raise MovementNotFoundError(str(movement_id))
        return movement

    def batch_remaining(self, item_id: UUID, batch_number: str) -> Decimal:
        """Σ base quantity of every movement of the item in this batch."""
        total = self.session.execute(
            select(func.sum(Movement.quantity_in_base_unit)).where(
                Movement.item_id == item_id,
                Movement.batch_number == batch_number,
            )
        ).scalar_one()
        return Decimal(total) if total is not None else Decimal("0")

    def mark_expired(self, movement_id: UUID, notes: str | None, actor_id: UUID) -> MovementRecord:
        """
        Flag a received batch as expired.

        Raises:
            MovementNotFoundError: If the movement does not exist.
            ValidationError: If it is not a receipt with a batch number.
            BatchAlreadyWrittenOffError: If the batch was already written off.
        """
        with LogContext.bind(actor_id=actor_id):
            movement = self._lock_movement(movement_id)
            if movement.movement_type != MovementType.RECEIPT.value or not movement.batch_number:
                raise ValidationError(
                    "Only receipt movements with a batch number can expire",
                    field="movement_id",
                )
            if movement.written_off:
                raise BatchAlreadyWrittenOffError(
                    str(movement.id), str(movement.written_off_by_movement_id)
                )

            movement.is_expired = True
            movement.expired_at = self.clock.now()
            movement.expiry_notes = notes
            movement.marked_expired_by = actor_id
            movement.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "batch_marked_expired",
                extra={
                    "movement_id": str(movement.id),
                    "item_id": str(movement.item_id),
                    "batch_number": movement.batch_number,
                },
            )
            return MovementRecord.from_model(movement)

    def reinstate(self, movement_id: UUID, actor_id: UUID) -> MovementRecord:
        """Clear the expiry flag of a batch that has not been written off."""
        with LogContext.bind(actor_id=actor_id):
            movement = self._lock_movement(movement_id)
            if movement.written_off:
                raise BatchAlreadyWrittenOffError(
                    str(movement.id), str(movement.written_off_by_movement_id)
                )
            if not movement.is_expired:
                raise BatchNotExpiredError(str(movement.id))

            movement.is_expired = False
            movement.expired_at = None
            movement.expiry_notes = None
            movement.marked_expired_by = None
            movement.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "batch_reinstated",
                extra={"movement_id": str(movement.id), "batch_number": movement.batch_number},
            )
            return MovementRecord.from_model(movement)

    def _pending_write_offs(self, movement: Movement) -> Decimal:
        """Remaining quantity of the item's other expired batches not yet written off."""
        other_batches = self.session.execute(
            select(Movement.batch_number)
            .where(
                Movement.item_id == movement.item_id,
                Movement.is_expired.is_(True),
                Movement.written_off.is_(False),
                Movement.batch_number.is_not(None),
                Movement.batch_number != movement.batch_number,
            )
            .distinct()
        ).scalars()
        pending = Decimal("0")
        for batch_number in other_batches:
            pending += max(self.batch_remaining(movement.item_id, batch_number), Decimal("0"))
        return pending

    def write_off(
        self, movement_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> MovementRecord:
        """
        Write off the remaining quantity of an expired batch.

        Returns:
            The appended write_off movement.

        Raises:
            BatchNotExpiredError, BatchAlreadyWrittenOffError,
            WriteOffExceedsStockError, MovementNotFoundError.
        """
        probe = self.session.get(Movement, movement_id)
        if probe is None:
            raise MovementNotFoundError(str(movement_id))

        with self._locks.hold([probe.item_id]), LogContext.bind(
            item_id=probe.item_id, actor_id=actor_id
        ):
            item = lock_item(self.session, probe.item_id)
            movement = self._lock_movement(movement_id)
            if movement.written_off:
                raise BatchAlreadyWrittenOffError(
                    str(movement.id), str(movement.written_off_by_movement_id)
                )
            if not movement.is_expired:
                raise BatchNotExpiredError(str(movement.id))

            quantity = self.batch_remaining(item.id, movement.batch_number)
            if quantity <= 0:
                raise ValidationError(
                    f"Batch {movement.batch_number} has no remaining stock",
                    field="movement_id",
                )
            writable = (
                item.stock_quantity - item.reserved_quantity - self._pending_write_offs(movement)
            )
            if quantity > writable:
                logger.warning(
                    "write_off_rejected",
                    extra={
                        "movement_id": str(movement.id),
                        "quantity": quantity,
                        "writable": writable,
                    },
                )
                raise WriteOffExceedsStockError(str(movement.id), quantity, writable)

            write_off = self._ledger.append_movement(
                MovementDraft(
                    item_id=item.id,
                    movement_type=MovementType.WRITE_OFF,
                    quantity=-quantity,
                    unit=item.unit,
                    batch_number=movement.batch_number,
                    warehouse_location=movement.warehouse_location,
                    reference_type=MOVEMENT_REFERENCE,
                    reference_id=str(movement.id),
                    unit_cost=item.cost_per_unit,
                    notes=notes or f"Write-off of expired batch {movement.batch_number}",
                ),
                actor_id,
            )
            movement.written_off = True
            movement.written_off_by_movement_id = write_off.id
            movement.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "batch_written_off",
                extra={
                    "movement_id": str(movement.id),
                    "write_off_movement_id": str(write_off.id),
                    "batch_number": movement.batch_number,
                    "quantity": quantity,
                },
            )
            return MovementRecord.from_model(write_off)
