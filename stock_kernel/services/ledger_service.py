"""
LedgerService -- appends movements to the stock ledger.

Responsibility:
    The single write path for quantity-on-hand.  ``append`` validates a
    MovementDraft, converts it to the item's base unit, appends the Movement,
    projects it onto the item counter and enqueues ERP sync -- all inside the
    caller's transaction.

Architecture position:
    Kernel > Services.  Used by ReservationManager (consumption), OrderService
    (receipts, production), StockAdjustmentService and BatchTracker.

Invariants enforced:
    - Every quantity change of an item is exactly one Movement.
    - quantity_in_base_unit is never zero.
    - A negative movement may not drive stock below zero
      (InsufficientStockError) nor below reserved_quantity
      (InsufficientAvailableStockError).  Consumption releases its
      reservation before appending, so it passes this check.
    - The item is held under the in-process item lock and the row lock for
      the whole append.

Failure modes:
    - ItemNotFoundError, UnitConversionError, ValidationError,
      InsufficientStockError, InsufficientAvailableStockError.
"""

from uuid import UUID

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import MovementDraft, MovementRecord
from stock_kernel.domain.enums import MovementSyncStatus, MovementType, SyncType
from stock_kernel.exceptions import (
    InsufficientAvailableStockError,
    InsufficientStockError,
    ValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.movement import Movement
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry, lock_item
from stock_kernel.services.quantity_projector import QuantityProjector
from stock_kernel.services.sequence_service import BatchNumberService, SequenceService
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_kernel.services.unit_converter import UnitConverter

logger = get_logger("services.ledger")

# Reference type used for sync entries that mirror one movement
MOVEMENT_REFERENCE = "stock_movement"
PURCHASE_ORDER_LINE_REFERENCE = "purchase_order_line"

# Movement types that bring new stock in and may carry a generated batch
_BATCH_ORIGIN_TYPES = frozenset({MovementType.RECEIPT, MovementType.PRODUCTION_PRODUCE})


def sync_type_for(draft: MovementDraft, base_quantity) -> SyncType:
    """ERP operation that mirrors a movement."""
    if draft.sync_type is not None:
        return SyncType(draft.sync_type)
    if (
        draft.movement_type == MovementType.RECEIPT
        and draft.reference_type == PURCHASE_ORDER_LINE_REFERENCE
    ):
        return SyncType.GRN
    if draft.movement_type == MovementType.RETURN and base_quantity < 0:
        return SyncType.GOODS_RETURN
    if draft.movement_type == MovementType.PRODUCTION_PRODUCE:
        return SyncType.PRODUCTION_COMPLETE
    if draft.movement_type == MovementType.WRITE_OFF:
        return SyncType.WRITE_OFF
    return SyncType.STOCK_ADJUSTMENT


class LedgerService(BaseService):
    """
    Append-only ledger writer.

    Non-goals:
        - Does NOT touch reserved_quantity (ReservationManager does).
        - Does NOT call the ERP (the SyncOrchestrator does, after commit).
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        locks: ItemLockRegistry | None = None,
        outbox: SyncOutbox | None = None,
    ):
        super().__init__(session, clock)
        self._locks = locks or default_registry
        self._converter = UnitConverter(session)
        self._projector = QuantityProjector(session, self.clock)
        self._sequences = SequenceService(session)
        self._batches = BatchNumberService(session)
        self._outbox = outbox or SyncOutbox(session, self.clock)

    @property
    def projector(self) -> QuantityProjector:
        return self._projector

    def append(self, draft: MovementDraft, actor_id: UUID) -> MovementRecord:
        """
        Append one movement and project it onto the item counter.

        Returns:
            The immutable record of the appended movement.
        """
        return MovementRecord.from_model(self.append_movement(draft, actor_id))

    def append_movement(self, draft: MovementDraft, actor_id: UUID) -> Movement:
        """Same as ``append`` but returns the ORM row for in-transaction use."""
        with self._locks.hold([draft.item_id]), LogContext.bind(
            item_id=draft.item_id, actor_id=actor_id
        ):
            return self._append_locked(draft, actor_id)

    def _append_locked(self, draft: MovementDraft, actor_id: UUID) -> Movement:
        if draft.quantity == 0:
            raise ValidationError("Movement quantity must be non-zero", field="quantity")

        item = lock_item(self.session, draft.item_id)
        unit = draft.unit or item.unit
        base_quantity = self._converter.convert(draft.quantity, unit, item.unit)
        if base_quantity == 0:
            raise ValidationError(
                f"Movement of {draft.quantity} {unit} is zero in {item.unit}",
                field="quantity",
            )

        if base_quantity < 0:
            projected = item.stock_quantity + base_quantity
            if projected < 0:
                logger.warning(
                    "movement_rejected_insufficient_stock",
                    extra={
                        "on_hand": item.stock_quantity,
                        "requested": -base_quantity,
                        "movement_type": draft.movement_type.value,
                    },
                )
                raise InsufficientStockError(
                    item_id=str(item.id),
                    on_hand=item.stock_quantity,
                    requested=-base_quantity,
                )
            if projected < item.reserved_quantity:
                logger.warning(
                    "movement_rejected_reserved_stock",
                    extra={
                        "available": item.available_quantity,
                        "requested": -base_quantity,
                        "movement_type": draft.movement_type.value,
                    },
                )
                raise InsufficientAvailableStockError(
                    item_id=str(item.id),
                    available=item.available_quantity,
                    requested=-base_quantity,
                )

        now = self.clock.now()
        batch_number = draft.batch_number
        if (
            batch_number is None
            and item.batch_tracking_enabled
            and base_quantity > 0
            and draft.movement_type in _BATCH_ORIGIN_TYPES
        ):
            batch_number = self._batches.next_batch_number(now.date())

        movement = Movement(
            seq=self._sequences.next_value(SequenceService.MOVEMENT),
            item_id=item.id,
            movement_type=draft.movement_type.value,
            quantity=draft.quantity,
            unit_of_record=unit,
            quantity_in_base_unit=base_quantity,
            batch_number=batch_number,
            warehouse_location=draft.warehouse_location,
            performed_by=actor_id,
            reference_type=draft.reference_type,
            reference_id=draft.reference_id,
            purchase_order_id=draft.purchase_order_id,
            supplier_reference=draft.supplier_reference,
            notes=draft.notes,
            unit_cost=draft.unit_cost,
            sync_status=(
                MovementSyncStatus.PENDING.value
                if item.sync_required
                else MovementSyncStatus.NOT_REQUIRED.value
            ),
            is_expired=False,
            written_off=False,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(movement)
        self.session.flush()

        stock_after = self._projector.apply(item, movement)

        sync_log_id = None
        if item.sync_required:
            entry = self._outbox.enqueue(
                reference_type=MOVEMENT_REFERENCE,
                reference_id=str(movement.id),
                sync_type=sync_type_for(draft, base_quantity),
                actor_id=actor_id,
            )
            sync_log_id = str(entry.id)

        logger.info(
            "movement_appended",
            extra={
                "movement_id": str(movement.id),
                "seq": movement.seq,
                "movement_type": movement.movement_type,
                "quantity": draft.quantity,
                "unit": unit,
                "quantity_in_base_unit": base_quantity,
                "stock_quantity": stock_after,
                "batch_number": batch_number,
                "reference_type": draft.reference_type,
                "reference_id": draft.reference_id,
                "queued_sync_log_id": sync_log_id,
            },
        )
        return movement
