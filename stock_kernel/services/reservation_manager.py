"""
ReservationManager -- atomic reserve / release / consume against items.

Responsibility:
    Lets sales and assembly orders claim stock without double-booking it.
    Each reservation is a persisted record keyed by
    (order_type, order_id, item_id); Item.reserved_quantity is the sum of the
    ACTIVE records.

Architecture position:
    Kernel > Services.  Called by OrderService and the StockKernel facade.

Invariants enforced:
    - 0 <= reserved_quantity <= stock_quantity at all times.
    - reserve never exceeds available = stock_quantity - reserved_quantity;
      the check and the increment happen under the item lock and row lock,
      so N concurrent reserves can never over-reserve.
    - reserve is idempotent for an identical active key.
    - reserve_lines is all-or-nothing: items are locked in sorted order and a
      failure on any line leaves no reservation from the call in place.
    - release decrements by exactly the record's quantity; a second release
      is a no-op.
    - consume turns the reservation into an issue movement of exactly the
      reserved quantity.

Failure modes:
    - InsufficientAvailableStockError, ReservationNotFoundError,
      ValidationError, ItemNotFoundError.
"""

from collections import defaultdict
from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from stock_kernel.db.types import to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import (
    DEFAULT_LOCATION,
    MovementDraft,
    MovementRecord,
    ReservationKey,
    ReservationRecord,
    ReservationRequest,
)
from stock_kernel.domain.enums import MovementType, OrderType, ReservationStatus
from stock_kernel.exceptions import (
    InsufficientAvailableStockError,
    ReservationNotFoundError,
    StockKernelError,
    ValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.reservation import Reservation
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry, lock_item
from stock_kernel.services.ledger_service import LedgerService

logger = get_logger("services.reservations")


class ReservationManager(BaseService):
    """Per-item serialized reservations."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
        locks: ItemLockRegistry | None = None,
    ):
        super().__init__(session, clock)
        self._locks = locks or default_registry
        self._ledger = ledger or LedgerService(session, self.clock, self._locks)

    # ------------------------------------------------------------------
    # Queries used inside the write path
    # ------------------------------------------------------------------

    def _find(
        self, order_type: str, order_id: UUID, item_id: UUID, lock: bool = True
    ) -> Reservation | None:
        stmt = select(Reservation).where(
            Reservation.order_type == order_type,
            Reservation.order_id == order_id,
            Reservation.item_id == item_id,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def active_for_order(self, order_type: str, order_id: UUID) -> list[Reservation]:
        return list(
            self.session.execute(
                select(Reservation)
                .where(
                    Reservation.order_type == order_type,
                    Reservation.order_id == order_id,
                    Reservation.status == ReservationStatus.ACTIVE.value,
                )
                .order_by(Reservation.item_id)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    def reserve(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
    ) -> ReservationRecord:
        """
        Reserve ``quantity`` base units of one item for an order.

        Raises:
            InsufficientAvailableStockError: If quantity exceeds available.
            ValidationError: If the key is active with a different quantity,
                already consumed, or quantity is not positive.
        """
        order_type = OrderType(order_type).value
        with self._locks.hold([item_id]):
            return ReservationRecord.from_model(
                self._reserve_locked(order_type, order_id, item_id, quantity, actor_id)
            )

    def reserve_lines(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        lines: Iterable[ReservationRequest],
        actor_id: UUID,
    ) -> list[ReservationRecord]:
        """
        Reserve every line of a multi-line order, or none of them.

        Duplicate items are summed into one reservation per item.
        """
        order_type = OrderType(order_type).value
        demand: dict[UUID, Decimal] = defaultdict(lambda: Decimal("0"))
        for line in lines:
            demand[line.item_id] += line.quantity
        if not demand:
            raise ValidationError("Order has no lines to reserve", field="lines")

        item_ids = sorted(demand, key=str)
        with self._locks.hold(item_ids), LogContext.bind(order_id=order_id):
            savepoint = self.session.begin_nested()
            try:
                reserved = [
                    self._reserve_locked(
                        order_type, order_id, item_id, demand[item_id], actor_id
                    )
                    for item_id in item_ids
                ]
            except StockKernelError:
                savepoint.rollback()
                logger.warning(
                    "reservation_lines_rolled_back",
                    extra={"order_type": order_type, "line_count": len(item_ids)},
                )
                raise
            savepoint.commit()

        logger.info(
            "reservation_lines_created",
            extra={"order_type": order_type, "line_count": len(reserved)},
        )
        return [ReservationRecord.from_model(r) for r in reserved]

    def _reserve_locked(
        self,
        order_type: str,
        order_id: UUID,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
    ) -> Reservation:
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise ValidationError("Reservation quantity must be positive", field="quantity")

        item = lock_item(self.session, item_id)
        existing = self._find(order_type, order_id, item.id)

        if existing is not None and existing.is_active:
            if existing.quantity == quantity:
                logger.info(
                    "reservation_already_active",
                    extra={
                        "order_type": order_type,
                        "order_id": str(order_id),
                        "item_id": str(item.id),
                        "quantity": quantity,
                    },
                )
                return existing
            raise ValidationError(
                f"Item {item.id} already reserved for {order_type} {order_id} "
                f"with quantity {existing.quantity}, not {quantity}",
                field="quantity",
            )
        if existing is not None and existing.status_enum == ReservationStatus.CONSUMED:
            raise ValidationError(
                f"Reservation for {order_type} {order_id} on item {item.id} "
                "was already consumed",
                field="status",
            )

        available = item.available_quantity
        if quantity > available:
            logger.warning(
                "reservation_rejected_insufficient_available",
                extra={
                    "order_type": order_type,
                    "order_id": str(order_id),
                    "item_id": str(item.id),
                    "available": available,
                    "requested": quantity,
                },
            )
            raise InsufficientAvailableStockError(
                item_id=str(item.id), available=available, requested=quantity
            )

        item.reserved_quantity = item.reserved_quantity + quantity
        now = self.clock.now()
        if existing is None:
            existing = Reservation(
                order_type=order_type,
                order_id=order_id,
                item_id=item.id,
                quantity=quantity,
                status=ReservationStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
                created_by_id=actor_id,
            )
            self.session.add(existing)
        else:
            # Re-reserve after an earlier release
            existing.quantity = quantity
            existing.status = ReservationStatus.ACTIVE.value
            existing.released_at = None
            existing.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "reservation_created",
            extra={
                "reservation_id": str(existing.id),
                "order_type": order_type,
                "order_id": str(order_id),
                "item_id": str(item.id),
                "quantity": quantity,
                "reserved_quantity": item.reserved_quantity,
                "stock_quantity": item.stock_quantity,
            },
        )
        return existing

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        actor_id: UUID,
    ) -> ReservationRecord:
        """
        Release one reservation.  Releasing a non-active record is a no-op.

        Raises:
            ReservationNotFoundError: If no record exists for the key.
        """
        order_type = OrderType(order_type).value
        with self._locks.hold([item_id]):
            return ReservationRecord.from_model(
                self._release_locked(order_type, order_id, item_id, actor_id)
            )

    def release_order(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        actor_id: UUID,
    ) -> list[ReservationRecord]:
        """Release every active reservation held by an order."""
        order_type = OrderType(order_type).value
        item_ids = [r.item_id for r in self.active_for_order(order_type, order_id)]
        with self._locks.hold(item_ids):
            released = [
                self._release_locked(order_type, order_id, item_id, actor_id)
                for item_id in sorted(item_ids, key=str)
            ]
        return [ReservationRecord.from_model(r) for r in released]

    def _release_locked(
        self, order_type: str, order_id: UUID, item_id: UUID, actor_id: UUID
    ) -> Reservation:
        item = lock_item(self.session, item_id)
        reservation = self._find(order_type, order_id, item.id)
        if reservation is None:
            raise ReservationNotFoundError(order_type, str(order_id), str(item_id))

        if not reservation.is_active:
            logger.info(
                "reservation_release_noop",
                extra={
                    "reservation_id": str(reservation.id),
                    "status": reservation.status,
                },
            )
            return reservation

        item.reserved_quantity = item.reserved_quantity - reservation.quantity
        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = self.clock.now()
        reservation.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "reservation_released",
            extra={
                "reservation_id": str(reservation.id),
                "order_type": order_type,
                "order_id": str(order_id),
                "item_id": str(item.id),
                "quantity": reservation.quantity,
                "reserved_quantity": item.reserved_quantity,
            },
        )
        return reservation

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
        notes: str | None = None,
    ) -> MovementRecord:
        """
        Convert an active reservation into an issue movement of exactly the
        reserved quantity.

        Raises:
            ReservationNotFoundError: If no record exists for the key.
            ValidationError: If the reservation is not active.
        """
        order_type = OrderType(order_type).value
        with self._locks.hold([item_id]):
            movement = self._consume_locked(
                order_type, order_id, item_id, actor_id, warehouse_location, notes
            )
            return MovementRecord.from_model(movement)

    def consume_order(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
        notes: str | None = None,
    ) -> list[MovementRecord]:
        """Consume every active reservation of an order."""
        order_type = OrderType(order_type).value
        item_ids = [r.item_id for r in self.active_for_order(order_type, order_id)]
        with self._locks.hold(item_ids):
            movements = [
                self._consume_locked(
                    order_type, order_id, item_id, actor_id, warehouse_location, notes
                )
                for item_id in sorted(item_ids, key=str)
            ]
        return [MovementRecord.from_model(m) for m in movements]

    def _consume_locked(
        self,
        order_type: str,
        order_id: UUID,
        item_id: UUID,
        actor_id: UUID,
        warehouse_location: str,
        notes: str | None,
    ):
        item = lock_item(self.session, item_id)
        reservation = self._find(order_type, order_id, item.id)
        if reservation is None:
            raise ReservationNotFoundError(order_type, str(order_id), str(item_id))
        if not reservation.is_active:
            raise ValidationError(
                f"Reservation {reservation.id} is {reservation.status}, not active",
                field="status",
            )

        quantity = reservation.quantity
        item.reserved_quantity = item.reserved_quantity - quantity
        now = self.clock.now()
        reservation.status = ReservationStatus.CONSUMED.value
        reservation.consumed_at = now
        reservation.updated_by_id = actor_id
        self.session.flush()

        movement = self._ledger.append_movement(
            MovementDraft(
                item_id=item.id,
                movement_type=MovementType.ISSUE,
                quantity=-quantity,
                unit=item.unit,
                warehouse_location=warehouse_location,
                reference_type=order_type,
                reference_id=str(order_id),
                notes=notes,
                unit_cost=item.cost_per_unit,
                consumes=ReservationKey(order_type, order_id, item.id),
            ),
            actor_id,
        )
        reservation.consumed_by_movement_id = movement.id
        self.session.flush()

        logger.info(
            "reservation_consumed",
            extra={
                "reservation_id": str(reservation.id),
                "movement_id": str(movement.id),
                "order_type": order_type,
                "order_id": str(order_id),
                "item_id": str(item.id),
                "quantity": quantity,
            },
        )
        return movement
