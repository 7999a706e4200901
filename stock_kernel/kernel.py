"""
stock_kernel.kernel -- StockKernel facade and the per-session service container.

Responsibility:
    ``StockServices`` builds every kernel service exactly once for a session
    and wires them together, so one operation shares a single LedgerService,
    SyncOutbox and lock registry.  ``StockKernel`` is the public entry point:
    each mutating method runs in its own UnitOfWork transaction and returns
    immutable records; read methods use short-lived sessions and never write.

Architecture position:
    Kernel > top.  The CLI, the sync orchestrator wiring and callers embed
    this class; nothing inside the kernel imports it.

Invariants enforced:
    - Every mutating call takes an explicit ``actor_id``.
    - A sync entry is handed to the attached SyncOrchestrator only after the
      transaction that created it has committed.

Usage:
    kernel = StockKernel(get_session_factory(), clock=SystemClock())
    item = kernel.create_item("FLOUR", "Bread flour", ItemKind.RAW_MATERIAL, "g", actor)
    kernel.append_movement(MovementDraft(item.id, MovementType.RECEIPT, Decimal("50"), unit="kg"), actor)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db import engine as db_engine
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    DEFAULT_LOCATION,
    ItemRecord,
    LedgerCheck,
    MovementDraft,
    MovementFilter,
    MovementRecord,
    OrderLineSpec,
    OrderRecord,
    OrderStatusRecord,
    ReceiptLine,
    ReservationRecord,
    ReservationRequest,
    SyncLogRecord,
)
from stock_kernel.domain.enums import AdjustmentDirection, ItemKind, OrderType
from stock_kernel.domain.order_workflow import (
    AssemblyOrderStatus,
    PurchaseOrderStatus,
    SalesOrderStatus,
    StoreType,
)
from stock_kernel.exceptions import ItemNotFoundError, OrderNotFoundError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.item import Item
from stock_kernel.models.order import (
    AssemblyOrder,
    PurchaseOrder,
    PurchaseOrderLine,
    SalesOrder,
)
from stock_kernel.selectors.item_selector import ItemSelector, ReservationSelector
from stock_kernel.selectors.movement_selector import DEFAULT_PAGE_SIZE, MovementSelector
from stock_kernel.selectors.sync_selector import SyncSelector
from stock_kernel.services.adjustment_service import AdjustmentService
from stock_kernel.services.batch_tracker import BatchTracker
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry
from stock_kernel.services.ledger_service import LedgerService
from stock_kernel.services.order_service import OrderService
from stock_kernel.services.reservation_manager import ReservationManager
from stock_kernel.services.sequence_service import BatchNumberService
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_kernel.services.unit_converter import UnitConverter
from stock_kernel.services.unit_of_work import DEFAULT_MAX_CONFLICT_RETRIES, UnitOfWork

logger = get_logger("kernel")

_ORDER_MODELS = {
    OrderType.SALES_ORDER: SalesOrder,
    OrderType.ASSEMBLY_ORDER: AssemblyOrder,
    OrderType.PURCHASE_ORDER: PurchaseOrder,
}


class StockServices:
    """
    Per-session service container.

    Guarantees:
        - Single instance of each service per session.
        - All services share the session, clock and lock registry.

    Non-goals:
        - Does NOT commit or roll back; UnitOfWork owns the transaction.
    """

    def __init__(self, session: Session, clock: Clock, locks: ItemLockRegistry):
        self.session = session
        self.outbox = SyncOutbox(session, clock)
        self.ledger = LedgerService(session, clock, locks, self.outbox)
        self.reservations = ReservationManager(session, clock, self.ledger, locks)
        self.catalog = CatalogService(session, clock, self.outbox)
        self.orders = OrderService(
            session, clock, self.ledger, self.reservations, self.outbox, locks
        )
        self.adjustments = AdjustmentService(session, clock, self.ledger, locks)
        self.batches = BatchTracker(session, clock, self.ledger, locks)
        self.converter = UnitConverter(session)
        self.batch_numbers = BatchNumberService(session)


class StockKernel:
    """Transactional facade over the stock ledger, reservations and orders."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        clock: Clock | None = None,
        locks: ItemLockRegistry | None = None,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
    ):
        self._session_factory = session_factory or db_engine.get_session_factory()
        self.clock = clock or SystemClock()
        self._locks = locks or default_registry
        write_lock = None if db_engine.is_postgres() else db_engine.sqlite_write_lock
        self._uow = UnitOfWork(
            self._session_factory,
            max_conflict_retries=max_conflict_retries,
            write_lock=write_lock,
        )

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    def attach_sync(self, notify: Callable[[list[UUID]], None] | None) -> None:
        """
        Register the callback that receives committed sync entry ids
        (normally ``SyncOrchestrator.notify``).  ``None`` detaches.
        """
        self._uow.after_commit = notify

    def _write(self, operation: str, fn: Callable[[StockServices], object]):
        return self._uow.run(
            operation, lambda session: fn(StockServices(session, self.clock, self._locks))
        )

    def _read(self, fn: Callable[[Session], object]):
        with self._session_factory() as session:
            try:
                return fn(session)
            finally:
                session.rollback()

    # ==================================================================
    # Catalog
    # ==================================================================

    def create_item(
        self,
        sku: str,
        name: str,
        kind: ItemKind | str,
        unit: str,
        actor_id: UUID,
        **attributes,
    ) -> ItemRecord:
        return self._write(
            "create_item",
            lambda s: s.catalog.create_item(sku, name, kind, unit, actor_id, **attributes),
        )

    def register_unit_conversion(
        self, from_unit: str, to_unit: str, conversion_factor: Decimal
    ) -> Decimal:
        def op(s: StockServices) -> Decimal:
            return s.converter.register(from_unit, to_unit, conversion_factor).conversion_factor

        return self._write("register_unit_conversion", op)

    def convert(self, quantity: Decimal, from_unit: str, to_unit: str) -> Decimal:
        return self._read(lambda session: UnitConverter(session).convert(quantity, from_unit, to_unit))

    def set_bom(
        self,
        product_id: UUID,
        components: Iterable[tuple[UUID, Decimal, str | None]],
        actor_id: UUID,
    ) -> int:
        components = list(components)
        return self._write(
            "set_bom", lambda s: len(s.catalog.set_bom(product_id, components, actor_id))
        )

    def get_bom(self, product_id: UUID) -> list[tuple[UUID, Decimal, str | None]]:
        """(component_item_id, quantity per product unit, unit) for a product."""
        return self._read(lambda session: ItemSelector(session).bom(product_id))

    def get_item(self, item_id: UUID) -> ItemRecord:
        record = self._read(lambda session: ItemSelector(session).get(item_id))
        if record is None:
            raise ItemNotFoundError(str(item_id))
        return record

    def get_item_by_sku(self, sku: str) -> ItemRecord | None:
        return self._read(lambda session: ItemSelector(session).by_sku(sku))

    def list_items(self, kind: ItemKind | str | None = None) -> list[ItemRecord]:
        kind_value = ItemKind(kind).value if kind is not None else None
        return self._read(lambda session: ItemSelector(session).list_items(kind_value))

    # ==================================================================
    # Ledger
    # ==================================================================

    def append_movement(self, draft: MovementDraft, actor_id: UUID) -> MovementRecord:
        return self._write("append_movement", lambda s: s.ledger.append(draft, actor_id))

    def get_movement(self, movement_id: UUID) -> MovementRecord | None:
        return self._read(lambda session: MovementSelector(session).get(movement_id))

    def iter_movements(
        self,
        item_id: UUID,
        filters: MovementFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "KernelMovementStream":
        """Lazy, restartable stream of an item's movements, newest first."""
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        return KernelMovementStream(
            self._session_factory, item_id, filters or MovementFilter(), page_size
        )

    def remaining_to_receive(self, line_id: UUID) -> Decimal:
        def op(session: Session) -> Decimal:
            line = session.get(PurchaseOrderLine, line_id)
            if line is None:
                raise OrderNotFoundError("PurchaseOrderLine", str(line_id))
            item = session.get(Item, line.item_id)
            ordered = UnitConverter(session).convert(line.quantity, line.unit, item.unit)
            return MovementSelector(session).remaining_to_receive(line.id, ordered)

        return self._read(op)

    def adjust_stock(
        self,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        direction: AdjustmentDirection | str = AdjustmentDirection.IN,
        **options,
    ) -> MovementRecord:
        return self._write(
            "adjust_stock",
            lambda s: s.adjustments.adjust_stock(item_id, quantity, actor_id, direction, **options),
        )

    def return_to_supplier(
        self,
        item_id: UUID,
        quantity: Decimal,
        supplier_reference: str,
        actor_id: UUID,
        **options,
    ) -> MovementRecord:
        return self._write(
            "return_to_supplier",
            lambda s: s.adjustments.return_to_supplier(
                item_id, quantity, supplier_reference, actor_id, **options
            ),
        )

    def customer_return(
        self, item_id: UUID, quantity: Decimal, actor_id: UUID, **options
    ) -> MovementRecord:
        return self._write(
            "customer_return",
            lambda s: s.adjustments.customer_return(item_id, quantity, actor_id, **options),
        )

    def check_ledger(self, item_id: UUID | None = None) -> list[LedgerCheck]:
        """Counter vs ledger sum for one item, or every item."""

        def op(session: Session) -> list[LedgerCheck]:
            projector = LedgerService(session, self.clock, self._locks).projector
            ids = [item_id] if item_id is not None else ItemSelector(session).all_item_ids()
            return [projector.check(i) for i in ids]

        return self._read(op)

    def verify_ledger(self, item_id: UUID) -> LedgerCheck:
        return self._read(
            lambda session: LedgerService(session, self.clock, self._locks).projector.verify(item_id)
        )

    def rebuild_counter(self, item_id: UUID, actor_id: UUID) -> LedgerCheck:
        logger.info(
            "stock_counter_rebuild_requested",
            extra={"item_id": str(item_id), "actor_id": str(actor_id)},
        )
        return self._write("rebuild_counter", lambda s: s.ledger.projector.rebuild(item_id))

    # ==================================================================
    # Reservations
    # ==================================================================

    def reserve(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
    ) -> ReservationRecord:
        return self._write(
            "reserve",
            lambda s: s.reservations.reserve(order_type, order_id, item_id, quantity, actor_id),
        )

    def reserve_lines(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        lines: Iterable[ReservationRequest],
        actor_id: UUID,
    ) -> list[ReservationRecord]:
        lines = list(lines)
        return self._write(
            "reserve_lines",
            lambda s: s.reservations.reserve_lines(order_type, order_id, lines, actor_id),
        )

    def release(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        actor_id: UUID,
    ) -> ReservationRecord:
        return self._write(
            "release",
            lambda s: s.reservations.release(order_type, order_id, item_id, actor_id),
        )

    def release_order(
        self, order_type: OrderType | str, order_id: UUID, actor_id: UUID
    ) -> list[ReservationRecord]:
        return self._write(
            "release_order",
            lambda s: s.reservations.release_order(order_type, order_id, actor_id),
        )

    def consume(
        self,
        order_type: OrderType | str,
        order_id: UUID,
        item_id: UUID,
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
        notes: str | None = None,
    ) -> MovementRecord:
        return self._write(
            "consume",
            lambda s: s.reservations.consume(
                order_type, order_id, item_id, actor_id, warehouse_location, notes
            ),
        )

    def reservations_for(
        self, order_type: OrderType | str, order_id: UUID, active_only: bool = False
    ) -> list[ReservationRecord]:
        order_type = OrderType(order_type).value
        return self._read(
            lambda session: ReservationSelector(session).for_order(order_type, order_id, active_only)
        )

    # ==================================================================
    # Orders
    # ==================================================================

    def create_sales_order(
        self,
        order_number: str,
        store_type: StoreType | str,
        lines: Iterable[OrderLineSpec],
        actor_id: UUID,
        customer_code: str | None = None,
    ) -> OrderRecord:
        lines = list(lines)
        return self._write(
            "create_sales_order",
            lambda s: OrderRecord.from_model(
                OrderType.SALES_ORDER.value,
                s.orders.create_sales_order(
                    order_number, store_type, lines, actor_id, customer_code
                ),
            ),
        )

    def transition_sales_order(
        self,
        order_id: UUID,
        target: SalesOrderStatus | str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> OrderStatusRecord:
        return self._write(
            "transition_sales_order",
            lambda s: s.orders.transition_sales_order(order_id, target, actor_id, reason),
        )

    def create_assembly_order(
        self,
        order_number: str,
        product_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> OrderRecord:
        return self._write(
            "create_assembly_order",
            lambda s: OrderRecord.from_model(
                OrderType.ASSEMBLY_ORDER.value,
                s.orders.create_assembly_order(
                    order_number, product_id, quantity, actor_id, warehouse_location
                ),
            ),
        )

    def transition_assembly_order(
        self,
        order_id: UUID,
        target: AssemblyOrderStatus | str,
        actor_id: UUID,
        batch_number: str | None = None,
    ) -> OrderStatusRecord:
        return self._write(
            "transition_assembly_order",
            lambda s: s.orders.transition_assembly_order(order_id, target, actor_id, batch_number),
        )

    def create_purchase_order(
        self,
        po_number: str,
        supplier_code: str,
        lines: Iterable[OrderLineSpec],
        actor_id: UUID,
        notes: str | None = None,
    ) -> OrderRecord:
        lines = list(lines)
        return self._write(
            "create_purchase_order",
            lambda s: OrderRecord.from_model(
                OrderType.PURCHASE_ORDER.value,
                s.orders.create_purchase_order(po_number, supplier_code, lines, actor_id, notes),
            ),
        )

    def transition_purchase_order(
        self,
        order_id: UUID,
        target: PurchaseOrderStatus | str,
        actor_id: UUID,
    ) -> OrderStatusRecord:
        return self._write(
            "transition_purchase_order",
            lambda s: s.orders.transition_purchase_order(order_id, target, actor_id),
        )

    def receive_purchase_order(
        self,
        order_id: UUID,
        receipts: Iterable[ReceiptLine],
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> OrderStatusRecord:
        receipts = list(receipts)
        return self._write(
            "receive_purchase_order",
            lambda s: s.orders.receive_purchase_order(
                order_id, receipts, actor_id, warehouse_location
            ),
        )

    def get_order(self, order_type: OrderType | str, order_id: UUID) -> OrderRecord:
        order_type = OrderType(order_type)
        model = _ORDER_MODELS[order_type]

        def op(session: Session) -> OrderRecord:
            order = session.execute(select(model).where(model.id == order_id)).scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError(model.__name__, str(order_id))
            return OrderRecord.from_model(order_type.value, order)

        return self._read(op)

    # ==================================================================
    # Batches
    # ==================================================================

    def next_batch_number(self, on_date: date | None = None) -> str:
        on_date = on_date or self.clock.now().date()
        return self._write(
            "next_batch_number", lambda s: s.batch_numbers.next_batch_number(on_date)
        )

    def mark_expired(
        self, movement_id: UUID, notes: str | None, actor_id: UUID
    ) -> MovementRecord:
        return self._write(
            "mark_expired", lambda s: s.batches.mark_expired(movement_id, notes, actor_id)
        )

    def reinstate_batch(self, movement_id: UUID, actor_id: UUID) -> MovementRecord:
        return self._write("reinstate_batch", lambda s: s.batches.reinstate(movement_id, actor_id))

    def write_off(
        self, movement_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> MovementRecord:
        return self._write(
            "write_off", lambda s: s.batches.write_off(movement_id, actor_id, notes)
        )

    def expired_batches(self, item_id: UUID | None = None) -> list[MovementRecord]:
        return self._read(lambda session: MovementSelector(session).expired_batches(item_id))

    # ==================================================================
    # Sync dashboard
    # ==================================================================

    def sync_counts(self) -> dict[str, int]:
        return self._read(lambda session: SyncSelector(session).counts_by_status())

    def failed_syncs(self, include_permanent: bool = True, limit: int = 100) -> list[SyncLogRecord]:
        return self._read(
            lambda session: SyncSelector(session).failed_entries(include_permanent, limit)
        )

    def syncs_for(self, reference_type: str, reference_id: str) -> list[SyncLogRecord]:
        return self._read(
            lambda session: SyncSelector(session).for_reference(reference_type, str(reference_id))
        )

    def get_sync_entry(self, sync_log_id: UUID) -> SyncLogRecord | None:
        return self._read(lambda session: SyncSelector(session).get(sync_log_id))


class KernelMovementStream:
    """
    Restartable movement stream that opens a short session per page.

    No session or transaction is held between pages, so a caller may write
    through the kernel while iterating.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        item_id: UUID,
        filters: MovementFilter,
        page_size: int,
    ):
        self._session_factory = session_factory
        self._item_id = item_id
        self._filters = filters
        self._page_size = page_size

    def _page(self, after: tuple[datetime, int] | None) -> list[MovementRecord]:
        with self._session_factory() as session:
            try:
                return MovementSelector(session).page(
                    self._item_id, self._filters, after=after, limit=self._page_size
                )
            finally:
                session.rollback()

    def __iter__(self) -> Iterator[MovementRecord]:
        cursor: tuple[datetime, int] | None = None
        while True:
            page = self._page(cursor)
            yield from page
            if len(page) < self._page_size:
                return
            cursor = (page[-1].created_at, page[-1].seq)

    def first(self, n: int) -> list[MovementRecord]:
        out: list[MovementRecord] = []
        for record in self:
            if len(out) >= n:
                break
            out.append(record)
        return out
