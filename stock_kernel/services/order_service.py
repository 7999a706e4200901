"""
OrderService -- executes order state transitions and their stock effects.

Responsibility:
    Creates sales, assembly and purchase orders, and moves them through the
    state machines in ``stock_kernel.domain.order_workflow``.  The workflow
    decides which effects a transition carries; this service performs them
    (reserve / release / consume / produce / enqueue sync) in the caller's
    transaction, so the status change and its stock effect commit together.

Architecture position:
    Kernel > Services.  Called by the StockKernel facade.

Invariants enforced:
    - The order row is locked before its status is read, so a cancellation
      racing a reservation observes either no reservation or the whole one.
    - Purchase receipts never exceed the ordered line quantity; the
      remaining quantity is derived from receipt movements, not stored.

Failure modes:
    - OrderNotFoundError, InvalidTransitionError, OverReceiptError,
      InsufficientAvailableStockError, UnitConversionError, ValidationError.
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from stock_kernel.db.types import normalize, round_quantity, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import (
    DEFAULT_LOCATION,
    MovementDraft,
    MovementRecord,
    OrderLineSpec,
    OrderStatusRecord,
    ReceiptLine,
    ReservationRequest,
)
from stock_kernel.domain.enums import ItemKind, MovementType, OrderType, SyncType
from stock_kernel.domain.order_workflow import (
    AssemblyOrderStatus,
    PurchaseOrderStatus,
    SalesOrderStatus,
    StockEffect,
    StoreType,
    plan_assembly_transition,
    plan_purchase_transition,
    plan_sales_transition,
    receipt_status,
)
from stock_kernel.exceptions import (
    InvalidTransitionError,
    ItemNotFoundError,
    OrderNotFoundError,
    OverReceiptError,
    ValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.item import BomLine, Item
from stock_kernel.models.order import (
    AssemblyOrder,
    PurchaseOrder,
    PurchaseOrderLine,
    SalesOrder,
    SalesOrderLine,
)
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.services.base import BaseService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry
from stock_kernel.services.ledger_service import PURCHASE_ORDER_LINE_REFERENCE, LedgerService
from stock_kernel.services.reservation_manager import ReservationManager
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_kernel.services.unit_converter import UnitConverter

logger = get_logger("services.orders")

PURCHASE_ORDER_REFERENCE = "purchase_order"
SALES_ORDER_REFERENCE = "sales_order"


class OrderService(BaseService):
    def __init__(
        self,
        session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
        reservations: ReservationManager | None = None,
        outbox: SyncOutbox | None = None,
        locks: ItemLockRegistry | None = None,
    ):
        super().__init__(session, clock)
        locks = locks or default_registry
        self._outbox = outbox or SyncOutbox(session, self.clock)
        self._ledger = ledger or LedgerService(session, self.clock, locks, self._outbox)
        self._reservations = reservations or ReservationManager(
            session, self.clock, self._ledger, locks
        )
        self._converter = UnitConverter(session)
        self._movements = MovementSelector(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_order(self, model, order_id: UUID, order_type: str):
        order = self.session.execute(
            select(model)
            .where(model.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_type, str(order_id))
        return order

    def _item(self, item_id: UUID) -> Item:
        item = self.session.get(Item, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return item

    def _to_base(self, item: Item, quantity: Decimal, unit: str | None) -> Decimal:
        return self._converter.convert(quantity, unit or item.unit, item.unit)

    def _insert_order(self, order, number: str):
        savepoint = self.session.begin_nested()
        try:
            self.session.add(order)
            self.session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            raise ValidationError(f"Order number already exists: {number}", field="order_number") from exc
        savepoint.commit()

    def _validate_lines(self, lines: list[OrderLineSpec]) -> list[tuple[OrderLineSpec, Item]]:
        if not lines:
            raise ValidationError("Order must have at least one line", field="lines")
        checked = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError("Line quantity must be positive", field="quantity")
            item = self._item(line.item_id)
            # Reject unconvertible units at entry, not at reservation time
            self._to_base(item, line.quantity, line.unit)
            checked.append((line, item))
        return checked

    # ==================================================================
    # Sales orders
    # ==================================================================

    def create_sales_order(
        self,
        order_number: str,
        store_type: StoreType | str,
        lines: Iterable[OrderLineSpec],
        actor_id: UUID,
        customer_code: str | None = None,
    ) -> SalesOrder:
        try:
            store_type = StoreType(store_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown store type: {store_type}", field="store_type") from exc
        checked = self._validate_lines(list(lines))

        now = self.clock.now()
        order = SalesOrder(
            order_number=order_number,
            store_type=store_type.value,
            customer_code=(customer_code or "").strip() or None,
            status=SalesOrderStatus.DRAFT.value,
            stock_reserved=False,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        for line_no, (line, item) in enumerate(checked, start=1):
            order.lines.append(
                SalesOrderLine(
                    line_no=line_no,
                    item_id=item.id,
                    quantity=line.quantity,
                    unit=line.unit or item.unit,
                    unit_price=line.unit_price,
                    created_at=now,
                    updated_at=now,
                    created_by_id=actor_id,
                )
            )
        self._insert_order(order, order_number)
        logger.info(
            "sales_order_created",
            extra={
                "order_id": str(order.id),
                "order_number": order_number,
                "store_type": store_type.value,
                "line_count": len(order.lines),
            },
        )
        return order

    def transition_sales_order(
        self,
        order_id: UUID,
        target: SalesOrderStatus | str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> OrderStatusRecord:
        """
        Move a sales order to ``target`` and apply its stock effect.

        Submitting enqueues the ERP sales order.  Entering
        pending_payment/processing reserves every line; cancelling a reserved
        order releases it; completing consumes the reservation.
        """
        target = SalesOrderStatus(target)
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            order = self._lock_order(SalesOrder, order_id, "SalesOrder")
            plan = plan_sales_transition(
                order.id,
                order.status_enum,
                target,
                order.store_type_enum,
                order.stock_reserved,
            )

            if plan.has(StockEffect.SYNC_SALES_ORDER_CREATE):
                self._outbox.enqueue(
                    SALES_ORDER_REFERENCE, str(order.id), SyncType.SALES_ORDER_CREATE, actor_id
                )

            movements: list[MovementRecord] = []
            if plan.has(StockEffect.RESERVE):
                requests = [
                    ReservationRequest(
                        item_id=line.item_id,
                        quantity=self._to_base(self._item(line.item_id), line.quantity, line.unit),
                    )
                    for line in order.lines
                ]
                records = self._reservations.reserve_lines(
                    OrderType.SALES_ORDER, order.id, requests, actor_id
                )
                order.stock_reserved = True
                order.reservation_notes = (
                    f"Reserved {len(records)} item(s) at {self.clock.now().isoformat()}"
                )
            if plan.has(StockEffect.RELEASE):
                self._reservations.release_order(OrderType.SALES_ORDER, order.id, actor_id)
                order.stock_reserved = False
                order.reservation_notes = "Reservation released on cancellation"
            if plan.has(StockEffect.CONSUME):
                movements = self._reservations.consume_order(
                    OrderType.SALES_ORDER,
                    order.id,
                    actor_id,
                    notes=f"Sales order {order.order_number}",
                )
                order.stock_reserved = False
                order.reservation_notes = f"Consumed into {len(movements)} issue movement(s)"

            order.status = target.value
            if target == SalesOrderStatus.CANCELLED:
                order.cancellation_reason = reason
            order.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "sales_order_transitioned",
                extra={
                    "from_status": plan.from_status,
                    "to_status": plan.to_status,
                    "effects": [e.value for e in plan.effects],
                },
            )
            return OrderStatusRecord(
                order_type=OrderType.SALES_ORDER.value,
                order_id=order.id,
                status=order.status,
                stock_reserved=order.stock_reserved,
                reservation_notes=order.reservation_notes,
                movement_ids=tuple(m.id for m in movements),
            )

    # ==================================================================
    # Assembly orders
    # ==================================================================

    def create_assembly_order(
        self,
        order_number: str,
        product_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> AssemblyOrder:
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise ValidationError("Assembly quantity must be positive", field="quantity")
        product = self._item(product_id)
        if product.kind_enum != ItemKind.PRODUCT:
            raise ValidationError(f"Item {product.sku} is not a product", field="product_id")
        if not self._bom(product.id):
            raise ValidationError(f"Product {product.sku} has no bill of materials", field="product_id")

        now = self.clock.now()
        order = AssemblyOrder(
            order_number=order_number,
            product_id=product.id,
            quantity=quantity,
            status=AssemblyOrderStatus.PENDING.value,
            stock_reserved=False,
            warehouse_location=warehouse_location,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self._insert_order(order, order_number)
        logger.info(
            "assembly_order_created",
            extra={
                "order_id": str(order.id),
                "order_number": order_number,
                "item_id": str(product.id),
                "quantity": quantity,
            },
        )
        return order

    def _bom(self, product_id: UUID) -> list[BomLine]:
        return list(
            self.session.execute(
                select(BomLine).where(BomLine.product_id == product_id)
            ).scalars()
        )

    def component_demand(self, product_id: UUID, quantity: Decimal) -> list[ReservationRequest]:
        """BOM quantity x order quantity per component, in component base units."""
        demand = []
        for line in self._bom(product_id):
            component = self._item(line.component_item_id)
            demand.append(
                ReservationRequest(
                    item_id=component.id,
                    quantity=self._to_base(component, line.quantity * quantity, line.unit),
                )
            )
        return demand

    def _production_unit_cost(self, product_id: UUID) -> Decimal:
        total = Decimal("0")
        for line in self._bom(product_id):
            component = self._item(line.component_item_id)
            base_per_unit = self._to_base(component, line.quantity, line.unit)
            total += base_per_unit * component.cost_per_unit
        return round_quantity(total)

    def transition_assembly_order(
        self,
        order_id: UUID,
        target: AssemblyOrderStatus | str,
        actor_id: UUID,
        batch_number: str | None = None,
    ) -> OrderStatusRecord:
        """
        Move an assembly order to ``target``.

        Starting reserves BOM demand; completing consumes the components and
        appends a production_produce movement for the product; cancelling
        releases whatever is reserved.
        """
        target = AssemblyOrderStatus(target)
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            order = self._lock_order(AssemblyOrder, order_id, "AssemblyOrder")
            plan = plan_assembly_transition(
                order.id, order.status_enum, target, order.stock_reserved
            )

            movement_ids: list[UUID] = []
            if plan.has(StockEffect.RESERVE):
                demand = self.component_demand(order.product_id, order.quantity)
                self._reservations.reserve_lines(
                    OrderType.ASSEMBLY_ORDER, order.id, demand, actor_id
                )
                order.stock_reserved = True
                order.reservation_notes = (
                    "Components reserved: "
                    + ", ".join(
                        f"{self._item(d.item_id).sku} x {normalize(d.quantity)}" for d in demand
                    )
                )
            if plan.has(StockEffect.RELEASE):
                self._reservations.release_order(OrderType.ASSEMBLY_ORDER, order.id, actor_id)
                order.stock_reserved = False
                order.reservation_notes = "Component reservation released on cancellation"
            if plan.has(StockEffect.CONSUME):
                consumed = self._reservations.consume_order(
                    OrderType.ASSEMBLY_ORDER,
                    order.id,
                    actor_id,
                    warehouse_location=order.warehouse_location,
                    notes=f"Assembly order {order.order_number}",
                )
                movement_ids.extend(m.id for m in consumed)
                order.stock_reserved = False
            if plan.has(StockEffect.PRODUCE):
                produced = self._ledger.append_movement(
                    MovementDraft(
                        item_id=order.product_id,
                        movement_type=MovementType.PRODUCTION_PRODUCE,
                        quantity=order.quantity,
                        batch_number=batch_number,
                        warehouse_location=order.warehouse_location,
                        reference_type=OrderType.ASSEMBLY_ORDER.value,
                        reference_id=str(order.id),
                        unit_cost=self._production_unit_cost(order.product_id),
                        notes=f"Assembly order {order.order_number}",
                    ),
                    actor_id,
                )
                order.batch_number = produced.batch_number
                order.reservation_notes = "Components consumed, product produced"
                movement_ids.append(produced.id)

            order.status = target.value
            order.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "assembly_order_transitioned",
                extra={
                    "from_status": plan.from_status,
                    "to_status": plan.to_status,
                    "effects": [e.value for e in plan.effects],
                },
            )
            return OrderStatusRecord(
                order_type=OrderType.ASSEMBLY_ORDER.value,
                order_id=order.id,
                status=order.status,
                stock_reserved=order.stock_reserved,
                reservation_notes=order.reservation_notes,
                movement_ids=tuple(movement_ids),
            )

    # ==================================================================
    # Purchase orders
    # ==================================================================

    def create_purchase_order(
        self,
        po_number: str,
        supplier_code: str,
        lines: Iterable[OrderLineSpec],
        actor_id: UUID,
        notes: str | None = None,
    ) -> PurchaseOrder:
        if not supplier_code:
            raise ValidationError("Supplier code is required", field="supplier_code")
        checked = self._validate_lines(list(lines))

        now = self.clock.now()
        order = PurchaseOrder(
            po_number=po_number,
            supplier_code=supplier_code,
            status=PurchaseOrderStatus.DRAFT.value,
            notes=notes,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        for line_no, (line, item) in enumerate(checked, start=1):
            order.lines.append(
                PurchaseOrderLine(
                    line_no=line_no,
                    item_id=item.id,
                    quantity=line.quantity,
                    unit=line.unit or item.unit,
                    unit_price=line.unit_price,
                    created_at=now,
                    updated_at=now,
                    created_by_id=actor_id,
                )
            )
        self._insert_order(order, po_number)
        logger.info(
            "purchase_order_created",
            extra={
                "order_id": str(order.id),
                "po_number": po_number,
                "supplier_code": supplier_code,
                "line_count": len(order.lines),
            },
        )
        return order

    def transition_purchase_order(
        self,
        order_id: UUID,
        target: PurchaseOrderStatus | str,
        actor_id: UUID,
    ) -> OrderStatusRecord:
        """
        Approve or cancel a purchase order.

        Receiving statuses are reached only through ``receive_purchase_order``.
        """
        target = PurchaseOrderStatus(target)
        if target in (PurchaseOrderStatus.PARTIALLY_RECEIVED, PurchaseOrderStatus.RECEIVED):
            raise ValidationError(
                "Purchase orders are received through goods receipts", field="status"
            )
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            order = self._lock_order(PurchaseOrder, order_id, "PurchaseOrder")
            plan = plan_purchase_transition(order.id, order.status_enum, target)

            if plan.has(StockEffect.SYNC_PO_CREATE):
                self._outbox.enqueue(
                    PURCHASE_ORDER_REFERENCE, str(order.id), SyncType.PO_CREATE, actor_id
                )
            if plan.has(StockEffect.SYNC_PO_CANCEL):
                self._outbox.enqueue(
                    PURCHASE_ORDER_REFERENCE, str(order.id), SyncType.PO_CANCEL, actor_id
                )

            order.status = target.value
            order.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "purchase_order_transitioned",
                extra={
                    "from_status": plan.from_status,
                    "to_status": plan.to_status,
                    "effects": [e.value for e in plan.effects],
                },
            )
            return OrderStatusRecord(
                order_type=OrderType.PURCHASE_ORDER.value,
                order_id=order.id,
                status=order.status,
            )

    def receive_purchase_order(
        self,
        order_id: UUID,
        receipts: Iterable[ReceiptLine],
        actor_id: UUID,
        warehouse_location: str = DEFAULT_LOCATION,
    ) -> OrderStatusRecord:
        """
        Book a goods receipt (GRN) against purchase order lines.

        Appends one receipt movement per receipt line, tagged with the PO line
        id, and moves the order to partially_received or received.

        Raises:
            InvalidTransitionError: If the order is not approved or partially received.
            OverReceiptError: If a line would receive more than ordered.
        """
        receipts = list(receipts)
        if not receipts:
            raise ValidationError("Goods receipt has no lines", field="receipts")

        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            order = self._lock_order(PurchaseOrder, order_id, "PurchaseOrder")
            if order.status_enum not in (
                PurchaseOrderStatus.APPROVED,
                PurchaseOrderStatus.PARTIALLY_RECEIVED,
            ):
                raise InvalidTransitionError(
                    order_type="PurchaseOrder",
                    order_id=str(order.id),
                    from_status=order.status,
                    to_status=PurchaseOrderStatus.RECEIVED.value,
                )
            lines = {line.id: line for line in order.lines}

            movements: list[MovementRecord] = []
            for receipt in receipts:
                line = lines.get(receipt.line_id)
                if line is None:
                    raise ValidationError(
                        f"Line {receipt.line_id} does not belong to PO {order.po_number}",
                        field="line_id",
                    )
                if receipt.quantity <= 0:
                    raise ValidationError("Received quantity must be positive", field="quantity")
                item = self._item(line.item_id)
                ordered = self._to_base(item, line.quantity, line.unit)
                requested = self._to_base(item, receipt.quantity, receipt.unit or line.unit)
                already = self._movements.received_quantity(str(line.id))
                if already + requested > ordered:
                    logger.warning(
                        "over_receipt_rejected",
                        extra={
                            "line_id": str(line.id),
                            "ordered": ordered,
                            "already_received": already,
                            "requested": requested,
                        },
                    )
                    raise OverReceiptError(
                        line_id=str(line.id),
                        ordered=ordered,
                        already_received=already,
                        requested=requested,
                    )
                movements.append(
                    self._ledger.append(
                        MovementDraft(
                            item_id=item.id,
                            movement_type=MovementType.RECEIPT,
                            quantity=receipt.quantity,
                            unit=receipt.unit or line.unit,
                            batch_number=receipt.batch_number,
                            warehouse_location=warehouse_location,
                            reference_type=PURCHASE_ORDER_LINE_REFERENCE,
                            reference_id=str(line.id),
                            purchase_order_id=order.id,
                            supplier_reference=order.supplier_code,
                            unit_cost=line.unit_price,
                            notes=f"GRN for PO {order.po_number}",
                        ),
                        actor_id,
                    )
                )

            progress = []
            for line in order.lines:
                item = self._item(line.item_id)
                progress.append(
                    (
                        self._to_base(item, line.quantity, line.unit),
                        self._movements.received_quantity(str(line.id)),
                    )
                )
            new_status = receipt_status(progress)
            plan = plan_purchase_transition(order.id, order.status_enum, new_status)
            order.status = new_status.value
            order.updated_by_id = actor_id
            self.session.flush()

            logger.info(
                "purchase_order_received",
                extra={
                    "from_status": plan.from_status,
                    "to_status": plan.to_status,
                    "movement_count": len(movements),
                },
            )
            return OrderStatusRecord(
                order_type=OrderType.PURCHASE_ORDER.value,
                order_id=order.id,
                status=order.status,
                movement_ids=tuple(m.id for m in movements),
            )
