"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that cross the kernel boundary:
    MovementDraft (ledger input), MovementRecord (ledger output), and the
    read-side records for items, reservations, orders and sync log entries.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters, invoked only from
    the service and selector layers.

Invariants enforced:
    - Quantities are Decimal; floats are rejected at construction.
    - Records are frozen; callers cannot mutate ledger history through them.

Data flow:
    MovementDraft -> LedgerService.append -> Movement (ORM) -> MovementRecord
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from stock_kernel.db.types import to_quantity
from stock_kernel.domain.enums import MovementType, SyncType

if TYPE_CHECKING:
    from stock_kernel.models.item import Item as ItemModel
    from stock_kernel.models.movement import Movement as MovementModel
    from stock_kernel.models.reservation import Reservation as ReservationModel
    from stock_kernel.models.sync_log import SyncLogEntry as SyncLogEntryModel


DEFAULT_LOCATION = "MAIN"


@dataclass(frozen=True)
class ReservationKey:
    """Identifies one reservation record."""

    order_type: str
    order_id: UUID
    item_id: UUID


@dataclass(frozen=True)
class MovementDraft:
    """
    Request to append one movement to the ledger.

    Contract:
        ``quantity`` is signed and expressed in ``unit`` (the item's base
        unit when ``unit`` is None).  The ledger converts it to base units.

    Guarantees:
        - quantity is a Decimal at storage precision (floats rejected).
    """

    item_id: UUID
    movement_type: MovementType
    quantity: Decimal
    unit: str | None = None
    batch_number: str | None = None
    warehouse_location: str = DEFAULT_LOCATION
    reference_type: str | None = None
    reference_id: str | None = None
    purchase_order_id: UUID | None = None
    supplier_reference: str | None = None
    notes: str | None = None
    unit_cost: Decimal | None = None
    # Set when the movement is the consumption of an active reservation
    consumes: ReservationKey | None = None
    # Overrides the sync type derived from movement type and sign
    sync_type: SyncType | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", to_quantity(self.quantity))
        object.__setattr__(self, "movement_type", MovementType(self.movement_type))
        if self.unit_cost is not None:
            object.__setattr__(self, "unit_cost", to_quantity(self.unit_cost))


@dataclass(frozen=True)
class MovementRecord:
    """Immutable view of an appended movement."""

    id: UUID
    seq: int
    item_id: UUID
    movement_type: MovementType
    quantity: Decimal
    unit_of_record: str
    quantity_in_base_unit: Decimal
    batch_number: str | None
    warehouse_location: str
    performed_by: UUID
    reference_type: str | None
    reference_id: str | None
    purchase_order_id: UUID | None
    supplier_reference: str | None
    notes: str | None
    unit_cost: Decimal | None
    sync_status: str
    erp_doc_no: str | None
    created_at: datetime
    is_expired: bool = False
    expired_at: datetime | None = None
    expiry_notes: str | None = None
    marked_expired_by: UUID | None = None
    written_off: bool = False
    written_off_by_movement_id: UUID | None = None

    @classmethod
    def from_model(cls, m: MovementModel) -> MovementRecord:
        return cls(
            id=m.id,
            seq=m.seq,
            item_id=m.item_id,
            movement_type=MovementType(m.movement_type),
            quantity=m.quantity,
            unit_of_record=m.unit_of_record,
            quantity_in_base_unit=m.quantity_in_base_unit,
            batch_number=m.batch_number,
            warehouse_location=m.warehouse_location,
            performed_by=m.performed_by,
            reference_type=m.reference_type,
            reference_id=m.reference_id,
            purchase_order_id=m.purchase_order_id,
            supplier_reference=m.supplier_reference,
            notes=m.notes,
            unit_cost=m.unit_cost,
            sync_status=m.sync_status,
            erp_doc_no=m.erp_doc_no,
            created_at=m.created_at,
            is_expired=m.is_expired,
            expired_at=m.expired_at,
            expiry_notes=m.expiry_notes,
            marked_expired_by=m.marked_expired_by,
            written_off=m.written_off,
            written_off_by_movement_id=m.written_off_by_movement_id,
        )


@dataclass(frozen=True)
class ItemRecord:
    """Read-side view of an item and its counters."""

    id: UUID
    sku: str
    name: str
    kind: str
    unit: str
    stock_quantity: Decimal
    reserved_quantity: Decimal
    cost_per_unit: Decimal
    price: Decimal
    batch_tracking_enabled: bool
    stock_control: bool
    erp_item_code: str | None
    sync_required: bool

    @property
    def available_quantity(self) -> Decimal:
        return self.stock_quantity - self.reserved_quantity

    @classmethod
    def from_model(cls, item: ItemModel) -> ItemRecord:
        return cls(
            id=item.id,
            sku=item.sku,
            name=item.name,
            kind=item.kind,
            unit=item.unit,
            stock_quantity=item.stock_quantity,
            reserved_quantity=item.reserved_quantity,
            cost_per_unit=item.cost_per_unit,
            price=item.price,
            batch_tracking_enabled=item.batch_tracking_enabled,
            stock_control=item.stock_control,
            erp_item_code=item.erp_item_code,
            sync_required=item.sync_required,
        )


@dataclass(frozen=True)
class ReservationRecord:
    """Read-side view of a reservation record."""

    id: UUID
    order_type: str
    order_id: UUID
    item_id: UUID
    quantity: Decimal
    status: str
    released_at: datetime | None
    consumed_at: datetime | None
    consumed_by_movement_id: UUID | None

    @classmethod
    def from_model(cls, r: ReservationModel) -> ReservationRecord:
        return cls(
            id=r.id,
            order_type=r.order_type,
            order_id=r.order_id,
            item_id=r.item_id,
            quantity=r.quantity,
            status=r.status,
            released_at=r.released_at,
            consumed_at=r.consumed_at,
            consumed_by_movement_id=r.consumed_by_movement_id,
        )


@dataclass(frozen=True)
class SyncLogRecord:
    """Read-side view of a sync log entry."""

    id: UUID
    reference_type: str
    reference_id: str
    sync_type: str
    sync_status: str
    retry_count: int
    consecutive_failures: int
    error_message: str | None
    erp_doc_no: str | None
    external_ref: str
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    synced_at: datetime | None
    created_at: datetime

    @classmethod
    def from_model(cls, e: SyncLogEntryModel) -> SyncLogRecord:
        return cls(
            id=e.id,
            reference_type=e.reference_type,
            reference_id=e.reference_id,
            sync_type=e.sync_type,
            sync_status=e.sync_status,
            retry_count=e.retry_count,
            consecutive_failures=e.consecutive_failures,
            error_message=e.error_message,
            erp_doc_no=e.erp_doc_no,
            external_ref=e.external_ref,
            next_retry_at=e.next_retry_at,
            last_attempt_at=e.last_attempt_at,
            synced_at=e.synced_at,
            created_at=e.created_at,
        )


@dataclass(frozen=True)
class OrderLineSpec:
    """One line of a sales or purchase order as supplied by the caller."""

    item_id: UUID
    quantity: Decimal
    unit: str | None = None
    unit_price: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", to_quantity(self.quantity))
        object.__setattr__(self, "unit_price", to_quantity(self.unit_price))


@dataclass(frozen=True)
class ReservationRequest:
    """Base-unit quantity to reserve for one item."""

    item_id: UUID
    quantity: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", to_quantity(self.quantity))


@dataclass(frozen=True)
class ReceiptLine:
    """Goods received against one purchase order line."""

    line_id: UUID
    quantity: Decimal
    unit: str | None = None
    batch_number: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", to_quantity(self.quantity))


@dataclass(frozen=True)
class OrderStatusRecord:
    """Result of an order transition."""

    order_type: str
    order_id: UUID
    status: str
    stock_reserved: bool = False
    reservation_notes: str | None = None
    movement_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class OrderLineRecord:
    id: UUID
    line_no: int
    item_id: UUID
    quantity: Decimal
    unit: str
    unit_price: Decimal


@dataclass(frozen=True)
class OrderRecord:
    """Immutable view of a sales, assembly or purchase order."""

    order_type: str
    id: UUID
    number: str
    status: str
    stock_reserved: bool = False
    lines: tuple[OrderLineRecord, ...] = ()
    product_id: UUID | None = None
    quantity: Decimal | None = None
    erp_doc_no: str | None = None

    @classmethod
    def from_model(cls, order_type: str, order) -> OrderRecord:
        lines = tuple(
            OrderLineRecord(
                id=line.id,
                line_no=line.line_no,
                item_id=line.item_id,
                quantity=line.quantity,
                unit=line.unit,
                unit_price=line.unit_price,
            )
            for line in getattr(order, "lines", ())
        )
        return cls(
            order_type=order_type,
            id=order.id,
            number=getattr(order, "po_number", None) or order.order_number,
            status=order.status,
            stock_reserved=getattr(order, "stock_reserved", False),
            lines=lines,
            product_id=getattr(order, "product_id", None),
            quantity=getattr(order, "quantity", None),
            erp_doc_no=getattr(order, "erp_doc_no", None),
        )


@dataclass(frozen=True)
class MovementFilter:
    """Optional filters for MovementSelector.movements_for()."""

    movement_types: tuple[MovementType, ...] = ()
    date_from: datetime | None = None
    date_to: datetime | None = None
    batch_number: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    sync_status: str | None = None


@dataclass(frozen=True)
class LedgerCheck:
    """Outcome of comparing an item's counter with its ledger sum."""

    item_id: UUID
    sku: str
    stock_quantity: Decimal
    ledger_sum: Decimal

    @property
    def consistent(self) -> bool:
        return self.stock_quantity == self.ledger_sum


@dataclass(frozen=True)
class SyncSummary:
    """Aggregate outcome of a batch of sync attempts."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    permanently_failed: int = 0
    sync_log_ids: tuple[UUID, ...] = field(default_factory=tuple)
