"""
Movement -- one row of the append-only stock ledger.

Every change of an item's quantity-on-hand is exactly one Movement.  Ledger
fields are frozen on insert (see db/immutability.py); only the sync status
mirror and the batch-expiry flags may change afterwards.

``seq`` is a ledger-wide monotonic sequence allocated from the locked
counter row, used to break ties between movements with equal created_at.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, UUIDString
from stock_kernel.domain.enums import MovementSyncStatus


class Movement(TrackedBase):
    """A signed quantity change of one item."""

    __tablename__ = "stock_movements"

    __table_args__ = (
        Index("idx_movement_item_created", "item_id", "created_at", "seq"),
        Index("idx_movement_reference", "reference_type", "reference_id"),
        Index("idx_movement_batch", "item_id", "batch_number"),
        Index("idx_movement_expired", "is_expired", "written_off"),
    )

    seq: Mapped[int] = mapped_column(nullable=False, unique=True)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    # Signed, in unit_of_record
    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit_of_record: Mapped[str] = mapped_column(String(20), nullable=False)

    # Signed, in the item's base unit
    quantity_in_base_unit: Mapped[Decimal] = mapped_column(nullable=False)

    batch_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    warehouse_location: Mapped[str] = mapped_column(
        String(100), nullable=False, default="MAIN"
    )

    performed_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reference_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    purchase_order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    supplier_reference: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)

    # --- mutable after insert ---

    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MovementSyncStatus.NOT_REQUIRED.value
    )

    erp_doc_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    expired_at: Mapped[datetime | None] = mapped_column(nullable=True)

    expiry_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    marked_expired_by: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    written_off: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    written_off_by_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<Movement #{self.seq} {self.movement_type} "
            f"{self.quantity_in_base_unit} item={self.item_id}>"
        )
