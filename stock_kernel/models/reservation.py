"""
Reservation -- a claim of one order on part of one item's stock.

One record per (order_type, order_id, item_id).  Σ quantity of ACTIVE
records for an item equals Item.reserved_quantity.  Releasing or consuming
flips the status, which is what makes a second release a no-op.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, UUIDString
from stock_kernel.domain.enums import ReservationStatus


class Reservation(TrackedBase):
    """Reservation record keyed by order and item."""

    __tablename__ = "reservations"

    __table_args__ = (
        UniqueConstraint(
            "order_type", "order_id", "item_id", name="uq_reservation_key"
        ),
        CheckConstraint("quantity > 0", name="ck_reservation_positive"),
        Index("idx_reservation_item_status", "item_id", "status"),
        Index("idx_reservation_order", "order_type", "order_id"),
    )

    order_type: Mapped[str] = mapped_column(String(30), nullable=False)

    order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    # Base units
    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReservationStatus.ACTIVE.value
    )

    released_at: Mapped[datetime | None] = mapped_column(nullable=True)

    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    consumed_by_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    @property
    def status_enum(self) -> ReservationStatus:
        return ReservationStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status_enum == ReservationStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<Reservation {self.order_type}:{self.order_id} "
            f"item={self.item_id} {self.quantity} {self.status}>"
        )
