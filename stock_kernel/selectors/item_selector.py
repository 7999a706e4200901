"""Read-only views of items, reservations and order status."""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import ItemRecord, ReservationRecord
from stock_kernel.domain.enums import ReservationStatus
from stock_kernel.models.item import BomLine, Item
from stock_kernel.models.reservation import Reservation
from stock_kernel.selectors.base import BaseSelector


class ItemSelector(BaseSelector):
    def get(self, item_id: UUID) -> ItemRecord | None:
        item = self.session.get(Item, item_id)
        return ItemRecord.from_model(item) if item else None

    def by_sku(self, sku: str) -> ItemRecord | None:
        item = self.session.execute(
            select(Item).where(Item.sku == sku)
        ).scalar_one_or_none()
        return ItemRecord.from_model(item) if item else None

    def list_items(self, kind: str | None = None) -> list[ItemRecord]:
        stmt = select(Item).order_by(Item.sku)
        if kind is not None:
            stmt = stmt.where(Item.kind == kind)
        return [ItemRecord.from_model(i) for i in self.session.execute(stmt).scalars()]

    def all_item_ids(self) -> list[UUID]:
        return list(self.session.execute(select(Item.id).order_by(Item.sku)).scalars())

    def bom(self, product_id: UUID) -> list[tuple[UUID, Decimal, str | None]]:
        rows = self.session.execute(
            select(BomLine).where(BomLine.product_id == product_id)
        ).scalars()
        return [(r.component_item_id, r.quantity, r.unit) for r in rows]


class ReservationSelector(BaseSelector):
    def for_order(
        self, order_type: str, order_id: UUID, active_only: bool = False
    ) -> list[ReservationRecord]:
        stmt = select(Reservation).where(
            Reservation.order_type == order_type,
            Reservation.order_id == order_id,
        )
        if active_only:
            stmt = stmt.where(Reservation.status == ReservationStatus.ACTIVE.value)
        rows = self.session.execute(stmt.order_by(Reservation.item_id)).scalars()
        return [ReservationRecord.from_model(r) for r in rows]
