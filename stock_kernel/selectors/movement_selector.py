"""
MovementSelector -- read side of the stock ledger.

``movements_for`` returns a lazy, restartable iterable: nothing is queried
until iteration starts, each iteration starts again from the newest movement,
and rows are fetched a page at a time using keyset pagination on
(created_at DESC, seq DESC).  Keyset paging stays stable while new movements
are appended, unlike OFFSET paging.
"""

from collections.abc import Iterator
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, or_, select

from stock_kernel.domain.dtos import MovementFilter, MovementRecord
from stock_kernel.domain.enums import MovementType
from stock_kernel.models.movement import Movement
from stock_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 100


class MovementStream:
    """Restartable, paged iteration over an item's movements (newest first)."""

    def __init__(
        self,
        selector: "MovementSelector",
        item_id: UUID,
        filters: MovementFilter,
        page_size: int,
    ):
        self._selector = selector
        self._item_id = item_id
        self._filters = filters
        self._page_size = page_size

    def __iter__(self) -> Iterator[MovementRecord]:
        cursor: tuple[datetime, int] | None = None
        while True:
            page = self._selector.page(
                self._item_id, self._filters, after=cursor, limit=self._page_size
            )
            yield from page
            if len(page) < self._page_size:
                return
            last = page[-1]
            cursor = (last.created_at, last.seq)

    def first(self, n: int) -> list[MovementRecord]:
        """The newest ``n`` movements."""
        out: list[MovementRecord] = []
        for record in self:
            if len(out) >= n:
                break
            out.append(record)
        return out


class MovementSelector(BaseSelector):
    def get(self, movement_id: UUID) -> MovementRecord | None:
        movement = self.session.get(Movement, movement_id)
        return MovementRecord.from_model(movement) if movement else None

    def movements_for(
        self,
        item_id: UUID,
        filters: MovementFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> MovementStream:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        return MovementStream(self, item_id, filters or MovementFilter(), page_size)

    def page(
        self,
        item_id: UUID,
        filters: MovementFilter,
        after: tuple[datetime, int] | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[MovementRecord]:
        """One page of movements strictly older than the ``after`` cursor."""
        stmt = select(Movement).where(Movement.item_id == item_id)

        if filters.movement_types:
            stmt = stmt.where(
                Movement.movement_type.in_(
                    [MovementType(t).value for t in filters.movement_types]
                )
            )
        if filters.date_from is not None:
            stmt = stmt.where(Movement.created_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Movement.created_at < filters.date_to)
        if filters.batch_number is not None:
            stmt = stmt.where(Movement.batch_number == filters.batch_number)
        if filters.reference_type is not None:
            stmt = stmt.where(Movement.reference_type == filters.reference_type)
        if filters.reference_id is not None:
            stmt = stmt.where(Movement.reference_id == filters.reference_id)
        if filters.sync_status is not None:
            stmt = stmt.where(Movement.sync_status == filters.sync_status)

        if after is not None:
            created_at, seq = after
            stmt = stmt.where(
                or_(
                    Movement.created_at < created_at,
                    and_(Movement.created_at == created_at, Movement.seq < seq),
                )
            )

        stmt = stmt.order_by(Movement.created_at.desc(), Movement.seq.desc()).limit(limit)
        return [MovementRecord.from_model(m) for m in self.session.execute(stmt).scalars()]

    def received_quantity(self, reference_id: str) -> Decimal:
        """Σ receipt quantity_in_base_unit booked against a purchase order line."""
        total = self.session.execute(
            select(func.sum(Movement.quantity_in_base_unit)).where(
                Movement.movement_type == MovementType.RECEIPT.value,
                Movement.reference_id == str(reference_id),
            )
        ).scalar_one()
        return Decimal(total) if total is not None else Decimal("0")

    def remaining_to_receive(self, line_id: UUID, ordered_base_quantity: Decimal) -> Decimal:
        """Ordered minus received for a PO line, never below zero."""
        remaining = ordered_base_quantity - self.received_quantity(str(line_id))
        return max(remaining, Decimal("0"))

    def for_reference(self, reference_type: str, reference_id: str) -> list[MovementRecord]:
        rows = self.session.execute(
            select(Movement)
            .where(
                Movement.reference_type == reference_type,
                Movement.reference_id == str(reference_id),
            )
            .order_by(Movement.seq)
        ).scalars()
        return [MovementRecord.from_model(m) for m in rows]

    def expired_batches(self, item_id: UUID | None = None) -> list[MovementRecord]:
        """Receipt movements flagged expired and not yet written off."""
        stmt = select(Movement).where(
            Movement.is_expired.is_(True),
            Movement.written_off.is_(False),
        )
        if item_id is not None:
            stmt = stmt.where(Movement.item_id == item_id)
        rows = self.session.execute(stmt.order_by(Movement.expired_at, Movement.seq)).scalars()
        return [MovementRecord.from_model(m) for m in rows]
