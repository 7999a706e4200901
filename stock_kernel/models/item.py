"""
Item catalog models: Item, UnitConversion, BomLine.

Item carries the two authoritative counters:

    stock_quantity    -- projection of Σ Movement.quantity_in_base_unit
    reserved_quantity -- Σ quantity of ACTIVE reservations

Both are mutated only by QuantityProjector and ReservationManager, always
while the item row is locked.  CHECK constraints enforce
0 <= reserved_quantity <= stock_quantity at the database level.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.domain.enums import ItemKind


class Item(TrackedBase):
    """
    A stock-keeping unit.

    ``unit`` is the base unit of measure; every movement quantity is
    converted to it before it touches ``stock_quantity``.
    """

    __tablename__ = "items"

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_item_stock_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_item_reserved_non_negative"),
        CheckConstraint(
            "reserved_quantity <= stock_quantity",
            name="ck_item_reserved_within_stock",
        ),
        Index("idx_item_kind", "kind"),
    )

    sku: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    # Base unit of measure (e.g. "g", "pcs")
    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    stock_quantity: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )

    reserved_quantity: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )

    cost_per_unit: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )

    price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    batch_tracking_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    stock_control: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # ERP item code; the SKU is used when null
    erp_item_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Whether movements on this item are mirrored to the ERP
    sync_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def kind_enum(self) -> ItemKind:
        return ItemKind(self.kind)

    @property
    def available_quantity(self) -> Decimal:
        return self.stock_quantity - self.reserved_quantity

    @property
    def erp_code(self) -> str:
        """Item code the ERP knows this item by."""
        return self.erp_item_code or self.sku

    def __repr__(self) -> str:
        return (
            f"<Item {self.sku} stock={self.stock_quantity} "
            f"reserved={self.reserved_quantity} {self.unit}>"
        )


class UnitConversion(Base):
    """
    Conversion factor between two units: 1 from_unit = factor to_unit.

    The inverse direction is derived (1/factor) and need not be stored.
    """

    __tablename__ = "unit_conversions"

    __table_args__ = (
        UniqueConstraint("from_unit", "to_unit", name="uq_unit_conversion_pair"),
        CheckConstraint("conversion_factor > 0", name="ck_unit_conversion_positive"),
    )

    from_unit: Mapped[str] = mapped_column(String(20), nullable=False)

    to_unit: Mapped[str] = mapped_column(String(20), nullable=False)

    conversion_factor: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), nullable=False
    )

    def __repr__(self) -> str:
        return f"<UnitConversion 1 {self.from_unit} = {self.conversion_factor} {self.to_unit}>"


class BomLine(Base):
    """Bill of materials: component quantity needed per unit of product."""

    __tablename__ = "bom_lines"

    __table_args__ = (
        UniqueConstraint("product_id", "component_item_id", name="uq_bom_line"),
        CheckConstraint("quantity > 0", name="ck_bom_line_positive"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    component_item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    # Unit of ``quantity``; the component's base unit when null
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
