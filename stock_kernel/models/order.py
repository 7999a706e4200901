"""
Order models: SalesOrder, AssemblyOrder, PurchaseOrder and their lines.

Status values and their legal transitions are declared in
stock_kernel.domain.order_workflow; OrderService is the only writer of
``status`` and ``stock_reserved``.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TrackedBase, UUIDString
from stock_kernel.domain.order_workflow import (
    AssemblyOrderStatus,
    PurchaseOrderStatus,
    SalesOrderStatus,
    StoreType,
)


# =============================================================================
# Sales
# =============================================================================


class SalesOrder(TrackedBase):
    """Customer or franchisee order fulfilled from stock."""

    __tablename__ = "sales_orders"

    __table_args__ = (Index("idx_sales_order_status", "status"),)

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    store_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # ERP debtor the order is raised against
    customer_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SalesOrderStatus.DRAFT.value
    )

    stock_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    reservation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ERP document number once the order has been created in the ERP
    erp_doc_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    lines: Mapped[list["SalesOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderLine.line_no",
    )

    @property
    def status_enum(self) -> SalesOrderStatus:
        return SalesOrderStatus(self.status)

    @property
    def store_type_enum(self) -> StoreType:
        return StoreType(self.store_type)

    def __repr__(self) -> str:
        return f"<SalesOrder {self.order_number} {self.status}>"


class SalesOrderLine(TrackedBase):
    __tablename__ = "sales_order_lines"

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_sales_line_positive"),)

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sales_orders.id"), nullable=False
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    order: Mapped[SalesOrder] = relationship(back_populates="lines")


# =============================================================================
# Assembly
# =============================================================================


class AssemblyOrder(TrackedBase):
    """Production of ``quantity`` units of a product from its BOM components."""

    __tablename__ = "assembly_orders"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_assembly_quantity_positive"),
        Index("idx_assembly_order_status", "status"),
    )

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AssemblyOrderStatus.PENDING.value
    )

    stock_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    reservation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    warehouse_location: Mapped[str] = mapped_column(
        String(100), nullable=False, default="MAIN"
    )

    # Batch assigned to the produced goods on completion
    batch_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    @property
    def status_enum(self) -> AssemblyOrderStatus:
        return AssemblyOrderStatus(self.status)

    def __repr__(self) -> str:
        return f"<AssemblyOrder {self.order_number} {self.status}>"


# =============================================================================
# Purchase
# =============================================================================


class PurchaseOrder(TrackedBase):
    """Order to a supplier; received through GRN movements against its lines."""

    __tablename__ = "purchase_orders"

    __table_args__ = (Index("idx_purchase_order_status", "status"),)

    po_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    supplier_code: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PurchaseOrderStatus.DRAFT.value
    )

    # ERP document number once the PO has been created in the ERP
    erp_doc_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.line_no",
    )

    @property
    def status_enum(self) -> PurchaseOrderStatus:
        return PurchaseOrderStatus(self.status)

    def __repr__(self) -> str:
        return f"<PurchaseOrder {self.po_number} {self.status}>"


class PurchaseOrderLine(TrackedBase):
    """
    One ordered item.  Remaining-to-receive is derived from the ledger
    (receipt movements referencing this line), never stored.
    """

    __tablename__ = "purchase_order_lines"

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_po_line_positive"),)

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=False
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("items.id"), nullable=False
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    order: Mapped[PurchaseOrder] = relationship(back_populates="lines")
