"""
Sync dispatcher -- turns a SyncLogEntry into an ERP call and mirrors the result.

``build_request`` runs inside the claim transaction and snapshots everything
the ERP call needs, so the call itself happens with no session open.
``mirror_result`` writes the outcome back onto the referenced Movement,
PurchaseOrder or SalesOrder in the result transaction.

Ordering between entries:
    A purchase order's cancellation and its goods receipts act on the ERP
    document created by its ``po_create`` entry.  ``blocking_entry`` reports
    the unfinished ``po_create`` such an entry must wait for, and
    ``deferred_dependents`` lists the entries held back behind a
    ``po_create`` that has just finished.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from stock_kernel.domain.enums import (
    AdjustmentDirection,
    MovementSyncStatus,
    SyncStatus,
    SyncType,
)
from stock_kernel.domain.order_workflow import PurchaseOrderStatus
from stock_kernel.exceptions import SyncPermanentFailure
from stock_kernel.models.item import Item
from stock_kernel.models.movement import Movement
from stock_kernel.models.order import PurchaseOrder, SalesOrder
from stock_kernel.models.sync_log import SyncLogEntry, external_ref_for
from stock_kernel.services.catalog_service import ITEM_REFERENCE
from stock_kernel.services.ledger_service import MOVEMENT_REFERENCE
from stock_kernel.services.order_service import (
    PURCHASE_ORDER_REFERENCE,
    SALES_ORDER_REFERENCE,
)
from stock_sync.erp_gateway import ErpGateway, ErpOrderLine, ErpResult

_DESCRIPTIONS = {
    SyncType.GOODS_RETURN: "Goods return",
    SyncType.STOCK_ADJUSTMENT: "Stock adjustment",
    SyncType.PRODUCTION_COMPLETE: "Production complete",
    SyncType.WRITE_OFF: "Expired batch write-off",
}

_UNFINISHED = frozenset({SyncStatus.PENDING, SyncStatus.IN_PROGRESS, SyncStatus.FAILED})


@dataclass(frozen=True)
class ErpRequest:
    """
    A fully resolved gateway call, detached from any session.

    ``skip_reason`` marks a request that must not be posted; the entry is
    finished without an ERP document unless the ERP already holds one.
    ``doc_ref`` is the external reference of the ERP document the call acts
    on, set when its document number is not known locally.
    """

    sync_type: SyncType
    external_ref: str
    operation: str
    arguments: dict[str, Any] = field(default_factory=dict)
    skip_reason: str | None = None
    doc_ref: str | None = None

    def execute(self, gateway: ErpGateway) -> ErpResult:
        call: Callable[..., ErpResult] = getattr(gateway, self.operation)
        return call(**self.arguments)

    def with_doc_no(self, doc_no: str) -> ErpRequest:
        return replace(self, arguments={**self.arguments, "doc_no": doc_no}, doc_ref=None)


def _as_uuid(value) -> UUID | None:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _load(session: Session, model, key, entry: SyncLogEntry):
    key = _as_uuid(key) if key is not None else None
    row = session.get(model, key) if key is not None else None
    if row is None:
        raise SyncPermanentFailure(
            f"{entry.reference_type} {entry.reference_id} no longer exists"
        )
    return row


def _expect_reference(entry: SyncLogEntry, reference_type: str) -> None:
    if entry.reference_type != reference_type:
        raise SyncPermanentFailure(
            f"Sync type {entry.sync_type} cannot reference {entry.reference_type}"
        )


def _order_lines(session: Session, order, entry: SyncLogEntry) -> list[ErpOrderLine]:
    lines = []
    for line in order.lines:
        item = _load(session, Item, line.item_id, entry)
        lines.append(
            ErpOrderLine(
                item_code=item.erp_code,
                description=item.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                uom=line.unit,
            )
        )
    return lines


def build_request(session: Session, entry: SyncLogEntry) -> ErpRequest:
    """
    Raises:
        SyncPermanentFailure: If the referenced row is gone or the
            (reference_type, sync_type) pair is not dispatchable.
    """
    sync_type = entry.sync_type_enum
    ref = entry.external_ref

    if sync_type == SyncType.ITEM_CREATE:
        _expect_reference(entry, ITEM_REFERENCE)
        item = _load(session, Item, entry.reference_id, entry)
        return ErpRequest(
            sync_type,
            ref,
            "create_item",
            {
                "item_code": item.erp_code,
                "description": item.name,
                "uom": item.unit,
                "stock_control": item.stock_control,
                "has_batch_no": item.batch_tracking_enabled,
                "standard_cost": item.cost_per_unit,
                "price": item.price,
            },
        )

    if sync_type == SyncType.SALES_ORDER_CREATE:
        _expect_reference(entry, SALES_ORDER_REFERENCE)
        order = _load(session, SalesOrder, entry.reference_id, entry)
        if not order.customer_code:
            raise SyncPermanentFailure(
                f"Sales order {order.order_number} has no customer code"
            )
        return ErpRequest(
            sync_type,
            ref,
            "create_sales_order",
            {
                "order_number": order.order_number,
                "customer_code": order.customer_code,
                "lines": _order_lines(session, order, entry),
                "external_ref": ref,
            },
        )

    if sync_type in (SyncType.PO_CREATE, SyncType.PO_CANCEL):
        _expect_reference(entry, PURCHASE_ORDER_REFERENCE)
        po = _load(session, PurchaseOrder, entry.reference_id, entry)
        if sync_type == SyncType.PO_CANCEL:
            return ErpRequest(
                sync_type,
                ref,
                "cancel_purchase_order",
                {"po_number": po.po_number, "doc_no": po.erp_doc_no},
                doc_ref=(
                    None
                    if po.erp_doc_no
                    else external_ref_for(SyncType.PO_CREATE.value, str(po.id))
                ),
            )
        return ErpRequest(
            sync_type,
            ref,
            "create_purchase_order",
            {
                "po_number": po.po_number,
                "supplier_code": po.supplier_code,
                "lines": _order_lines(session, po, entry),
                "external_ref": ref,
                "description": po.notes or "",
            },
            skip_reason=(
                "purchase order was cancelled before it reached the ERP"
                if po.status_enum == PurchaseOrderStatus.CANCELLED
                else None
            ),
        )

    _expect_reference(entry, MOVEMENT_REFERENCE)
    movement = _load(session, Movement, entry.reference_id, entry)
    item = _load(session, Item, movement.item_id, entry)
    quantity = abs(movement.quantity_in_base_unit)

    if sync_type == SyncType.GRN:
        po = _load(session, PurchaseOrder, movement.purchase_order_id, entry)
        return ErpRequest(
            sync_type,
            ref,
            "post_goods_receipt",
            {
                "po_number": po.erp_doc_no or po.po_number,
                "supplier_code": po.supplier_code,
                "item_code": item.erp_code,
                "description": item.name,
                "quantity": quantity,
                "uom": item.unit,
                "batch_number": movement.batch_number,
                "location": movement.warehouse_location,
                "external_ref": ref,
            },
        )

    if sync_type not in _DESCRIPTIONS:
        raise SyncPermanentFailure(f"No ERP mapping for sync type {sync_type.value}")
    direction = (
        AdjustmentDirection.IN
        if movement.quantity_in_base_unit > 0
        else AdjustmentDirection.OUT
    )
    return ErpRequest(
        sync_type,
        ref,
        "post_stock_adjustment",
        {
            "item_code": item.erp_code,
            "location": movement.warehouse_location,
            "adjustment_type": direction.value,
            "quantity": quantity,
            "uom": item.unit,
            "batch_number": movement.batch_number,
            "external_ref": ref,
            "description": f"{_DESCRIPTIONS[sync_type]} ({movement.movement_type})",
            "reason": movement.notes,
        },
    )


# =============================================================================
# Ordering
# =============================================================================


def _po_create_entry(session: Session, po_id: str) -> SyncLogEntry | None:
    return session.execute(
        select(SyncLogEntry).where(
            SyncLogEntry.reference_type == PURCHASE_ORDER_REFERENCE,
            SyncLogEntry.reference_id == po_id,
            SyncLogEntry.sync_type == SyncType.PO_CREATE.value,
        )
    ).scalar_one_or_none()


def blocking_entry(session: Session, entry: SyncLogEntry) -> SyncLogEntry | None:
    """
    The ``po_create`` entry ``entry`` has to wait for, or None.

    A cancellation waits while the create is unfinished; once the create has
    failed permanently the cancellation goes ahead and resolves the ERP
    document itself.  A goods receipt also waits on a permanently failed
    create, since it cannot be booked against a PO the ERP does not hold.
    """
    sync_type = entry.sync_type_enum
    if sync_type == SyncType.PO_CANCEL and entry.reference_type == PURCHASE_ORDER_REFERENCE:
        po_id, waits_on = entry.reference_id, _UNFINISHED
    elif sync_type == SyncType.GRN and entry.reference_type == MOVEMENT_REFERENCE:
        movement_id = _as_uuid(entry.reference_id)
        movement = session.get(Movement, movement_id) if movement_id else None
        if movement is None or movement.purchase_order_id is None:
            return None
        po_id = str(movement.purchase_order_id)
        waits_on = _UNFINISHED | {SyncStatus.PERMANENTLY_FAILED}
    else:
        return None

    create = _po_create_entry(session, po_id)
    if create is None or create.status_enum not in waits_on:
        return None
    return create


def deferred_dependents(session: Session, entry: SyncLogEntry) -> list[SyncLogEntry]:
    """Pending entries held back behind the finished ``po_create`` ``entry``."""
    if entry.sync_type_enum != SyncType.PO_CREATE:
        return []
    po_id = _as_uuid(entry.reference_id)
    if po_id is None:
        return []
    movement_ids = [
        str(movement_id)
        for movement_id in session.execute(
            select(Movement.id).where(Movement.purchase_order_id == po_id)
        ).scalars()
    ]
    conditions = [
        and_(
            SyncLogEntry.reference_type == PURCHASE_ORDER_REFERENCE,
            SyncLogEntry.reference_id == entry.reference_id,
            SyncLogEntry.sync_type == SyncType.PO_CANCEL.value,
        )
    ]
    if movement_ids:
        conditions.append(
            and_(
                SyncLogEntry.reference_type == MOVEMENT_REFERENCE,
                SyncLogEntry.reference_id.in_(movement_ids),
                SyncLogEntry.sync_type == SyncType.GRN.value,
            )
        )
    return list(
        session.execute(
            select(SyncLogEntry).where(
                or_(*conditions),
                SyncLogEntry.sync_status == SyncStatus.PENDING.value,
                SyncLogEntry.next_retry_at.is_not(None),
            )
        ).scalars()
    )


# =============================================================================
# Mirroring
# =============================================================================


def mirror_result(session: Session, entry: SyncLogEntry, succeeded: bool) -> None:
    """Copy the entry's outcome onto the row it mirrors."""
    if entry.reference_type == MOVEMENT_REFERENCE:
        movement = session.get(Movement, UUID(entry.reference_id))
        if movement is None:
            return
        if succeeded:
            movement.sync_status = MovementSyncStatus.SUCCESS.value
            movement.erp_doc_no = entry.erp_doc_no
        else:
            movement.sync_status = MovementSyncStatus.FAILED.value
    elif entry.reference_type == PURCHASE_ORDER_REFERENCE and succeeded:
        if entry.sync_type_enum == SyncType.PO_CREATE:
            po = session.get(PurchaseOrder, UUID(entry.reference_id))
            if po is not None:
                po.erp_doc_no = entry.erp_doc_no
    elif entry.reference_type == SALES_ORDER_REFERENCE and succeeded:
        order = session.get(SalesOrder, UUID(entry.reference_id))
        if order is not None:
            order.erp_doc_no = entry.erp_doc_no
