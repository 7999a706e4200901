"""
Closed enumerations shared by the ledger, reservations and sync.

Order status enums live with their state machines in
``stock_kernel.domain.order_workflow``.
"""

from enum import Enum


class ItemKind(str, Enum):
    """What an item is in the production chain."""

    RAW_MATERIAL = "raw_material"
    COMPONENT = "component"
    PRODUCT = "product"


class MovementType(str, Enum):
    """
    Kind of ledger movement.

    The sign of the quantity carries the direction; the type carries the
    business reason.  RETURN may be positive (customer return) or negative
    (goods returned to supplier).
    """

    RECEIPT = "receipt"
    ISSUE = "issue"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    PRODUCTION_PRODUCE = "production_produce"
    WRITE_OFF = "write_off"


class MovementSyncStatus(str, Enum):
    """Per-movement mirror of the ERP sync outcome."""

    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    """Lifecycle of a reservation record: ACTIVE -> (RELEASED | CONSUMED)."""

    ACTIVE = "active"
    RELEASED = "released"
    CONSUMED = "consumed"


class OrderType(str, Enum):
    """Order kinds that can hold reservations or drive sync."""

    SALES_ORDER = "sales_order"
    ASSEMBLY_ORDER = "assembly_order"
    PURCHASE_ORDER = "purchase_order"


class SyncStatus(str, Enum):
    """
    Status of a SyncLogEntry.

    PENDING -> IN_PROGRESS -> (SUCCESS | FAILED | PERMANENTLY_FAILED)
    FAILED -> IN_PROGRESS (automatic retry after backoff)
    PERMANENTLY_FAILED -> IN_PROGRESS (operator retry only)
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


class SyncType(str, Enum):
    """What the ERP is asked to do for a sync log entry."""

    ITEM_CREATE = "item_create"
    PO_CREATE = "po_create"
    PO_CANCEL = "po_cancel"
    SALES_ORDER_CREATE = "sales_order_create"
    GRN = "grn"
    GOODS_RETURN = "goods_return"
    STOCK_ADJUSTMENT = "stock_adjustment"
    PRODUCTION_COMPLETE = "production_complete"
    WRITE_OFF = "write_off"


class AdjustmentDirection(str, Enum):
    """ERP stock adjustment type."""

    IN = "IN"
    OUT = "OUT"
    SET = "SET"
