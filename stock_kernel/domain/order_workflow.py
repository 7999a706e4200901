"""
Order workflows -- pure state machines for sales, assembly and purchase orders.

Responsibility:
    Declares the legal status transitions of each order type and the stock
    effect a transition carries (reserve, release, consume, produce, sync).
    The OrderService executes the effects; this module only decides them.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Only transitions listed in the VALID_TRANSITIONS tables are allowed;
      everything else raises InvalidTransitionError.
    - Terminal states (completed, received, cancelled) have no exits.
    - A sales order is reserved exactly once, on the first entry into
      pending_payment or processing.

Sales:
    draft -> submitted -> pending_payment (franchisee) -> processing -> completed
                       -> processing (own_store)       -> completed
    any non-terminal   -> cancelled

Assembly:
    pending -> in_progress -> completed
    pending | in_progress -> cancelled

Purchase:
    draft -> approved -> partially_received -> received
                      -> received
    draft | approved -> cancelled
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from stock_kernel.exceptions import InvalidTransitionError


class SalesOrderStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StoreType(str, Enum):
    OWN_STORE = "own_store"
    FRANCHISEE = "franchisee"


class AssemblyOrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PurchaseOrderStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    PARTIALLY_RECEIVED = "partially_received"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class StockEffect(str, Enum):
    """Side effect the OrderService must perform for a transition."""

    RESERVE = "reserve"
    RELEASE = "release"
    CONSUME = "consume"
    PRODUCE = "produce"
    SYNC_PO_CREATE = "sync_po_create"
    SYNC_PO_CANCEL = "sync_po_cancel"
    SYNC_SALES_ORDER_CREATE = "sync_sales_order_create"


SALES_TRANSITIONS: dict[SalesOrderStatus, frozenset[SalesOrderStatus]] = {
    SalesOrderStatus.DRAFT: frozenset({
        SalesOrderStatus.SUBMITTED,
        SalesOrderStatus.CANCELLED,
    }),
    SalesOrderStatus.SUBMITTED: frozenset({
        SalesOrderStatus.PENDING_PAYMENT,
        SalesOrderStatus.PROCESSING,
        SalesOrderStatus.CANCELLED,
    }),
    SalesOrderStatus.PENDING_PAYMENT: frozenset({
        SalesOrderStatus.PROCESSING,
        SalesOrderStatus.CANCELLED,
    }),
    SalesOrderStatus.PROCESSING: frozenset({
        SalesOrderStatus.COMPLETED,
        SalesOrderStatus.CANCELLED,
    }),
    SalesOrderStatus.COMPLETED: frozenset(),
    SalesOrderStatus.CANCELLED: frozenset(),
}

ASSEMBLY_TRANSITIONS: dict[AssemblyOrderStatus, frozenset[AssemblyOrderStatus]] = {
    AssemblyOrderStatus.PENDING: frozenset({
        AssemblyOrderStatus.IN_PROGRESS,
        AssemblyOrderStatus.CANCELLED,
    }),
    AssemblyOrderStatus.IN_PROGRESS: frozenset({
        AssemblyOrderStatus.COMPLETED,
        AssemblyOrderStatus.CANCELLED,
    }),
    AssemblyOrderStatus.COMPLETED: frozenset(),
    AssemblyOrderStatus.CANCELLED: frozenset(),
}

PURCHASE_TRANSITIONS: dict[PurchaseOrderStatus, frozenset[PurchaseOrderStatus]] = {
    PurchaseOrderStatus.DRAFT: frozenset({
        PurchaseOrderStatus.APPROVED,
        PurchaseOrderStatus.CANCELLED,
    }),
    PurchaseOrderStatus.APPROVED: frozenset({
        PurchaseOrderStatus.PARTIALLY_RECEIVED,
        PurchaseOrderStatus.RECEIVED,
        PurchaseOrderStatus.CANCELLED,
    }),
    PurchaseOrderStatus.PARTIALLY_RECEIVED: frozenset({
        PurchaseOrderStatus.PARTIALLY_RECEIVED,
        PurchaseOrderStatus.RECEIVED,
    }),
    PurchaseOrderStatus.RECEIVED: frozenset(),
    PurchaseOrderStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class TransitionPlan:
    """Outcome of planning a status change: the new status and its effects."""

    order_type: str
    order_id: str
    from_status: str
    to_status: str
    effects: tuple[StockEffect, ...] = ()

    def has(self, effect: StockEffect) -> bool:
        return effect in self.effects


def _reject(order_type: str, order_id, current: Enum, target: Enum):
    raise InvalidTransitionError(
        order_type=order_type,
        order_id=str(order_id),
        from_status=current.value,
        to_status=target.value,
    )


def plan_sales_transition(
    order_id,
    current: SalesOrderStatus,
    target: SalesOrderStatus,
    store_type: StoreType,
    stock_reserved: bool,
) -> TransitionPlan:
    """
    Decide whether a sales order may move to ``target`` and what it costs.

    Franchisee orders wait for payment (pending_payment); own-store orders go
    straight to processing.  Stock is reserved on whichever of the two is
    entered first.  Submitting mirrors the order to the ERP.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if target not in SALES_TRANSITIONS[current]:
        _reject("SalesOrder", order_id, current, target)

    if current == SalesOrderStatus.SUBMITTED:
        if target == SalesOrderStatus.PENDING_PAYMENT and store_type != StoreType.FRANCHISEE:
            _reject("SalesOrder", order_id, current, target)
        if target == SalesOrderStatus.PROCESSING and store_type != StoreType.OWN_STORE:
            _reject("SalesOrder", order_id, current, target)

    effects: tuple[StockEffect, ...] = ()
    if target == SalesOrderStatus.SUBMITTED:
        effects = (StockEffect.SYNC_SALES_ORDER_CREATE,)
    elif target in (SalesOrderStatus.PENDING_PAYMENT, SalesOrderStatus.PROCESSING):
        if not stock_reserved:
            effects = (StockEffect.RESERVE,)
    elif target == SalesOrderStatus.CANCELLED:
        if stock_reserved:
            effects = (StockEffect.RELEASE,)
    elif target == SalesOrderStatus.COMPLETED:
        effects = (StockEffect.CONSUME,)

    return TransitionPlan(
        order_type="SalesOrder",
        order_id=str(order_id),
        from_status=current.value,
        to_status=target.value,
        effects=effects,
    )


def plan_assembly_transition(
    order_id,
    current: AssemblyOrderStatus,
    target: AssemblyOrderStatus,
    stock_reserved: bool,
) -> TransitionPlan:
    """
    Decide the effects of an assembly order status change.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if target not in ASSEMBLY_TRANSITIONS[current]:
        _reject("AssemblyOrder", order_id, current, target)

    effects: tuple[StockEffect, ...] = ()
    if target == AssemblyOrderStatus.IN_PROGRESS:
        effects = (StockEffect.RESERVE,)
    elif target == AssemblyOrderStatus.COMPLETED:
        effects = (StockEffect.CONSUME, StockEffect.PRODUCE)
    elif target == AssemblyOrderStatus.CANCELLED and stock_reserved:
        effects = (StockEffect.RELEASE,)

    return TransitionPlan(
        order_type="AssemblyOrder",
        order_id=str(order_id),
        from_status=current.value,
        to_status=target.value,
        effects=effects,
    )


def plan_purchase_transition(
    order_id,
    current: PurchaseOrderStatus,
    target: PurchaseOrderStatus,
) -> TransitionPlan:
    """
    Decide the effects of a purchase order status change.

    Only approved orders have been sent to the ERP, so only cancelling an
    approved order asks the ERP to cancel.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if target not in PURCHASE_TRANSITIONS[current]:
        _reject("PurchaseOrder", order_id, current, target)

    effects: tuple[StockEffect, ...] = ()
    if target == PurchaseOrderStatus.APPROVED:
        effects = (StockEffect.SYNC_PO_CREATE,)
    elif target == PurchaseOrderStatus.CANCELLED and current == PurchaseOrderStatus.APPROVED:
        effects = (StockEffect.SYNC_PO_CANCEL,)

    return TransitionPlan(
        order_type="PurchaseOrder",
        order_id=str(order_id),
        from_status=current.value,
        to_status=target.value,
        effects=effects,
    )


def receipt_status(
    lines: Iterable[tuple[Decimal, Decimal]],
) -> PurchaseOrderStatus:
    """
    Status a purchase order should hold after goods are received.

    Args:
        lines: (ordered, received) base-unit quantities per PO line.
    """
    if all(received >= ordered for ordered, received in lines):
        return PurchaseOrderStatus.RECEIVED
    return PurchaseOrderStatus.PARTIALLY_RECEIVED
