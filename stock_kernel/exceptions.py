"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Stock operations fail for a handful of very different reasons: the caller
sent bad input, there is not enough stock, a unit cannot be converted, two
requests raced on the same item, or the ERP is unreachable.  Callers must
react to each of these differently, so every failure has:

  1. A TYPED exception class (catch by type, not by message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (item id, requested quantity, ...)

Example:
    try:
        kernel.reserve_sales_order(order_id, actor_id)
    except InsufficientAvailableStockError as e:
        notify(f"Only {e.available} of {e.requested} available for {e.item_id}")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- ValidationError
    |   +-- UnitConversionError
    |   +-- OverReceiptError
    |
    +-- NotFoundError
    |   +-- ItemNotFoundError
    |   +-- MovementNotFoundError
    |   +-- OrderNotFoundError
    |   +-- ReservationNotFoundError
    |   +-- SyncLogNotFoundError
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- InsufficientAvailableStockError
    |   +-- LedgerCounterMismatchError
    |
    +-- WorkflowError
    |   +-- InvalidTransitionError
    |
    +-- BatchError
    |   +-- BatchNotExpiredError
    |   +-- BatchAlreadyWrittenOffError
    |   +-- WriteOffExceedsStockError
    |
    +-- ConcurrencyError
    |   +-- ConcurrencyConflictError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- SyncError
        +-- SyncFailure
        +-- SyncPermanentFailure
            +-- ErpItemNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|------------------------------------
Validation   | VALIDATION_ERROR              | Bad input, rejected before mutation
             | UNIT_CONVERSION_ERROR         | No conversion factor for unit pair
             | OVER_RECEIPT                  | GRN exceeds ordered line quantity
-------------|-------------------------------|------------------------------------
Not found    | ITEM_NOT_FOUND                | Item id does not exist
             | MOVEMENT_NOT_FOUND            | Movement id does not exist
             | ORDER_NOT_FOUND               | Order id does not exist
             | RESERVATION_NOT_FOUND         | No reservation for key
             | SYNC_LOG_NOT_FOUND            | Sync log id does not exist
-------------|-------------------------------|------------------------------------
Stock        | INSUFFICIENT_STOCK            | Movement would drive stock < 0
             | INSUFFICIENT_AVAILABLE_STOCK  | Reservation exceeds available
             | LEDGER_COUNTER_MISMATCH       | Cached counter != sum of ledger
-------------|-------------------------------|------------------------------------
Workflow     | INVALID_TRANSITION            | Order status change not allowed
-------------|-------------------------------|------------------------------------
Batch        | BATCH_NOT_EXPIRED             | Write-off of a non-expired batch
             | BATCH_ALREADY_WRITTEN_OFF     | Second write-off of same batch
             | WRITE_OFF_EXCEEDS_STOCK       | Batch quantity > writable stock
-------------|-------------------------------|------------------------------------
Concurrency  | CONCURRENCY_CONFLICT          | Lock/serialization retries exhausted
-------------|-------------------------------|------------------------------------
Immutability | IMMUTABILITY_VIOLATION        | Ledger field update or delete
-------------|-------------------------------|------------------------------------
Sync         | SYNC_FAILURE                  | Transient ERP error (retryable)
             | SYNC_PERMANENT_FAILURE        | Not auto-retried; operator action
             | ERP_ITEM_NOT_FOUND            | ERP has no such item code

===============================================================================
PROPAGATION
===============================================================================

Validation, not-found, stock, workflow and batch errors are raised
synchronously and block the triggering operation; the unit of work is rolled
back so no partial effect is visible.

Sync errors never propagate to the caller of a stock operation.  The sync
worker catches them and records them on the SyncLogEntry.

===============================================================================
"""

from decimal import Decimal


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"


# Validation exceptions


class ValidationError(StockKernelError):
    """Input rejected before any mutation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnitConversionError(ValidationError):
    """No conversion factor exists between the two units."""

    code: str = "UNIT_CONVERSION_ERROR"

    def __init__(self, from_unit: str, to_unit: str):
        self.from_unit = from_unit
        self.to_unit = to_unit
        StockKernelError.__init__(
            self, f"No conversion found from {from_unit} to {to_unit}"
        )
        self.field = "unit"


class OverReceiptError(ValidationError):
    """Goods receipt would exceed the ordered quantity of a PO line."""

    code: str = "OVER_RECEIPT"

    def __init__(
        self,
        line_id: str,
        ordered: Decimal,
        already_received: Decimal,
        requested: Decimal,
    ):
        self.line_id = line_id
        self.ordered = ordered
        self.already_received = already_received
        self.requested = requested
        StockKernelError.__init__(
            self,
            f"Receipt of {requested} on line {line_id} exceeds remaining "
            f"{ordered - already_received} (ordered {ordered})",
        )
        self.field = "quantity"


# Not-found exceptions


class NotFoundError(StockKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class ItemNotFoundError(NotFoundError):
    """Item with given ID was not found."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class MovementNotFoundError(NotFoundError):
    """Movement with given ID was not found."""

    code: str = "MOVEMENT_NOT_FOUND"

    def __init__(self, movement_id: str):
        self.movement_id = movement_id
        super().__init__(f"Movement not found: {movement_id}")


class OrderNotFoundError(NotFoundError):
    """Order with given type and ID was not found."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_type: str, order_id: str):
        self.order_type = order_type
        self.order_id = order_id
        super().__init__(f"{order_type} not found: {order_id}")


class ReservationNotFoundError(NotFoundError):
    """No reservation exists for the (order_type, order_id, item_id) key."""

    code: str = "RESERVATION_NOT_FOUND"

    def __init__(self, order_type: str, order_id: str, item_id: str):
        self.order_type = order_type
        self.order_id = order_id
        self.item_id = item_id
        super().__init__(
            f"No reservation for {order_type} {order_id} on item {item_id}"
        )


class SyncLogNotFoundError(NotFoundError):
    """Sync log entry with given ID was not found."""

    code: str = "SYNC_LOG_NOT_FOUND"

    def __init__(self, sync_log_id: str):
        self.sync_log_id = sync_log_id
        super().__init__(f"Sync log not found: {sync_log_id}")


# Stock exceptions


class StockError(StockKernelError):
    """Base exception for stock-sufficiency and counter errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """Movement would drive stock_quantity below zero (or below reserved)."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, on_hand: Decimal, requested: Decimal):
        self.item_id = item_id
        self.on_hand = on_hand
        self.requested = requested
        super().__init__(
            f"Insufficient stock for item {item_id}: "
            f"on hand {on_hand}, requested {requested}"
        )


class InsufficientAvailableStockError(StockError):
    """Reservation quantity exceeds stock_quantity - reserved_quantity."""

    code: str = "INSUFFICIENT_AVAILABLE_STOCK"

    def __init__(self, item_id: str, available: Decimal, requested: Decimal):
        self.item_id = item_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient available stock for item {item_id}: "
            f"available {available}, requested {requested}"
        )


class LedgerCounterMismatchError(StockError):
    """The cached stock_quantity disagrees with the sum of movements."""

    code: str = "LEDGER_COUNTER_MISMATCH"

    def __init__(self, item_id: str, counter: Decimal, ledger_sum: Decimal):
        self.item_id = item_id
        self.counter = counter
        self.ledger_sum = ledger_sum
        super().__init__(
            f"Item {item_id}: stock_quantity {counter} != ledger sum {ledger_sum}"
        )


# Workflow exceptions


class WorkflowError(StockKernelError):
    """Base exception for order state machine errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    """Requested order status change is not allowed from the current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, order_type: str, order_id: str, from_status: str, to_status: str):
        self.order_type = order_type
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{order_type} {order_id}: cannot transition {from_status} -> {to_status}"
        )


# Batch exceptions


class BatchError(StockKernelError):
    """Base exception for batch/expiry errors."""

    code: str = "BATCH_ERROR"


class BatchNotExpiredError(BatchError):
    """Operation requires the batch to be flagged expired."""

    code: str = "BATCH_NOT_EXPIRED"

    def __init__(self, movement_id: str):
        self.movement_id = movement_id
        super().__init__(f"Batch movement {movement_id} is not marked expired")


class BatchAlreadyWrittenOffError(BatchError):
    """The batch has already been written off."""

    code: str = "BATCH_ALREADY_WRITTEN_OFF"

    def __init__(self, movement_id: str, write_off_movement_id: str | None = None):
        self.movement_id = movement_id
        self.write_off_movement_id = write_off_movement_id
        super().__init__(f"Batch movement {movement_id} has already been written off")


class WriteOffExceedsStockError(BatchError):
    """Batch quantity exceeds what can still be written off for the item."""

    code: str = "WRITE_OFF_EXCEEDS_STOCK"

    def __init__(self, movement_id: str, quantity: Decimal, writable: Decimal):
        self.movement_id = movement_id
        self.quantity = quantity
        self.writable = writable
        super().__init__(
            f"Write-off of {quantity} for batch movement {movement_id} "
            f"exceeds writable stock {writable}"
        )


# Concurrency exceptions


class ConcurrencyError(StockKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrencyConflictError(ConcurrencyError):
    """Two operations raced on the same item and retries were exhausted."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Concurrency conflict in {operation} after {attempts} attempt(s)"
        )


# Immutability exceptions


class ImmutabilityError(StockKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only ledger record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Sync exceptions


class SyncError(StockKernelError):
    """Base exception for ERP synchronization errors."""

    code: str = "SYNC_ERROR"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SyncFailure(SyncError):
    """Transient ERP failure (network, timeout, 5xx). Retried with backoff."""

    code: str = "SYNC_FAILURE"


class SyncPermanentFailure(SyncError):
    """ERP rejected the request in a way retrying will not fix."""

    code: str = "SYNC_PERMANENT_FAILURE"


class ErpItemNotFoundError(SyncPermanentFailure):
    """The ERP has no item with the given item code."""

    code: str = "ERP_ITEM_NOT_FOUND"

    def __init__(self, item_code: str, message: str | None = None):
        self.item_code = item_code
        super().__init__(
            message or f"Item not found in ERP: {item_code}",
            status_code=404,
        )
