"""
ORM-Level Immutability Enforcement for the stock ledger.

===============================================================================
WHY THIS EXISTS
===============================================================================

The movement ledger is the single source of truth for quantity-on-hand.
Every cached counter (Item.stock_quantity) is a projection of it, so a
movement whose quantity is edited after the fact silently corrupts every
counter derived from it.  Corrections are made with NEW compensating
movements (adjustment, write_off, return), never by editing history.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events:

    session.flush()
         |
         v
    [before_update] --> _check_movement_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_movement_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity    | Mutable fields                                | Delete
----------|-----------------------------------------------|---------
Movement  | sync_status, erp_doc_no, batch-expiry fields, | Never
          | updated_at, updated_by_id                     |

Bulk UPDATE/DELETE statements issued through session.execute() bypass ORM
events and are not covered here.

===============================================================================
USAGE
===============================================================================

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # create_tables() does this

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
===============================================================================
"""

from sqlalchemy import event, inspect

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Fields that may change after a movement is appended.
MOVEMENT_MUTABLE_FIELDS = frozenset({
    "sync_status",
    "erp_doc_no",
    "is_expired",
    "expired_at",
    "expiry_notes",
    "marked_expired_by",
    "written_off",
    "written_off_by_movement_id",
    "updated_at",
    "updated_by_id",
})


def _check_movement_immutability(mapper, connection, target):
    """Block changes to ledger fields of an appended Movement."""
    insp = inspect(target)
    for attr in insp.attrs:
        if attr.key in MOVEMENT_MUTABLE_FIELDS:
            continue
        if attr.history.has_changes():
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": "Movement",
                    "entity_id": str(target.id),
                    "operation": "UPDATE",
                    "field": attr.key,
                },
            )
            raise ImmutabilityViolationError(
                entity_type="Movement",
                entity_id=str(target.id),
                reason=f"Cannot modify field '{attr.key}' on a ledger movement",
            )


def _check_movement_delete(mapper, connection, target):
    """Movements are append-only and cannot be deleted."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "Movement",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="Movement",
        entity_id=str(target.id),
        reason="Ledger movements cannot be deleted",
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; already-registered listeners are skipped.
    """
    from stock_kernel.models.movement import Movement

    if not event.contains(Movement, "before_update", _check_movement_immutability):
        event.listen(Movement, "before_update", _check_movement_immutability)
    if not event.contains(Movement, "before_delete", _check_movement_delete):
        event.listen(Movement, "before_delete", _check_movement_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate immutability.
    """
    from stock_kernel.models.movement import Movement

    _safe_remove_listener(Movement, "before_update", _check_movement_immutability)
    _safe_remove_listener(Movement, "before_delete", _check_movement_delete)
