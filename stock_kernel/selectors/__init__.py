"""Read-only query selectors."""

from stock_kernel.selectors.item_selector import ItemSelector, ReservationSelector
from stock_kernel.selectors.movement_selector import MovementSelector, MovementStream
from stock_kernel.selectors.sync_selector import SyncSelector

__all__ = [
    "ItemSelector",
    "ReservationSelector",
    "MovementSelector",
    "MovementStream",
    "SyncSelector",
]
