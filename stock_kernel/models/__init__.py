"""ORM models for the stock kernel."""

from stock_kernel.models.item import BomLine, Item, UnitConversion
from stock_kernel.models.movement import Movement
from stock_kernel.models.order import (
    AssemblyOrder,
    PurchaseOrder,
    PurchaseOrderLine,
    SalesOrder,
    SalesOrderLine,
)
from stock_kernel.models.reservation import Reservation
from stock_kernel.models.sequence import SequenceCounter
from stock_kernel.models.sync_log import SyncLogEntry

__all__ = [
    "Item",
    "UnitConversion",
    "BomLine",
    "Movement",
    "Reservation",
    "SalesOrder",
    "SalesOrderLine",
    "AssemblyOrder",
    "PurchaseOrder",
    "PurchaseOrderLine",
    "SequenceCounter",
    "SyncLogEntry",
]
