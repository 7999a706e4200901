"""Services for the stock kernel (write side)."""

from stock_kernel.services.adjustment_service import AdjustmentService
from stock_kernel.services.batch_tracker import BatchTracker
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.item_locks import ItemLockRegistry, default_registry
from stock_kernel.services.ledger_service import LedgerService
from stock_kernel.services.order_service import OrderService
from stock_kernel.services.quantity_projector import QuantityProjector
from stock_kernel.services.reservation_manager import ReservationManager
from stock_kernel.services.sequence_service import BatchNumberService, SequenceService
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_kernel.services.unit_converter import UnitConverter
from stock_kernel.services.unit_of_work import UnitOfWork

__all__ = [
    "AdjustmentService",
    "BatchNumberService",
    "BatchTracker",
    "CatalogService",
    "ItemLockRegistry",
    "LedgerService",
    "OrderService",
    "QuantityProjector",
    "ReservationManager",
    "SequenceService",
    "SyncOutbox",
    "UnitConverter",
    "UnitOfWork",
    "default_registry",
]
