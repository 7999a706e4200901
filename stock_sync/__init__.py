"""
stock_sync -- mirrors committed stock changes into the ERP.

The kernel writes ``SyncLogEntry`` rows in the same transaction as the
movement or order transition (outbox).  ``SyncOrchestrator`` drains them
through an ``ErpGateway`` with exponential backoff; a failed sync never
rolls back the local change.

Usage:
    gateway = HttpErpGateway(settings.erp.base_url, settings.erp.username, settings.erp.password)
    orchestrator = SyncOrchestrator(kernel.session_factory, gateway, RetryPolicy())
    kernel.attach_sync(orchestrator.notify)
    orchestrator.start()
"""

from stock_sync.dispatcher import ErpRequest, build_request, mirror_result
from stock_sync.erp_gateway import (
    ErpGateway,
    ErpOrderLine,
    ErpResult,
    HttpErpGateway,
    InMemoryErpGateway,
)
from stock_sync.orchestrator import SyncOrchestrator, summarize
from stock_sync.retry_policy import RetryPolicy

__all__ = [
    "ErpGateway",
    "ErpOrderLine",
    "ErpRequest",
    "ErpResult",
    "HttpErpGateway",
    "InMemoryErpGateway",
    "RetryPolicy",
    "SyncOrchestrator",
    "build_request",
    "mirror_result",
    "summarize",
]
