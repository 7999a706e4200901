"""
Stock Kernel - ledger-backed inventory core

An append-only stock ledger with:
- Quantity-on-hand projected from movements in the same transaction
- Per-item serialized reservations for sales and assembly orders
- Batch/expiry tracking with compensating write-offs
- Outbox-style sync log for mirroring movements into the ERP
"""

__version__ = "0.1.0"
