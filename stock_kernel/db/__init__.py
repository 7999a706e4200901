"""Database layer - engine, base classes, types, and immutability."""

from stock_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from stock_kernel.db.engine import create_tables, get_engine, get_session
from stock_kernel.db.types import Cost, Factor, LongText, Quantity, Sequence, ShortCode

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Quantity",
    "Cost",
    "Factor",
    "Sequence",
    "ShortCode",
    "LongText",
]
