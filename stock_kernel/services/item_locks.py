"""
ItemLockRegistry -- in-process per-item mutual exclusion.

Responsibility:
    Serializes stock mutations on the same item within one process before
    they reach the database.  Combined with the row lock taken on the Item
    (SELECT ... FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite) this
    gives every item a single writer at a time.

Invariants enforced:
    - Multi-item operations acquire locks in sorted item-id order, so two
      orders touching the same items can never deadlock on these locks.
    - Locks are reentrant per thread: a reservation followed by an issue
      on the same item inside one unit of work does not self-deadlock.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.exceptions import ItemNotFoundError
from stock_kernel.models.item import Item


class ItemLockRegistry:
    """
    One ``threading.RLock`` per item id, created on first use.

    Locks are never evicted: the registry holds at most one lock per catalog
    item, and an evicted lock could be recreated while another thread still
    holds the old one.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, item_id: UUID | str) -> threading.RLock:
        key = str(item_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, item_ids: Iterable[UUID | str]) -> Iterator[None]:
        """Hold the locks of all given items, acquired in sorted order."""
        keys = sorted({str(i) for i in item_ids})
        acquired: list[threading.RLock] = []
        try:
            for key in keys:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# Process-wide default registry
default_registry = ItemLockRegistry()


def lock_item(session: Session, item_id: UUID) -> Item:
    """
    Load an Item with a row lock, refreshing its counters from the database.

    Raises:
        ItemNotFoundError: If no such item exists.
    """
    item = session.execute(
        select(Item)
        .where(Item.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if item is None:
        raise ItemNotFoundError(str(item_id))
    return item
