"""
UnitOfWork -- one transaction per public kernel operation.

Responsibility:
    Opens a session, runs the operation, commits, and closes.  Any error
    rolls the whole transaction back and propagates.  Database-level
    concurrency conflicts (lock timeout, deadlock, serialization failure,
    SQLite "database is locked") are retried a small number of times before
    surfacing as ConcurrencyConflictError.

Architecture position:
    Kernel > Services.  Used by the StockKernel facade; services below it
    only flush.

Post-commit hook:
    Sync entries enqueued during the operation are handed to ``after_commit``
    only once the commit has succeeded, so the sync worker never sees an
    entry whose stock change was rolled back.
"""

import time
from collections.abc import Callable
from contextlib import nullcontext
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from stock_kernel.exceptions import ConcurrencyConflictError
from stock_kernel.logging_config import get_logger
from stock_kernel.services.sync_outbox import pop_enqueued

logger = get_logger("services.unit_of_work")

T = TypeVar("T")

DEFAULT_MAX_CONFLICT_RETRIES = 3
CONFLICT_BACKOFF_SECONDS = 0.05

_CONFLICT_PGCODES = frozenset({"40001", "40P01", "55P03"})
_CONFLICT_MARKERS = (
    "deadlock",
    "could not serialize",
    "lock timeout",
    "database is locked",
    "could not obtain lock",
)


def is_conflict(exc: OperationalError) -> bool:
    """True if the database rejected the transaction because of a competing one."""
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _CONFLICT_PGCODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


class UnitOfWork:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        after_commit: Callable[[list[UUID]], None] | None = None,
        write_lock=None,
    ):
        self._session_factory = session_factory
        self._max_conflict_retries = max_conflict_retries
        self.after_commit = after_commit
        self._write_lock = write_lock

    def run(self, operation_name: str, fn: Callable[[Session], T]) -> T:
        """
        Execute ``fn(session)`` in its own transaction.

        Returns:
            Whatever ``fn`` returns; it must not hold on to ORM rows, since
            the session is closed before returning.

        Raises:
            ConcurrencyConflictError: If conflicts persist past the retry limit.
            Any exception raised by ``fn`` after rollback.
        """
        attempt = 0
        while True:
            attempt += 1
            session = self._session_factory()
            try:
                with self._write_lock or nullcontext():
                    result = fn(session)
                    session.commit()
                enqueued = pop_enqueued(session)
            except OperationalError as exc:
                session.rollback()
                pop_enqueued(session)
                if not is_conflict(exc):
                    raise
                if attempt > self._max_conflict_retries:
                    logger.error(
                        "unit_of_work_conflict_exhausted",
                        extra={"operation": operation_name, "attempts": attempt},
                    )
                    raise ConcurrencyConflictError(operation_name, attempt) from exc
                logger.warning(
                    "unit_of_work_conflict_retry",
                    extra={"operation": operation_name, "attempt": attempt},
                )
                time.sleep(CONFLICT_BACKOFF_SECONDS * attempt)
                continue
            except Exception:
                session.rollback()
                pop_enqueued(session)
                logger.debug(
                    "unit_of_work_rolled_back", extra={"operation": operation_name}
                )
                raise
            finally:
                session.close()

            logger.debug(
                "unit_of_work_committed",
                extra={"operation": operation_name, "enqueued_syncs": len(enqueued)},
            )
            if enqueued and self.after_commit is not None:
                self.after_commit(enqueued)
            return result
