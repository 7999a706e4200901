"""
SyncOrchestrator -- drains the sync log into the ERP.

Responsibility:
    Claims due SyncLogEntries, performs the ERP call for each, and records
    the outcome with exponential backoff.  Runs either synchronously
    (``process_due``, ``retry``) or as a background dispatcher thread feeding
    a bounded ``ThreadPoolExecutor`` (``start`` / ``stop``).

Attempt lifecycle (one entry):
    1. Claim transaction: lock the entry, move it to in_progress, snapshot
       the ERP request from the referenced rows, commit.
    2. No transaction: ask the gateway for a document already carrying the
       entry's external reference; post only if none exists.
    3. Result transaction: success (store doc no, mirror onto the Movement
       or order) or failure (retry_count/consecutive_failures += 1, schedule
       next_retry_at, or permanently_failed).

An entry whose ERP document depends on another entry (a PO cancellation or
goods receipt on its po_create) is deferred at claim time, without counting
a failure, until that entry has finished.

Invariants enforced:
    - An ERP failure never rolls back the stock change that enqueued it;
      the failure is visible only on the SyncLogEntry.
    - An entry that already has an ERP document number is never posted again.
    - At most one worker in this process attempts a given entry at a time.
    - A gateway error of any kind leaves the entry failed, never in_progress.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import SyncLogRecord, SyncSummary
from stock_kernel.domain.enums import SyncStatus, SyncType
from stock_kernel.exceptions import (
    SyncError,
    SyncFailure,
    SyncLogNotFoundError,
    SyncPermanentFailure,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.sync_log import SyncLogEntry
from stock_kernel.selectors.sync_selector import SyncSelector
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_sync.dispatcher import (
    ErpRequest,
    blocking_entry,
    build_request,
    deferred_dependents,
    mirror_result,
)
from stock_sync.erp_gateway import ErpGateway, ErpResult
from stock_sync.retry_policy import RetryPolicy

logger = get_logger("sync.orchestrator")

ERROR_MESSAGE_LIMIT = 2000


def summarize(records: Iterable[SyncLogRecord]) -> SyncSummary:
    records = list(records)
    by_status = [r.sync_status for r in records]
    return SyncSummary(
        attempted=len(records),
        succeeded=by_status.count(SyncStatus.SUCCESS.value),
        failed=by_status.count(SyncStatus.FAILED.value),
        permanently_failed=by_status.count(SyncStatus.PERMANENTLY_FAILED.value),
        sync_log_ids=tuple(r.id for r in records),
    )


class SyncOrchestrator:
    """
    Outbox drain with a bounded worker pool.

    Contract:
        - ``enqueue`` writes in the caller's session (no commit).
        - ``process_due`` / ``attempt`` / ``retry`` / ``retry_all_failed``
          open their own sessions and commit.
        - ``start`` / ``stop`` manage the dispatcher thread and pool.

    Non-goals:
        - NOT a distributed queue; stale in_progress claims are reclaimed
          after ``stale_after_seconds`` instead of using leases.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: ErpGateway,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        max_workers: int = 4,
        batch_size: int = 50,
        poll_interval_seconds: float = 5.0,
        stale_after_seconds: float = 300.0,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._policy = policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._max_workers = max_workers
        self._batch_size = batch_size
        self._poll_interval = poll_interval_seconds
        self._stale_after = stale_after_seconds

        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._inflight: set[UUID] = set()
        self._inflight_lock = threading.Lock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        session: Session,
        reference_type: str,
        reference_id: str,
        sync_type: SyncType,
        actor_id: UUID,
    ) -> SyncLogRecord:
        """Create a pending entry inside the caller's transaction."""
        entry = SyncOutbox(session, self._clock).enqueue(
            reference_type, reference_id, sync_type, actor_id
        )
        return SyncLogRecord.from_model(entry)

    def notify(self, sync_log_ids: Iterable[UUID]) -> None:
        """After-commit hook: schedule freshly committed entries right away."""
        if not self.is_running:
            return
        for sync_log_id in sync_log_ids:
            self.submit(sync_log_id)

    # -------------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="stock-sync"
        )
        self._thread = threading.Thread(
            target=self._run_loop, name="stock-sync-dispatcher", daemon=True
        )
        self._thread.start()
        logger.info(
            "sync_worker_started",
            extra={"max_workers": self._max_workers, "poll_interval": self._poll_interval},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Stop dispatching and wait for in-flight attempts to finish."""
        self._stop_event.set()
        self._wakeup.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._thread = None
        self._executor = None
        logger.info("sync_worker_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, sync_log_id: UUID) -> Future | None:
        """
        Schedule one attempt on the pool.

        Returns None if the pool is not running or the entry is already in
        flight in this process.
        """
        executor = self._executor
        if executor is None:
            return None
        with self._inflight_lock:
            if sync_log_id in self._inflight:
                return None
            self._inflight.add(sync_log_id)
        try:
            return executor.submit(self._attempt_in_worker, sync_log_id)
        except RuntimeError:
            # Pool shut down between the check and the submit
            with self._inflight_lock:
                self._inflight.discard(sync_log_id)
            return None

    def _attempt_in_worker(self, sync_log_id: UUID) -> SyncLogRecord | None:
        try:
            return self.attempt(sync_log_id)
        except Exception:
            logger.exception("sync_worker_error", extra={"sync_log_id": str(sync_log_id)})
            return None
        finally:
            with self._inflight_lock:
                self._inflight.discard(sync_log_id)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                for sync_log_id in self._due_ids():
                    if self._stop_event.is_set():
                        break
                    self.submit(sync_log_id)
            except Exception:
                logger.exception("sync_dispatch_failed")
            self._wakeup.wait(timeout=self._poll_interval)
            self._wakeup.clear()

    def _due_ids(self) -> list[UUID]:
        with self._session_factory() as session:
            try:
                return SyncSelector(session).due_ids(
                    self._clock.now(), self._batch_size, self._stale_after
                )
            finally:
                session.rollback()

    # -------------------------------------------------------------------------
    # Synchronous entry points
    # -------------------------------------------------------------------------

    def process_due(self) -> SyncSummary:
        """One claim-and-dispatch pass over due entries, in the calling thread."""
        records = []
        for sync_log_id in self._due_ids():
            try:
                records.append(self.attempt(sync_log_id))
            except Exception:
                logger.exception("sync_worker_error", extra={"sync_log_id": str(sync_log_id)})
        summary = summarize(records)
        if records:
            logger.info(
                "sync_pass_completed",
                extra={
                    "attempted": summary.attempted,
                    "succeeded": summary.succeeded,
                    "failed": summary.failed,
                    "permanently_failed": summary.permanently_failed,
                },
            )
        return summary

    def retry(self, sync_log_id: UUID) -> SyncLogRecord:
        """
        Operator retry.

        An entry that already has an ERP document is reported as-is without
        another ERP call.  A permanently failed entry has its failure streak
        reset and is attempted again.

        Raises:
            SyncLogNotFoundError: If no such entry exists.
        """
        with LogContext.bind(sync_log_id=sync_log_id):
            record = self._get(sync_log_id)
            if record.erp_doc_no or record.sync_status == SyncStatus.SUCCESS.value:
                logger.info(
                    "sync_retry_noop",
                    extra={"erp_doc_no": record.erp_doc_no, "sync_status": record.sync_status},
                )
                return record
            return self.attempt(sync_log_id, manual=True)

    def retry_all_failed(self, limit: int = 100) -> SyncSummary:
        """Retry every failed entry whose backoff has elapsed, through the pool."""
        with self._session_factory() as session:
            try:
                ids = SyncSelector(session).due_failed_ids(self._clock.now(), limit)
            finally:
                session.rollback()
        if not ids:
            return SyncSummary()

        if self._executor is not None:
            futures = [self._executor.submit(self._retry_in_worker, i) for i in ids]
            records = [f.result() for f in futures]
        else:
            with ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="stock-sync-retry"
            ) as pool:
                records = list(pool.map(self._retry_in_worker, ids))

        summary = summarize(r for r in records if r is not None)
        logger.info(
            "sync_retry_all_completed",
            extra={
                "attempted": summary.attempted,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "permanently_failed": summary.permanently_failed,
            },
        )
        return summary

    def _retry_in_worker(self, sync_log_id: UUID) -> SyncLogRecord | None:
        try:
            return self.retry(sync_log_id)
        except Exception:
            logger.exception("sync_worker_error", extra={"sync_log_id": str(sync_log_id)})
            return None

    # -------------------------------------------------------------------------
    # Attempt
    # -------------------------------------------------------------------------

    def _get(self, sync_log_id: UUID) -> SyncLogRecord:
        with self._session_factory() as session:
            try:
                record = SyncSelector(session).get(sync_log_id)
            finally:
                session.rollback()
        if record is None:
            raise SyncLogNotFoundError(str(sync_log_id))
        return record

    def _lock_entry(self, session: Session, sync_log_id: UUID) -> SyncLogEntry:
        entry = session.execute(
            select(SyncLogEntry)
            .where(SyncLogEntry.id == sync_log_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise SyncLogNotFoundError(str(sync_log_id))
        return entry

    def _is_due(self, entry: SyncLogEntry, manual: bool) -> bool:
        now = self._clock.now()
        status = entry.status_enum
        if status in (SyncStatus.PENDING, SyncStatus.FAILED):
            return manual or entry.next_retry_at is None or entry.next_retry_at <= now
        if status == SyncStatus.PERMANENTLY_FAILED:
            return manual
        if status == SyncStatus.IN_PROGRESS:
            stale_before = now - timedelta(seconds=self._stale_after)
            return entry.last_attempt_at is None or entry.last_attempt_at < stale_before
        return False

    def _defer(self, entry: SyncLogEntry, blocker: SyncLogEntry) -> None:
        """Hold ``entry`` back until ``blocker`` is expected to have finished."""
        now = self._clock.now()
        until = now + timedelta(seconds=self._policy.base_delay_seconds)
        if blocker.status_enum == SyncStatus.FAILED and blocker.next_retry_at is not None:
            until = max(blocker.next_retry_at, now)
        entry.next_retry_at = until
        entry.error_message = f"Waiting for {blocker.sync_type} ({blocker.sync_status})"
        entry.updated_at = now
        if entry.status_enum == SyncStatus.IN_PROGRESS:
            entry.last_attempt_at = now
        logger.info(
            "sync_attempt_deferred",
            extra={
                "sync_type": entry.sync_type,
                "waiting_for": str(blocker.id),
                "next_retry_at": until,
            },
        )

    def _claim(
        self, sync_log_id: UUID, manual: bool
    ) -> tuple[ErpRequest | None, SyncPermanentFailure | None, SyncLogRecord]:
        with self._session_factory() as session:
            try:
                entry = self._lock_entry(session, sync_log_id)
                if not self._is_due(entry, manual):
                    record = SyncLogRecord.from_model(entry)
                    session.rollback()
                    return None, None, record

                blocker = blocking_entry(session, entry)
                if blocker is not None:
                    self._defer(entry, blocker)
                    record = SyncLogRecord.from_model(entry)
                    session.commit()
                    return None, None, record

                if entry.status_enum == SyncStatus.PERMANENTLY_FAILED:
                    entry.consecutive_failures = 0
                entry.validate_transition(SyncStatus.IN_PROGRESS)
                now = self._clock.now()
                entry.sync_status = SyncStatus.IN_PROGRESS.value
                entry.last_attempt_at = now
                entry.updated_at = now

                request, build_error = None, None
                try:
                    request = build_request(session, entry)
                except SyncPermanentFailure as exc:
                    build_error = exc

                session.commit()
                return request, build_error, SyncLogRecord.from_model(entry)
            except Exception:
                session.rollback()
                raise

    def attempt(self, sync_log_id: UUID, manual: bool = False) -> SyncLogRecord:
        """
        Attempt one entry if it is due (or if ``manual``).

        Returns:
            The entry after the attempt, or unchanged if it was not due.
        """
        with LogContext.bind(sync_log_id=sync_log_id):
            request, error, claimed = self._claim(sync_log_id, manual)
            if request is None and error is None:
                logger.debug("sync_attempt_skipped", extra={"sync_status": claimed.sync_status})
                return claimed

            result: ErpResult | None = None
            if error is None:
                try:
                    result = self._call_gateway(request)
                except SyncError as exc:
                    error = exc
                except Exception as exc:
                    logger.exception("sync_gateway_error", extra={"operation": request.operation})
                    error = SyncFailure(f"Unexpected ERP gateway error: {exc!r}")
            return self._record(sync_log_id, result, error)

    def _call_gateway(self, request: ErpRequest) -> ErpResult:
        doc_no = self._gateway.find_document(request.external_ref)
        if doc_no:
            logger.info(
                "sync_document_recovered",
                extra={"external_ref": request.external_ref, "erp_doc_no": doc_no},
            )
            return ErpResult(doc_no=doc_no, raw={"recovered": True})
        if request.skip_reason is not None:
            return self._skipped(request, request.skip_reason)
        if request.doc_ref is not None:
            target = self._gateway.find_document(request.doc_ref)
            if target is None:
                return self._skipped(request, f"no ERP document for {request.doc_ref}")
            request = request.with_doc_no(target)
        return request.execute(self._gateway)

    def _skipped(self, request: ErpRequest, reason: str) -> ErpResult:
        logger.info(
            "sync_post_skipped",
            extra={"external_ref": request.external_ref, "reason": reason},
        )
        return ErpResult(doc_no=None, raw={"skipped": reason})

    def _record(
        self,
        sync_log_id: UUID,
        result: ErpResult | None,
        error: SyncError | None,
    ) -> SyncLogRecord:
        with self._session_factory() as session:
            try:
                entry = self._lock_entry(session, sync_log_id)
                if entry.status_enum != SyncStatus.IN_PROGRESS:
                    # Reclaimed as stale and finished by another worker
                    logger.warning(
                        "sync_result_discarded", extra={"sync_status": entry.sync_status}
                    )
                    record = SyncLogRecord.from_model(entry)
                    session.rollback()
                    return record

                now = self._clock.now()
                entry.updated_at = now
                if error is None:
                    self._mark_success(entry, result, now)
                    mirror_result(session, entry, succeeded=True)
                else:
                    self._mark_failure(entry, error, now)
                    mirror_result(session, entry, succeeded=False)

                woken: list[UUID] = []
                if entry.status_enum in (SyncStatus.SUCCESS, SyncStatus.PERMANENTLY_FAILED):
                    for dependent in deferred_dependents(session, entry):
                        dependent.next_retry_at = None
                        dependent.updated_at = now
                        woken.append(dependent.id)
                session.commit()
            except Exception:
                session.rollback()
                raise
        self.notify(woken)
        return SyncLogRecord.from_model(entry)

    def _mark_success(self, entry: SyncLogEntry, result: ErpResult, now) -> None:
        entry.validate_transition(SyncStatus.SUCCESS)
        entry.sync_status = SyncStatus.SUCCESS.value
        entry.erp_doc_no = result.doc_no
        entry.synced_at = now
        entry.error_message = None
        entry.consecutive_failures = 0
        entry.next_retry_at = None
        logger.info(
            "sync_attempt_succeeded",
            extra={
                "sync_type": entry.sync_type,
                "reference_id": entry.reference_id,
                "erp_doc_no": result.doc_no,
            },
        )

    def _mark_failure(self, entry: SyncLogEntry, error: SyncError, now) -> None:
        entry.retry_count += 1
        entry.consecutive_failures += 1
        entry.error_message = str(error)[:ERROR_MESSAGE_LIMIT]
        permanent = isinstance(error, SyncPermanentFailure) or self._policy.exhausted(
            entry.consecutive_failures
        )
        if permanent:
            entry.validate_transition(SyncStatus.PERMANENTLY_FAILED)
            entry.sync_status = SyncStatus.PERMANENTLY_FAILED.value
            entry.next_retry_at = None
            logger.error(
                "sync_permanently_failed",
                extra={
                    "sync_type": entry.sync_type,
                    "reference_id": entry.reference_id,
                    "retry_count": entry.retry_count,
                    "consecutive_failures": entry.consecutive_failures,
                    "error": entry.error_message,
                    "error_code": error.code,
                },
            )
            return

        entry.validate_transition(SyncStatus.FAILED)
        entry.sync_status = SyncStatus.FAILED.value
        entry.next_retry_at = self._policy.next_retry_at(now, entry.consecutive_failures)
        logger.warning(
            "sync_attempt_failed",
            extra={
                "sync_type": entry.sync_type,
                "reference_id": entry.reference_id,
                "retry_count": entry.retry_count,
                "consecutive_failures": entry.consecutive_failures,
                "next_retry_at": entry.next_retry_at,
                "error": entry.error_message,
            },
        )
