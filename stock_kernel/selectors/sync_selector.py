"""
SyncSelector -- sync dashboard queries and the due-work query.

``due_ids`` is the claim candidate list for the SyncOrchestrator, oldest
first: pending entries not held back behind another entry, failed entries
whose backoff has elapsed, and in-progress entries whose claim has gone
stale (the worker died mid-attempt).
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select

from stock_kernel.domain.dtos import SyncLogRecord
from stock_kernel.domain.enums import SyncStatus, SyncType
from stock_kernel.models.sync_log import SyncLogEntry
from stock_kernel.selectors.base import BaseSelector

# Entries created in the same instant: a po_create before the entries that act
# on its ERP document.
_CREATES_FIRST = case((SyncLogEntry.sync_type == SyncType.PO_CREATE.value, 0), else_=1)


class SyncSelector(BaseSelector):
    def get(self, sync_log_id: UUID) -> SyncLogRecord | None:
        entry = self.session.get(SyncLogEntry, sync_log_id)
        return SyncLogRecord.from_model(entry) if entry else None

    def counts_by_status(self) -> dict[str, int]:
        """Number of entries per sync status; every status is present."""
        counts = {status.value: 0 for status in SyncStatus}
        rows = self.session.execute(
            select(SyncLogEntry.sync_status, func.count(SyncLogEntry.id)).group_by(
                SyncLogEntry.sync_status
            )
        ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def failed_entries(self, include_permanent: bool = True, limit: int = 100) -> list[SyncLogRecord]:
        statuses = [SyncStatus.FAILED.value]
        if include_permanent:
            statuses.append(SyncStatus.PERMANENTLY_FAILED.value)
        rows = self.session.execute(
            select(SyncLogEntry)
            .where(SyncLogEntry.sync_status.in_(statuses))
            .order_by(SyncLogEntry.created_at.desc())
            .limit(limit)
        ).scalars()
        return [SyncLogRecord.from_model(e) for e in rows]

    def for_reference(self, reference_type: str, reference_id: str) -> list[SyncLogRecord]:
        rows = self.session.execute(
            select(SyncLogEntry)
            .where(
                SyncLogEntry.reference_type == reference_type,
                SyncLogEntry.reference_id == str(reference_id),
            )
            .order_by(SyncLogEntry.created_at)
        ).scalars()
        return [SyncLogRecord.from_model(e) for e in rows]

    def due_ids(
        self,
        now: datetime,
        limit: int,
        stale_after_seconds: float,
    ) -> list[UUID]:
        stale_before = now - timedelta(seconds=stale_after_seconds)
        rows = self.session.execute(
            select(SyncLogEntry.id)
            .where(
                or_(
                    and_(
                        SyncLogEntry.sync_status == SyncStatus.PENDING.value,
                        or_(
                            SyncLogEntry.next_retry_at.is_(None),
                            SyncLogEntry.next_retry_at <= now,
                        ),
                    ),
                    and_(
                        SyncLogEntry.sync_status == SyncStatus.FAILED.value,
                        SyncLogEntry.next_retry_at <= now,
                    ),
                    and_(
                        SyncLogEntry.sync_status == SyncStatus.IN_PROGRESS.value,
                        SyncLogEntry.last_attempt_at < stale_before,
                    ),
                )
            )
            .order_by(SyncLogEntry.created_at, _CREATES_FIRST)
            .limit(limit)
        ).scalars()
        return list(rows)

    def due_failed_ids(self, now: datetime, limit: int) -> list[UUID]:
        rows = self.session.execute(
            select(SyncLogEntry.id)
            .where(
                SyncLogEntry.sync_status == SyncStatus.FAILED.value,
                SyncLogEntry.next_retry_at <= now,
            )
            .order_by(SyncLogEntry.next_retry_at)
            .limit(limit)
        ).scalars()
        return list(rows)
