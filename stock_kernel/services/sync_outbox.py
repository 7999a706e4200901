"""
SyncOutbox -- records ERP sync work inside the caller's transaction.

A SyncLogEntry is written in the same transaction as the movement or order
transition it mirrors, so a committed stock change always has its sync
entry and a rolled-back one never does.  The ids of entries created in a
session are collected in ``session.info`` for the unit of work to hand to
the SyncOrchestrator after commit.
"""

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.enums import SyncStatus, SyncType
from stock_kernel.logging_config import get_logger
from stock_kernel.models.sync_log import SyncLogEntry, external_ref_for
from stock_kernel.services.base import BaseService

logger = get_logger("services.sync_outbox")

ENQUEUED_KEY = "stock_sync_enqueued"


class SyncOutbox(BaseService):
    def enqueue(
        self,
        reference_type: str,
        reference_id: str,
        sync_type: SyncType,
        actor_id: UUID,
    ) -> SyncLogEntry:
        """
        Create a PENDING entry; an existing entry for the same
        (reference_type, reference_id, sync_type) is returned unchanged.
        """
        sync_type = SyncType(sync_type)
        reference_id = str(reference_id)
        existing = self.session.execute(
            select(SyncLogEntry).where(
                SyncLogEntry.reference_type == reference_type,
                SyncLogEntry.reference_id == reference_id,
                SyncLogEntry.sync_type == sync_type.value,
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.debug(
                "sync_already_enqueued",
                extra={"sync_log_id": str(existing.id), "sync_type": sync_type.value},
            )
            return existing

        now = self.clock.now()
        entry = SyncLogEntry(
            reference_type=reference_type,
            reference_id=reference_id,
            sync_type=sync_type.value,
            sync_status=SyncStatus.PENDING.value,
            retry_count=0,
            consecutive_failures=0,
            external_ref=external_ref_for(sync_type.value, reference_id),
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(entry)
        self.session.flush()
        self.session.info.setdefault(ENQUEUED_KEY, []).append(entry.id)

        logger.info(
            "sync_enqueued",
            extra={
                "sync_log_id": str(entry.id),
                "sync_type": sync_type.value,
                "reference_type": reference_type,
                "reference_id": reference_id,
            },
        )
        return entry


def pop_enqueued(session) -> list[UUID]:
    """Take the ids of entries enqueued in this session."""
    return session.info.pop(ENQUEUED_KEY, [])
