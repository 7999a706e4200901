"""
SyncLogEntry -- outbox row tracking one ERP mirror operation.

Created in the same transaction as the movement or order transition it
mirrors, then driven by the SyncOrchestrator:

    PENDING -> IN_PROGRESS -> SUCCESS
                           -> FAILED -> IN_PROGRESS (after next_retry_at)
                           -> PERMANENTLY_FAILED -> IN_PROGRESS (operator retry)

One entry per (reference_type, reference_id, sync_type).
"""

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase
from stock_kernel.domain.enums import SyncStatus, SyncType


VALID_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.IN_PROGRESS}),
    SyncStatus.IN_PROGRESS: frozenset({
        SyncStatus.SUCCESS,
        SyncStatus.FAILED,
        SyncStatus.PERMANENTLY_FAILED,
        # Stale claim reclaimed by another worker
        SyncStatus.IN_PROGRESS,
    }),
    SyncStatus.FAILED: frozenset({SyncStatus.IN_PROGRESS, SyncStatus.PERMANENTLY_FAILED}),
    SyncStatus.PERMANENTLY_FAILED: frozenset({SyncStatus.IN_PROGRESS}),
    # Terminal
    SyncStatus.SUCCESS: frozenset(),
}


class SyncLogEntry(TrackedBase):
    """Per-reference ERP sync status."""

    __tablename__ = "sync_log_entries"

    __table_args__ = (
        UniqueConstraint(
            "reference_type", "reference_id", "sync_type", name="uq_sync_log_reference"
        ),
        Index("idx_sync_log_due", "sync_status", "next_retry_at"),
        Index("idx_sync_log_created", "created_at"),
    )

    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)

    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncStatus.PENDING.value
    )

    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ERP document number ("autocount_doc_no")
    erp_doc_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Deterministic reference sent with every request: stock:<sync_type>:<reference_id>
    external_ref: Mapped[str] = mapped_column(String(200), nullable=False)

    next_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)

    synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def status_enum(self) -> SyncStatus:
        return SyncStatus(self.sync_status)

    @property
    def sync_type_enum(self) -> SyncType:
        return SyncType(self.sync_type)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum == SyncStatus.SUCCESS

    def validate_transition(self, target: SyncStatus) -> None:
        """
        Raises: ValueError if the move from the current status to target is
            not in VALID_TRANSITIONS.
        """
        allowed = VALID_TRANSITIONS.get(self.status_enum, frozenset())
        if target not in allowed:
            raise ValueError(
                f"Invalid sync transition: {self.sync_status} -> {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

    def __repr__(self) -> str:
        return f"<SyncLogEntry {self.sync_type} {self.reference_type}:{self.reference_id} {self.sync_status}>"


def external_ref_for(sync_type: str, reference_id: str) -> str:
    """Deterministic idempotency key sent to the ERP."""
    return f"stock:{sync_type}:{reference_id}"
