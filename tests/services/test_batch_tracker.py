"""Batch expiry flags and write-offs of expired batches."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import MovementDraft
from stock_kernel.domain.enums import MovementType, SyncType
from stock_kernel.exceptions import (
    BatchAlreadyWrittenOffError,
    BatchNotExpiredError,
    MovementNotFoundError,
    ValidationError,
    WriteOffExceedsStockError,
)
from stock_kernel.services.ledger_service import MOVEMENT_REFERENCE


@pytest.fixture
def milk(create_item):
    return create_item(sku="MILK", unit="l", batch_tracking_enabled=True)


class TestBatchNumbers:
    def test_sequence_is_per_day(self, kernel):
        assert kernel.next_batch_number(date(2024, 3, 1)) == "BATCH-20240301-001"
        assert kernel.next_batch_number(date(2024, 3, 1)) == "BATCH-20240301-002"
        assert kernel.next_batch_number(date(2024, 3, 2)) == "BATCH-20240302-001"


class TestExpiry:
    def test_mark_expired_does_not_change_stock(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 20)
        expired = kernel.mark_expired(batch.id, "smells off", actor_id)

        assert expired.is_expired
        assert expired.expiry_notes == "smells off"
        assert expired.marked_expired_by == actor_id
        assert kernel.get_item(milk.id).stock_quantity == Decimal("20")
        assert [m.id for m in kernel.expired_batches(milk.id)] == [batch.id]

    def test_reinstate_clears_flag(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 20)
        kernel.mark_expired(batch.id, None, actor_id)
        reinstated = kernel.reinstate_batch(batch.id, actor_id)
        assert not reinstated.is_expired
        assert reinstated.expired_at is None
        assert kernel.expired_batches(milk.id) == []

    def test_reinstate_requires_expired(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 5)
        with pytest.raises(BatchNotExpiredError):
            kernel.reinstate_batch(batch.id, actor_id)

    def test_only_batched_receipts_can_expire(self, kernel, stocked_item, actor_id):
        plain = next(iter(kernel.iter_movements(stocked_item.id)))
        with pytest.raises(ValidationError):
            kernel.mark_expired(plain.id, None, actor_id)

    def test_unknown_movement(self, kernel, actor_id):
        with pytest.raises(MovementNotFoundError):
            kernel.mark_expired(uuid4(), None, actor_id)


class TestWriteOff:
    def test_writes_off_batch_remainder(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 20)
        receive(milk.id, 5)
        kernel.append_movement(
            MovementDraft(
                milk.id, MovementType.ISSUE, Decimal("-8"), batch_number=batch.batch_number
            ),
            actor_id,
        )
        kernel.mark_expired(batch.id, None, actor_id)

        write_off = kernel.write_off(batch.id, actor_id)

        assert write_off.movement_type == MovementType.WRITE_OFF
        assert write_off.quantity_in_base_unit == Decimal("-12")
        assert write_off.reference_type == MOVEMENT_REFERENCE
        assert write_off.reference_id == str(batch.id)
        assert kernel.get_item(milk.id).stock_quantity == Decimal("5")

        source = kernel.get_movement(batch.id)
        assert source.written_off
        assert source.written_off_by_movement_id == write_off.id
        assert kernel.expired_batches(milk.id) == []

        (entry,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(write_off.id))
        assert entry.sync_type == SyncType.WRITE_OFF.value

    def test_write_off_requires_expiry(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 3)
        with pytest.raises(BatchNotExpiredError):
            kernel.write_off(batch.id, actor_id)

    def test_second_write_off_rejected(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 3)
        kernel.mark_expired(batch.id, None, actor_id)
        kernel.write_off(batch.id, actor_id)

        with pytest.raises(BatchAlreadyWrittenOffError):
            kernel.write_off(batch.id, actor_id)
        with pytest.raises(BatchAlreadyWrittenOffError):
            kernel.reinstate_batch(batch.id, actor_id)
        with pytest.raises(BatchAlreadyWrittenOffError):
            kernel.mark_expired(batch.id, None, actor_id)

    def test_reserved_stock_is_not_written_off(self, kernel, milk, receive, actor_id):
        batch = receive(milk.id, 10)
        kernel.reserve("sales_order", uuid4(), milk.id, Decimal("4"), actor_id)
        kernel.mark_expired(batch.id, None, actor_id)

        with pytest.raises(WriteOffExceedsStockError) as exc_info:
            kernel.write_off(batch.id, actor_id)

        assert exc_info.value.quantity == Decimal("10")
        assert exc_info.value.writable == Decimal("6")
        assert kernel.get_item(milk.id).stock_quantity == Decimal("10")
        assert not kernel.get_movement(batch.id).written_off

    def test_other_pending_expired_batches_count_against_writable(
        self, kernel, milk, receive, actor_id
    ):
        first = receive(milk.id, 6)
        second = receive(milk.id, 6)
        kernel.append_movement(
            MovementDraft(milk.id, MovementType.ISSUE, Decimal("-2")), actor_id
        )
        kernel.mark_expired(first.id, None, actor_id)
        kernel.mark_expired(second.id, None, actor_id)

        # Stock 10, the other batch still claims 6: only 4 is writable
        with pytest.raises(WriteOffExceedsStockError):
            kernel.write_off(first.id, actor_id)
