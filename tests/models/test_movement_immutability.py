"""Appended movements: ledger fields are frozen, sync and expiry fields are not."""

from decimal import Decimal

import pytest

from stock_kernel.domain.enums import MovementSyncStatus
from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.models.movement import Movement


@pytest.fixture
def movement_row(session, stocked_item, kernel):
    movement = next(iter(kernel.iter_movements(stocked_item.id)))
    return session.get(Movement, movement.id)


class TestMovementImmutability:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("quantity", Decimal("99")),
            ("quantity_in_base_unit", Decimal("99")),
            ("movement_type", "issue"),
            ("batch_number", "LOT-X"),
            ("warehouse_location", "ELSEWHERE"),
        ],
    )
    def test_ledger_fields_cannot_change(self, session, movement_row, field, value):
        setattr(movement_row, field, value)
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "Movement"
        assert field in exc_info.value.reason

    def test_movements_cannot_be_deleted(self, session, movement_row):
        session.delete(movement_row)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_sync_mirror_fields_may_change(self, session, movement_row):
        movement_row.sync_status = MovementSyncStatus.SUCCESS.value
        movement_row.erp_doc_no = "ADJ-1"
        session.flush()

    def test_violation_is_logged(self, session, movement_row, captured_logs):
        movement_row.quantity = Decimal("1")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        blocked = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"]
        assert blocked and blocked[0]["field"] == "quantity"
