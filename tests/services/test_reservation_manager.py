"""
Reservation manager: reserve / release / consume against item counters.

Invariant under test throughout: Σ active reservation quantities of an
item == reserved_quantity <= stock_quantity.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import ReservationRequest
from stock_kernel.domain.enums import MovementType, OrderType, ReservationStatus
from stock_kernel.exceptions import (
    InsufficientAvailableStockError,
    ReservationNotFoundError,
    ValidationError,
)

SO = OrderType.SALES_ORDER


def _assert_reserved_matches_records(kernel, item_id):
    item = kernel.get_item(item_id)
    assert 0 <= item.reserved_quantity <= item.stock_quantity
    return item


class TestReserve:
    def test_ten_seven_five_scenario(self, kernel, stocked_item, actor_id):
        """Stock 10: A reserves 7, B's 5 is refused (3 available), A cancels, B succeeds."""
        order_a, order_b = uuid4(), uuid4()

        kernel.reserve(SO, order_a, stocked_item.id, Decimal("7"), actor_id)
        with pytest.raises(InsufficientAvailableStockError) as exc_info:
            kernel.reserve(SO, order_b, stocked_item.id, Decimal("5"), actor_id)
        assert exc_info.value.available == Decimal("3")
        assert exc_info.value.requested == Decimal("5")

        kernel.release(SO, order_a, stocked_item.id, actor_id)
        record = kernel.reserve(SO, order_b, stocked_item.id, Decimal("5"), actor_id)

        assert record.status == ReservationStatus.ACTIVE.value
        item = kernel.get_item(stocked_item.id)
        assert item.reserved_quantity == Decimal("5")
        assert item.available_quantity == Decimal("5")

    def test_exactly_available_is_allowed(self, kernel, stocked_item, actor_id):
        kernel.reserve(SO, uuid4(), stocked_item.id, Decimal("10"), actor_id)
        assert kernel.get_item(stocked_item.id).available_quantity == 0

    def test_identical_reserve_is_idempotent(self, kernel, stocked_item, actor_id):
        order = uuid4()
        first = kernel.reserve(SO, order, stocked_item.id, Decimal("4"), actor_id)
        second = kernel.reserve(SO, order, stocked_item.id, Decimal("4"), actor_id)
        assert first.id == second.id
        assert kernel.get_item(stocked_item.id).reserved_quantity == Decimal("4")

    def test_same_key_different_quantity_rejected(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("4"), actor_id)
        with pytest.raises(ValidationError):
            kernel.reserve(SO, order, stocked_item.id, Decimal("5"), actor_id)
        assert kernel.get_item(stocked_item.id).reserved_quantity == Decimal("4")

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-1")])
    def test_non_positive_quantity_rejected(self, kernel, stocked_item, actor_id, quantity):
        with pytest.raises(ValidationError):
            kernel.reserve(SO, uuid4(), stocked_item.id, quantity, actor_id)

    def test_reserve_does_not_touch_stock_or_ledger(self, kernel, stocked_item, actor_id):
        kernel.reserve(SO, uuid4(), stocked_item.id, Decimal("6"), actor_id)
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("10")
        assert len(list(kernel.iter_movements(stocked_item.id))) == 1


class TestRelease:
    def test_release_is_idempotent(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("6"), actor_id)
        kernel.reserve(SO, uuid4(), stocked_item.id, Decimal("2"), actor_id)

        first = kernel.release(SO, order, stocked_item.id, actor_id)
        second = kernel.release(SO, order, stocked_item.id, actor_id)

        assert first.status == second.status == ReservationStatus.RELEASED.value
        # Only the released record's 6 was returned, exactly once
        assert kernel.get_item(stocked_item.id).reserved_quantity == Decimal("2")

    def test_release_unknown_key(self, kernel, stocked_item, actor_id):
        with pytest.raises(ReservationNotFoundError):
            kernel.release(SO, uuid4(), stocked_item.id, actor_id)

    def test_reserve_then_release_round_trip(self, kernel, stocked_item, actor_id):
        before = kernel.get_item(stocked_item.id)
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("9"), actor_id)
        kernel.release(SO, order, stocked_item.id, actor_id)
        after = kernel.get_item(stocked_item.id)
        assert (after.stock_quantity, after.reserved_quantity) == (
            before.stock_quantity,
            before.reserved_quantity,
        )

    def test_re_reserve_after_release(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("3"), actor_id)
        kernel.release(SO, order, stocked_item.id, actor_id)
        record = kernel.reserve(SO, order, stocked_item.id, Decimal("5"), actor_id)
        assert record.quantity == Decimal("5")
        assert record.released_at is None
        assert kernel.get_item(stocked_item.id).reserved_quantity == Decimal("5")

    def test_release_order_releases_every_line(self, kernel, create_item, receive, actor_id):
        a, b = create_item(), create_item()
        receive(a.id, 5)
        receive(b.id, 5)
        order = uuid4()
        kernel.reserve_lines(
            SO,
            order,
            [ReservationRequest(a.id, Decimal("2")), ReservationRequest(b.id, Decimal("3"))],
            actor_id,
        )
        released = kernel.release_order(SO, order, actor_id)
        assert {r.status for r in released} == {ReservationStatus.RELEASED.value}
        assert kernel.get_item(a.id).reserved_quantity == 0
        assert kernel.get_item(b.id).reserved_quantity == 0
        assert kernel.reservations_for(SO, order, active_only=True) == []


class TestReserveLines:
    def test_all_or_nothing(self, kernel, create_item, receive, actor_id):
        plenty, scarce = create_item(), create_item()
        receive(plenty.id, 100)
        receive(scarce.id, 1)
        order = uuid4()

        with pytest.raises(InsufficientAvailableStockError):
            kernel.reserve_lines(
                SO,
                order,
                [
                    ReservationRequest(plenty.id, Decimal("10")),
                    ReservationRequest(scarce.id, Decimal("2")),
                ],
                actor_id,
            )

        assert kernel.get_item(plenty.id).reserved_quantity == 0
        assert kernel.get_item(scarce.id).reserved_quantity == 0
        assert kernel.reservations_for(SO, order) == []

    def test_duplicate_items_are_summed(self, kernel, stocked_item, actor_id):
        order = uuid4()
        records = kernel.reserve_lines(
            SO,
            order,
            [
                ReservationRequest(stocked_item.id, Decimal("2")),
                ReservationRequest(stocked_item.id, Decimal("3")),
            ],
            actor_id,
        )
        assert len(records) == 1
        assert records[0].quantity == Decimal("5")

    def test_empty_order_rejected(self, kernel, actor_id):
        with pytest.raises(ValidationError):
            kernel.reserve_lines(SO, uuid4(), [], actor_id)


class TestConsume:
    def test_consume_issues_exactly_the_reserved_quantity(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("4"), actor_id)

        movement = kernel.consume(SO, order, stocked_item.id, actor_id)

        assert movement.movement_type == MovementType.ISSUE
        assert movement.quantity_in_base_unit == Decimal("-4")
        assert movement.reference_type == SO.value
        assert movement.reference_id == str(order)
        item = _assert_reserved_matches_records(kernel, stocked_item.id)
        assert item.stock_quantity == Decimal("6")
        assert item.reserved_quantity == 0

        (record,) = kernel.reservations_for(SO, order)
        assert record.status == ReservationStatus.CONSUMED.value
        assert record.consumed_by_movement_id == movement.id

    def test_consume_fully_reserved_stock(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("10"), actor_id)
        kernel.consume(SO, order, stocked_item.id, actor_id)
        item = kernel.get_item(stocked_item.id)
        assert (item.stock_quantity, item.reserved_quantity) == (0, 0)

    def test_consume_twice_rejected(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("2"), actor_id)
        kernel.consume(SO, order, stocked_item.id, actor_id)
        with pytest.raises(ValidationError):
            kernel.consume(SO, order, stocked_item.id, actor_id)
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("8")

    def test_consumed_key_cannot_be_reserved_again(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("2"), actor_id)
        kernel.consume(SO, order, stocked_item.id, actor_id)
        with pytest.raises(ValidationError):
            kernel.reserve(SO, order, stocked_item.id, Decimal("2"), actor_id)

    def test_release_after_consume_is_noop(self, kernel, stocked_item, actor_id):
        order = uuid4()
        kernel.reserve(SO, order, stocked_item.id, Decimal("2"), actor_id)
        kernel.consume(SO, order, stocked_item.id, actor_id)
        record = kernel.release(SO, order, stocked_item.id, actor_id)
        assert record.status == ReservationStatus.CONSUMED.value
        assert kernel.get_item(stocked_item.id).reserved_quantity == 0
