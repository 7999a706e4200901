"""
Concurrent reservations against one item.

Real threads, real connections: every worker waits on a Barrier so the
reserve calls start together.  Under any interleaving the reserved
quantity never exceeds stock, and every accepted request is backed by an
active reservation record.

Run with: pytest tests/concurrency/test_reservation_races.py -v
Skip with: pytest -m "not slow_locks"
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import MovementDraft
from stock_kernel.domain.enums import MovementType, OrderType, ReservationStatus
from stock_kernel.exceptions import InsufficientAvailableStockError, InsufficientStockError

pytestmark = pytest.mark.slow_locks

SO = OrderType.SALES_ORDER


def _run_together(count, fn):
    barrier = Barrier(count)

    def worker(index):
        barrier.wait()
        try:
            return fn(index)
        except (InsufficientAvailableStockError, InsufficientStockError) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


class TestReservationRaces:
    def test_twenty_reservers_never_over_reserve(self, kernel, stocked_item, actor_id):
        orders = [uuid4() for _ in range(20)]

        results = _run_together(
            20, lambda i: kernel.reserve(SO, orders[i], stocked_item.id, Decimal("1"), actor_id)
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, InsufficientAvailableStockError)]
        assert len(accepted) == 10
        assert len(refused) == 10

        item = kernel.get_item(stocked_item.id)
        assert item.reserved_quantity == Decimal("10")
        assert item.available_quantity == 0
        active = [
            record
            for order in orders
            for record in kernel.reservations_for(SO, order, active_only=True)
        ]
        assert sum(r.quantity for r in active) == item.reserved_quantity

    def test_uneven_requests_respect_available(self, kernel, stocked_item, actor_id):
        quantities = [Decimal(q) for q in ("7", "5", "3", "2", "4", "1")]
        orders = [uuid4() for _ in quantities]

        results = _run_together(
            len(quantities),
            lambda i: kernel.reserve(SO, orders[i], stocked_item.id, quantities[i], actor_id),
        )

        granted = sum(r.quantity for r in results if not isinstance(r, Exception))
        item = kernel.get_item(stocked_item.id)
        assert granted == item.reserved_quantity
        assert item.reserved_quantity <= item.stock_quantity

    def test_reserves_racing_issues_keep_counters_consistent(
        self, kernel, stocked_item, actor_id
    ):
        orders = [uuid4() for _ in range(6)]

        def act(index):
            if index % 2:
                return kernel.append_movement(
                    MovementDraft(stocked_item.id, MovementType.ISSUE, Decimal("-2")), actor_id
                )
            return kernel.reserve(SO, orders[index], stocked_item.id, Decimal("3"), actor_id)

        _run_together(len(orders), act)

        item = kernel.get_item(stocked_item.id)
        assert 0 <= item.reserved_quantity <= item.stock_quantity
        (check,) = kernel.check_ledger(stocked_item.id)
        assert check.consistent

    def test_same_key_raced_creates_one_record(self, kernel, stocked_item, actor_id):
        order = uuid4()

        results = _run_together(
            8, lambda i: kernel.reserve(SO, order, stocked_item.id, Decimal("2"), actor_id)
        )

        assert len({r.id for r in results}) == 1
        (record,) = kernel.reservations_for(SO, order)
        assert record.status == ReservationStatus.ACTIVE.value
        assert kernel.get_item(stocked_item.id).reserved_quantity == Decimal("2")
