"""Manual stock corrections, supplier returns and customer returns."""

from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.enums import AdjustmentDirection, MovementType, SyncType
from stock_kernel.exceptions import (
    InsufficientAvailableStockError,
    InsufficientStockError,
    ValidationError,
)
from stock_kernel.services.ledger_service import MOVEMENT_REFERENCE


class TestAdjustStock:
    def test_in_adds_quantity(self, kernel, stocked_item, actor_id):
        movement = kernel.adjust_stock(
            stocked_item.id, Decimal("3"), actor_id, AdjustmentDirection.IN, reason="found in bin"
        )
        assert movement.movement_type == MovementType.ADJUSTMENT
        assert movement.quantity_in_base_unit == Decimal("3")
        assert movement.notes == "found in bin"
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("13")

    def test_out_removes_quantity(self, kernel, stocked_item, actor_id):
        kernel.adjust_stock(stocked_item.id, Decimal("4"), actor_id, "OUT")
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("6")

    def test_set_books_difference_from_counted_figure(self, kernel, stocked_item, actor_id):
        down = kernel.adjust_stock(stocked_item.id, Decimal("7"), actor_id, AdjustmentDirection.SET)
        assert down.quantity_in_base_unit == Decimal("-3")
        up = kernel.adjust_stock(stocked_item.id, Decimal("12"), actor_id, AdjustmentDirection.SET)
        assert up.quantity_in_base_unit == Decimal("5")
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("12")

    def test_set_converts_counted_units(self, kernel, create_item, receive, actor_id):
        flour = create_item(sku="FLOUR", unit="g")
        kernel.register_unit_conversion("kg", "g", Decimal("1000"))
        receive(flour.id, 2500)
        movement = kernel.adjust_stock(
            flour.id, Decimal("2"), actor_id, AdjustmentDirection.SET, unit="kg"
        )
        assert movement.quantity_in_base_unit == Decimal("-500")

    def test_set_to_current_count_is_rejected(self, kernel, stocked_item, actor_id):
        with pytest.raises(ValidationError):
            kernel.adjust_stock(stocked_item.id, Decimal("10"), actor_id, AdjustmentDirection.SET)

    def test_out_beyond_stock_rejected(self, kernel, stocked_item, actor_id):
        with pytest.raises(InsufficientStockError):
            kernel.adjust_stock(stocked_item.id, Decimal("11"), actor_id, AdjustmentDirection.OUT)

    def test_set_below_reserved_rejected(self, kernel, stocked_item, actor_id):
        kernel.reserve("sales_order", uuid4(), stocked_item.id, Decimal("6"), actor_id)
        with pytest.raises(InsufficientAvailableStockError):
            kernel.adjust_stock(stocked_item.id, Decimal("5"), actor_id, AdjustmentDirection.SET)
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("10")

    def test_negative_quantity_rejected(self, kernel, stocked_item, actor_id):
        with pytest.raises(ValidationError):
            kernel.adjust_stock(stocked_item.id, Decimal("-1"), actor_id)

    def test_unknown_direction_rejected(self, kernel, stocked_item, actor_id):
        with pytest.raises(ValueError):
            kernel.adjust_stock(stocked_item.id, Decimal("1"), actor_id, "SIDEWAYS")

    def test_adjustment_syncs_as_stock_adjustment(self, kernel, stocked_item, actor_id):
        movement = kernel.adjust_stock(stocked_item.id, Decimal("1"), actor_id)
        (entry,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(movement.id))
        assert entry.sync_type == SyncType.STOCK_ADJUSTMENT.value


class TestReturns:
    def test_return_to_supplier_is_negative_and_syncs_as_goods_return(
        self, kernel, stocked_item, actor_id
    ):
        movement = kernel.return_to_supplier(
            stocked_item.id, Decimal("2"), "SUP-7", actor_id, reason="damaged"
        )
        assert movement.movement_type == MovementType.RETURN
        assert movement.quantity_in_base_unit == Decimal("-2")
        assert movement.supplier_reference == "SUP-7"
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("8")
        (entry,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(movement.id))
        assert entry.sync_type == SyncType.GOODS_RETURN.value

    def test_supplier_reference_required(self, kernel, stocked_item, actor_id):
        with pytest.raises(ValidationError):
            kernel.return_to_supplier(stocked_item.id, Decimal("1"), "", actor_id)

    def test_supplier_return_cannot_exceed_available(self, kernel, stocked_item, actor_id):
        kernel.reserve("sales_order", uuid4(), stocked_item.id, Decimal("9"), actor_id)
        with pytest.raises(InsufficientAvailableStockError):
            kernel.return_to_supplier(stocked_item.id, Decimal("2"), "SUP-7", actor_id)

    def test_customer_return_adds_stock(self, kernel, stocked_item, actor_id):
        movement = kernel.customer_return(
            stocked_item.id, Decimal("1"), actor_id, reference_id="SO-42"
        )
        assert movement.quantity_in_base_unit == Decimal("1")
        assert movement.reference_id == "SO-42"
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("11")
        (entry,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(movement.id))
        assert entry.sync_type == SyncType.STOCK_ADJUSTMENT.value

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-3")])
    def test_return_quantity_must_be_positive(self, kernel, stocked_item, actor_id, quantity):
        with pytest.raises(ValidationError):
            kernel.customer_return(stocked_item.id, quantity, actor_id)
