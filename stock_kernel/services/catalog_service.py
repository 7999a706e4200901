"""
CatalogService -- item master data, unit conversions and bills of materials.

Items are created once with zero counters; after that their quantities change
only through movements and reservations.  Creating an item can optionally
enqueue an ``item_create`` sync so the ERP learns the item code.
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from stock_kernel.db.types import to_quantity
from stock_kernel.domain.dtos import ItemRecord
from stock_kernel.domain.enums import ItemKind, SyncType
from stock_kernel.exceptions import ItemNotFoundError, ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.item import BomLine, Item
from stock_kernel.services.base import BaseService
from stock_kernel.services.sync_outbox import SyncOutbox
from stock_kernel.services.unit_converter import UnitConverter

logger = get_logger("services.catalog")

ITEM_REFERENCE = "item"


class CatalogService(BaseService):
    def __init__(self, session, clock=None, outbox: SyncOutbox | None = None):
        super().__init__(session, clock)
        self._outbox = outbox or SyncOutbox(session, self.clock)
        self._converter = UnitConverter(session)

    def create_item(
        self,
        sku: str,
        name: str,
        kind: ItemKind | str,
        unit: str,
        actor_id: UUID,
        cost_per_unit: Decimal = Decimal("0"),
        price: Decimal = Decimal("0"),
        batch_tracking_enabled: bool = False,
        stock_control: bool = True,
        erp_item_code: str | None = None,
        sync_required: bool = True,
        sync_to_erp: bool = False,
    ) -> ItemRecord:
        """
        Create an item with zero stock.

        Raises:
            ValidationError: On blank sku/unit, unknown kind, negative cost
                or a duplicate SKU.
        """
        if not sku or not sku.strip():
            raise ValidationError("SKU is required", field="sku")
        if not unit or not unit.strip():
            raise ValidationError("Unit is required", field="unit")
        try:
            kind = ItemKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown item kind: {kind}", field="kind") from exc
        cost_per_unit = to_quantity(cost_per_unit)
        price = to_quantity(price)
        if cost_per_unit < 0 or price < 0:
            raise ValidationError("Cost and price must not be negative", field="cost_per_unit")

        now = self.clock.now()
        item = Item(
            sku=sku.strip(),
            name=name,
            kind=kind.value,
            unit=unit.strip(),
            stock_quantity=Decimal("0"),
            reserved_quantity=Decimal("0"),
            cost_per_unit=cost_per_unit,
            price=price,
            batch_tracking_enabled=batch_tracking_enabled,
            stock_control=stock_control,
            erp_item_code=erp_item_code,
            sync_required=sync_required,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(item)
            self.session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            raise ValidationError(f"SKU already exists: {sku}", field="sku") from exc
        savepoint.commit()

        if sync_to_erp:
            self._outbox.enqueue(ITEM_REFERENCE, str(item.id), SyncType.ITEM_CREATE, actor_id)

        logger.info(
            "item_created",
            extra={
                "item_id": str(item.id),
                "sku": item.sku,
                "kind": item.kind,
                "unit": item.unit,
                "sync_to_erp": sync_to_erp,
            },
        )
        return ItemRecord.from_model(item)

    def get_item(self, item_id: UUID) -> Item:
        item = self.session.get(Item, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return item

    def set_bom(
        self,
        product_id: UUID,
        components: Iterable[tuple[UUID, Decimal, str | None]],
        actor_id: UUID,
    ) -> list[BomLine]:
        """
        Replace a product's bill of materials.

        Args:
            components: (component_item_id, quantity per product unit, unit or None).

        Raises:
            ValidationError: If the product is not a product, a component is
                the product itself, or a quantity is not positive.
            UnitConversionError: If a component unit cannot convert to the
                component's base unit.
        """
        product = self.get_item(product_id)
        if product.kind_enum != ItemKind.PRODUCT:
            raise ValidationError(f"Item {product.sku} is not a product", field="product_id")

        lines: list[BomLine] = []
        seen: set[str] = set()
        for component_id, quantity, unit in components:
            component = self.get_item(component_id)
            if component.id == product.id:
                raise ValidationError("A product cannot consume itself", field="component_item_id")
            if str(component.id) in seen:
                raise ValidationError(
                    f"Component {component.sku} listed twice", field="component_item_id"
                )
            seen.add(str(component.id))
            quantity = to_quantity(quantity)
            if quantity <= 0:
                raise ValidationError("BOM quantity must be positive", field="quantity")
            # Fail now rather than when an assembly order starts
            self._converter.factor(unit or component.unit, component.unit)
            lines.append(
                BomLine(
                    product_id=product.id,
                    component_item_id=component.id,
                    quantity=quantity,
                    unit=unit,
                )
            )

        self.session.execute(delete(BomLine).where(BomLine.product_id == product.id))
        self.session.add_all(lines)
        self.session.flush()
        logger.info(
            "bom_replaced",
            extra={
                "item_id": str(product.id),
                "component_count": len(lines),
                "actor_id": str(actor_id),
            },
        )
        return lines
