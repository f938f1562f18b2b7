"""
BOM Resolution Service

Explodes a product's (possibly multi-level) bill of materials into a flat,
ordered list of leaf component requirements:

1. Depth-first walk from the product, multiplier = target quantity
2. Each edge multiplies by quantity_per_unit x (1 + scrap_factor)
3. Leaves (products with no BOM of their own) accumulate by product,
   summing contributions from every path, in order of first encounter

The walk keeps the current ancestor path on an explicit stack, so a cycle is
reported as soon as a child is already on the path, and depth is capped by
BOM_MAX_DEPTH.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from shopfloor.core.settings import get_settings
from shopfloor.exceptions import (
    CycleDetectedError,
    MaxDepthExceededError,
    NotFoundError,
    UnknownProductError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models import BOMItem, Product

logger = get_logger(__name__)


def to_decimal(value, field: str = "quantity") -> Decimal:
    """Coerce ints/strings/Decimals to Decimal; floats go through str()."""
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, value=value)
    return number


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class BOMEdge:
    """Arena entry for one BOMItem"""
    bom_item_id: int
    parent_product_id: int
    child_product_id: int
    quantity_per_unit: Decimal
    scrap_factor: Decimal

    @property
    def multiplier(self) -> Decimal:
        return self.quantity_per_unit * (Decimal("1") + self.scrap_factor)


@dataclass
class ComponentRequirement:
    """A leaf component and the total quantity needed of it"""
    component_product_id: int
    component_code: str
    required_quantity: Decimal
    bom_level: int


# ============================================================================
# BOM Resolver
# ============================================================================

class BOMResolver:
    """Multi-level BOM explosion with cycle and depth checks"""

    def __init__(self, db: Session, max_depth: Optional[int] = None):
        self.db = db
        self.max_depth = max_depth if max_depth is not None else get_settings().BOM_MAX_DEPTH
        # Edges are loaded once per product and referenced by arena index
        self._arena: List[BOMEdge] = []
        self._adjacency: Dict[int, List[int]] = {}

    def _get_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def _children(self, product_id: int) -> List[int]:
        if product_id not in self._adjacency:
            items = (
                self.db.query(BOMItem)
                .filter(
                    BOMItem.parent_product_id == product_id,
                    BOMItem.active.is_(True),
                )
                .order_by(BOMItem.sequence, BOMItem.id)
                .all()
            )
            indexes = []
            for item in items:
                self._arena.append(
                    BOMEdge(
                        bom_item_id=item.id,
                        parent_product_id=item.parent_product_id,
                        child_product_id=item.child_product_id,
                        quantity_per_unit=Decimal(item.quantity_per_unit),
                        scrap_factor=Decimal(item.scrap_factor or 0),
                    )
                )
                indexes.append(len(self._arena) - 1)
            self._adjacency[product_id] = indexes
        return self._adjacency[product_id]

    def clear_cache(self) -> None:
        self._arena.clear()
        self._adjacency.clear()

    def has_bom(self, product_id: int) -> bool:
        return bool(self._children(product_id))

    def _walk(self, root_id: int, quantity: Decimal) -> Iterator[Tuple[int, Decimal, int]]:
        """Yield (leaf_product_id, quantity, depth) for every path from root to a leaf."""
        path: List[int] = [root_id]
        on_path = {root_id}
        stack = [(root_id, quantity, iter(self._children(root_id)))]

        while stack:
            node_id, multiplier, edges = stack[-1]
            index = next(edges, None)
            if index is None:
                stack.pop()
                path.pop()
                on_path.discard(node_id)
                continue

            edge = self._arena[index]
            child_id = edge.child_product_id
            if child_id in on_path:
                logger.error(
                    "BOM cycle detected",
                    extra={"root_product_id": root_id, "path": path + [child_id]},
                )
                raise CycleDetectedError(path + [child_id])

            depth = len(path)
            if depth > self.max_depth:
                raise MaxDepthExceededError(self.max_depth, path + [child_id])

            child_quantity = multiplier * edge.multiplier
            grandchildren = self._children(child_id)
            if not grandchildren:
                yield child_id, child_quantity, depth
                continue

            path.append(child_id)
            on_path.add(child_id)
            stack.append((child_id, child_quantity, iter(grandchildren)))

    def _explode(self, product_id: int, quantity: Decimal) -> List[ComponentRequirement]:
        totals: Dict[int, Decimal] = {}
        levels: Dict[int, int] = {}
        for leaf_id, leaf_qty, depth in self._walk(product_id, quantity):
            if leaf_id in totals:
                totals[leaf_id] += leaf_qty
            else:
                totals[leaf_id] = leaf_qty
                levels[leaf_id] = depth

        codes = dict(
            self.db.query(Product.id, Product.code).filter(Product.id.in_(list(totals))).all()
        ) if totals else {}

        return [
            ComponentRequirement(
                component_product_id=pid,
                component_code=codes.get(pid, ""),
                required_quantity=qty,
                bom_level=levels[pid],
            )
            for pid, qty in totals.items()
        ]

    def expand(self, product_id: int, target_quantity) -> List[ComponentRequirement]:
        """
        Flatten the BOM of ``product_id`` for ``target_quantity`` units.

        A stocked product without a BOM resolves to itself; a product with
        neither a BOM nor stock tracking raises UnknownProductError.

        Raises:
            NotFoundError, UnknownProductError, CycleDetectedError,
            MaxDepthExceededError, ValidationError
        """
        quantity = to_decimal(target_quantity, "target_quantity")
        if quantity <= 0:
            raise ValidationError("Target quantity must be positive", field="target_quantity", value=quantity)

        product = self._get_product(product_id)
        if not self.has_bom(product_id):
            if not product.is_stocked:
                raise UnknownProductError(product_id)
            return [ComponentRequirement(product.id, product.code, quantity, 0)]

        return self._explode(product_id, quantity)

    def explode(self, product_id: int, quantity) -> List[ComponentRequirement]:
        """Materials consumed to build ``quantity`` units; empty if the product has no BOM."""
        quantity = to_decimal(quantity)
        self._get_product(product_id)
        if quantity <= 0 or not self.has_bom(product_id):
            return []
        return self._explode(product_id, quantity)

    def validate_acyclic(self, product_id: int) -> None:
        """Walk every path below ``product_id``; raises CycleDetectedError on a cycle."""
        self._get_product(product_id)
        for _ in self._walk(product_id, Decimal("1")):
            pass

    def _path_between(self, start_id: int, target_id: int) -> Optional[List[int]]:
        """Return a product path start -> ... -> target, or None if unreachable."""
        came_from: Dict[int, Optional[int]] = {start_id: None}
        stack = [start_id]
        while stack:
            node_id = stack.pop()
            if node_id == target_id:
                path = []
                while node_id is not None:
                    path.append(node_id)
                    node_id = came_from[node_id]
                return list(reversed(path))
            for index in self._children(node_id):
                child_id = self._arena[index].child_product_id
                if child_id not in came_from:
                    came_from[child_id] = node_id
                    stack.append(child_id)
        return None

    def add_bom_item(
        self,
        parent_product_id: int,
        child_product_id: int,
        quantity_per_unit,
        scrap_factor=Decimal("0"),
        sequence: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> BOMItem:
        """
        Add a component line to a product's BOM.

        Refuses edges that would make the product graph cyclic.
        """
        quantity_per_unit = to_decimal(quantity_per_unit, "quantity_per_unit")
        scrap_factor = to_decimal(scrap_factor, "scrap_factor")
        if quantity_per_unit <= 0:
            raise ValidationError(
                "Quantity per unit must be positive", field="quantity_per_unit", value=quantity_per_unit
            )
        if scrap_factor < 0:
            raise ValidationError("Scrap factor cannot be negative", field="scrap_factor", value=scrap_factor)

        self._get_product(parent_product_id)
        self._get_product(child_product_id)

        if parent_product_id == child_product_id:
            raise CycleDetectedError([parent_product_id, child_product_id])

        back_path = self._path_between(child_product_id, parent_product_id)
        if back_path is not None:
            raise CycleDetectedError([parent_product_id] + back_path)

        if sequence is None:
            sequence = len(self._children(parent_product_id)) + 1

        item = BOMItem(
            parent_product_id=parent_product_id,
            child_product_id=child_product_id,
            quantity_per_unit=quantity_per_unit,
            scrap_factor=scrap_factor,
            sequence=sequence,
            notes=notes,
        )
        try:
            self.db.add(item)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(item)
        self.clear_cache()

        logger.info(
            "BOM item added",
            extra={
                "parent_product_id": parent_product_id,
                "child_product_id": child_product_id,
                "quantity_per_unit": quantity_per_unit,
                "scrap_factor": scrap_factor,
            },
        )
        return item
