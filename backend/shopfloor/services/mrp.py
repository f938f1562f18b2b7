"""
Material Requirements Service

Answers "can N units of product P be built now, and what is short?":

1. BOM explosion (BOMResolver) - flat leaf requirements
2. Netting - compare each requirement against available-to-promise stock
   (on hand minus what active reservations already hold)

Read-only: nothing is reserved, so the check can be repeated freely (e.g.
for previews). Leaves that are not stocked in lots (molds, tooling) are
production aids, not consumed inventory, and are left out of the netting.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from shopfloor.logging_config import get_logger
from shopfloor.models import Product
from shopfloor.services.bom_service import BOMResolver, ComponentRequirement, to_decimal
from shopfloor.services.inventory_service import InventoryLedger

logger = get_logger(__name__)


# ============================================================================
# Data Classes for MRP Calculations
# ============================================================================

@dataclass
class MaterialRequirement:
    """Net requirement of one component after inventory netting"""
    component_product_id: int
    component_code: str
    required_quantity: Decimal
    available_quantity: Decimal

    @property
    def shortage(self) -> Decimal:
        return max(Decimal("0"), self.required_quantity - self.available_quantity)


@dataclass
class RequirementCheckResult:
    """Outcome of a material availability check"""
    product_id: int
    target_quantity: Decimal
    requirements: List[MaterialRequirement] = field(default_factory=list)

    @property
    def shortages(self) -> List[MaterialRequirement]:
        return [r for r in self.requirements if r.shortage > 0]

    @property
    def available(self) -> bool:
        return not self.shortages


# ============================================================================
# Material Requirements Checker
# ============================================================================

class MaterialRequirementsChecker:
    """BOM explosion netted against available inventory"""

    def __init__(
        self,
        db: Session,
        resolver: Optional[BOMResolver] = None,
        ledger: Optional[InventoryLedger] = None,
    ):
        self.db = db
        self.resolver = resolver or BOMResolver(db)
        self.ledger = ledger or InventoryLedger(db)

    def _stocked_only(self, requirements: List[ComponentRequirement]) -> List[ComponentRequirement]:
        if not requirements:
            return []
        ids = [r.component_product_id for r in requirements]
        stocked = {
            pid for (pid,) in self.db.query(Product.id).filter(
                Product.id.in_(ids), Product.is_stocked.is_(True)
            ).all()
        }
        return [r for r in requirements if r.component_product_id in stocked]

    def consumed_materials(self, product_id: int, quantity) -> List[ComponentRequirement]:
        """Stocked leaf materials consumed when building ``quantity`` units."""
        return self._stocked_only(self.resolver.explode(product_id, quantity))

    def check(self, product_id: int, target_quantity) -> RequirementCheckResult:
        """
        Check whether ``target_quantity`` units of ``product_id`` can be built now.

        Raises whatever BOM expansion raises (NotFoundError, UnknownProductError,
        CycleDetectedError, MaxDepthExceededError, ValidationError).
        """
        components = self._stocked_only(self.resolver.expand(product_id, target_quantity))
        return self._net(product_id, target_quantity, components)

    def check_build(self, product_id: int, quantity) -> RequirementCheckResult:
        """Like check(), but a product without a BOM needs no materials (always available)."""
        return self._net(product_id, quantity, self.consumed_materials(product_id, quantity))

    def _net(
        self, product_id: int, target_quantity, components: List[ComponentRequirement]
    ) -> RequirementCheckResult:
        result = RequirementCheckResult(
            product_id=product_id,
            target_quantity=to_decimal(target_quantity, "target_quantity"),
        )
        for component in components:
            result.requirements.append(
                MaterialRequirement(
                    component_product_id=component.component_product_id,
                    component_code=component.component_code,
                    required_quantity=component.required_quantity,
                    available_quantity=self.ledger.available_to_promise(component.component_product_id),
                )
            )

        if not result.available:
            logger.info(
                "Material check found shortages",
                extra={
                    "product_id": product_id,
                    "target_quantity": result.target_quantity,
                    "shortages": {s.component_code: s.shortage for s in result.shortages},
                },
            )
        return result
