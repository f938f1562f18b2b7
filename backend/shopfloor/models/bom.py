"""
Bill of materials model

Each BOMItem is one directed edge parent -> child in the product graph:
"one unit of parent needs quantity_per_unit of child, plus scrap".
The graph must stay acyclic; BOMResolver.add_bom_item refuses edges that
would close a cycle.
"""
from sqlalchemy import (
    Column, Integer, Numeric, DateTime, Boolean, ForeignKey, Text, CheckConstraint
)
from sqlalchemy.orm import relationship

from shopfloor.core.clock import utcnow
from shopfloor.db.base import Base


class BOMItem(Base):
    """A component line of a product's bill of materials"""
    __tablename__ = "bom_items"
    __table_args__ = (
        CheckConstraint("quantity_per_unit > 0", name="ck_bom_items_qty_positive"),
        CheckConstraint("scrap_factor >= 0", name="ck_bom_items_scrap_non_negative"),
        CheckConstraint("parent_product_id <> child_product_id", name="ck_bom_items_no_self_loop"),
    )

    id = Column(Integer, primary_key=True, index=True)
    parent_product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    child_product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)

    quantity_per_unit = Column(Numeric(18, 4), nullable=False)
    # Fraction, not percent: 0.1 means 10% extra
    scrap_factor = Column(Numeric(9, 4), default=0, nullable=False)

    sequence = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    parent = relationship("Product", foreign_keys=[parent_product_id], back_populates="bom_items")
    child = relationship("Product", foreign_keys=[child_product_id])

    def __repr__(self):
        return f"<BOMItem {self.parent_product_id} -> {self.child_product_id} x {self.quantity_per_unit}>"
