"""
Product model - unified item master for everything the shop floor builds or consumes
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from sqlalchemy.orm import relationship

from shopfloor.core.clock import utcnow
from shopfloor.db.base import Base


class ProductType(str, Enum):
    RAW_MATERIAL = "raw_material"
    INTERMEDIATE = "intermediate"
    FINISHED_GOOD = "finished_good"
    MOLD = "mold"
    TOOLING = "tooling"


class Product(Base):
    """
    Unified item model:
    - raw_material: purchased inputs, consumed by BOMs
    - intermediate: sub-assemblies built by one work order and consumed by another
    - finished_good: products shipped to customers
    - mold / tooling: production aids, usually not stocked in lots
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    unit = Column(String(20), default='EA', nullable=False)

    product_type = Column(String(20), default=ProductType.FINISHED_GOOD.value, nullable=False)

    # Stocked items are tracked in discrete inventory lots
    is_stocked = Column(Boolean, default=True, nullable=False)

    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    bom_items = relationship(
        "BOMItem",
        foreign_keys="BOMItem.parent_product_id",
        back_populates="parent",
    )
    lots = relationship("InventoryLot", back_populates="product")
    work_orders = relationship("WorkOrder", back_populates="product")

    def __repr__(self):
        return f"<Product {self.code}: {self.name}>"
