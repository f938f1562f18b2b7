"""
Inventory models

Stock is held in discrete lots. A lot's quantity only goes down through
consumption and only goes up through production or receipt; it is never
negative. Reservations are soft claims against a product's unreserved stock
(available-to-promise = on hand - active reservations) and never touch lots.
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Text, CheckConstraint
)
from sqlalchemy.orm import relationship

from shopfloor.core.clock import utcnow
from shopfloor.db.base import Base


class InventoryLot(Base):
    """A discrete, trackable quantity of one product"""
    __tablename__ = "inventory_lots"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_lots_quantity_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    lot_number = Column(String(50), unique=True, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)

    # Quantities
    quantity = Column(Numeric(18, 4), nullable=False)
    initial_quantity = Column(Numeric(18, 4), nullable=False)
    unit_cost = Column(Numeric(18, 4), nullable=True)

    # Allocation precedence: earliest expiry first when set, else oldest first
    expires_at = Column(DateTime, nullable=True, index=True)

    # Origin: a work order for produced lots, NULL for receipts
    source_work_order_id = Column(Integer, ForeignKey('work_orders.id'), nullable=True, index=True)

    # Status: active, depleted
    status = Column(String(20), default='active', nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    product = relationship("Product", back_populates="lots")
    source_work_order = relationship("WorkOrder", foreign_keys=[source_work_order_id])

    def __repr__(self):
        return f"<InventoryLot {self.lot_number}: {self.quantity}>"


class InventoryReservation(Base):
    """Soft reservation of a product's stock, drawn down as it is consumed"""
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_inventory_reservations_remaining"),
    )

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(36), unique=True, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    work_order_id = Column(Integer, ForeignKey('work_orders.id'), nullable=True, index=True)

    quantity = Column(Numeric(18, 4), nullable=False)
    remaining_quantity = Column(Numeric(18, 4), nullable=False)

    # Status: active, consumed, released
    status = Column(String(20), default='active', nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    product = relationship("Product")

    def __repr__(self):
        return f"<InventoryReservation {self.token}: {self.remaining_quantity}/{self.quantity}>"


class InventoryTransaction(Base):
    """Append-only record of every lot movement"""
    __tablename__ = "inventory_transactions"

    id = Column(Integer, primary_key=True, index=True)

    # References
    lot_id = Column(Integer, ForeignKey('inventory_lots.id'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)

    transaction_type = Column(String(50), nullable=False)
    # receipt, production, consumption

    reference_type = Column(String(50), nullable=True)
    # work_order, purchase_receipt, manual

    reference_id = Column(Integer, nullable=True)

    # Signed: positive adds to the lot, negative draws from it
    quantity = Column(Numeric(18, 4), nullable=False)
    cost_per_unit = Column(Numeric(18, 4), nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)

    # Relationships
    lot = relationship("InventoryLot")
    product = relationship("Product")

    def __repr__(self):
        return f"<InventoryTransaction {self.transaction_type}: {self.quantity}>"
