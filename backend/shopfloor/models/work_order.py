"""
Work Order model

Work orders instruct the shop floor to produce a quantity of a product.
Integrates with:
- BOMs (materials reserved on start, consumed as production is recorded)
- Machines (a time window allocated on scheduling)
- Inventory lots (output lots tagged with the producing work order)

Work orders are never deleted once started; cancellation is a terminal status.
"""
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Text,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from shopfloor.core.clock import utcnow
from shopfloor.core.status_config import WorkOrderStatus
from shopfloor.db.base import Base


class WorkOrder(Base):
    """
    Work Order - the core execution entity.

    Lifecycle: planned -> scheduled -> in_progress -> completed
    Side branches: on_hold (from scheduled / in_progress), cancelled (from any non-terminal)
    """
    __tablename__ = "work_orders"
    __table_args__ = (
        CheckConstraint("planned_quantity > 0", name="ck_work_orders_planned_positive"),
        CheckConstraint("produced_quantity >= 0", name="ck_work_orders_produced_non_negative"),
        CheckConstraint("scrap_quantity >= 0", name="ck_work_orders_scrap_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)

    # References
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    bom_item_id = Column(Integer, ForeignKey('bom_items.id'), nullable=True)
    sales_order_ref = Column(String(100), nullable=True, index=True)
    machine_id = Column(Integer, ForeignKey('machines.id'), nullable=True, index=True)

    # Quantities
    planned_quantity = Column(Numeric(18, 4), nullable=False)
    produced_quantity = Column(Numeric(18, 4), default=0, nullable=False)
    scrap_quantity = Column(Numeric(18, 4), default=0, nullable=False)

    status = Column(String(50), default=WorkOrderStatus.PLANNED.value, nullable=False, index=True)
    # Status to return to on resume
    held_from_status = Column(String(50), nullable=True)
    hold_reason = Column(String(255), nullable=True)

    # Priority: lower = more urgent, ties broken by created_at
    priority = Column(Integer, default=5, nullable=False)

    # Scheduling
    planned_start = Column(DateTime, nullable=True)
    planned_end = Column(DateTime, nullable=True)
    actual_start = Column(DateTime, nullable=True)
    actual_end = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    # Metadata
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)

    # Relationships
    product = relationship("Product", back_populates="work_orders")
    machine = relationship("Machine")
    allocations = relationship("MachineAllocation", back_populates="work_order")
    production_records = relationship(
        "ProductionRecord", back_populates="work_order", order_by="ProductionRecord.id"
    )

    def __repr__(self):
        return f"<WorkOrder {self.code}: {self.planned_quantity} x {self.product.code if self.product else 'N/A'}>"

    @property
    def quantity_processed(self) -> Decimal:
        """Good plus scrapped units"""
        return Decimal(self.produced_quantity or 0) + Decimal(self.scrap_quantity or 0)

    @property
    def quantity_remaining(self) -> Decimal:
        """Units that can still be recorded without exceeding planned"""
        remaining = Decimal(self.planned_quantity or 0) - self.quantity_processed
        return max(remaining, Decimal("0"))

    @property
    def completion_percent(self) -> float:
        """Percentage complete"""
        if not self.planned_quantity:
            return 0.0
        return round(float(self.quantity_processed / Decimal(self.planned_quantity)) * 100, 1)

    @property
    def is_complete(self) -> bool:
        return self.status == WorkOrderStatus.COMPLETED.value


class ProductionRecord(Base):
    """One RecordProduction call against a work order"""
    __tablename__ = "production_records"
    __table_args__ = (
        UniqueConstraint("work_order_id", "idempotency_key", name="uq_production_records_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey('work_orders.id'), nullable=False, index=True)

    produced_delta = Column(Numeric(18, 4), nullable=False)
    scrap_delta = Column(Numeric(18, 4), nullable=False)

    # Client-supplied key to deduplicate retried requests
    idempotency_key = Column(String(100), nullable=True)

    output_lot_id = Column(Integer, ForeignKey('inventory_lots.id'), nullable=True)
    operator = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    work_order = relationship("WorkOrder", back_populates="production_records")
    output_lot = relationship("InventoryLot")

    def __repr__(self):
        return f"<ProductionRecord wo={self.work_order_id} +{self.produced_delta} scrap {self.scrap_delta}>"
