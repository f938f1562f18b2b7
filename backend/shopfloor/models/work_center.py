"""
Machine and allocation models for capacity scheduling.

A MachineAllocation reserves one machine for one work order over the
half-open window [start_at, end_at). Active allocations on the same machine
never overlap.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from shopfloor.core.clock import utcnow
from shopfloor.db.base import Base


class Machine(Base):
    """
    Physical machines on the shop floor.

    Examples:
    - "INJ-001" - injection molding press #1
    - "CNC-002" - CNC mill #2
    """
    __tablename__ = "machines"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    machine_type = Column(String(100), nullable=True)  # "injection_press", "cnc_mill", ...

    # Status: available, maintenance, offline
    status = Column(String(50), default="available", nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    allocations = relationship("MachineAllocation", back_populates="machine")

    def __repr__(self):
        return f"<Machine {self.code}: {self.name}>"

    @property
    def is_available(self):
        """True if new work may be scheduled onto this machine"""
        return bool(self.active) and self.status == "available"


class MachineAllocation(Base):
    """Time reservation of a machine by a work order"""
    __tablename__ = "machine_allocations"
    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_machine_allocations_interval"),
        Index("ix_machine_allocations_machine_window", "machine_id", "active", "start_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    machine_id = Column(Integer, ForeignKey('machines.id'), nullable=False, index=True)
    work_order_id = Column(Integer, ForeignKey('work_orders.id'), nullable=False, index=True)

    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)

    active = Column(Boolean, default=True, nullable=False)
    released_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    machine = relationship("Machine", back_populates="allocations")
    work_order = relationship("WorkOrder", back_populates="allocations")

    def __repr__(self):
        return f"<MachineAllocation machine={self.machine_id} wo={self.work_order_id} [{self.start_at}, {self.end_at})>"
