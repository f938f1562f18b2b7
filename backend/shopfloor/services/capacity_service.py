"""
Capacity Scheduling Service

Reserves machine time for work orders. Each machine holds an ordered set of
active allocations over half-open windows [start, end); two active
allocations on the same machine never overlap.

Assign and release on one machine are serialized (per-machine critical
section) so two overlapping requests cannot both pass the overlap check.
Different machines schedule in parallel.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.orm import Session

from shopfloor.core.clock import utcnow
from shopfloor.core.locks import MACHINE, KeyedLocks, resource_locks
from shopfloor.exceptions import (
    BusinessRuleError,
    InvalidIntervalError,
    NotFoundError,
    SchedulingConflictError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models import Machine, MachineAllocation

logger = get_logger(__name__)


class CapacityScheduler:
    """Per-machine interval reservations for work orders"""

    def __init__(self, db: Session, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or resource_locks

    @staticmethod
    def validate_interval(start: datetime, end: datetime) -> None:
        if start is None or end is None or end <= start:
            raise InvalidIntervalError(start, end)

    def get_machine(self, machine_id: int) -> Machine:
        machine = self.db.get(Machine, machine_id)
        if not machine:
            raise NotFoundError("Machine", machine_id)
        return machine

    def active_allocation(self, work_order_id: int, for_update: bool = False) -> Optional[MachineAllocation]:
        query = self.db.query(MachineAllocation).filter(
            MachineAllocation.work_order_id == work_order_id,
            MachineAllocation.active.is_(True),
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def _lock_machines(self, machine_ids) -> None:
        """Row-lock machines in id order so a free window is guarded across processes too."""
        for machine_id in sorted(set(machine_ids)):
            self.db.query(Machine).filter(Machine.id == machine_id).with_for_update().one()

    def _first_conflict(
        self, machine_id: int, start: datetime, end: datetime, work_order_id: int
    ) -> Optional[MachineAllocation]:
        return (
            self.db.query(MachineAllocation)
            .filter(
                MachineAllocation.machine_id == machine_id,
                MachineAllocation.active.is_(True),
                MachineAllocation.work_order_id != work_order_id,
                MachineAllocation.start_at < end,
                MachineAllocation.end_at > start,
            )
            .order_by(MachineAllocation.start_at, MachineAllocation.id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def assign(
        self,
        work_order_id: int,
        machine_id: int,
        start: datetime,
        end: datetime,
        commit: bool = True,
    ) -> MachineAllocation:
        """
        Reserve ``machine_id`` for ``work_order_id`` over [start, end).

        A work order that already holds an allocation is moved: the new window
        is checked first and the old allocation is only released once the new
        one is known to fit, in the same transaction.

        Raises:
            InvalidIntervalError: end <= start
            NotFoundError: unknown machine
            BusinessRuleError: machine is not available for scheduling
            SchedulingConflictError: overlaps another work order's allocation
        """
        self.validate_interval(start, end)
        machine = self.get_machine(machine_id)
        if not machine.is_available:
            raise BusinessRuleError(
                f"Machine {machine.code} is not available for scheduling (status: {machine.status})",
                rule="machine_available",
                details={"machine_id": machine_id, "status": machine.status},
            )

        previous = self.active_allocation(work_order_id)
        machine_ids = {machine_id}
        if previous is not None:
            machine_ids.add(previous.machine_id)

        with self.locks.hold(MACHINE, *machine_ids):
            try:
                self._lock_machines(machine_ids)
                previous = self.active_allocation(work_order_id, for_update=True)
                conflict = self._first_conflict(machine_id, start, end, work_order_id)
                if conflict is not None:
                    logger.warning(
                        "Scheduling conflict",
                        extra={
                            "machine_id": machine_id,
                            "work_order_id": work_order_id,
                            "conflicting_work_order_id": conflict.work_order_id,
                        },
                    )
                    raise SchedulingConflictError(machine_id, conflict.work_order_id)

                if previous is not None:
                    previous.active = False
                    previous.released_at = utcnow()

                allocation = MachineAllocation(
                    machine_id=machine_id,
                    work_order_id=work_order_id,
                    start_at=start,
                    end_at=end,
                    active=True,
                )
                self.db.add(allocation)
                if commit:
                    self.db.commit()
                else:
                    self.db.flush()
            except Exception:
                if commit:
                    self.db.rollback()
                raise

        logger.info(
            "Machine allocated",
            extra={
                "machine_id": machine_id,
                "work_order_id": work_order_id,
                "start": start,
                "end": end,
                "moved_from_machine_id": previous.machine_id if previous is not None else None,
            },
        )
        return allocation

    def release(self, work_order_id: int, commit: bool = True) -> bool:
        """Free the allocation held by a work order; False if it held none."""
        allocations = (
            self.db.query(MachineAllocation)
            .filter(
                MachineAllocation.work_order_id == work_order_id,
                MachineAllocation.active.is_(True),
            )
            .all()
        )
        if not allocations:
            return False

        with self.locks.hold(MACHINE, *(a.machine_id for a in allocations)):
            try:
                self._lock_machines(a.machine_id for a in allocations)
                now = utcnow()
                for allocation in allocations:
                    allocation.active = False
                    allocation.released_at = now
                if commit:
                    self.db.commit()
                else:
                    self.db.flush()
            except Exception:
                if commit:
                    self.db.rollback()
                raise

        logger.info("Machine allocation released", extra={"work_order_id": work_order_id})
        return True

    def allocations_for(
        self,
        machine_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[MachineAllocation]:
        """Active allocations on a machine ordered by start, optionally limited to a window."""
        query = self.db.query(MachineAllocation).filter(
            MachineAllocation.machine_id == machine_id,
            MachineAllocation.active.is_(True),
        )
        if end is not None:
            query = query.filter(MachineAllocation.start_at < end)
        if start is not None:
            query = query.filter(MachineAllocation.end_at > start)
        return query.order_by(MachineAllocation.start_at, MachineAllocation.id).all()

    def find_earliest_slot(
        self, machine_id: int, duration: timedelta, not_before: Optional[datetime] = None
    ) -> datetime:
        """Earliest start >= not_before where ``duration`` fits between allocations."""
        if duration <= timedelta(0):
            raise ValidationError("Duration must be positive", field="duration", value=duration)
        self.get_machine(machine_id)

        candidate = not_before or utcnow()
        for allocation in self.allocations_for(machine_id, start=candidate):
            if allocation.start_at >= candidate + duration:
                break
            candidate = max(candidate, allocation.end_at)
        return candidate

    def utilization(self, machine_id: int, start: datetime, end: datetime) -> Decimal:
        """Percentage of [start, end) booked on the machine, to two decimals."""
        self.validate_interval(start, end)
        self.get_machine(machine_id)

        booked = timedelta(0)
        for allocation in self.allocations_for(machine_id, start=start, end=end):
            booked += min(allocation.end_at, end) - max(allocation.start_at, start)

        percent = Decimal(str(booked.total_seconds())) / Decimal(str((end - start).total_seconds())) * 100
        return percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
