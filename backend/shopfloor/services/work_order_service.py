"""
Work Order Engine

Drives work orders through their lifecycle and coordinates the other
services on each transition:

    create            -> PLANNED
    schedule          material check + machine allocation   -> SCHEDULED
    start             reserve BOM materials at planned qty  -> IN_PROGRESS
    record_production consume materials, produce output lot -> COMPLETED when done
    hold / resume     pause without releasing anything
    cancel            release machine and reservations      -> CANCELLED

Every transition on one work order runs under that order's lock and inside a
single database transaction; status-change and lot-movement events are
published only after the commit. Locks are always nested
work order -> products (sorted) -> machine.
"""
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session, joinedload

from shopfloor.core.clock import utcnow
from shopfloor.core.locks import MACHINE, PRODUCT, WORK_ORDER, KeyedLocks, resource_locks
from shopfloor.core.settings import get_settings
from shopfloor.core.status_config import (
    SCHEDULED_STATUSES,
    WorkOrderStatus,
    is_terminal,
    require_status,
    validate_work_order_transition,
)
from shopfloor.exceptions import (
    IllegalTransitionError,
    MaterialShortageError,
    NotFoundError,
    OverProductionError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models import BOMItem, InventoryTransaction, Product, ProductionRecord, WorkOrder
from shopfloor.schemas.work_order import ProductionEntry, WorkOrderCreate, WorkOrderProgress
from shopfloor.services.bom_service import BOMResolver, to_decimal
from shopfloor.services.capacity_service import CapacityScheduler
from shopfloor.services.event_service import EventPublisher, WorkOrderStatusChanged, get_event_publisher
from shopfloor.services.inventory_service import InventoryLedger
from shopfloor.services.mrp import MaterialRequirementsChecker, RequirementCheckResult

logger = get_logger(__name__)

ZERO = Decimal("0")

# Lock namespace for work order number generation
WORK_ORDER_CODE = "work_order_code"


def _validated(schema, data: dict):
    """Validate input against a schema, raising the domain ValidationError."""
    try:
        return schema.model_validate(data)
    except SchemaValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"])
        raise ValidationError(f"{field}: {error['msg']}", field=field, value=error.get("input"))


class WorkOrderEngine:
    """Work order state machine over the BOM, inventory and capacity services"""

    def __init__(
        self,
        db: Session,
        publisher: Optional[EventPublisher] = None,
        tolerance=None,
        locks: Optional[KeyedLocks] = None,
        max_depth: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.publisher = publisher or get_event_publisher()
        self.locks = locks or resource_locks
        self.tolerance = to_decimal(
            tolerance if tolerance is not None else settings.OVERPRODUCTION_TOLERANCE, "tolerance"
        )
        if self.tolerance < 0:
            raise ValidationError("Over-production tolerance cannot be negative", field="tolerance")
        self.default_priority = settings.WORK_ORDER_DEFAULT_PRIORITY

        self.resolver = BOMResolver(db, max_depth=max_depth)
        self.ledger = InventoryLedger(db, publisher=self.publisher, locks=self.locks)
        self.checker = MaterialRequirementsChecker(db, resolver=self.resolver, ledger=self.ledger)
        self.scheduler = CapacityScheduler(db, locks=self.locks)
        self._pending_events: List[WorkOrderStatusChanged] = []

    # ------------------------------------------------------------------
    # Transaction and status helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        """Roll back and drop pending events if the block fails before _commit()."""
        try:
            yield
        except Exception:
            self.db.rollback()
            self.ledger.discard_pending_events()
            self._pending_events = []
            raise

    def _commit(self) -> None:
        """Commit, then publish the events the transaction produced."""
        self.db.commit()
        self.ledger.publish_pending_events()
        events, self._pending_events = self._pending_events, []
        self.publisher.publish_all(events)

    def _get_locked(self, work_order_id: int) -> WorkOrder:
        work_order = (
            self.db.query(WorkOrder)
            .filter(WorkOrder.id == work_order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not work_order:
            raise NotFoundError("WorkOrder", work_order_id)
        return work_order

    def _set_status(self, work_order: WorkOrder, new_status: WorkOrderStatus, operation: str) -> None:
        previous = work_order.status
        validate_work_order_transition(previous, new_status.value, operation)
        work_order.status = new_status.value
        self._pending_events.append(
            WorkOrderStatusChanged(
                work_order_id=work_order.id, previous_status=previous, new_status=new_status.value
            )
        )
        logger.info(
            "Work order status changed",
            extra={
                "work_order_id": work_order.id,
                "work_order_code": work_order.code,
                "from_status": previous,
                "to_status": new_status.value,
            },
        )

    def _generate_code(self) -> str:
        """Next work order code in format WO-YYYYMM-NNNN"""
        prefix = f"WO-{utcnow():%Y%m}-"
        last = (
            self.db.query(WorkOrder.code)
            .filter(WorkOrder.code.like(f"{prefix}%"))
            .order_by(WorkOrder.code.desc())
            .first()
        )
        next_num = int(last[0].rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{next_num:04d}"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, work_order_id: int) -> WorkOrder:
        work_order = self.db.get(WorkOrder, work_order_id)
        if not work_order:
            raise NotFoundError("WorkOrder", work_order_id)
        return work_order

    def progress(self, work_order_id: int) -> WorkOrderProgress:
        work_order = self.get(work_order_id)
        return WorkOrderProgress(
            planned_quantity=Decimal(work_order.planned_quantity),
            produced_quantity=Decimal(work_order.produced_quantity),
            scrap_quantity=Decimal(work_order.scrap_quantity),
            remaining_quantity=work_order.quantity_remaining,
            progress_percentage=min(work_order.completion_percent, 100.0),
        )

    def list_work_orders(
        self,
        status: Optional[Union[str, WorkOrderStatus]] = None,
        machine_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ) -> List[WorkOrder]:
        """Work orders in dispatch order: priority, then creation time."""
        query = self.db.query(WorkOrder)
        if status is not None:
            query = query.filter(WorkOrder.status == WorkOrderStatus(status).value)
        if machine_id is not None:
            query = query.filter(WorkOrder.machine_id == machine_id)
        if product_id is not None:
            query = query.filter(WorkOrder.product_id == product_id)
        return query.order_by(WorkOrder.priority, WorkOrder.created_at, WorkOrder.id).all()

    def material_usage(self, work_order_id: int) -> List[InventoryTransaction]:
        """Consumption transactions booked against a work order, newest first, with their lots."""
        self.get(work_order_id)
        return (
            self.db.query(InventoryTransaction)
            .options(joinedload(InventoryTransaction.lot))
            .filter(
                InventoryTransaction.reference_type == "work_order",
                InventoryTransaction.reference_id == work_order_id,
                InventoryTransaction.transaction_type == "consumption",
            )
            .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
            .all()
        )

    def timeline(self, work_order_id: int) -> List[ProductionRecord]:
        """Production recordings of a work order in the order they were made."""
        self.get(work_order_id)
        return (
            self.db.query(ProductionRecord)
            .filter(ProductionRecord.work_order_id == work_order_id)
            .order_by(ProductionRecord.created_at, ProductionRecord.id)
            .all()
        )

    def check(self, product_id: int, target_quantity) -> RequirementCheckResult:
        return self.checker.check(product_id, target_quantity)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(self, data: Union[WorkOrderCreate, dict], created_by: Optional[str] = None) -> WorkOrder:
        """
        Create a PLANNED work order.

        Raises:
            NotFoundError: unknown product or BOM item
            ValidationError: BOM item of another product, bad planned window
        """
        if not isinstance(data, WorkOrderCreate):
            data = _validated(WorkOrderCreate, data)

        product = self.db.get(Product, data.product_id)
        if not product:
            raise NotFoundError("Product", data.product_id)
        if data.bom_item_id is not None:
            bom_item = self.db.get(BOMItem, data.bom_item_id)
            if not bom_item:
                raise NotFoundError("BOMItem", data.bom_item_id)
            if bom_item.parent_product_id != product.id:
                raise ValidationError(
                    f"BOM item {bom_item.id} does not belong to product {product.code}",
                    field="bom_item_id",
                    value=data.bom_item_id,
                )
        if data.planned_start is not None and data.planned_end is not None:
            self.scheduler.validate_interval(data.planned_start, data.planned_end)

        with self.locks.hold(WORK_ORDER_CODE, "WO"), self._unit_of_work():
            work_order = WorkOrder(
                code=self._generate_code(),
                product_id=product.id,
                bom_item_id=data.bom_item_id,
                sales_order_ref=data.sales_order_ref,
                planned_quantity=data.planned_quantity,
                produced_quantity=ZERO,
                scrap_quantity=ZERO,
                status=WorkOrderStatus.PLANNED.value,
                priority=data.priority if data.priority is not None else self.default_priority,
                planned_start=data.planned_start,
                planned_end=data.planned_end,
                notes=data.notes,
                created_by=created_by,
            )
            self.db.add(work_order)
            self.db.flush()
            self._pending_events.append(
                WorkOrderStatusChanged(
                    work_order_id=work_order.id,
                    previous_status=None,
                    new_status=WorkOrderStatus.PLANNED.value,
                )
            )
            self._commit()

        logger.info(
            "Work order created",
            extra={
                "work_order_id": work_order.id,
                "work_order_code": work_order.code,
                "product_id": product.id,
                "planned_quantity": data.planned_quantity,
            },
        )
        return work_order

    def _machines_for(self, work_order: WorkOrder, machine_id: Optional[int] = None) -> set:
        """Machines whose allocation sets a transition on ``work_order`` may touch."""
        machine_ids = {machine_id, work_order.machine_id}
        allocation = self.scheduler.active_allocation(work_order.id)
        if allocation is not None:
            machine_ids.add(allocation.machine_id)
        machine_ids.discard(None)
        return machine_ids

    def schedule(self, work_order_id: int, machine_id: int, start, end) -> WorkOrder:
        """
        PLANNED -> SCHEDULED once materials are available and the machine window is free.

        On a shortage or a conflict the order stays PLANNED and may be retried.

        Raises:
            IllegalTransitionError, InvalidIntervalError, MaterialShortageError,
            SchedulingConflictError, NotFoundError, BusinessRuleError
        """
        self.scheduler.validate_interval(start, end)
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            require_status(work_order.status, WorkOrderStatus.PLANNED, "schedule")

            result = self.checker.check_build(work_order.product_id, work_order.planned_quantity)
            if not result.available:
                logger.warning(
                    "Scheduling refused: material shortage",
                    extra={
                        "work_order_id": work_order.id,
                        "shortages": {s.component_code: s.shortage for s in result.shortages},
                    },
                )
                raise MaterialShortageError(result.shortages)

            with self.locks.hold(MACHINE, *self._machines_for(work_order, machine_id)):
                self.scheduler.assign(work_order.id, machine_id, start, end, commit=False)
                work_order.machine_id = machine_id
                work_order.planned_start = start
                work_order.planned_end = end
                self._set_status(work_order, WorkOrderStatus.SCHEDULED, "schedule")
                self._commit()
        return work_order

    def reschedule(self, work_order_id: int, machine_id: int, start, end) -> WorkOrder:
        """Move a scheduled, running or held order to another machine window."""
        self.scheduler.validate_interval(start, end)
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            if WorkOrderStatus(work_order.status) not in SCHEDULED_STATUSES:
                raise IllegalTransitionError(
                    f"Cannot reschedule work order in status '{work_order.status}'",
                    current_state=work_order.status,
                    allowed_states=sorted(s.value for s in SCHEDULED_STATUSES),
                )
            with self.locks.hold(MACHINE, *self._machines_for(work_order, machine_id)):
                self.scheduler.assign(work_order.id, machine_id, start, end, commit=False)
                work_order.machine_id = machine_id
                work_order.planned_start = start
                work_order.planned_end = end
                self._commit()

        logger.info(
            "Work order rescheduled",
            extra={"work_order_id": work_order_id, "machine_id": machine_id, "start": start, "end": end},
        )
        return work_order

    def start(self, work_order_id: int) -> WorkOrder:
        """
        SCHEDULED -> IN_PROGRESS, reserving the full BOM requirement at planned quantity.

        Raises:
            IllegalTransitionError, InsufficientStockError
        """
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            require_status(work_order.status, WorkOrderStatus.SCHEDULED, "start")

            materials = self.checker.consumed_materials(work_order.product_id, work_order.planned_quantity)
            with self.locks.hold(PRODUCT, *(m.component_product_id for m in materials)):
                self.ledger.allocate_many(
                    [(m.component_product_id, m.required_quantity) for m in materials],
                    work_order_id=work_order.id,
                    commit=False,
                )
                work_order.actual_start = utcnow()
                self._set_status(work_order, WorkOrderStatus.IN_PROGRESS, "start")
                self._commit()
        return work_order

    def record_production(
        self,
        work_order_id: int,
        produced_delta,
        scrap_delta=0,
        idempotency_key: Optional[str] = None,
        operator: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> WorkOrder:
        """
        Record output and scrap against an IN_PROGRESS order.

        Consumes materials for produced + scrap, books produced units into a
        new output lot and completes the order once produced reaches planned
        (or produced + scrap reaches planned + tolerance, after which nothing
        more can be recorded). Retrying with an already recorded
        ``idempotency_key`` returns the order unchanged.

        Raises:
            IllegalTransitionError, OverProductionError, InsufficientStockError,
            ValidationError
        """
        entry = _validated(
            ProductionEntry,
            {
                "produced_delta": to_decimal(produced_delta, "produced_delta"),
                "scrap_delta": to_decimal(scrap_delta, "scrap_delta"),
                "idempotency_key": idempotency_key,
                "operator": operator,
                "notes": notes,
            },
        )
        processed = entry.produced_delta + entry.scrap_delta
        if processed <= 0:
            raise ValidationError("Nothing to record: produced and scrap are both zero", field="produced_delta")

        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            if entry.idempotency_key and self._already_recorded(work_order.id, entry.idempotency_key):
                self._commit()
                logger.info(
                    "Duplicate production recording ignored",
                    extra={"work_order_id": work_order.id, "idempotency_key": entry.idempotency_key},
                )
                return work_order

            require_status(work_order.status, WorkOrderStatus.IN_PROGRESS, "record production on")
            self._check_overproduction(work_order, entry)

            materials = self.checker.consumed_materials(work_order.product_id, processed)
            reservations = {
                r.product_id: r for r in self.ledger.reservations_for_work_order(work_order.id)
            }
            product_ids = {m.component_product_id for m in materials} | set(reservations)
            product_ids.add(work_order.product_id)

            with self.locks.hold(PRODUCT, *product_ids), \
                    self.locks.hold(MACHINE, *self._machines_for(work_order)):
                self._record_locked(work_order, entry, materials, reservations)
                self._commit()
        return work_order

    def _already_recorded(self, work_order_id: int, idempotency_key: str) -> bool:
        return (
            self.db.query(ProductionRecord.id)
            .filter(
                ProductionRecord.work_order_id == work_order_id,
                ProductionRecord.idempotency_key == idempotency_key,
            )
            .first()
            is not None
        )

    def _check_overproduction(self, work_order: WorkOrder, entry: ProductionEntry) -> None:
        planned = Decimal(work_order.planned_quantity)
        attempted = (
            Decimal(work_order.produced_quantity) + entry.produced_delta
            + Decimal(work_order.scrap_quantity) + entry.scrap_delta
        )
        if attempted > planned + self.tolerance:
            logger.warning(
                "Production recording refused: over-production",
                extra={
                    "work_order_id": work_order.id,
                    "attempted": attempted,
                    "limit": planned + self.tolerance,
                },
            )
            raise OverProductionError(planned=planned, tolerance=self.tolerance, attempted=attempted)

    def _record_locked(self, work_order: WorkOrder, entry: ProductionEntry, materials, reservations) -> None:
        for material in materials:
            reservation = reservations.get(material.component_product_id)
            self.ledger.consume(
                material.component_product_id,
                material.required_quantity,
                reservation_token=reservation.token if reservation is not None else None,
                reference_type="work_order",
                reference_id=work_order.id,
                created_by=entry.operator,
                commit=False,
            )

        output_lot = None
        if entry.produced_delta > 0 and work_order.product.is_stocked:
            output_lot = self.ledger.produce(
                work_order.product_id,
                entry.produced_delta,
                source_work_order_id=work_order.id,
                created_by=entry.operator,
                commit=False,
            )

        self.db.add(
            ProductionRecord(
                work_order_id=work_order.id,
                produced_delta=entry.produced_delta,
                scrap_delta=entry.scrap_delta,
                idempotency_key=entry.idempotency_key,
                output_lot_id=output_lot.id if output_lot is not None else None,
                operator=entry.operator,
                notes=entry.notes,
            )
        )
        planned = Decimal(work_order.planned_quantity)
        produced = Decimal(work_order.produced_quantity) + entry.produced_delta
        scrap = Decimal(work_order.scrap_quantity) + entry.scrap_delta
        work_order.produced_quantity = produced
        work_order.scrap_quantity = scrap

        logger.info(
            "Production recorded",
            extra={
                "work_order_id": work_order.id,
                "produced_delta": entry.produced_delta,
                "scrap_delta": entry.scrap_delta,
                "produced_total": produced,
                "scrap_total": scrap,
            },
        )

        if produced >= planned or produced + scrap >= planned + self.tolerance:
            work_order.actual_end = utcnow()
            self._set_status(work_order, WorkOrderStatus.COMPLETED, "complete")
            self.ledger.release_for_work_order(work_order.id, commit=False)
            self.scheduler.release(work_order.id, commit=False)

    def hold(self, work_order_id: int, reason: Optional[str] = None) -> WorkOrder:
        """Pause a SCHEDULED or IN_PROGRESS order; reservations and machine time are kept."""
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            previous = work_order.status
            self._set_status(work_order, WorkOrderStatus.ON_HOLD, "hold")
            work_order.held_from_status = previous
            work_order.hold_reason = reason
            self._commit()

        if reason:
            logger.info("Work order held", extra={"work_order_id": work_order_id, "reason": reason})
        return work_order

    def resume(self, work_order_id: int) -> WorkOrder:
        """Return a held order to the status it was held from."""
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            require_status(work_order.status, WorkOrderStatus.ON_HOLD, "resume")
            target = WorkOrderStatus(work_order.held_from_status or WorkOrderStatus.SCHEDULED.value)
            self._set_status(work_order, target, "resume")
            work_order.held_from_status = None
            work_order.hold_reason = None
            self._commit()
        return work_order

    def cancel(self, work_order_id: int, reason: Optional[str] = None) -> WorkOrder:
        """
        Cancel from any non-terminal status.

        Releases the machine allocation and unconsumed reservations. Material
        already consumed stays consumed.
        """
        with self.locks.hold(WORK_ORDER, work_order_id), self._unit_of_work():
            work_order = self._get_locked(work_order_id)
            if is_terminal(work_order.status):
                raise IllegalTransitionError(
                    f"Cannot cancel work order in status '{work_order.status}'",
                    current_state=work_order.status,
                    target_state=WorkOrderStatus.CANCELLED.value,
                    allowed_states=[],
                )
            reserved_products = {r.product_id for r in self.ledger.reservations_for_work_order(work_order.id)}
            with self.locks.hold(PRODUCT, *reserved_products), \
                    self.locks.hold(MACHINE, *self._machines_for(work_order)):
                self.ledger.release_for_work_order(work_order.id, commit=False)
                self.scheduler.release(work_order.id, commit=False)
                work_order.cancel_reason = reason
                work_order.held_from_status = None
                work_order.hold_reason = None
                self._set_status(work_order, WorkOrderStatus.CANCELLED, "cancel")
                self._commit()
        return work_order
