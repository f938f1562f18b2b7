"""
Inventory Ledger Service

Owns every inventory lot. All stock movements go through this service:

- allocate: soft-reserve unreserved stock (no lot is touched)
- consume: durably draw lots down, earliest expiry first, else oldest first
- produce / receive: create new lots

Each product's lot set is a critical section: allocate, consume and produce
for one product are serialized, so two callers can never both see enough
stock and together overdraw it. Every movement writes an InventoryTransaction
and emits a LotMovement event once the transaction has committed.

Pass ``commit=False`` to run inside a caller-managed transaction (the work
order engine); the caller then commits, or rolls back and calls
``discard_pending_events()``.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import case
from sqlalchemy.orm import Session

from shopfloor.core.clock import utcnow
from shopfloor.core.locks import PRODUCT, KeyedLocks, resource_locks
from shopfloor.exceptions import (
    InsufficientStockError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models import InventoryLot, InventoryReservation, InventoryTransaction, Product
from shopfloor.services.bom_service import to_decimal
from shopfloor.services.event_service import EventPublisher, LotMovement, get_event_publisher

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class LotDraw:
    """Quantity taken from one lot by a consumption"""
    lot_id: int
    lot_number: str
    quantity: Decimal
    unit_cost: Decimal = ZERO


@dataclass
class ConsumptionResult:
    product_id: int
    consumed_quantity: Decimal
    method: str  # FIFO, FEFO, MANUAL
    draws: List[LotDraw] = field(default_factory=list)

    @property
    def total_cost(self) -> Decimal:
        return sum((d.quantity * d.unit_cost for d in self.draws), ZERO)


def generate_lot_number(prefix: str = "LOT") -> str:
    """Lot number like LOT-20250114-3F9A1C2B"""
    return f"{prefix}-{utcnow():%Y%m%d}-{uuid4().hex[:8].upper()}"


class InventoryLedger:
    """Lot-level inventory with reservations and FIFO/FEFO consumption"""

    def __init__(
        self,
        db: Session,
        publisher: Optional[EventPublisher] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.db = db
        self.publisher = publisher or get_event_publisher()
        self.locks = locks or resource_locks
        self._pending_events: List[LotMovement] = []

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    def _finish(self, commit: bool) -> None:
        if commit:
            self.db.commit()
            self.publish_pending_events()
        else:
            self.db.flush()

    def _abort(self, commit: bool) -> None:
        if commit:
            self.db.rollback()
            self.discard_pending_events()

    def publish_pending_events(self) -> None:
        events, self._pending_events = self._pending_events, []
        self.publisher.publish_all(events)

    def discard_pending_events(self) -> None:
        self._pending_events = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def lots_for(self, product_id: int, for_update: bool = False) -> List[InventoryLot]:
        """Active lots with stock, in allocation precedence order."""
        query = (
            self.db.query(InventoryLot)
            .filter(
                InventoryLot.product_id == product_id,
                InventoryLot.status == "active",
                InventoryLot.quantity > 0,
            )
            .order_by(
                case((InventoryLot.expires_at.is_(None), 1), else_=0),
                InventoryLot.expires_at,
                InventoryLot.created_at,
                InventoryLot.id,
            )
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.all()

    def _active_reservations(self, product_id: int, for_update: bool = False) -> List[InventoryReservation]:
        query = self.db.query(InventoryReservation).filter(
            InventoryReservation.product_id == product_id,
            InventoryReservation.status == "active",
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.all()

    def on_hand(self, product_id: int) -> Decimal:
        return sum((Decimal(lot.quantity) for lot in self.lots_for(product_id)), ZERO)

    def reserved(self, product_id: int) -> Decimal:
        return sum(
            (Decimal(r.remaining_quantity) for r in self._active_reservations(product_id)), ZERO
        )

    def available_to_promise(self, product_id: int) -> Decimal:
        """On hand minus stock already promised to active reservations."""
        return self.on_hand(product_id) - self.reserved(product_id)

    def reservations_for_work_order(self, work_order_id: int) -> List[InventoryReservation]:
        return (
            self.db.query(InventoryReservation)
            .filter(
                InventoryReservation.work_order_id == work_order_id,
                InventoryReservation.status == "active",
            )
            .order_by(InventoryReservation.product_id)
            .all()
        )

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def _allocate_locked(
        self, product_id: int, quantity: Decimal, work_order_id: Optional[int]
    ) -> InventoryReservation:
        self._get_product(product_id)
        on_hand = sum((Decimal(lot.quantity) for lot in self.lots_for(product_id, for_update=True)), ZERO)
        reserved = sum(
            (Decimal(r.remaining_quantity) for r in self._active_reservations(product_id, for_update=True)),
            ZERO,
        )
        available = on_hand - reserved
        if quantity > available:
            logger.warning(
                "Allocation refused: insufficient stock",
                extra={"product_id": product_id, "requested": quantity, "available": available},
            )
            raise InsufficientStockError(product_id, requested=quantity, available=available)

        reservation = InventoryReservation(
            token=str(uuid4()),
            product_id=product_id,
            work_order_id=work_order_id,
            quantity=quantity,
            remaining_quantity=quantity,
            status="active",
        )
        self.db.add(reservation)
        return reservation

    def allocate(
        self,
        product_id: int,
        quantity,
        work_order_id: Optional[int] = None,
        commit: bool = True,
    ) -> InventoryReservation:
        """
        Soft-reserve ``quantity`` of a product against unreserved stock.

        Returns the reservation; its ``token`` can be passed to consume().

        Raises:
            InsufficientStockError: available-to-promise is below ``quantity``
        """
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValidationError("Allocation quantity must be positive", field="quantity", value=quantity)

        with self.locks.hold(PRODUCT, product_id):
            try:
                reservation = self._allocate_locked(product_id, quantity, work_order_id)
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise

        logger.info(
            "Stock allocated",
            extra={"product_id": product_id, "quantity": quantity, "token": reservation.token},
        )
        return reservation

    def allocate_many(
        self,
        requirements: Iterable[Tuple[int, Decimal]],
        work_order_id: Optional[int] = None,
        commit: bool = True,
    ) -> List[InventoryReservation]:
        """All-or-nothing allocation of several products (locked in product-id order)."""
        wanted = {}
        for product_id, quantity in requirements:
            quantity = to_decimal(quantity)
            if quantity <= 0:
                continue
            wanted[product_id] = wanted.get(product_id, ZERO) + quantity

        with self.locks.hold(PRODUCT, *wanted):
            try:
                reservations = [
                    self._allocate_locked(product_id, wanted[product_id], work_order_id)
                    for product_id in sorted(wanted)
                ]
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise
        return reservations

    def _release(self, reservation: InventoryReservation) -> None:
        reservation.status = "released"
        reservation.closed_at = utcnow()

    def release_reservation(self, token: str, commit: bool = True) -> InventoryReservation:
        reservation = self.db.query(InventoryReservation).filter(InventoryReservation.token == token).first()
        if not reservation:
            raise NotFoundError("Reservation", token)

        with self.locks.hold(PRODUCT, reservation.product_id):
            try:
                if reservation.status == "active":
                    self._release(reservation)
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise
        return reservation

    def release_for_work_order(self, work_order_id: int, commit: bool = True) -> int:
        """Release every unconsumed reservation held by a work order."""
        reservations = self.reservations_for_work_order(work_order_id)
        with self.locks.hold(PRODUCT, *(r.product_id for r in reservations)):
            try:
                for reservation in reservations:
                    self._release(reservation)
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise

        if reservations:
            logger.info(
                "Reservations released",
                extra={"work_order_id": work_order_id, "count": len(reservations)},
            )
        return len(reservations)

    # ------------------------------------------------------------------
    # Lot movements
    # ------------------------------------------------------------------

    def _record(
        self,
        lot: InventoryLot,
        transaction_type: str,
        delta: Decimal,
        reference_type: Optional[str],
        reference_id: Optional[int],
        notes: Optional[str],
        created_by: Optional[str],
    ) -> None:
        self.db.add(
            InventoryTransaction(
                lot_id=lot.id,
                product_id=lot.product_id,
                transaction_type=transaction_type,
                reference_type=reference_type,
                reference_id=reference_id,
                quantity=delta,
                cost_per_unit=lot.unit_cost,
                notes=notes,
                created_by=created_by,
            )
        )
        self._pending_events.append(
            LotMovement(lot_id=lot.id, product_id=lot.product_id, delta=delta, reason=transaction_type)
        )

    def consume(
        self,
        product_id: int,
        quantity,
        reservation_token: Optional[str] = None,
        lot_id: Optional[int] = None,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        created_by: Optional[str] = None,
        commit: bool = True,
    ) -> ConsumptionResult:
        """
        Durably draw ``quantity`` of a product out of its lots.

        Lots are taken earliest-expiry first, then oldest first. With
        ``reservation_token`` the call may use stock held by that reservation
        (and draws it down); otherwise only unreserved stock is usable.
        ``lot_id`` selects one lot manually and requires a ``reason``.

        Either the whole quantity is consumed or nothing is.

        Raises:
            InsufficientStockError, ValidationError, NotFoundError,
            InvariantViolationError
        """
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValidationError("Consumption quantity must be positive", field="quantity", value=quantity)
        if lot_id is not None and not reason:
            raise ValidationError("Reason is required for manual lot selection", field="reason")

        with self.locks.hold(PRODUCT, product_id):
            try:
                result = self._consume_locked(
                    product_id, quantity, reservation_token, lot_id, reason,
                    reference_type, reference_id, created_by,
                )
                self._finish(commit)
            except InvariantViolationError:
                logger.error(
                    "Consumption aborted on invariant violation",
                    extra={"product_id": product_id, "quantity": quantity},
                    exc_info=True,
                )
                self._abort(commit)
                raise
            except Exception:
                self._abort(commit)
                raise

        logger.info(
            "Stock consumed",
            extra={
                "product_id": product_id,
                "quantity": quantity,
                "method": result.method,
                "lots": [d.lot_number for d in result.draws],
            },
        )
        return result

    def _consume_locked(
        self,
        product_id: int,
        quantity: Decimal,
        reservation_token: Optional[str],
        lot_id: Optional[int],
        reason: Optional[str],
        reference_type: Optional[str],
        reference_id: Optional[int],
        created_by: Optional[str],
    ) -> ConsumptionResult:
        self._get_product(product_id)
        lots = self.lots_for(product_id, for_update=True)
        reservations = self._active_reservations(product_id, for_update=True)

        reservation = None
        if reservation_token:
            reservation = next((r for r in reservations if r.token == reservation_token), None)
            if reservation is None:
                existing = (
                    self.db.query(InventoryReservation)
                    .filter(InventoryReservation.token == reservation_token)
                    .first()
                )
                if not existing:
                    raise NotFoundError("Reservation", reservation_token)
                if existing.product_id != product_id:
                    raise ValidationError("Reservation belongs to another product", field="reservation_token")
                raise ValidationError(
                    f"Reservation is {existing.status}", field="reservation_token", value=reservation_token
                )

        on_hand = sum((Decimal(lot.quantity) for lot in lots), ZERO)
        reserved_by_others = sum(
            (Decimal(r.remaining_quantity) for r in reservations if r is not reservation), ZERO
        )
        available = on_hand - reserved_by_others

        if lot_id is not None:
            lot = next((candidate for candidate in lots if candidate.id == lot_id), None)
            if lot is None:
                selected = self.db.get(InventoryLot, lot_id)
                if not selected or selected.product_id != product_id:
                    raise ValidationError("Invalid lot selected", field="lot_id", value=lot_id)
                raise InsufficientStockError(product_id, requested=quantity, available=ZERO)
            if Decimal(lot.quantity) < quantity:
                raise InsufficientStockError(product_id, requested=quantity, available=Decimal(lot.quantity))
            lots = [lot]

        if quantity > available:
            logger.warning(
                "Consumption refused: insufficient stock",
                extra={"product_id": product_id, "requested": quantity, "available": available},
            )
            raise InsufficientStockError(product_id, requested=quantity, available=available)

        if lot_id is not None:
            method = "MANUAL"
        elif any(lot.expires_at is not None for lot in lots):
            method = "FEFO"
        else:
            method = "FIFO"
        notes = f"Manual lot selection: {reason}" if lot_id is not None else (reason or f"{method} consumption")

        result = ConsumptionResult(product_id=product_id, consumed_quantity=quantity, method=method)
        remaining = quantity
        for lot in lots:
            if remaining <= 0:
                break
            lot_quantity = Decimal(lot.quantity)
            take = min(lot_quantity, remaining)
            if take <= 0:
                continue
            new_quantity = lot_quantity - take
            if new_quantity < 0:
                raise InvariantViolationError(
                    f"Lot {lot.lot_number} would go negative",
                    details={"lot_id": lot.id, "quantity": str(lot_quantity), "take": str(take)},
                )
            lot.quantity = new_quantity
            if new_quantity == 0:
                lot.status = "depleted"
            self._record(lot, "consumption", -take, reference_type, reference_id, notes, created_by)
            result.draws.append(
                LotDraw(
                    lot_id=lot.id,
                    lot_number=lot.lot_number,
                    quantity=take,
                    unit_cost=Decimal(lot.unit_cost or 0),
                )
            )
            remaining -= take

        if remaining > 0:
            raise InvariantViolationError(
                f"Lots for product {product_id} could not cover a checked consumption",
                details={"product_id": product_id, "requested": str(quantity), "uncovered": str(remaining)},
            )

        if reservation is not None:
            drawn = min(Decimal(reservation.remaining_quantity), quantity)
            reservation.remaining_quantity = Decimal(reservation.remaining_quantity) - drawn
            if reservation.remaining_quantity == 0:
                reservation.status = "consumed"
                reservation.closed_at = utcnow()

        return result

    def _create_lot(
        self,
        product_id: int,
        quantity: Decimal,
        transaction_type: str,
        unit_cost: Optional[Decimal],
        expires_at: Optional[datetime],
        lot_number: Optional[str],
        source_work_order_id: Optional[int],
        created_at: Optional[datetime],
        created_by: Optional[str],
    ) -> InventoryLot:
        product = self._get_product(product_id)
        if not product.is_stocked:
            raise ValidationError(
                f"Product {product.code} is not stocked in lots", field="product_id", value=product_id
            )

        lot = InventoryLot(
            lot_number=lot_number or generate_lot_number(),
            product_id=product_id,
            quantity=quantity,
            initial_quantity=quantity,
            unit_cost=unit_cost,
            expires_at=expires_at,
            source_work_order_id=source_work_order_id,
            status="active" if quantity > 0 else "depleted",
            created_at=created_at or utcnow(),
        )
        self.db.add(lot)
        self.db.flush()

        if transaction_type == "production":
            reference_type, reference_id = "work_order", source_work_order_id
        else:
            reference_type, reference_id = "purchase_receipt", None
        self._record(lot, transaction_type, quantity, reference_type, reference_id, None, created_by)
        return lot

    def produce(
        self,
        product_id: int,
        quantity,
        source_work_order_id: Optional[int] = None,
        unit_cost=None,
        created_by: Optional[str] = None,
        commit: bool = True,
    ) -> InventoryLot:
        """Create a new lot of produced output, tagged with its work order."""
        quantity = to_decimal(quantity)
        if quantity < 0:
            raise ValidationError("Produced quantity cannot be negative", field="quantity", value=quantity)
        unit_cost = to_decimal(unit_cost, "unit_cost") if unit_cost is not None else None

        with self.locks.hold(PRODUCT, product_id):
            try:
                lot = self._create_lot(
                    product_id, quantity, "production", unit_cost, None, None,
                    source_work_order_id, None, created_by,
                )
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise

        logger.info(
            "Lot produced",
            extra={
                "product_id": product_id,
                "lot_number": lot.lot_number,
                "quantity": quantity,
                "work_order_id": source_work_order_id,
            },
        )
        return lot

    def receive(
        self,
        product_id: int,
        quantity,
        unit_cost=None,
        expires_at: Optional[datetime] = None,
        lot_number: Optional[str] = None,
        received_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        commit: bool = True,
    ) -> InventoryLot:
        """Book a purchased/received lot into stock."""
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValidationError("Received quantity must be positive", field="quantity", value=quantity)
        unit_cost = to_decimal(unit_cost, "unit_cost") if unit_cost is not None else None

        with self.locks.hold(PRODUCT, product_id):
            try:
                lot = self._create_lot(
                    product_id, quantity, "receipt", unit_cost, expires_at, lot_number,
                    None, received_at, created_by,
                )
                self._finish(commit)
            except Exception:
                self._abort(commit)
                raise

        logger.info(
            "Lot received",
            extra={"product_id": product_id, "lot_number": lot.lot_number, "quantity": quantity},
        )
        return lot
