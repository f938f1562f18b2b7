"""
Concurrency tests against a file-backed SQLite database.

Each worker thread uses its own session; services share one lock registry
the way request handlers in one process share the module-level registry.
"""
import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import shopfloor.models  # noqa: F401
from shopfloor.core.locks import KeyedLocks
from shopfloor.db.base import Base
from shopfloor.exceptions import InsufficientStockError, SchedulingConflictError
from shopfloor.models import InventoryLot, MachineAllocation, ProductionRecord
from shopfloor.services.capacity_service import CapacityScheduler
from shopfloor.services.event_service import EventPublisher
from shopfloor.services.inventory_service import InventoryLedger
from shopfloor.services.work_order_service import WorkOrderEngine

from tests.factories import (
    create_test_lot,
    create_test_machine,
    create_test_product,
    create_test_work_order,
    create_widget_setup,
    hours,
)

WORKERS = 8


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'shopfloor.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def shared_locks():
    return KeyedLocks()


@pytest.fixture
def shared_publisher():
    return EventPublisher(maxsize=10000)


def run_concurrently(session_factory, worker, count=WORKERS):
    """Run ``worker(session, index)`` on ``count`` threads; return (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []
    guard = threading.Lock()

    def target(index):
        session = session_factory()
        try:
            barrier.wait()
            outcome = worker(session, index)
            with guard:
                results.append(outcome)
        except Exception as exc:
            with guard:
                errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors


def test_overlapping_assignments_on_one_machine(session_factory, shared_locks):
    with session_factory() as setup:
        machine_id = create_test_machine(setup).id
        order_ids = [create_test_work_order(setup).id for _ in range(WORKERS)]

    def worker(session, index):
        scheduler = CapacityScheduler(session, locks=shared_locks)
        return scheduler.assign(order_ids[index], machine_id, hours(index * 0.5), hours(index * 0.5 + 4)).id

    results, errors = run_concurrently(session_factory, worker)

    with session_factory() as check:
        active = (
            check.query(MachineAllocation)
            .filter(MachineAllocation.machine_id == machine_id, MachineAllocation.active.is_(True))
            .order_by(MachineAllocation.start_at)
            .all()
        )
    assert len(results) + len(errors) == WORKERS
    assert all(isinstance(e, SchedulingConflictError) for e in errors)
    assert len(active) == len(results)
    for earlier, later in zip(active, active[1:]):
        assert earlier.end_at <= later.start_at


def test_same_window_has_exactly_one_winner(session_factory, shared_locks):
    with session_factory() as setup:
        machine_id = create_test_machine(setup).id
        order_ids = [create_test_work_order(setup).id for _ in range(WORKERS)]

    def worker(session, index):
        return CapacityScheduler(session, locks=shared_locks).assign(
            order_ids[index], machine_id, hours(0), hours(2)
        ).id

    results, errors = run_concurrently(session_factory, worker)

    assert len(results) == 1
    assert len(errors) == WORKERS - 1
    assert all(isinstance(e, SchedulingConflictError) for e in errors)


def test_concurrent_consumption_never_overdraws(session_factory, shared_locks, shared_publisher):
    with session_factory() as setup:
        bolt = create_test_product(setup, code="BOLT")
        create_test_lot(setup, bolt, quantity=4)
        create_test_lot(setup, bolt, quantity=6)
        bolt_id = bolt.id

    def worker(session, index):
        ledger = InventoryLedger(session, publisher=shared_publisher, locks=shared_locks)
        return ledger.consume(bolt_id, 3).consumed_quantity

    results, errors = run_concurrently(session_factory, worker)

    assert len(results) == 3
    assert all(isinstance(e, InsufficientStockError) for e in errors)
    with session_factory() as check:
        quantities = [Decimal(lot.quantity) for lot in check.query(InventoryLot).all()]
    assert all(q >= 0 for q in quantities)
    assert sum(quantities) == Decimal("1")


def test_concurrent_starts_share_components(session_factory, shared_locks, shared_publisher):
    with session_factory() as setup:
        widget = create_widget_setup(setup, bolts="15", sheets="100")
        machines = [create_test_machine(setup).id for _ in range(2)]
        widget_id = widget["widget"].id

    order_ids = []
    with session_factory() as session:
        engine = WorkOrderEngine(session, publisher=shared_publisher, locks=shared_locks)
        for machine_id in machines:
            work_order = engine.create({"product_id": widget_id, "planned_quantity": 10})
            engine.schedule(work_order.id, machine_id, hours(0), hours(8))
            order_ids.append(work_order.id)

    def worker(session, index):
        engine = WorkOrderEngine(session, publisher=shared_publisher, locks=shared_locks)
        return engine.start(order_ids[index]).id

    results, errors = run_concurrently(session_factory, worker, count=2)

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InsufficientStockError)


def test_retried_recording_is_applied_once(session_factory, shared_locks, shared_publisher):
    with session_factory() as setup:
        widget = create_widget_setup(setup, bolts="50", sheets="100")
        machine_id = widget["machine"].id
        widget_id = widget["widget"].id

    with session_factory() as session:
        engine = WorkOrderEngine(session, publisher=shared_publisher, locks=shared_locks)
        work_order = engine.create({"product_id": widget_id, "planned_quantity": 20})
        engine.schedule(work_order.id, machine_id, hours(0), hours(8))
        engine.start(work_order.id)
        work_order_id = work_order.id

    def worker(session, index):
        engine = WorkOrderEngine(session, publisher=shared_publisher, locks=shared_locks)
        engine.record_production(work_order_id, 2, idempotency_key="terminal-7/scan-1")

    results, errors = run_concurrently(session_factory, worker, count=4)

    assert errors == []
    with session_factory() as check:
        assert check.query(ProductionRecord).count() == 1
        engine = WorkOrderEngine(check, publisher=shared_publisher, locks=shared_locks)
        assert engine.get(work_order_id).produced_quantity == Decimal("2")
