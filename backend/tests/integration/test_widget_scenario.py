"""
End-to-end: Widget = 1 x Bolt + 2 x Sheet, stock 10 Bolt / 25 Sheet.

Walks one work order of 10 Widgets from Check through completion. Recording
8 good + 1 scrap consumes material for 9 units, so a further 2 good units
need both an over-production tolerance of 1 and an 11th Bolt; with the
default tolerance of 0 the order instead completes when produced + scrap
reaches the planned quantity.
"""
from decimal import Decimal

import pytest

from shopfloor.exceptions import OverProductionError
from shopfloor.models import InventoryLot
from shopfloor.services.work_order_service import WorkOrderEngine

from tests.factories import create_test_lot, create_widget_setup, hours


@pytest.fixture
def widget(db_session):
    return create_widget_setup(db_session, bolts="10", sheets="25")


def _run_to_in_progress(wo_engine, widget):
    check = wo_engine.check(widget["widget"].id, 10)
    assert check.available is True
    shortages = {r.component_code: r.shortage for r in check.requirements}
    assert shortages == {"BOLT": Decimal("0"), "SHEET": Decimal("0")}

    work_order = wo_engine.create({"product_id": widget["widget"].id, "planned_quantity": 10})
    wo_engine.schedule(work_order.id, widget["machine"].id, hours(0), hours(8))
    wo_engine.start(work_order.id)

    reserved = {
        r.product_id: r.quantity for r in wo_engine.ledger.reservations_for_work_order(work_order.id)
    }
    assert reserved == {widget["bolt"].id: Decimal("10"), widget["sheet"].id: Decimal("20")}
    return work_order


def _widget_on_hand(db_session, widget):
    lots = db_session.query(InventoryLot).filter(InventoryLot.product_id == widget["widget"].id).all()
    return sum((Decimal(lot.quantity) for lot in lots), Decimal("0"))


def test_widget_with_tolerance_for_scrap(db_session, publisher, locks, widget):
    create_test_lot(db_session, widget["bolt"], quantity=1)
    wo_engine = WorkOrderEngine(db_session, publisher=publisher, locks=locks, tolerance=1)
    work_order = _run_to_in_progress(wo_engine, widget)

    wo_engine.record_production(work_order.id, 8, scrap_delta=1)

    assert work_order.status == "in_progress"
    assert work_order.produced_quantity == Decimal("8")
    assert wo_engine.ledger.on_hand(widget["bolt"].id) == Decimal("2")
    assert wo_engine.ledger.on_hand(widget["sheet"].id) == Decimal("7")
    assert _widget_on_hand(db_session, widget) == Decimal("8")

    wo_engine.record_production(work_order.id, 2)

    assert work_order.status == "completed"
    assert work_order.produced_quantity == Decimal("10")
    assert wo_engine.scheduler.active_allocation(work_order.id) is None
    assert wo_engine.scheduler.allocations_for(widget["machine"].id) == []
    assert wo_engine.ledger.on_hand(widget["bolt"].id) == Decimal("0")
    assert wo_engine.ledger.on_hand(widget["sheet"].id) == Decimal("3")
    assert _widget_on_hand(db_session, widget) == Decimal("10")


def test_widget_with_default_tolerance(db_session, wo_engine, widget):
    work_order = _run_to_in_progress(wo_engine, widget)

    wo_engine.record_production(work_order.id, 8, scrap_delta=1)
    assert work_order.status == "in_progress"

    with pytest.raises(OverProductionError):
        wo_engine.record_production(work_order.id, 2)
    assert wo_engine.get(work_order.id).status == "in_progress"

    wo_engine.record_production(work_order.id, 1)

    assert work_order.status == "completed"
    assert work_order.produced_quantity == Decimal("9")
    assert work_order.scrap_quantity == Decimal("1")
    assert wo_engine.scheduler.allocations_for(widget["machine"].id) == []
    assert wo_engine.ledger.on_hand(widget["bolt"].id) == Decimal("0")
    assert wo_engine.ledger.available_to_promise(widget["sheet"].id) == Decimal("5")
