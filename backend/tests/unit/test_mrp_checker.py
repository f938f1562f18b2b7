"""
Unit Tests for the Material Requirements Checker

Check nets BOM requirements against available-to-promise stock and is
read-only.
"""
from decimal import Decimal

import pytest

from shopfloor.exceptions import CycleDetectedError, NotFoundError
from shopfloor.models import InventoryReservation

from tests.factories import (
    create_test_bom_item,
    create_test_lot,
    create_test_product,
    create_widget_setup,
)


class TestCheck:

    def test_enough_stock_is_available(self, db_session, checker):
        setup = create_widget_setup(db_session)

        result = checker.check(setup["widget"].id, 10)

        assert result.available is True
        assert result.shortages == []
        by_code = {r.component_code: r for r in result.requirements}
        assert by_code["BOLT"].required_quantity == Decimal("10")
        assert by_code["SHEET"].required_quantity == Decimal("20")
        assert by_code["SHEET"].available_quantity == Decimal("25")
        assert by_code["SHEET"].shortage == Decimal("0")

    def test_shortage_reported_per_component(self, db_session, checker):
        setup = create_widget_setup(db_session)

        result = checker.check(setup["widget"].id, 13)

        assert result.available is False
        assert [(s.component_code, s.shortage) for s in result.shortages] == [
            ("BOLT", Decimal("3")),
            ("SHEET", Decimal("1")),
        ]

    def test_reserved_stock_is_not_available(self, db_session, checker, ledger):
        setup = create_widget_setup(db_session)
        ledger.allocate(setup["bolt"].id, 4)

        result = checker.check(setup["widget"].id, 10)

        assert [(s.component_code, s.shortage) for s in result.shortages] == [("BOLT", Decimal("4"))]

    def test_check_is_read_only(self, db_session, checker):
        setup = create_widget_setup(db_session)

        checker.check(setup["widget"].id, 100)

        assert db_session.query(InventoryReservation).count() == 0

    def test_unstocked_components_are_not_netted(self, db_session, checker):
        widget = create_test_product(db_session, code="WIDGET")
        bolt = create_test_product(db_session, code="BOLT")
        setup_labour = create_test_product(db_session, code="SETUP", is_stocked=False)
        create_test_bom_item(db_session, widget, bolt)
        create_test_bom_item(db_session, widget, setup_labour)
        create_test_lot(db_session, bolt, quantity=5)

        result = checker.check(widget.id, 5)

        assert result.available is True
        assert [r.component_code for r in result.requirements] == ["BOLT"]

    def test_stocked_item_without_bom_checks_itself(self, db_session, checker):
        bolt = create_test_product(db_session, code="BOLT")
        create_test_lot(db_session, bolt, quantity=5)

        assert checker.check(bolt.id, 5).available is True
        assert checker.check(bolt.id, 6).shortages[0].shortage == Decimal("1")

    def test_cycle_propagates(self, db_session, checker):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        create_test_bom_item(db_session, a, b)
        create_test_bom_item(db_session, b, a)

        with pytest.raises(CycleDetectedError):
            checker.check(a.id, 1)

    def test_unknown_product(self, db_session, checker):
        with pytest.raises(NotFoundError):
            checker.check(9999, 1)


class TestCheckBuild:

    def test_product_without_bom_needs_nothing(self, db_session, checker):
        bolt = create_test_product(db_session, code="BOLT")

        result = checker.check_build(bolt.id, 50)

        assert result.available is True
        assert result.requirements == []
