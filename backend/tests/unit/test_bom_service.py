"""
Unit Tests for the BOM Resolver

1. Multi-level expansion and aggregation
2. Scrap factor
3. Cycle and depth refusal
4. Products without a BOM
5. BOM maintenance (add_bom_item)
"""
from decimal import Decimal

import pytest

from shopfloor.exceptions import (
    CycleDetectedError,
    MaxDepthExceededError,
    NotFoundError,
    UnknownProductError,
    ValidationError,
)
from shopfloor.services.bom_service import BOMResolver

from tests.factories import create_test_bom_item, create_test_product


def _by_code(requirements):
    return {r.component_code: r for r in requirements}


class TestExpand:

    def test_two_level_bom_multiplies_along_path(self, db_session, resolver):
        a = create_test_product(db_session, code="A", product_type="finished_good")
        b = create_test_product(db_session, code="B", product_type="intermediate")
        c = create_test_product(db_session, code="C")
        create_test_bom_item(db_session, a, b, quantity_per_unit=2)
        create_test_bom_item(db_session, b, c, quantity_per_unit=3)

        result = resolver.expand(a.id, 5)

        assert len(result) == 1
        assert result[0].component_code == "C"
        assert result[0].required_quantity == Decimal("30")
        assert result[0].bom_level == 2

    def test_shared_component_is_aggregated(self, db_session, resolver):
        a = create_test_product(db_session, code="A", product_type="finished_good")
        b = create_test_product(db_session, code="B", product_type="intermediate")
        c = create_test_product(db_session, code="C")
        create_test_bom_item(db_session, a, b, quantity_per_unit=1)
        create_test_bom_item(db_session, a, c, quantity_per_unit=4)
        create_test_bom_item(db_session, b, c, quantity_per_unit=2)

        result = resolver.expand(a.id, 1)

        assert len(result) == 1
        assert result[0].required_quantity == Decimal("6")

    def test_scrap_factor_inflates_requirement(self, db_session, resolver):
        a = create_test_product(db_session, code="A", product_type="finished_good")
        b = create_test_product(db_session, code="B")
        create_test_bom_item(db_session, a, b, quantity_per_unit=3, scrap_factor="0.1")

        result = resolver.expand(a.id, 10)

        assert result[0].required_quantity == Decimal("33")

    def test_components_keep_bom_order(self, db_session, resolver):
        a = create_test_product(db_session, code="A", product_type="finished_good")
        z = create_test_product(db_session, code="Z")
        m = create_test_product(db_session, code="M")
        create_test_bom_item(db_session, a, z, sequence=1)
        create_test_bom_item(db_session, a, m, sequence=2)

        codes = [r.component_code for r in resolver.expand(a.id, 1)]

        assert codes == ["Z", "M"]

    def test_inactive_lines_are_ignored(self, db_session, resolver):
        a = create_test_product(db_session, code="A", product_type="finished_good")
        b = create_test_product(db_session, code="B")
        c = create_test_product(db_session, code="C")
        create_test_bom_item(db_session, a, b)
        create_test_bom_item(db_session, a, c, active=False)

        assert list(_by_code(resolver.expand(a.id, 1))) == ["B"]

    def test_stocked_product_without_bom_resolves_to_itself(self, db_session, resolver):
        bolt = create_test_product(db_session, code="BOLT")

        result = resolver.expand(bolt.id, 7)

        assert len(result) == 1
        assert result[0].component_product_id == bolt.id
        assert result[0].required_quantity == Decimal("7")
        assert result[0].bom_level == 0

    def test_unstocked_product_without_bom_is_unknown(self, db_session, resolver):
        service = create_test_product(db_session, code="SETUP", is_stocked=False)

        with pytest.raises(UnknownProductError):
            resolver.expand(service.id, 1)

    def test_missing_product_not_found(self, db_session, resolver):
        with pytest.raises(NotFoundError):
            resolver.expand(9999, 1)

    @pytest.mark.parametrize("quantity", [0, -1, "abc", "NaN", "Infinity", "-Infinity"])
    def test_invalid_quantity_rejected(self, db_session, resolver, quantity):
        a = create_test_product(db_session, code="A")
        with pytest.raises(ValidationError):
            resolver.expand(a.id, quantity)

    def test_explode_without_bom_is_empty(self, db_session, resolver):
        bolt = create_test_product(db_session, code="BOLT")
        assert resolver.explode(bolt.id, 5) == []


class TestCyclesAndDepth:

    def test_cycle_reported_with_path(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        create_test_bom_item(db_session, a, b)
        create_test_bom_item(db_session, b, a)

        with pytest.raises(CycleDetectedError) as exc_info:
            resolver.expand(a.id, 1)

        assert exc_info.value.details["path"] == [a.id, b.id, a.id]

    def test_validate_acyclic_detects_deep_cycle(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        c = create_test_product(db_session, code="C")
        create_test_bom_item(db_session, a, b)
        create_test_bom_item(db_session, b, c)
        create_test_bom_item(db_session, c, b)

        with pytest.raises(CycleDetectedError):
            resolver.validate_acyclic(a.id)

    def test_diamond_is_not_a_cycle(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        c = create_test_product(db_session, code="C")
        d = create_test_product(db_session, code="D")
        create_test_bom_item(db_session, a, b)
        create_test_bom_item(db_session, a, c)
        create_test_bom_item(db_session, b, d)
        create_test_bom_item(db_session, c, d)

        result = resolver.expand(a.id, 1)

        assert result[0].required_quantity == Decimal("2")

    def test_max_depth_exceeded(self, db_session):
        chain = [create_test_product(db_session, code=f"L{i}") for i in range(5)]
        for parent, child in zip(chain, chain[1:]):
            create_test_bom_item(db_session, parent, child)

        with pytest.raises(MaxDepthExceededError):
            BOMResolver(db_session, max_depth=3).expand(chain[0].id, 1)

        result = BOMResolver(db_session, max_depth=4).expand(chain[0].id, 1)
        assert result[0].component_code == "L4"


class TestAddBomItem:

    def test_adds_line(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")

        item = resolver.add_bom_item(a.id, b.id, "2.5", scrap_factor="0.02")

        assert item.id is not None
        assert resolver.expand(a.id, 2)[0].required_quantity == Decimal("5.1")

    def test_refuses_edge_closing_a_cycle(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        c = create_test_product(db_session, code="C")
        resolver.add_bom_item(a.id, b.id, 1)
        resolver.add_bom_item(b.id, c.id, 1)

        with pytest.raises(CycleDetectedError) as exc_info:
            resolver.add_bom_item(c.id, a.id, 1)

        assert exc_info.value.details["path"] == [c.id, a.id, b.id, c.id]

    def test_refuses_self_reference(self, db_session, resolver):
        a = create_test_product(db_session, code="A")
        with pytest.raises(CycleDetectedError):
            resolver.add_bom_item(a.id, a.id, 1)

    @pytest.mark.parametrize("qty,scrap", [(0, 0), (-1, 0), (1, "-0.1")])
    def test_rejects_bad_quantities(self, db_session, resolver, qty, scrap):
        a = create_test_product(db_session, code="A")
        b = create_test_product(db_session, code="B")
        with pytest.raises(ValidationError):
            resolver.add_bom_item(a.id, b.id, qty, scrap_factor=scrap)
