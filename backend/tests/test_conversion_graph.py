# backend/tests/test_conversion_graph.py

"""
Unit tests for the conversion graph builder

Tests cover:
- First-match fact index in both directions
- Product scope precedence over generic facts
- Graph symmetry
- Name-matching fallback for product-specific units
- Factor chains with missing hops
- Malformed provider records
"""

import pytest

from conversion_graph import (
    DirectFactorLookup,
    FactorIndex,
    GenericNameAliases,
    build_graph,
    chain_factor,
)
from unit_models import (
    MALFORMED_CONVERSION_FACT,
    ConversionFact,
    Unit,
    as_product_ids,
    coerce_conversion_facts,
    coerce_units,
)


def fact(from_unit_id, to_unit_id, factor, product_id=None):
    return ConversionFact(from_unit_id=from_unit_id, to_unit_id=to_unit_id, factor=factor, product_id=product_id)


@pytest.fixture
def units():
    return [
        Unit(unit_id=2, name="ml", form_id=2),
        Unit(unit_id=3, name="capsules", form_id=1),
        Unit(unit_id=5, name="g", form_id=3),
        Unit(unit_id=17, name="mg", form_id=3),
    ]


class TestFactorIndex:
    """Test direct factor index"""

    def test_direct_and_reversed(self):
        index = FactorIndex([fact(5, 17, 1000)])

        assert index.get(5, 17) == 1000
        assert index.get(17, 5) == pytest.approx(0.001)
        assert index.get(5, 2) is None

    def test_first_match_wins(self):
        index = FactorIndex([fact(5, 17, 1000), fact(17, 5, 0.5), fact(5, 17, 2)])

        assert index.get(5, 17) == 1000
        assert index.get(17, 5) == pytest.approx(0.001)
        assert len(index) == 3

    def test_self_conversion_ignored(self):
        index = FactorIndex([fact(5, 5, 3)])

        assert index.get(5, 5) is None
        assert len(index) == 0


class TestDirectFactorLookup:
    """Test product -> generic -> name fallback precedence"""

    def test_product_overrides_generic(self, units):
        lookup = DirectFactorLookup.from_facts([fact(3, 5, 0.5), fact(3, 5, 0.634, product_id=13)], units)

        assert lookup.direct_factor(3, 5) == 0.5
        assert lookup.direct_factor(3, 5, [13]) == 0.634
        assert lookup.direct_factor(5, 3, [13]) == pytest.approx(1 / 0.634)
        assert lookup.direct_factor(3, 5, [99]) == 0.5

    def test_scope_order(self, units):
        lookup = DirectFactorLookup.from_facts([
            fact(3, 5, 0.634, product_id=13),
            fact(3, 5, 0.7, product_id=14),
        ], units)

        assert lookup.direct_factor(3, 5, [14, 13]) == 0.7
        assert lookup.direct_factor(3, 5, [13, 14]) == 0.634

    def test_same_unit(self):
        lookup = DirectFactorLookup.from_facts([])

        assert lookup.direct_factor(7, 7) == 1.0

    def test_name_fallback(self, units):
        product_g = Unit(unit_id=900, name="g", form_id=3, product_id=21)
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000)], units + [product_g])

        assert lookup.direct_factor(900, 17) is None
        assert lookup.preferred_factor(900, 17) == 1000
        assert lookup.preferred_factor(17, 900) == pytest.approx(0.001)

    def test_no_fallback_without_namesake(self, units):
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000)], units)

        assert lookup.preferred_factor(3, 17) is None


class TestGenericNameAliases:
    """Test the name -> generic unit key"""

    def test_namesake(self, units):
        aliases = GenericNameAliases(units + [Unit(unit_id=900, name="g", product_id=21)])

        assert aliases.namesake(900) == 5
        assert aliases.resolve(900) == 5
        assert aliases.resolve(3) == 3
        assert aliases.namesake(12345) is None

    def test_first_generic_wins(self):
        aliases = GenericNameAliases([
            Unit(unit_id=5, name="g"),
            Unit(unit_id=6, name="g"),
            Unit(unit_id=900, name="g", product_id=1),
        ])

        assert aliases.namesake(900) == 5


class TestBuildGraph:
    """Test graph construction"""

    def test_generic_graph(self, units):
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000), fact(3, 5, 0.634, product_id=13)], units)

        graph = build_graph(units, lookup)

        assert set(graph.nodes) == {2, 3, 5, 17}
        assert graph.factor(5, 17) == 1000
        assert graph.factor(17, 5) == pytest.approx(0.001)
        # Product fact not visible generically
        assert graph.factor(3, 5) is None
        assert graph.neighbors(2) == {}

    def test_product_graph(self, units):
        lookup = DirectFactorLookup.from_facts([fact(3, 5, 0.5), fact(3, 5, 0.634, product_id=13)], units)

        graph = build_graph(units, lookup, [13])

        assert graph.factor(3, 5) == 0.634
        assert graph.factor(5, 3) == pytest.approx(1 / 0.634)

    def test_graph_is_symmetric(self, units):
        lookup = DirectFactorLookup.from_facts([
            fact(5, 17, 1000),
            fact(3, 5, 0.634, product_id=13),
            fact(2, 5, 1.03),
        ], units)

        graph = build_graph(units, lookup, [13])

        for unit_id in graph.nodes:
            for neighbor, factor in graph.neighbors(unit_id).items():
                assert graph.factor(neighbor, unit_id) == pytest.approx(1 / factor)

    def test_facts_for_unknown_units_ignored(self, units):
        lookup = DirectFactorLookup.from_facts([fact(5, 12, 555.556)], units)

        graph = build_graph(units, lookup)

        assert 12 not in graph
        assert graph.neighbors(5) == {}

    def test_product_unit_inherits_namesake_edges(self, units):
        product_g = Unit(unit_id=900, name="g", form_id=3, product_id=21)
        all_units = units + [product_g]
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000)], all_units)

        graph = build_graph(all_units, lookup, [21])

        assert graph.factor(900, 17) == 1000
        assert graph.factor(17, 900) == pytest.approx(0.001)

    def test_product_unit_with_facts_keeps_own_edges(self, units):
        scoop = Unit(unit_id=1961, name="scoop (4 cc)", form_id=3, product_id=21021)
        all_units = units + [scoop]
        lookup = DirectFactorLookup.from_facts([fact(1961, 5, 3.6, product_id=21021)], all_units)

        graph = build_graph(all_units, lookup, [21021])

        assert graph.neighbors(1961) == {5: 3.6}


class TestChainFactor:
    """Test factor multiplication along a path"""

    def test_chain(self, units):
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000), fact(3, 5, 0.634, product_id=13)], units)

        factor, missing = chain_factor([3, 5, 17], lookup, [13])

        assert factor == pytest.approx(634.0)
        assert missing == []

    def test_empty_path(self):
        factor, missing = chain_factor([], DirectFactorLookup.from_facts([]))

        assert factor == 1.0
        assert missing == []

    def test_missing_hop_counts_as_one(self, units):
        lookup = DirectFactorLookup.from_facts([fact(5, 17, 1000)], units)

        factor, missing = chain_factor([2, 5, 17], lookup)

        assert factor == 1000
        assert missing == [(2, 5)]

    def test_hop_product_searched_first(self, units):
        lookup = DirectFactorLookup.from_facts([
            fact(3, 5, 0.634, product_id=13),
            fact(3, 5, 0.7, product_id=14),
        ], units)

        factor, _ = chain_factor([3, 5], lookup, [13, 14], hop_product_ids=[14])

        assert factor == 0.7


class TestRecordCoercion:
    """Test provider record validation"""

    def test_camel_case_records(self):
        facts, anomalies = coerce_conversion_facts([
            {"unitConversionId": 2, "fromUnitId": 16, "toUnitId": 2, "factor": 29.574},
        ])

        assert anomalies == []
        assert facts[0].from_unit_id == 16
        assert facts[0].is_generic

    def test_snake_case_records(self):
        units, anomalies = coerce_units([{"unit_id": 5, "name": "g", "form_id": 3}])

        assert anomalies == []
        assert units[0] == Unit(unit_id=5, name="g", form_id=3)

    def test_malformed_facts(self):
        facts, anomalies = coerce_conversion_facts([
            {"fromUnitId": 16, "toUnitId": 2},
            {"fromUnitId": 16, "factor": 2},
            {"fromUnitId": 16, "toUnitId": 2, "factor": 0},
            fact(5, 17, 1000),
        ])

        assert len(facts) == 1
        assert len(anomalies) == 3
        assert all(a.anomaly_code == MALFORMED_CONVERSION_FACT for a in anomalies)

    def test_scope_normalization(self):
        assert as_product_ids(None) == ()
        assert as_product_ids(13) == (13,)
        assert as_product_ids([21021, 13, 21021, None]) == (21021, 13)
