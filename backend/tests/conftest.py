# backend/tests/conftest.py

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_conversion_engine import UnitConversionEngine
from unit_settings import UnitEngineSettings


class MockUnitStore:
    """In-memory catalog providing select_units / select_direct_conversions"""
    def __init__(self, units, conversions):
        self.units = list(units)
        self.conversions = list(conversions)
        self.unit_calls = []
        self.conversion_calls = []
        self.fail_with = None

    async def select_units(self, filters=None):
        self.unit_calls.append(filters)
        if self.fail_with:
            raise self.fail_with
        filters = filters or {}
        if filters.get("unit_id") is not None:
            return [u for u in self.units if u["unitId"] == filters["unit_id"]]
        if filters.get("product_id") is not None:
            return [u for u in self.units if u.get("productId") == filters["product_id"]]
        return [u for u in self.units if u.get("productId") is None]

    async def select_direct_conversions(self, product_id=None):
        self.conversion_calls.append(product_id)
        if self.fail_with:
            raise self.fail_with
        return [uc for uc in self.conversions if uc.get("productId") == product_id]


# Micro-C capsules (product 13) and Micro-C Immune Power powder (product 21021)
CATALOG_UNITS = [
    {"unitId": 2, "name": "ml", "formId": 2},
    {"unitId": 3, "name": "capsules", "formId": 1},
    {"unitId": 5, "name": "g", "formId": 3},
    {"unitId": 12, "name": "mg active"},
    {"unitId": 13, "name": "tsp", "formId": 2},
    {"unitId": 16, "name": "fl oz (US)", "formId": 2},
    {"unitId": 17, "name": "mg", "formId": 3},
    {"unitId": 1961, "name": "scoop (4 cc)", "formId": 3, "productId": 21021},
]

CATALOG_CONVERSIONS = [
    {"unitConversionId": 1, "fromUnitId": 5, "toUnitId": 17, "factor": 1000},
    {"unitConversionId": 2, "fromUnitId": 16, "toUnitId": 2, "factor": 29.574},
    {"unitConversionId": 4, "fromUnitId": 13, "toUnitId": 2, "factor": 4.929},
    # g path
    {"unitConversionId": 99997, "fromUnitId": 3, "toUnitId": 5, "factor": 0.634, "productId": 13},
    {"unitConversionId": 99999, "fromUnitId": 1961, "toUnitId": 5, "factor": 3.600, "productId": 21021},
    # mg active ingredient paths
    {"unitConversionId": 3521, "fromUnitId": 5, "toUnitId": 12, "factor": 555.556, "productId": 21021},
    {"unitConversionId": 99998, "fromUnitId": 3, "toUnitId": 12, "factor": 500, "productId": 13},
]


@pytest.fixture
def store():
    """Mock catalog store"""
    return MockUnitStore(CATALOG_UNITS, CATALOG_CONVERSIONS)


@pytest.fixture
def settings():
    return UnitEngineSettings()


@pytest.fixture
def engine(store, settings):
    """Create engine instance with mock store"""
    return UnitConversionEngine.from_provider(store, settings)
