# backend/unit_providers.py

"""
MongoDB data providers for the unit conversion engine.

Pure data access: no validation and no caching here. The engine validates
records and owns every cache.

Collections (names configurable):
- units:            {unit_id, name, form_id, product_id}
- unit_conversions: {unit_conversion_id, from_unit_id, to_unit_id, factor, product_id}

Generic rows have product_id null (or missing).
"""

from typing import Any, Dict, List, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient

from unit_settings import UnitEngineSettings

logger = logging.getLogger(__name__)


class MongoUnitProvider:
    """select_units / select_direct_conversions backed by motor collections"""

    def __init__(self, db, units_collection: str = "units", conversions_collection: str = "unit_conversions"):
        """
        Args:
            db: motor database (or any object exposing the two collections)
            units_collection: name of the units collection
            conversions_collection: name of the conversions collection
        """
        self.db = db
        self.units_collection = units_collection
        self.conversions_collection = conversions_collection

    async def select_units(self, filters: Optional[Dict[str, Any]] = None) -> List[dict]:
        """
        Generic units (no filter), units of one product ({"product_id": p})
        or one unit by id ({"unit_id": u}).
        """
        filters = filters or {}
        query: Dict[str, Any] = {}
        if filters.get("unit_id") is not None:
            query["unit_id"] = filters["unit_id"]
        if filters.get("product_id") is not None:
            query["product_id"] = filters["product_id"]
        if not query:
            query = {"product_id": None}

        return await self.db[self.units_collection].find(query, {"_id": 0}).to_list(None)

    async def select_direct_conversions(self, product_id: Optional[int] = None) -> List[dict]:
        """Generic conversion facts (None) or the facts of one product"""
        query = {"product_id": product_id}
        return await self.db[self.conversions_collection].find(query, {"_id": 0}).to_list(None)


def create_mongo_provider(settings: UnitEngineSettings) -> MongoUnitProvider:
    """Connect to MongoDB using settings and wrap the catalog database"""
    client = AsyncIOMotorClient(settings.mongo_url)
    db = client[settings.db_name]
    logger.info(f"Unit provider connected to database '{settings.db_name}'")
    return MongoUnitProvider(db, settings.units_collection, settings.conversions_collection)
