# backend/unit_models.py

"""
Unit Conversion Data Models

Shared data contracts for the dosing unit conversion engine:
- Units and conversion facts as delivered by the catalog providers
- Unit options exposed to dosing forms
- Anomaly records for recoverable data problems
- Error classes for explicit writes with bad data

Provider records are accepted in either snake_case or camelCase
(unitId, fromUnitId, ...), matching how catalog rows are stored.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

# ==================== PROVIDER CONTRACTS ====================

# select_units(filters) -> generic units (no filter), product units ({"product_id": p})
# or a single unit ({"unit_id": u})
SelectUnits = Callable[..., Awaitable[Iterable[Any]]]

# select_direct_conversions(product_id) -> generic facts (None) or product facts
SelectDirectConversions = Callable[..., Awaitable[Iterable[Any]]]


# ==================== ANOMALY CODES ====================

MISSING_DIRECT_FACTOR = "MISSING_DIRECT_FACTOR"
MALFORMED_CONVERSION_FACT = "MALFORMED_CONVERSION_FACT"
MALFORMED_UNIT = "MALFORMED_UNIT"


# ==================== ERROR CLASSES ====================

class UnitConversionError(Exception):
    """Base unit conversion error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None, severity: str = "HARD_ERROR"):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        super().__init__(self.message)


class InvalidConversionFactError(UnitConversionError):
    """Conversion fact rejected on write"""
    def __init__(self, record: Any, reason: str):
        super().__init__(
            "INVALID_CONVERSION_FACT",
            f"Conversion fact {record!r} is invalid: {reason}",
            field="factor",
            severity="HARD_ERROR"
        )


class InvalidUnitError(UnitConversionError):
    """Unit rejected on write"""
    def __init__(self, record: Any, reason: str):
        super().__init__(
            "INVALID_UNIT",
            f"Unit {record!r} is invalid: {reason}",
            field="unit_id",
            severity="HARD_ERROR"
        )


# ==================== DATA MODELS ====================

class CatalogModel(BaseModel):
    """Immutable catalog record, accepts snake_case and camelCase keys"""
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class Unit(CatalogModel):
    """A measurable quantity kind (capsule, g, ml, ...)"""
    unit_id: int
    name: str
    form_id: Optional[int] = None
    product_id: Optional[int] = None  # None = generic unit

    @property
    def is_generic(self) -> bool:
        return self.product_id is None


class ConversionFact(CatalogModel):
    """1 from_unit = factor to_unit, optionally scoped to one product"""
    from_unit_id: int
    to_unit_id: int
    factor: float = Field(gt=0)
    product_id: Optional[int] = None  # None = generic fact
    unit_conversion_id: Optional[int] = None

    @property
    def is_generic(self) -> bool:
        return self.product_id is None


class UnitOption(BaseModel):
    """Select option for a dosing unit"""
    label: str
    value: int


class DosingProduct(CatalogModel):
    """Dosing configuration of one product row"""
    product_id: int
    form_id: Optional[int] = None
    rec_dose_unit_id: Optional[int] = None
    amount_unit_id: int

    @property
    def base_unit_id(self) -> int:
        return self.rec_dose_unit_id or self.amount_unit_id


class UnitOptionsResult(BaseModel):
    """Option list plus the form id derived from the base unit (if any)"""
    unit_options: List[UnitOption] = []
    derived_form_id: Optional[int] = None


class ConversionAnomaly(BaseModel):
    """Recoverable data problem, logged and kept for inspection"""
    anomaly_code: str
    message: str
    from_unit_id: Optional[int] = None
    to_unit_id: Optional[int] = None
    product_ids: List[int] = []
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==================== RECORD COERCION ====================

def coerce_units(records: Iterable[Any]) -> Tuple[List[Unit], List[ConversionAnomaly]]:
    """
    Validate provider unit records.

    Invalid records are skipped and reported as MALFORMED_UNIT anomalies.
    """
    units: List[Unit] = []
    anomalies: List[ConversionAnomaly] = []
    for record in records or []:
        if isinstance(record, Unit):
            units.append(record)
            continue
        try:
            units.append(Unit.model_validate(record))
        except ValidationError as e:
            anomalies.append(ConversionAnomaly(
                anomaly_code=MALFORMED_UNIT,
                message=f"Skipping malformed unit {record!r}: {e.error_count()} validation error(s)",
            ))
    return units, anomalies


def coerce_conversion_facts(records: Iterable[Any]) -> Tuple[List[ConversionFact], List[ConversionAnomaly]]:
    """
    Validate provider conversion fact records.

    A fact missing from/to/factor, or with a non-positive factor, contributes
    no edge and is reported as a MALFORMED_CONVERSION_FACT anomaly.
    """
    facts: List[ConversionFact] = []
    anomalies: List[ConversionAnomaly] = []
    for record in records or []:
        if isinstance(record, ConversionFact):
            facts.append(record)
            continue
        try:
            facts.append(ConversionFact.model_validate(record))
        except ValidationError as e:
            anomalies.append(ConversionAnomaly(
                anomaly_code=MALFORMED_CONVERSION_FACT,
                message=f"Skipping malformed conversion fact {record!r}: {e.error_count()} validation error(s)",
            ))
    return facts, anomalies


def validate_unit(record: Any) -> Unit:
    """Strict validation for explicit writes"""
    if isinstance(record, Unit):
        return record
    try:
        return Unit.model_validate(record)
    except ValidationError as e:
        raise InvalidUnitError(record, str(e)) from e


def validate_conversion_fact(record: Any) -> ConversionFact:
    """Strict validation for explicit writes"""
    if isinstance(record, ConversionFact):
        return record
    try:
        return ConversionFact.model_validate(record)
    except ValidationError as e:
        raise InvalidConversionFactError(record, str(e)) from e


def as_product_ids(product_ids: Any) -> Tuple[int, ...]:
    """Normalize a scope argument (None, int or iterable) to an ordered, de-duplicated tuple"""
    if product_ids is None:
        return ()
    if isinstance(product_ids, int):
        return (product_ids,)
    seen: Dict[int, None] = {}
    for product_id in product_ids:
        if product_id is not None:
            seen.setdefault(int(product_id), None)
    return tuple(seen)
