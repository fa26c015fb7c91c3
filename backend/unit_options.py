# backend/unit_options.py

"""
Dosing unit option helpers.

Candidate collection, namesake shadowing and sorting for the unit select of
a product dosing row. Convertibility checks live in the engine since they
need the conversion graph.
"""

from typing import Iterable, List, Optional, Sequence
import locale

from unit_models import ConversionFact, DosingProduct, Unit, UnitOption

# Common small-measure volumes (ml, tsp, tbsp, ...)
DEFAULT_SMALL_VOLUME_UNIT_IDS = (2, 13, 30, 31, 33)


def collect_candidate_unit_ids(
    product: DosingProduct,
    form_id: Optional[int],
    generic_units: Iterable[Unit],
    product_units: Iterable[Unit],
    product_facts: Iterable[ConversionFact],
    small_volume_unit_ids: Sequence[int] = DEFAULT_SMALL_VOLUME_UNIT_IDS
) -> List[int]:
    """Candidate unit ids in discovery order, without duplicates"""
    candidates = [product.amount_unit_id]
    if product.rec_dose_unit_id:
        candidates.append(product.rec_dose_unit_id)

    # Generic units with same form
    if form_id:
        candidates.extend(u.unit_id for u in generic_units if u.form_id == form_id)

    # Product-specific units
    candidates.extend(u.unit_id for u in product_units)

    # Appearing in product-specific conversions
    for fact in product_facts:
        candidates.extend((fact.from_unit_id, fact.to_unit_id))

    # Keep small volumes together as a group
    if any(unit_id in candidates for unit_id in small_volume_unit_ids):
        candidates.extend(small_volume_unit_ids)

    return list(dict.fromkeys(candidates))


def drop_shadowed_generic_units(
    units: Sequence[Unit],
    product_units: Iterable[Unit],
    keep_unit_ids: Iterable[Optional[int]] = ()
) -> List[Unit]:
    """
    Remove generic units whose name is taken by a product-specific unit.

    Units listed in keep_unit_ids (the row's own amount and dose units) stay.
    """
    shadowing_names = {u.name for u in product_units if not u.is_generic}
    keep = set(keep_unit_ids)
    return [
        u for u in units
        if u.unit_id in keep or not (u.is_generic and u.name in shadowing_names)
    ]


def unit_option(unit: Unit) -> UnitOption:
    return UnitOption(label=unit.name, value=unit.unit_id)


def sort_unit_options(options: Iterable[UnitOption]) -> List[UnitOption]:
    return sorted(options, key=lambda option: (locale.strxfrm(option.label), option.label))
