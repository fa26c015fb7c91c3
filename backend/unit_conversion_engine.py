# backend/unit_conversion_engine.py

"""
Unit Conversion Engine - Dosing Units

This engine is responsible for:
- Loading units and conversion facts from the catalog providers
- Building conversion graphs (generic and per product, lazily, cached)
- Resolving the shortest conversion path between two units
- Multiplying per-hop factors into a single conversion factor
- Deriving the unit options of a product dosing row
- Invalidating derived data when units or facts change

This engine MUST NOT:
- Parse or format unit strings
- Persist graphs or paths
- Retry or suppress provider failures

ERROR POLICY:
1) Not convertible -> None (expected business outcome, never raised)
2) Path found but a hop has no direct factor -> factor 1 for that hop,
   MISSING_DIRECT_FACTOR anomaly logged
3) Malformed provider record -> skipped, anomaly logged
4) Provider errors -> propagate to the caller
5) Bad data passed to add_* -> InvalidUnitError / InvalidConversionFactError

CONCURRENCY:
Providers are async, so every read may suspend. Concurrent first-time loads
and builds for the same key share one in-flight task. Mutations finish their
loads first, then change data and invalidate without suspending.
"""

from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
import asyncio
import logging

from conversion_cache import ConversionCache, ScopeKey
from conversion_graph import (
    ConversionGraph,
    DirectFactorLookup,
    FactorIndex,
    GenericNameAliases,
    build_graph,
    chain_factor,
)
from path_resolver import ResolvedPath, shortest_path
from unit_models import (
    MISSING_DIRECT_FACTOR,
    ConversionAnomaly,
    ConversionFact,
    DosingProduct,
    SelectDirectConversions,
    SelectUnits,
    Unit,
    UnitOption,
    UnitOptionsResult,
    as_product_ids,
    coerce_conversion_facts,
    coerce_units,
    validate_conversion_fact,
    validate_unit,
)
from unit_options import (
    collect_candidate_unit_ids,
    drop_shadowed_generic_units,
    sort_unit_options,
    unit_option,
)
from unit_settings import UnitEngineSettings

logger = logging.getLogger(__name__)


# ==================== UNIT CONVERSION ENGINE ====================

class UnitConversionEngine:
    """
    Conversion graph engine for dosing units.

    One instance per process (created by the host application); the instance
    owns every cache. Graphs and paths are derived lazily and dropped on any
    mutation.
    """

    def __init__(
        self,
        select_units: SelectUnits,
        select_direct_conversions: SelectDirectConversions,
        settings: Optional[UnitEngineSettings] = None
    ):
        """
        Initialize engine.

        Args:
            select_units: async provider of units
            select_direct_conversions: async provider of conversion facts
            settings: engine settings (defaults when omitted)
        """
        self.select_units = select_units
        self.select_direct_conversions = select_direct_conversions
        self.settings = settings or UnitEngineSettings()
        self.cache = ConversionCache()
        self.anomalies: Deque[ConversionAnomaly] = deque(maxlen=self.settings.anomaly_log_size)

        self._generic_units: Optional[List[Unit]] = None
        self._generic_facts: Optional[List[ConversionFact]] = None
        self._product_units: Dict[int, List[Unit]] = {}
        self._product_facts: Dict[int, List[ConversionFact]] = {}
        self._units_by_id: Dict[int, Unit] = {}
        self._removed_unit_ids: Set[int] = set()
        self._removed_conversion_ids: Set[int] = set()
        self._inflight: Dict[Tuple[Any, ...], asyncio.Future] = {}

    @classmethod
    def from_provider(cls, provider, settings: Optional[UnitEngineSettings] = None) -> "UnitConversionEngine":
        """Build an engine around an object exposing both provider coroutines"""
        return cls(provider.select_units, provider.select_direct_conversions, settings)

    # ==================== PUBLIC READS ====================

    async def get_unit(self, unit_id: int) -> Optional[Unit]:
        """
        Get a unit by id.

        Generic and already loaded product units are served from memory;
        anything else is fetched once and kept. Removed units are never
        fetched again.
        """
        await self._ensure_generic_data()

        unit = self._units_by_id.get(unit_id)
        if unit is not None:
            return unit
        if unit_id in self._removed_unit_ids:
            return None

        units, anomalies = coerce_units(await self.select_units({"unit_id": unit_id}))
        self._report(anomalies)
        unit = next((u for u in units if u.unit_id == unit_id), None)
        if unit is not None:
            self._units_by_id[unit_id] = unit
        return unit

    async def get_units(self, product_id: Optional[int] = None) -> List[Unit]:
        """Generic units, or the units of one product"""
        if product_id is None:
            await self._ensure_generic_data()
            return list(self._generic_units)

        await self._ensure_product_data(product_id)
        return list(self._product_units[product_id])

    async def get_generic_direct_conversions(self) -> List[ConversionFact]:
        await self._ensure_generic_data()
        return list(self._generic_facts)

    async def get_unit_option(self, unit_id: int) -> Optional[UnitOption]:
        unit = await self.get_unit(unit_id)
        return unit_option(unit) if unit else None

    async def get_path(self, from_unit_id: int, to_unit_id: int, product_ids: Any = None) -> Optional[List[int]]:
        """
        Shortest conversion path between two units.

        Args:
            from_unit_id: source unit
            to_unit_id: target unit
            product_ids: None (generic), a product id or a sequence of product ids

        Returns:
            Unit ids along the path ([] when both units are the same),
            None when the units are not convertible in this scope
        """
        path = await self._resolve_path(from_unit_id, to_unit_id, as_product_ids(product_ids))
        return list(path.unit_ids) if path is not None else None

    async def get_factor(self, from_unit_id: int, to_unit_id: int, product_ids: Any = None) -> Optional[float]:
        """
        Conversion factor: 1 from_unit = factor to_unit.

        Args:
            from_unit_id: source unit
            to_unit_id: target unit
            product_ids: None (generic), a product id or a sequence of product ids

        Returns:
            The factor, or None when no conversion path exists
        """
        if from_unit_id == to_unit_id:
            return 1.0

        scope = as_product_ids(product_ids)
        path = await self._resolve_path(from_unit_id, to_unit_id, scope)
        if path is None:
            return None

        lookup = await self._lookup(scope)
        factor, missing = chain_factor(path.unit_ids, lookup, scope, path.hop_product_ids)

        for hop_from, hop_to in missing:
            self._report([ConversionAnomaly(
                anomaly_code=MISSING_DIRECT_FACTOR,
                message=(
                    f"No direct factor found from unit {hop_from} to unit {hop_to} "
                    f"for products {list(scope)} (path {list(path.unit_ids)}). Replacing with 1."
                ),
                from_unit_id=hop_from,
                to_unit_id=hop_to,
                product_ids=list(scope),
            )])

        return factor

    async def convert(
        self,
        quantity: float,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Any = None
    ) -> Optional[float]:
        """Convert a quantity, None when the units are not convertible"""
        factor = await self.get_factor(from_unit_id, to_unit_id, product_ids)
        if factor is None:
            return None
        return quantity * factor

    async def get_unit_options_for_product(self, product: Any) -> UnitOptionsResult:
        """
        Units a dosing row of this product may use.

        Candidates are the amount and recommended-dose units, generic units of
        the product's form, the product's own units, units used by its
        conversions and (as a group) the common small volumes. Only candidates
        convertible to the amount unit survive.

        Args:
            product: DosingProduct or mapping with productId, formId,
                recDoseUnitId, amountUnitId (snake_case accepted)

        Returns:
            UnitOptionsResult with options sorted by label and the form id
            derived from the base unit when the product had none
        """
        if not isinstance(product, DosingProduct):
            product = DosingProduct.model_validate(product)

        await self._ensure_generic_data()
        await self._ensure_product_data(product.product_id)

        form_id = product.form_id
        derived_form_id: Optional[int] = None
        if not form_id:
            base_unit = await self.get_unit(product.base_unit_id)
            if base_unit and base_unit.form_id:
                form_id = derived_form_id = base_unit.form_id
                logger.debug(f"Derived form {form_id} for product {product.product_id} from unit {base_unit.unit_id}")

        product_units = self._product_units[product.product_id]
        candidate_ids = collect_candidate_unit_ids(
            product,
            form_id,
            self._generic_units,
            product_units,
            self._product_facts[product.product_id],
            self.settings.small_volume_unit_ids
        )

        candidates: List[Unit] = []
        for unit_id in candidate_ids:
            unit = await self.get_unit(unit_id)
            if unit is not None:
                candidates.append(unit)

        if self.settings.shadow_generic_namesakes:
            candidates = drop_shadowed_generic_units(
                candidates,
                product_units,
                keep_unit_ids=(product.amount_unit_id, product.rec_dose_unit_id)
            )

        options: List[UnitOption] = []
        for unit in candidates:
            # Check convertible with amount unit
            factor = await self.get_factor(unit.unit_id, product.amount_unit_id, [product.product_id])
            if not factor:
                continue
            options.append(unit_option(unit))

        return UnitOptionsResult(unit_options=sort_unit_options(options), derived_form_id=derived_form_id)

    # ==================== MUTATIONS ====================

    async def add_units(self, units: Iterable[Any]) -> List[Unit]:
        """
        Add or replace units.

        Raises:
            InvalidUnitError: if a record does not validate
        """
        validated = [validate_unit(u) for u in units]

        await self._ensure_generic_data()
        for product_id in {u.product_id for u in validated if not u.is_generic}:
            await self._ensure_product_data(product_id)

        for unit in validated:
            target = self._generic_units if unit.is_generic else self._product_units[unit.product_id]
            _replace_or_append(target, unit, lambda existing: existing.unit_id == unit.unit_id)
            self._units_by_id[unit.unit_id] = unit
            self._removed_unit_ids.discard(unit.unit_id)

        self.invalidate(f"added {len(validated)} unit(s)")
        return validated

    async def remove_units(self, units: Iterable[Any]) -> int:
        """
        Remove units by id (ints, Unit instances or mappings).

        Removed ids stay removed for product data loaded later and for
        get_unit, until the unit is added again or data is reloaded.

        Returns:
            Number of units removed from already loaded data
        """
        targets = [u if isinstance(u, (int, Unit)) else validate_unit(u) for u in units]
        unit_ids = {u if isinstance(u, int) else u.unit_id for u in targets}

        await self._ensure_generic_data()
        for product_id in {u.product_id for u in targets if isinstance(u, Unit) and not u.is_generic}:
            await self._ensure_product_data(product_id)

        self._removed_unit_ids.update(unit_ids)
        removed = 0
        for unit_list in [self._generic_units or []] + list(self._product_units.values()):
            before = len(unit_list)
            unit_list[:] = self._drop_removed_units(unit_list)
            removed += before - len(unit_list)
        for unit_id in unit_ids:
            self._units_by_id.pop(unit_id, None)

        self.invalidate(f"removed {removed} unit(s)")
        return removed

    async def add_conversion_facts(self, facts: Iterable[Any]) -> List[ConversionFact]:
        """
        Add or replace conversion facts.

        Raises:
            InvalidConversionFactError: if a record does not validate
                (missing units, factor <= 0)
        """
        validated = [validate_conversion_fact(f) for f in facts]

        await self._ensure_generic_data()
        for product_id in {f.product_id for f in validated if not f.is_generic}:
            await self._ensure_product_data(product_id)

        for fact in validated:
            target = self._generic_facts if fact.is_generic else self._product_facts[fact.product_id]
            _replace_or_append(target, fact, lambda existing: _fact_matches(existing, fact))
            self._removed_conversion_ids.discard(fact.unit_conversion_id)

        self.invalidate(f"added {len(validated)} conversion fact(s)")
        return validated

    async def remove_conversion_facts(self, facts: Iterable[Any]) -> int:
        """
        Remove facts matching by unit_conversion_id, or by (from, to, product) when no id is given.

        Removed ids stay removed for product data loaded later.

        Returns:
            Number of facts removed from already loaded data
        """
        targets = [validate_conversion_fact(f) if not isinstance(f, int) else f for f in facts]

        await self._ensure_generic_data()
        for product_id in {t.product_id for t in targets if not isinstance(t, int) and not t.is_generic}:
            await self._ensure_product_data(product_id)

        for target in targets:
            if isinstance(target, int):
                self._removed_conversion_ids.add(target)
            elif target.unit_conversion_id is not None:
                self._removed_conversion_ids.add(target.unit_conversion_id)

        def is_target(fact: ConversionFact) -> bool:
            if fact.unit_conversion_id in self._removed_conversion_ids:
                return True
            return any(not isinstance(t, int) and _fact_matches(fact, t) for t in targets)

        removed = 0
        for fact_list in [self._generic_facts or []] + list(self._product_facts.values()):
            before = len(fact_list)
            fact_list[:] = [f for f in fact_list if not is_target(f)]
            removed += before - len(fact_list)

        self.invalidate(f"removed {removed} conversion fact(s)")
        return removed

    def invalidate(self, reason: str = "", reload_data: bool = False) -> None:
        """
        Drop every derived graph and path.

        Args:
            reason: free text for the log
            reload_data: also forget loaded units/facts (and pending
                removals) so the next read fetches them again from the providers
        """
        if reload_data:
            self._generic_units = None
            self._generic_facts = None
            self._product_units.clear()
            self._product_facts.clear()
            self._units_by_id.clear()
            self._removed_unit_ids.clear()
            self._removed_conversion_ids.clear()
        self.cache.invalidate(reason)
        logger.info(f"Unit conversion cache invalidated: {reason or 'manual'}")

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.info()

    # ==================== DATA LOADING ====================

    async def _ensure_generic_data(self) -> None:
        if self._generic_units is not None and self._generic_facts is not None:
            return
        await self._coalesced(("generic-data",), self._load_generic_data)

    async def _load_generic_data(self) -> None:
        if self._generic_units is None:
            units, anomalies = coerce_units(await self.select_units())
            self._report(anomalies)
            units = self._drop_removed_units(units)
            for unit in units:
                self._units_by_id.setdefault(unit.unit_id, unit)
            self._generic_units = [u for u in units if u.is_generic]
            logger.debug(f"Loaded {len(self._generic_units)} generic unit(s)")

        if self._generic_facts is None:
            facts, anomalies = coerce_conversion_facts(await self.select_direct_conversions())
            self._report(anomalies)
            self._generic_facts = [f for f in self._drop_removed_facts(facts) if f.is_generic]
            logger.debug(f"Loaded {len(self._generic_facts)} generic conversion fact(s)")

    async def _ensure_product_data(self, product_id: int) -> None:
        if product_id in self._product_units and product_id in self._product_facts:
            return
        await self._coalesced(("product-data", product_id), lambda: self._load_product_data(product_id))

    async def _load_product_data(self, product_id: int) -> None:
        if product_id not in self._product_units:
            units, anomalies = coerce_units(await self.select_units({"product_id": product_id}))
            self._report(anomalies)
            units = self._drop_removed_units(units)
            for unit in units:
                self._units_by_id[unit.unit_id] = unit
            self._product_units[product_id] = units

        if product_id not in self._product_facts:
            facts, anomalies = coerce_conversion_facts(await self.select_direct_conversions(product_id))
            self._report(anomalies)
            self._product_facts[product_id] = [
                f if f.product_id is not None else f.model_copy(update={"product_id": product_id})
                for f in self._drop_removed_facts(facts)
                if f.product_id in (None, product_id)
            ]
            logger.debug(f"Loaded {len(self._product_facts[product_id])} conversion fact(s) for product {product_id}")

    # ==================== GRAPHS & PATHS ====================

    async def _scope_units(self, product_id: Optional[int]) -> List[Unit]:
        await self._ensure_generic_data()
        if product_id is None:
            return list(self._generic_units)

        await self._ensure_product_data(product_id)
        seen = {u.unit_id for u in self._generic_units}
        return list(self._generic_units) + [u for u in self._product_units[product_id] if u.unit_id not in seen]

    async def _lookup(self, scope: Sequence[int]) -> DirectFactorLookup:
        await self._ensure_generic_data()
        for product_id in scope:
            await self._ensure_product_data(product_id)

        generic = self._index(None, self._generic_facts)
        scoped = {product_id: self._index(product_id, self._product_facts[product_id]) for product_id in scope}

        aliases = GenericNameAliases(self._generic_units)
        for product_id in scope:
            for unit in self._product_units[product_id]:
                aliases.add(unit)

        return DirectFactorLookup(generic, scoped, aliases)

    def _index(self, product_id: Optional[int], facts: Sequence[ConversionFact]) -> FactorIndex:
        index = self.cache.get_index(product_id)
        if index is None:
            index = FactorIndex(facts)
            self.cache.store_index(product_id, index, self.cache.generation)
        return index

    async def _get_graph(self, product_id: Optional[int] = None) -> ConversionGraph:
        graph = self.cache.get_graph(product_id)
        if graph is not None:
            return graph
        return await self._coalesced(("graph", product_id), lambda: self._build_graph(product_id))

    async def _build_graph(self, product_id: Optional[int]) -> ConversionGraph:
        generation = self.cache.generation
        units = await self._scope_units(product_id)
        scope = [product_id] if product_id is not None else []
        lookup = await self._lookup(scope)

        graph = build_graph(units, lookup, scope)
        self.cache.store_graph(product_id, graph, generation)
        return graph

    async def _bridge_unit_ids(self) -> FrozenSet[int]:
        if self.settings.bridge_unit_ids is not None:
            return frozenset(self.settings.bridge_unit_ids)
        await self._ensure_generic_data()
        # Formless generic units measure an ingredient, not a product
        return frozenset(u.unit_id for u in self._generic_units if u.form_id is None)

    async def _resolve_path(self, from_unit_id: int, to_unit_id: int, scope: ScopeKey) -> Optional[ResolvedPath]:
        if from_unit_id == to_unit_id:
            return ResolvedPath((), ())

        key = (from_unit_id, to_unit_id, scope)
        hit, path = self.cache.lookup_path(key)
        if hit:
            return path

        return await self._coalesced(("path",) + key, lambda: self._search_path(from_unit_id, to_unit_id, scope))

    async def _search_path(self, from_unit_id: int, to_unit_id: int, scope: ScopeKey) -> Optional[ResolvedPath]:
        generation = self.cache.generation
        layer_product_ids: List[Optional[int]] = list(scope) or [None]
        graphs = [await self._get_graph(product_id) for product_id in layer_product_ids]
        bridge_unit_ids = await self._bridge_unit_ids() if len(graphs) > 1 else frozenset()

        path = shortest_path(graphs, from_unit_id, to_unit_id, layer_product_ids, bridge_unit_ids)
        self.cache.stats["path_searches"] += 1
        self.cache.store_path((from_unit_id, to_unit_id, scope), path, generation)

        if path is None:
            logger.debug(f"No conversion path from unit {from_unit_id} to unit {to_unit_id} for scope {scope or 'generic'}")
        else:
            logger.debug(f"Resolved unit {from_unit_id} -> {to_unit_id} in {path.hops} hop(s): {list(path.unit_ids)}")
        return path

    # ==================== HELPERS ====================

    async def _coalesced(self, key: Tuple[Any, ...], factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run factory once per key and generation; concurrent callers share the result"""
        key = key + (self.cache.generation,)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget_inflight(key, done))
        return await asyncio.shield(task)

    def _forget_inflight(self, key: Tuple[Any, ...], task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _drop_removed_units(self, units: Iterable[Unit]) -> List[Unit]:
        return [u for u in units if u.unit_id not in self._removed_unit_ids]

    def _drop_removed_facts(self, facts: Iterable[ConversionFact]) -> List[ConversionFact]:
        return [f for f in facts if f.unit_conversion_id not in self._removed_conversion_ids]

    def _report(self, anomalies: Iterable[ConversionAnomaly]) -> None:
        for anomaly in anomalies:
            logger.warning(f"[{anomaly.anomaly_code}] {anomaly.message}")
            self.anomalies.append(anomaly)


def _replace_or_append(items: List[Any], item: Any, matches: Callable[[Any], bool]) -> None:
    for i, existing in enumerate(items):
        if matches(existing):
            items[i] = item
            return
    items.append(item)


def _fact_matches(fact: ConversionFact, target: ConversionFact) -> bool:
    if target.unit_conversion_id is not None:
        return fact.unit_conversion_id == target.unit_conversion_id
    return (
        fact.from_unit_id == target.from_unit_id
        and fact.to_unit_id == target.to_unit_id
        and fact.product_id == target.product_id
    )

