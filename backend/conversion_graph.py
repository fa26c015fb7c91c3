# backend/conversion_graph.py

"""
Conversion Graph Builder

Turns units and conversion facts into an adjacency structure:
- FactorIndex: first-match (from, to) -> factor lookup, both directions
- GenericNameAliases: unit name -> generic unit id (secondary lookup key)
- DirectFactorLookup: product scope -> generic -> name fallback precedence
- build_graph: one ConversionGraph per scope
- chain_factor: multiply the per-hop factors of a resolved path

NAME ALIASING:
A product-specific unit without any direct fact borrows the conversions of
the generic unit sharing its display name ("g" of a product behaves like the
generic "g"). This is a naming convention of the catalog, not an enforced
relation, so renaming a unit silently changes which conversions apply.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

from unit_models import ConversionFact, Unit

logger = logging.getLogger(__name__)


# ==================== FACT INDEX ====================

class FactorIndex:
    """
    Direct factors of one fact set (generic or one product).

    Each fact registers (from, to) -> factor and (to, from) -> 1/factor.
    The first fact mentioning a pair wins, in either orientation.
    """

    def __init__(self, facts: Iterable[ConversionFact] = ()):
        self._factors: Dict[Tuple[int, int], float] = {}
        self._fact_count = 0
        for fact in facts:
            self.add(fact)

    def add(self, fact: ConversionFact) -> None:
        if fact.from_unit_id == fact.to_unit_id:
            logger.debug(f"Ignoring self conversion for unit {fact.from_unit_id}")
            return
        self._factors.setdefault((fact.from_unit_id, fact.to_unit_id), fact.factor)
        self._factors.setdefault((fact.to_unit_id, fact.from_unit_id), 1.0 / fact.factor)
        self._fact_count += 1

    def get(self, from_unit_id: int, to_unit_id: int) -> Optional[float]:
        return self._factors.get((from_unit_id, to_unit_id))

    def __len__(self) -> int:
        return self._fact_count


# ==================== NAME ALIASES ====================

class GenericNameAliases:
    """Display name -> generic unit id, first generic unit per name wins"""

    def __init__(self, units: Iterable[Unit] = ()):
        self._generic_by_name: Dict[str, int] = {}
        self._names: Dict[int, str] = {}
        for unit in units:
            self.add(unit)

    def add(self, unit: Unit) -> None:
        self._names[unit.unit_id] = unit.name
        if unit.is_generic:
            self._generic_by_name.setdefault(unit.name, unit.unit_id)

    def namesake(self, unit_id: int) -> Optional[int]:
        """Generic unit with the same display name, or None"""
        name = self._names.get(unit_id)
        if name is None:
            return None
        return self._generic_by_name.get(name)

    def resolve(self, unit_id: int) -> int:
        """Generic namesake if one exists, else the unit itself"""
        return self.namesake(unit_id) or unit_id


# ==================== DIRECT FACTOR LOOKUP ====================

class DirectFactorLookup:
    """
    Direct factor between two adjacent units.

    Precedence:
    1) product-scoped facts, in scope order
    2) generic facts
    3) the same two steps using the generic namesakes of both units
    """

    def __init__(
        self,
        generic: FactorIndex,
        scoped: Optional[Mapping[int, FactorIndex]] = None,
        aliases: Optional[GenericNameAliases] = None
    ):
        self.generic = generic
        self.scoped: Mapping[int, FactorIndex] = scoped or {}
        self.aliases = aliases or GenericNameAliases()

    @classmethod
    def from_facts(cls, facts: Iterable[ConversionFact], units: Iterable[Unit] = ()) -> "DirectFactorLookup":
        generic_facts: List[ConversionFact] = []
        product_facts: Dict[int, List[ConversionFact]] = {}
        for fact in facts:
            if fact.is_generic:
                generic_facts.append(fact)
            else:
                product_facts.setdefault(fact.product_id, []).append(fact)

        return cls(
            FactorIndex(generic_facts),
            {product_id: FactorIndex(group) for product_id, group in product_facts.items()},
            GenericNameAliases(units)
        )

    def direct_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Sequence[int] = ()
    ) -> Optional[float]:
        if from_unit_id == to_unit_id:
            return 1.0

        for product_id in product_ids:
            index = self.scoped.get(product_id)
            factor = index.get(from_unit_id, to_unit_id) if index else None
            if factor:
                return factor

        return self.generic.get(from_unit_id, to_unit_id) or None

    def preferred_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Sequence[int] = ()
    ) -> Optional[float]:
        factor = self.direct_factor(from_unit_id, to_unit_id, product_ids)
        if factor:
            return factor

        # Fallback: generic units with matching name
        alias_from = self.aliases.resolve(from_unit_id)
        alias_to = self.aliases.resolve(to_unit_id)
        if (alias_from, alias_to) == (from_unit_id, to_unit_id):
            return None

        return self.direct_factor(alias_from, alias_to, product_ids)


# ==================== GRAPH ====================

class ConversionGraph:
    """unit id -> {neighbor unit id -> factor}, kept symmetric"""

    def __init__(self):
        self._adjacency: Dict[int, Dict[int, float]] = {}

    def add_node(self, unit_id: int) -> None:
        self._adjacency.setdefault(unit_id, {})

    def set_factor(self, from_unit_id: int, to_unit_id: int, factor: float) -> None:
        self._adjacency.setdefault(from_unit_id, {})[to_unit_id] = factor

    def add_edge(self, from_unit_id: int, to_unit_id: int, factor: float) -> None:
        self._adjacency.setdefault(from_unit_id, {})[to_unit_id] = factor
        self._adjacency.setdefault(to_unit_id, {})[from_unit_id] = 1.0 / factor

    def neighbors(self, unit_id: int) -> Mapping[int, float]:
        return self._adjacency.get(unit_id, {})

    def factor(self, from_unit_id: int, to_unit_id: int) -> Optional[float]:
        return self._adjacency.get(from_unit_id, {}).get(to_unit_id)

    @property
    def nodes(self) -> List[int]:
        return list(self._adjacency)

    def edge_count(self) -> int:
        return sum(len(paths) for paths in self._adjacency.values())

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)


def build_graph(
    units: Sequence[Unit],
    lookup: DirectFactorLookup,
    product_ids: Sequence[int] = ()
) -> ConversionGraph:
    """
    Build the conversion graph of one scope.

    For every ordered pair of distinct units the direct factor is taken from
    the scoped facts first and the generic facts second. Product-specific
    units left without any edge inherit the edges of their generic namesake.

    Pure function: caching is the caller's job.
    """
    graph = ConversionGraph()

    for from_unit in units:
        graph.add_node(from_unit.unit_id)
        for to_unit in units:
            if to_unit.unit_id == from_unit.unit_id:
                continue
            factor = lookup.direct_factor(from_unit.unit_id, to_unit.unit_id, product_ids)
            if factor:
                graph.set_factor(from_unit.unit_id, to_unit.unit_id, factor)

    for unit in units:
        if unit.is_generic or graph.neighbors(unit.unit_id):
            continue
        namesake = lookup.aliases.namesake(unit.unit_id)
        if namesake is None or namesake == unit.unit_id or namesake not in graph:
            continue
        for neighbor, factor in list(graph.neighbors(namesake).items()):
            if neighbor != unit.unit_id:
                graph.add_edge(unit.unit_id, neighbor, factor)
        logger.debug(f"Unit {unit.unit_id} ({unit.name}) inherits conversions of generic unit {namesake}")

    logger.debug(
        f"Built conversion graph for scope {tuple(product_ids) or 'generic'}: "
        f"{len(graph)} units, {graph.edge_count()} directed edges"
    )
    return graph


# ==================== FACTOR CHAIN ====================

def chain_factor(
    unit_ids: Sequence[int],
    lookup: DirectFactorLookup,
    product_ids: Sequence[int] = (),
    hop_product_ids: Optional[Sequence[Optional[int]]] = None
) -> Tuple[float, List[Tuple[int, int]]]:
    """
    Multiply the direct factors along a path.

    hop_product_ids names, per hop, the product whose conversions produced it;
    that product is searched first for the hop. A hop without any direct
    factor counts as 1 and is returned in the list of missing hops.
    """
    factor = 1.0
    missing: List[Tuple[int, int]] = []

    for i in range(len(unit_ids) - 1):
        scope = list(product_ids)
        preferred = hop_product_ids[i] if hop_product_ids and i < len(hop_product_ids) else None
        if preferred is not None:
            scope = [preferred] + [p for p in scope if p != preferred]

        direct_factor = lookup.preferred_factor(unit_ids[i], unit_ids[i + 1], scope)
        if not direct_factor:
            missing.append((unit_ids[i], unit_ids[i + 1]))
            continue

        factor *= direct_factor

    return factor, missing
