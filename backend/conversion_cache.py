# backend/conversion_cache.py

"""
Conversion Cache

Engine-owned cache of derived data:
- conversion graphs, one per scope (None = generic, else a product id)
- factor indexes, one per fact set (None = generic, else a product id)
- resolved paths keyed by (from unit, to unit, scope key), including
  "no path" results

INVALIDATION:
Any change to units or conversion facts drops every graph, index and path
(positive and negative alike) and bumps the generation counter. A build
that started under an older generation must not store its result.
"""

from collections import Counter
from typing import Dict, Optional, Tuple
import logging

from conversion_graph import ConversionGraph, FactorIndex
from path_resolver import ResolvedPath

logger = logging.getLogger(__name__)

ScopeKey = Tuple[int, ...]
PathKey = Tuple[int, int, ScopeKey]

_MISSING = object()


class ConversionCache:
    """Graphs, factor indexes and paths derived from one data set"""

    def __init__(self):
        self.generation = 0
        self._graphs: Dict[Optional[int], ConversionGraph] = {}
        self._indexes: Dict[Optional[int], FactorIndex] = {}
        self._paths: Dict[PathKey, Optional[ResolvedPath]] = {}
        self.stats: Counter = Counter()

    # ---------- graphs ----------

    def get_graph(self, product_id: Optional[int] = None) -> Optional[ConversionGraph]:
        return self._graphs.get(product_id)

    def store_graph(self, product_id: Optional[int], graph: ConversionGraph, generation: int) -> bool:
        if generation != self.generation:
            logger.debug(f"Discarding graph for scope {product_id} built under stale generation {generation}")
            return False
        self._graphs[product_id] = graph
        self.stats["graph_builds"] += 1
        return True

    # ---------- factor indexes ----------

    def get_index(self, product_id: Optional[int] = None) -> Optional[FactorIndex]:
        return self._indexes.get(product_id)

    def store_index(self, product_id: Optional[int], index: FactorIndex, generation: int) -> bool:
        if generation != self.generation:
            return False
        self._indexes[product_id] = index
        return True

    # ---------- paths ----------

    def lookup_path(self, key: PathKey) -> Tuple[bool, Optional[ResolvedPath]]:
        """(hit, path); a hit with path None is a cached "no path" result"""
        path = self._paths.get(key, _MISSING)
        if path is _MISSING:
            self.stats["path_misses"] += 1
            return False, None
        self.stats["path_hits"] += 1
        return True, path

    def store_path(self, key: PathKey, path: Optional[ResolvedPath], generation: int) -> bool:
        if generation != self.generation:
            return False
        self._paths[key] = path
        if path is None:
            self.stats["negative_paths"] += 1
        return True

    # ---------- invalidation ----------

    def invalidate(self, reason: str = "") -> None:
        self.generation += 1
        dropped = len(self._graphs), len(self._paths)
        self._graphs.clear()
        self._indexes.clear()
        self._paths.clear()
        self.stats["invalidations"] += 1
        logger.debug(
            f"Conversion cache invalidated ({reason or 'manual'}): "
            f"dropped {dropped[0]} graph(s), {dropped[1]} path(s)"
        )

    def info(self) -> Dict[str, int]:
        info = dict(self.stats)
        info.update({
            "generation": self.generation,
            "graphs": len(self._graphs),
            "indexes": len(self._indexes),
            "paths": len(self._paths),
            "negative_paths_cached": sum(1 for path in self._paths.values() if path is None),
        })
        return info
