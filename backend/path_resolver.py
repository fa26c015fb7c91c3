# backend/path_resolver.py

"""
Path Resolver

Shortest chain of known conversions between two units.

Edge weight is 1 per hop: the fewest, most direct conversions win, not the
numeric magnitude of the factors.

MULTI-PRODUCT SCOPES:
Each product's graph is a separate layer. A path may start and end in any
layer but may only move from one product's layer to another's at a bridge
unit (an active-ingredient measure such as "mg active"). Grams of one product
are not grams of another, so a capsule of product A reaches a scoop of
product B through the amount of active ingredient both contain.
"""

from heapq import heappop, heappush
from itertools import count
from typing import AbstractSet, Dict, List, NamedTuple, Optional, Sequence, Tuple

from conversion_graph import ConversionGraph


class ResolvedPath(NamedTuple):
    """Units along the path and, per hop, the product whose layer supplied it"""
    unit_ids: Tuple[int, ...]
    hop_product_ids: Tuple[Optional[int], ...]

    @property
    def hops(self) -> int:
        return max(len(self.unit_ids) - 1, 0)


def shortest_path(
    graphs: Sequence[ConversionGraph],
    from_unit_id: int,
    to_unit_id: int,
    layer_product_ids: Optional[Sequence[Optional[int]]] = None,
    bridge_unit_ids: AbstractSet[int] = frozenset()
) -> Optional[ResolvedPath]:
    """
    Hop-count Dijkstra over one graph or a stack of product layers.

    Returns None when to_unit_id is unreachable, an empty path when both
    units are the same.
    """
    if from_unit_id == to_unit_id:
        return ResolvedPath((), ())

    if not graphs:
        return None

    layer_product_ids = list(layer_product_ids or [None] * len(graphs))
    layers = range(len(graphs))
    can_switch = len(graphs) > 1

    State = Tuple[int, int]  # (unit id, layer)
    distance: Dict[State, int] = {}
    previous: Dict[State, Optional[State]] = {}
    settled = set()
    tie = count()
    heap: List[Tuple[int, int, int, int]] = []

    for layer in layers:
        if from_unit_id in graphs[layer]:
            distance[(from_unit_id, layer)] = 0
            previous[(from_unit_id, layer)] = None
            heappush(heap, (0, next(tie), from_unit_id, layer))

    def relax(state: State, cost: int, came_from: State) -> None:
        if state in settled or cost >= distance.get(state, cost + 1):
            return
        distance[state] = cost
        previous[state] = came_from
        heappush(heap, (cost, next(tie), state[0], state[1]))

    while heap:
        cost, _, unit_id, layer = heappop(heap)
        state = (unit_id, layer)
        if state in settled:
            continue
        settled.add(state)

        if unit_id == to_unit_id:
            return _reconstruct(state, previous, layer_product_ids)

        for neighbor in graphs[layer].neighbors(unit_id):
            relax((neighbor, layer), cost + 1, state)

        if can_switch and unit_id in bridge_unit_ids:
            for other in layers:
                if other != layer and unit_id in graphs[other]:
                    relax((unit_id, other), cost, state)

    return None


def _reconstruct(
    end: Tuple[int, int],
    previous: Dict[Tuple[int, int], Optional[Tuple[int, int]]],
    layer_product_ids: Sequence[Optional[int]]
) -> ResolvedPath:
    states: List[Tuple[int, int]] = []
    state: Optional[Tuple[int, int]] = end
    while state is not None:
        states.append(state)
        state = previous[state]
    states.reverse()

    unit_ids: List[int] = [states[0][0]]
    hop_product_ids: List[Optional[int]] = []
    for (prev_unit, _), (unit_id, layer) in zip(states, states[1:]):
        if unit_id == prev_unit:
            continue  # layer switch at a bridge unit
        unit_ids.append(unit_id)
        hop_product_ids.append(layer_product_ids[layer])

    return ResolvedPath(tuple(unit_ids), tuple(hop_product_ids))
