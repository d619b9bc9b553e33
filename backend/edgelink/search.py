from __future__ import annotations

import heapq
import time
from dataclasses import dataclass, field

from .profiles import StreetProfile
from .query_graph import ANY_EDGE, EdgeState, QueryGraph
from .time_of_day import multiplier_at_ms


@dataclass(frozen=True)
class SearchOptions:
    profile: StreetProfile
    from_out_edge: int = ANY_EDGE
    to_in_edge: int = ANY_EDGE
    max_visited_nodes: int = 1_000_000
    heading_penalty_s: float = 300.0
    deadline_monotonic_s: float | None = None


@dataclass
class Path:
    from_node: int
    to_node: int
    edges: list[EdgeState] = field(default_factory=list)
    edge_times_ms: list[int] = field(default_factory=list)
    distance_m: float = 0.0
    time_ms: int = 0
    weight: float = 0.0
    visited_nodes: int = 0
    found: bool = False
    departure_ms: int | None = None
    arrival_ms: int | None = None
    not_found_reason: str = ""

    @property
    def final_edge(self) -> EdgeState | None:
        return self.edges[-1] if self.edges else None

    def points(self, query_graph: QueryGraph) -> list[tuple[float, float]]:
        if not self.edges:
            return [query_graph.node_coords(self.from_node)]
        out: list[tuple[float, float]] = [self.edges[0].points[0]]
        for state in self.edges:
            out.extend(state.points[1:])
        return out


def _edge_time_ms(state: EdgeState, profile: StreetProfile, multiplier: float) -> int:
    speed_mps = profile.speed_kph(state.speed_kph) / 3.6
    return int(round((state.distance_m / speed_mps) * 1000.0 * max(0.1, multiplier)))


def _multiplier_at(departure_ms: int | None, elapsed_ms: int) -> float:
    if departure_ms is None:
        return 1.0
    return multiplier_at_ms(departure_ms + elapsed_ms)


def shortest_path(
    query_graph: QueryGraph,
    from_node: int,
    to_node: int,
    options: SearchOptions,
    *,
    departure_ms: int | None = None,
) -> Path:
    """Edge-based Dijkstra from ``from_node`` to ``to_node``.

    Settles directed edges rather than nodes so that in/out edge constraints
    and U-turn rules can be expressed. With ``departure_ms`` each edge is timed
    at the moment the vehicle enters it.
    """
    path = Path(from_node=from_node, to_node=to_node, departure_ms=departure_ms)
    if from_node == to_node and options.from_out_edge == ANY_EDGE and options.to_in_edge == ANY_EDGE:
        path.found = True
        path.visited_nodes = 1
        path.arrival_ms = departure_ms
        return path

    profile = options.profile
    heap: list[tuple[float, int, tuple[int, bool]]] = []
    best_weight: dict[tuple[int, bool], float] = {}
    elapsed_ms: dict[tuple[int, bool], int] = {}
    edge_time: dict[tuple[int, bool], int] = {}
    parent: dict[tuple[int, bool], tuple[int, bool] | None] = {}
    states: dict[tuple[int, bool], EdgeState] = {}
    sequence = 0

    def _relax(state: EdgeState, prev_key: tuple[int, bool] | None, prev_weight: float, prev_elapsed: int) -> None:
        nonlocal sequence
        key = (state.edge, state.reverse)
        t_ms = _edge_time_ms(state, profile, _multiplier_at(departure_ms, prev_elapsed))
        weight = prev_weight + t_ms / 1000.0
        if query_graph.is_unfavored(state.edge):
            weight += options.heading_penalty_s
        prior = best_weight.get(key)
        if prior is not None and weight >= prior:
            return
        best_weight[key] = weight
        elapsed_ms[key] = prev_elapsed + t_ms
        edge_time[key] = t_ms
        parent[key] = prev_key
        states[key] = state
        sequence += 1
        heapq.heappush(heap, (weight, sequence, key))

    for state in query_graph.out_states(from_node, profile):
        if options.from_out_edge != ANY_EDGE and state.edge != options.from_out_edge:
            continue
        _relax(state, None, 0.0, 0)

    settled: set[tuple[int, bool]] = set()
    visited = 0
    while heap:
        if options.deadline_monotonic_s is not None and time.monotonic() >= options.deadline_monotonic_s:
            path.not_found_reason = "search deadline exceeded"
            break
        if visited >= options.max_visited_nodes:
            path.not_found_reason = "maximum visited nodes exceeded"
            break
        weight, _, key = heapq.heappop(heap)
        if key in settled or weight > best_weight.get(key, weight):
            continue
        settled.add(key)
        visited += 1
        current = states[key]
        if current.adj_node == to_node and options.to_in_edge in (ANY_EDGE, current.edge):
            chain: list[tuple[int, bool]] = []
            cursor: tuple[int, bool] | None = key
            while cursor is not None:
                chain.append(cursor)
                cursor = parent[cursor]
            chain.reverse()
            path.edges = [states[item] for item in chain]
            path.edge_times_ms = [edge_time[item] for item in chain]
            path.distance_m = sum(state.distance_m for state in path.edges)
            path.time_ms = elapsed_ms[key]
            path.weight = weight
            path.found = True
            break
        successors = query_graph.out_states(current.adj_node, profile)
        dead_end = all(nxt.edge == current.edge for nxt in successors)
        for nxt in successors:
            # U-turns only where nothing else is possible.
            if nxt.edge == current.edge and not dead_end:
                continue
            if (nxt.edge, nxt.reverse) in settled:
                continue
            _relax(nxt, key, weight, elapsed_ms[key])

    path.visited_nodes = visited
    if not path.found and not path.not_found_reason:
        path.not_found_reason = "no path"
    if path.found and departure_ms is not None:
        path.arrival_ms = departure_ms + path.time_ms
    return path
