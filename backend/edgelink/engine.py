from __future__ import annotations

import math
from typing import Protocol, Sequence

from .query_graph import QueryGraph, SnapResult, TOWER_SNAP_TOLERANCE_M
from .search import Path, SearchOptions, shortest_path
from .stable_id import StableIdAttributes
from .street_graph import StreetGraph, _haversine_m, nearest_edge_candidates


class RoutingEngine(Protocol):
    """What the stitcher and the link mapper need from a routing engine."""

    @property
    def stable_ids(self) -> StableIdAttributes: ...

    def snap_to_graph(self, lat: float, lon: float, hint: str | None = None) -> SnapResult: ...

    def create_query_graph(self, snaps: Sequence[SnapResult]) -> QueryGraph: ...

    def search(self, query_graph: QueryGraph, from_node: int, to_node: int, options: SearchOptions) -> list[Path]: ...

    def search_at_time(
        self,
        query_graph: QueryGraph,
        from_node: int,
        to_node: int,
        departure_ms: int,
        options: SearchOptions,
    ) -> list[Path]: ...


def _hint_matches(hint: str, name: str) -> bool:
    left = hint.strip().casefold()
    right = name.strip().casefold()
    if not left or not right:
        return False
    return left in right or right in left


class GraphRoutingEngine:
    """In-process engine over a loaded :class:`StreetGraph`."""

    def __init__(self, graph: StreetGraph, *, snap_max_distance_m: float = 1_000.0) -> None:
        self.graph = graph
        self.snap_max_distance_m = float(snap_max_distance_m)

    @property
    def stable_ids(self) -> StableIdAttributes:
        return self.graph.stable_ids

    def snap_to_graph(self, lat: float, lon: float, hint: str | None = None) -> SnapResult:
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return SnapResult(valid=False, query_lat=lat, query_lon=lon)
        candidates = nearest_edge_candidates(
            self.graph,
            lat=lat,
            lon=lon,
            max_distance_m=self.snap_max_distance_m,
        )
        if not candidates:
            return SnapResult(valid=False, query_lat=lat, query_lon=lon)
        chosen = candidates[0]
        if hint:
            named = [c for c in candidates if _hint_matches(hint, self.graph.edges[c.edge].name)]
            if named:
                chosen = named[0]

        edge = self.graph.edges[chosen.edge]
        base = self.graph.nodes[edge.base]
        adj = self.graph.nodes[edge.adj]
        closest_node: int | None = None
        if _haversine_m(chosen.lat, chosen.lon, base[0], base[1]) < TOWER_SNAP_TOLERANCE_M:
            closest_node = edge.base
        elif _haversine_m(chosen.lat, chosen.lon, adj[0], adj[1]) < TOWER_SNAP_TOLERANCE_M:
            closest_node = edge.adj
        return SnapResult(
            valid=True,
            query_lat=lat,
            query_lon=lon,
            closest_edge=chosen.edge,
            closest_node=closest_node,
            segment=chosen.segment,
            fraction=chosen.fraction,
            snapped_lat=chosen.lat,
            snapped_lon=chosen.lon,
            distance_m=chosen.distance_m,
            position="tower" if closest_node is not None else "edge",
        )

    def create_query_graph(self, snaps: Sequence[SnapResult]) -> QueryGraph:
        return QueryGraph(self.graph, snaps)

    def search(self, query_graph: QueryGraph, from_node: int, to_node: int, options: SearchOptions) -> list[Path]:
        return [shortest_path(query_graph, from_node, to_node, options)]

    def search_at_time(
        self,
        query_graph: QueryGraph,
        from_node: int,
        to_node: int,
        departure_ms: int,
        options: SearchOptions,
    ) -> list[Path]:
        return [shortest_path(query_graph, from_node, to_node, options, departure_ms=departure_ms)]
