from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from .engine import RoutingEngine
from .errors import (
    ConnectionNotFoundError,
    EmptySearchResultError,
    ImpossibleCurbsideError,
    InvalidRequestError,
    LegCountMismatchError,
    MissingDepartureTimeError,
    NegativeTimeError,
    PointNotFoundError,
    PointsNotFoundError,
    SearchExhaustedError,
)
from .path_details import (
    DetailContext,
    EdgeVisit,
    PathDetail,
    create_detail_emitters,
    merge_path_details,
    walk_path_details,
)
from .profiles import StreetProfile, get_profile
from .query_graph import ANY_EDGE, NO_EDGE, DirectionResult, EdgeState, QueryGraph, SnapResult
from .search import Path, SearchOptions
from .settings import settings

CURBSIDES: frozenset[str] = frozenset({"left", "right", "any"})


@dataclass(frozen=True)
class StitchPoint:
    lat: float
    lon: float
    hint: str | None = None


@dataclass(frozen=True)
class StitchRequest:
    points: Sequence[StitchPoint]
    # Either empty, one entry for the start only, or one per point; NaN means unconstrained.
    headings: Sequence[float] = ()
    curbsides: Sequence[str] = ()
    pass_through: bool = False
    time_dependent: bool = False
    departure_ms: int | None = None
    details: Sequence[str] = ()
    profile: str = "car"
    max_visited_nodes: int | None = None
    force_curbside: bool | None = None


@dataclass(frozen=True)
class StitchedRoute:
    legs: tuple[Path, ...]
    edges: tuple[EdgeState, ...]
    points: tuple[tuple[float, float], ...]
    distance_m: float
    time_ms: int
    weight: float
    visited_nodes_sum: int
    visited_nodes_average: float
    debug_info: tuple[str, ...]
    details: dict[str, list[PathDetail]] = field(default_factory=dict)
    snapped_points: tuple[tuple[float, float], ...] = ()

    @property
    def hints(self) -> dict[str, Any]:
        return {
            "visited_nodes.sum": self.visited_nodes_sum,
            "visited_nodes.average": self.visited_nodes_average,
        }

    def detail_values(self, name: str) -> list[Any]:
        return [detail.value for detail in self.details.get(name, [])]


def _merge_points(legs_points: Sequence[Sequence[tuple[float, float]]]) -> list[tuple[float, float]]:
    merged: list[tuple[float, float]] = []
    for index, coords in enumerate(legs_points):
        if not coords:
            continue
        if index == 0 or not merged:
            merged.extend(coords)
            continue
        first = coords[0]
        if math.isclose(merged[-1][0], first[0], abs_tol=1e-9) and math.isclose(merged[-1][1], first[1], abs_tol=1e-9):
            merged.extend(coords[1:])
        else:
            merged.extend(coords)
    return merged


def _has_heading(headings: Sequence[float], index: int) -> bool:
    return index < len(headings) and headings[index] is not None and not math.isnan(headings[index])


class RouteStitcher:
    """Turns N waypoints into N-1 sequential legs that read as one route."""

    def __init__(
        self,
        engine: RoutingEngine,
        *,
        max_visited_nodes: int | None = None,
        force_curbside: bool | None = None,
        heading_penalty_s: float | None = None,
        search_timeout_s: float | None = None,
    ) -> None:
        self.engine = engine
        self.max_visited_nodes = int(max_visited_nodes if max_visited_nodes is not None else settings.max_visited_nodes)
        self.force_curbside = bool(force_curbside if force_curbside is not None else settings.force_curbside)
        self.heading_penalty_s = float(heading_penalty_s if heading_penalty_s is not None else settings.heading_penalty_s)
        self.search_timeout_s = float(search_timeout_s if search_timeout_s is not None else settings.search_timeout_s)

    def _validate(self, request: StitchRequest) -> None:
        n = len(request.points)
        if n < 2:
            raise InvalidRequestError(
                f"At least 2 points have to be specified, but was: {n}",
                details={"points": n},
            )
        if len(request.headings) not in (0, 1, n):
            raise InvalidRequestError(
                "The number of 'heading' parameters must be zero, one or equal to the number of points "
                f"({len(request.headings)})",
            )
        for index, heading in enumerate(request.headings):
            if heading is None or math.isnan(heading):
                continue
            if not 0.0 <= heading <= 360.0:
                raise InvalidRequestError(f"Heading for point {index} must be in range [0,360] or NaN, but was: {heading}")
        if request.curbsides and len(request.curbsides) != n:
            raise InvalidRequestError(
                "If you pass curbside, you need to pass exactly one curbside for every point, "
                f"empty curbsides will be ignored ({len(request.curbsides)} for {n} points)",
            )
        for index, curbside in enumerate(request.curbsides):
            if (curbside or "any").lower() not in CURBSIDES:
                raise InvalidRequestError(f"Unknown curbside '{curbside}' at point {index}")
        if request.time_dependent and request.departure_ms is None:
            raise MissingDepartureTimeError()

    def _snap_all(self, request: StitchRequest) -> list[SnapResult]:
        snaps: list[SnapResult] = []
        errors: list[PointNotFoundError] = []
        for index, point in enumerate(request.points):
            snap = self.engine.snap_to_graph(point.lat, point.lon, point.hint)
            if not snap.valid:
                errors.append(PointNotFoundError(index, lat=point.lat, lon=point.lon))
            snaps.append(snap)
        if errors:
            raise PointsNotFoundError(errors)
        return snaps

    @staticmethod
    def _curbside_edge(
        direction: DirectionResult,
        curbside: str,
        point_index: int,
        *,
        incoming: bool,
        force_curbside: bool,
    ) -> int:
        edge = direction.in_edge(curbside) if incoming else direction.out_edge(curbside)
        if edge == NO_EDGE:
            if force_curbside:
                raise ImpossibleCurbsideError(point_index, curbside)
            return ANY_EDGE
        return edge

    def route(self, request: StitchRequest) -> StitchedRoute:
        self._validate(request)
        profile: StreetProfile = get_profile(request.profile)
        emitters = create_detail_emitters(request.details)
        max_visited = int(request.max_visited_nodes or self.max_visited_nodes)
        force_curbside = self.force_curbside if request.force_curbside is None else bool(request.force_curbside)

        snaps = self._snap_all(request)
        query_graph: QueryGraph = self.engine.create_query_graph(snaps)
        n = len(request.points)

        directions: list[DirectionResult] | None = None
        curbsides = [(c or "any").lower() for c in request.curbsides]
        if any(side != "any" for side in curbsides):
            directions = [query_graph.resolve_directions(i, profile) for i in range(n)]

        legs: list[Path] = []
        debug: list[str] = []
        visited_sum = 0
        departure_ms = request.departure_ms
        for leg_index in range(1, n):
            from_node = query_graph.snapped_node(leg_index - 1)
            to_node = query_graph.snapped_node(leg_index)
            started = time.perf_counter()
            try:
                if leg_index == 1:
                    if _has_heading(request.headings, 0):
                        query_graph.enforce_heading(from_node, float(request.headings[0]), incoming=False)
                elif request.pass_through and legs and legs[-1].final_edge is not None:
                    query_graph.unfavor_edge_pair(from_node, legs[-1].final_edge.edge)
                if _has_heading(request.headings, leg_index):
                    query_graph.enforce_heading(to_node, float(request.headings[leg_index]), incoming=True)

                source_out = ANY_EDGE
                target_in = ANY_EDGE
                if directions is not None:
                    source_out = self._curbside_edge(
                        directions[leg_index - 1],
                        curbsides[leg_index - 1],
                        leg_index - 1,
                        incoming=False,
                        force_curbside=force_curbside,
                    )
                    target_in = self._curbside_edge(
                        directions[leg_index],
                        curbsides[leg_index],
                        leg_index,
                        incoming=True,
                        force_curbside=force_curbside,
                    )

                deadline = (time.monotonic() + self.search_timeout_s) if self.search_timeout_s > 0 else None
                options = SearchOptions(
                    profile=profile,
                    from_out_edge=source_out,
                    to_in_edge=target_in,
                    max_visited_nodes=max_visited,
                    heading_penalty_s=self.heading_penalty_s,
                    deadline_monotonic_s=deadline,
                )
                if request.time_dependent:
                    if departure_ms is None:
                        raise MissingDepartureTimeError()
                    paths = self.engine.search_at_time(query_graph, from_node, to_node, departure_ms, options)
                else:
                    paths = self.engine.search(query_graph, from_node, to_node, options)
            finally:
                query_graph.clear_unfavored_state()

            if not paths:
                raise EmptySearchResultError(leg_index, from_node, to_node)
            for path in paths:
                if path.time_ms < 0:
                    raise NegativeTimeError(
                        path.time_ms,
                        {
                            "leg_index": leg_index,
                            "from": (request.points[leg_index - 1].lat, request.points[leg_index - 1].lon),
                            "to": (request.points[leg_index].lat, request.points[leg_index].lon),
                            "departure_ms": departure_ms,
                            "profile": profile.name,
                        },
                    )
            path = paths[0]
            visited_sum += path.visited_nodes
            if path.visited_nodes >= max_visited:
                raise SearchExhaustedError(leg_index, path.visited_nodes, max_visited)
            if not path.found:
                raise ConnectionNotFoundError(leg_index, reason=path.not_found_reason)
            legs.append(path)
            debug.append(
                f"leg {leg_index}: visited_nodes:{path.visited_nodes}, "
                f"time_ms:{path.time_ms}, distance_m:{path.distance_m:.1f}, "
                f"{(time.perf_counter() - started) * 1000.0:.2f}ms"
            )
            if request.time_dependent:
                departure_ms = path.arrival_ms

        if len(legs) != n - 1:
            raise LegCountMismatchError(n, len(legs))
        return self._assemble(query_graph, snaps, legs, debug, visited_sum, emitters)

    def _assemble(
        self,
        query_graph: QueryGraph,
        snaps: Sequence[SnapResult],
        legs: Sequence[Path],
        debug: Sequence[str],
        visited_sum: int,
        emitters: Sequence[Any],
    ) -> StitchedRoute:
        ctx = DetailContext(stable_ids=self.engine.stable_ids)
        details: dict[str, list[PathDetail]] = {emitter.name: [] for emitter in emitters}
        legs_points: list[list[tuple[float, float]]] = []
        offset = 0
        for leg in legs:
            points = leg.points(query_graph)
            legs_points.append(points)
            visits = [EdgeVisit(state, t_ms) for state, t_ms in zip(leg.edges, leg.edge_times_ms)]
            merge_path_details(details, walk_path_details(visits, emitters, ctx, start_index=offset))
            offset += len(points) - 1

        return StitchedRoute(
            legs=tuple(legs),
            edges=tuple(state for leg in legs for state in leg.edges),
            points=tuple(_merge_points(legs_points)),
            distance_m=sum(leg.distance_m for leg in legs),
            time_ms=sum(leg.time_ms for leg in legs),
            weight=sum(leg.weight for leg in legs),
            visited_nodes_sum=visited_sum,
            visited_nodes_average=(visited_sum / len(legs)) if legs else 0.0,
            debug_info=tuple(debug),
            details=details,
            snapped_points=tuple((snap.snapped_lat, snap.snapped_lon) for snap in snaps),
        )
