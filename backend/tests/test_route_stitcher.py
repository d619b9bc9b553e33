from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

import pytest

from edgelink.engine import GraphRoutingEngine
from edgelink.errors import (
    ConnectionNotFoundError,
    EmptySearchResultError,
    ImpossibleCurbsideError,
    InvalidRequestError,
    MissingDepartureTimeError,
    NegativeTimeError,
    PointsNotFoundError,
    SearchExhaustedError,
)
from edgelink.query_graph import QueryGraph
from edgelink.route_stitcher import RouteStitcher, StitchPoint, StitchRequest
from edgelink.search import Path, SearchOptions
from edgelink.street_graph import StreetGraph
from edgelink.time_of_day import to_epoch_ms
from street_fixtures import (
    EDGE_AB,
    EDGE_BE,
    EDGE_CF,
    EDGE_EF,
    EDGE_GH,
    NORTH_OF_GH,
    NOWHERE,
    ON_AB,
    ON_BE,
    ON_CF,
    ON_EF,
    ON_XY,
    OVERLAND_END,
    OVERLAND_START,
    SOUTH_OF_GH,
    make_overland_graph,
)


class RecordingEngine(GraphRoutingEngine):
    """Remembers the unfavored edges in force for every search."""

    def __init__(self, graph: StreetGraph) -> None:
        super().__init__(graph, snap_max_distance_m=500.0)
        self.unfavored: list[frozenset[int]] = []

    def search(self, query_graph: QueryGraph, from_node: int, to_node: int, options: SearchOptions) -> list[Path]:
        self.unfavored.append(query_graph.unfavored_edges)
        return super().search(query_graph, from_node, to_node, options)


class EmptyEngine(GraphRoutingEngine):
    def search(self, query_graph: QueryGraph, from_node: int, to_node: int, options: SearchOptions) -> list[Path]:
        return []


class NegativeTimeEngine(GraphRoutingEngine):
    def search(self, query_graph: QueryGraph, from_node: int, to_node: int, options: SearchOptions) -> list[Path]:
        return [Path(from_node=from_node, to_node=to_node, time_ms=-5, found=True)]


def _stitcher(engine: GraphRoutingEngine, **kwargs: Any) -> RouteStitcher:
    options: dict[str, Any] = {
        "max_visited_nodes": 10_000,
        "force_curbside": True,
        "heading_penalty_s": 300.0,
        "search_timeout_s": 0.0,
    }
    options.update(kwargs)
    return RouteStitcher(engine, **options)


@pytest.mark.parametrize("points", [(), (ON_AB,)])
def test_fewer_than_two_points_is_rejected(stitcher: RouteStitcher, points: tuple[StitchPoint, ...]) -> None:
    with pytest.raises(InvalidRequestError) as excinfo:
        stitcher.route(StitchRequest(points=points))
    assert excinfo.value.message == f"At least 2 points have to be specified, but was: {len(points)}"


def test_heading_and_curbside_counts_are_validated(stitcher: RouteStitcher) -> None:
    points = (ON_AB, ON_BE, ON_EF)
    with pytest.raises(InvalidRequestError):
        stitcher.route(StitchRequest(points=points, headings=(90.0, 90.0)))
    with pytest.raises(InvalidRequestError):
        stitcher.route(StitchRequest(points=points, headings=(400.0,)))
    with pytest.raises(InvalidRequestError):
        stitcher.route(StitchRequest(points=points, curbsides=("right", "left")))
    with pytest.raises(InvalidRequestError):
        stitcher.route(StitchRequest(points=points, curbsides=("right", "left", "middle")))


def test_time_dependent_request_needs_departure(stitcher: RouteStitcher) -> None:
    with pytest.raises(MissingDepartureTimeError) as excinfo:
        stitcher.route(StitchRequest(points=(ON_AB, ON_EF), time_dependent=True))
    assert excinfo.value.reason_code == "missing_departure_time"


def test_two_waypoints_route_with_stable_ids(stitcher: RouteStitcher, street_graph: StreetGraph) -> None:
    route = stitcher.route(
        StitchRequest(points=(ON_AB, ON_EF), details=("stable_edge_ids", "edge_key", "street_name"))
    )
    ids = street_graph.stable_ids

    assert len(route.legs) == 1
    assert route.distance_m > 1_500.0
    assert route.time_ms > 0
    assert route.points[0] == pytest.approx((38.96, -94.695))
    assert route.points[-1] == pytest.approx((38.97, -94.685))
    assert route.snapped_points[0] == pytest.approx((38.96, -94.695))
    assert route.detail_values("stable_edge_ids") == [
        ids.get_stable_id(EDGE_AB, False),
        ids.get_stable_id(EDGE_BE, False),
        ids.get_stable_id(EDGE_EF, False),
    ]
    assert [(d.first, d.last) for d in route.details["stable_edge_ids"]] == [(0, 1), (1, 2), (2, 3)]
    assert route.detail_values("edge_key") == [2 * EDGE_AB, 2 * EDGE_BE, 2 * EDGE_EF]
    assert route.detail_values("street_name") == ["Main Street", "Centre Road", "North Avenue"]
    assert route.hints["visited_nodes.sum"] == route.legs[0].visited_nodes
    assert len(route.debug_info) == 1
    assert route.debug_info[0].startswith("leg 1: visited_nodes:")


def test_multi_waypoint_route_equals_sum_of_legs(stitcher: RouteStitcher) -> None:
    full = stitcher.route(StitchRequest(points=(ON_AB, ON_BE, ON_EF), details=("stable_edge_ids",)))
    first = stitcher.route(StitchRequest(points=(ON_AB, ON_BE)))
    second = stitcher.route(StitchRequest(points=(ON_BE, ON_EF)))

    assert len(full.legs) == 2
    assert full.distance_m == pytest.approx(first.distance_m + second.distance_m)
    assert full.time_ms == pytest.approx(first.time_ms + second.time_ms, abs=1)
    # The shared waypoint appears once in the merged geometry.
    assert len(full.points) == len(first.points) + len(second.points) - 1
    assert full.hints["visited_nodes.sum"] == sum(leg.visited_nodes for leg in full.legs)
    assert full.hints["visited_nodes.average"] == pytest.approx(full.visited_nodes_sum / 2)
    details = full.details["stable_edge_ids"]
    assert details[0].first == 0
    assert details[-1].last == len(full.points) - 1
    assert all(a.last <= b.first for a, b in zip(details, details[1:]))


def test_pass_through_unfavors_arrival_edge_for_next_leg_only(street_graph: StreetGraph) -> None:
    engine = RecordingEngine(street_graph)
    route = _stitcher(engine).route(StitchRequest(points=(ON_AB, ON_BE, ON_EF), pass_through=True))

    arrival = route.legs[0].final_edge
    assert arrival is not None and arrival.virtual
    assert engine.unfavored == [frozenset(), frozenset({arrival.edge})]

    engine.unfavored.clear()
    _stitcher(engine).route(StitchRequest(points=(ON_AB, ON_BE, ON_EF)))
    assert engine.unfavored == [frozenset(), frozenset()]


def test_start_heading_steers_departure_direction(stitcher: RouteStitcher) -> None:
    plain = stitcher.route(StitchRequest(points=(ON_AB, ON_EF)))
    westward = stitcher.route(StitchRequest(points=(ON_AB, ON_EF), headings=(270.0, math.nan)))

    assert plain.points[1][1] > plain.points[0][1]
    assert westward.points[1][1] < westward.points[0][1]
    assert westward.distance_m > plain.distance_m


def test_curbside_on_one_way_street(street_graph: StreetGraph) -> None:
    strict = _stitcher(GraphRoutingEngine(street_graph, snap_max_distance_m=500.0), force_curbside=True)
    with pytest.raises(ImpossibleCurbsideError) as excinfo:
        strict.route(StitchRequest(points=(ON_AB, NORTH_OF_GH), curbsides=("any", "right")))
    assert excinfo.value.point_index == 1
    assert excinfo.value.reason_code == "impossible_curbside"

    # Per-request override relaxes the constraint instead of failing.
    relaxed = strict.route(StitchRequest(points=(ON_AB, NORTH_OF_GH), curbsides=("any", "right"), force_curbside=False))
    assert len(relaxed.legs) == 1

    south = strict.route(
        StitchRequest(points=(ON_AB, SOUTH_OF_GH), curbsides=("any", "right"), details=("stable_edge_ids",))
    )
    final = south.legs[0].final_edge
    assert final is not None and final.reverse is False
    assert south.detail_values("stable_edge_ids")[-1] == street_graph.stable_ids.get_stable_id(EDGE_GH, False)


def test_unsnappable_points_are_reported_together(stitcher: RouteStitcher) -> None:
    with pytest.raises(PointsNotFoundError) as excinfo:
        stitcher.route(StitchRequest(points=(NOWHERE, ON_AB, NOWHERE)))
    assert [err.point_index for err in excinfo.value.errors] == [0, 2]
    assert excinfo.value.details == {"point_indices": [0, 2]}


def test_disconnected_destination_is_not_found(stitcher: RouteStitcher) -> None:
    with pytest.raises(ConnectionNotFoundError) as excinfo:
        stitcher.route(StitchRequest(points=(ON_AB, ON_EF, ON_XY)))
    assert excinfo.value.leg_index == 2


def test_visited_node_cap_is_enforced(stitcher: RouteStitcher) -> None:
    with pytest.raises(SearchExhaustedError) as excinfo:
        stitcher.route(StitchRequest(points=(ON_AB, ON_EF), max_visited_nodes=1))
    assert excinfo.value.details is not None
    assert excinfo.value.details["max_visited_nodes"] == 1
    assert "maximum nodes exceeded 1" in excinfo.value.message


def test_time_dependent_legs_chain_arrival_into_departure(stitcher: RouteStitcher) -> None:
    departure = to_epoch_ms(datetime(2026, 3, 10, 8, 0, tzinfo=UTC))
    plain = stitcher.route(StitchRequest(points=(ON_AB, ON_BE, ON_CF)))
    timed = stitcher.route(
        StitchRequest(points=(ON_AB, ON_BE, ON_CF), time_dependent=True, departure_ms=departure)
    )

    first, second = timed.legs
    assert first.departure_ms == departure
    assert first.arrival_ms == departure + first.time_ms
    assert second.departure_ms == first.arrival_ms
    assert second.arrival_ms == first.arrival_ms + second.time_ms
    # Morning peak slows every edge down.
    assert timed.time_ms > plain.time_ms


def test_internal_invariant_failures_propagate(street_graph: StreetGraph) -> None:
    with pytest.raises(EmptySearchResultError):
        _stitcher(EmptyEngine(street_graph, snap_max_distance_m=500.0)).route(StitchRequest(points=(ON_AB, ON_EF)))
    with pytest.raises(NegativeTimeError) as excinfo:
        _stitcher(NegativeTimeEngine(street_graph, snap_max_distance_m=500.0)).route(
            StitchRequest(points=(ON_AB, ON_EF))
        )
    assert excinfo.value.time_ms == -5


def test_stitcher_is_reusable_across_requests(stitcher: RouteStitcher, street_graph: StreetGraph) -> None:
    first = stitcher.route(StitchRequest(points=(ON_EF, ON_CF), details=("stable_edge_ids",)))
    second = stitcher.route(StitchRequest(points=(ON_EF, ON_CF), details=("stable_edge_ids",)))
    assert first.detail_values("stable_edge_ids") == second.detail_values("stable_edge_ids")
    assert first.detail_values("stable_edge_ids") == [
        street_graph.stable_ids.get_stable_id(EDGE_EF, False),
        street_graph.stable_ids.get_stable_id(EDGE_CF, True),
    ]


def test_car_route_between_fixed_waypoints_without_headings() -> None:
    graph = make_overland_graph()
    route = _stitcher(GraphRoutingEngine(graph, snap_max_distance_m=500.0)).route(
        StitchRequest(
            points=(OVERLAND_START, OVERLAND_END),
            headings=(math.nan, math.nan),
            profile="car",
            details=("stable_edge_ids",),
        )
    )
    ids = graph.stable_ids

    assert len(route.legs) == 1
    assert route.time_ms >= 0
    assert route.distance_m >= 0.0
    assert route.detail_values("stable_edge_ids") == [
        ids.get_stable_id(0, False),
        ids.get_stable_id(1, False),
        ids.get_stable_id(2, False),
    ]


def test_infeasible_destination_curbside_fails_fast() -> None:
    graph = make_overland_graph()
    stitcher = _stitcher(GraphRoutingEngine(graph, snap_max_distance_m=500.0), force_curbside=True)
    with pytest.raises(ImpossibleCurbsideError) as excinfo:
        stitcher.route(
            StitchRequest(
                points=(OVERLAND_START, OVERLAND_END),
                headings=(math.nan, math.nan),
                curbsides=("any", "right"),
                profile="car",
            )
        )
    assert excinfo.value.point_index == 1
