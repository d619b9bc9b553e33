from __future__ import annotations

from dataclasses import replace

import pytest

from edgelink.edge_keys import to_key
from edgelink.errors import InvalidRequestError
from edgelink.path_details import (
    AdjNodeEmitter,
    DetailContext,
    DetailState,
    DistanceEmitter,
    EdgeKeyEmitter,
    EdgeVisit,
    ExternalEdgeIdEmitter,
    PathDetail,
    StableIdEmitter,
    StreetNameEmitter,
    TimeEmitter,
    create_detail_emitters,
    is_different_from_previous,
    merge_path_details,
    walk_path_details,
)
from edgelink.query_graph import EdgeState
from edgelink.street_graph import StreetGraph
from street_fixtures import EDGE_AB, EDGE_BC, EDGE_BE


def _state(
    edge: int,
    *,
    reverse: bool = False,
    name: str = "Main Street",
    points: int = 2,
    virtual: bool = False,
    original: int | None = None,
) -> EdgeState:
    coords = tuple((38.96, -94.70 + 0.001 * i) for i in range(points))
    return EdgeState(
        edge=edge,
        base_node=0,
        adj_node=1,
        reverse=reverse,
        distance_m=100.0,
        road_class="residential",
        speed_kph=30.0,
        points=coords,
        name=name,
        virtual=virtual,
        original_edge_key=to_key(original, False) if original is not None else None,
    )


def test_factory_returns_emitters_in_request_order() -> None:
    emitters = create_detail_emitters(["edge_key", "stable_edge_ids", "edge_key"])
    assert [emitter.name for emitter in emitters] == ["edge_key", "stable_edge_ids"]
    assert create_detail_emitters([]) == []


def test_factory_rejects_unknown_detail() -> None:
    with pytest.raises(InvalidRequestError) as excinfo:
        create_detail_emitters(["stable_edge_ids", "lanes"])
    assert "lanes" in excinfo.value.message
    assert excinfo.value.details is not None
    assert "stable_edge_ids" in excinfo.value.details["available"]


def test_change_detection_only_fires_on_new_values(street_graph: StreetGraph) -> None:
    ctx = DetailContext(stable_ids=street_graph.stable_ids)
    emitter = StreetNameEmitter()
    state = DetailState()
    assert is_different_from_previous(emitter, state, EdgeVisit(_state(0)), ctx) is True
    assert state.current_value == "Main Street"
    assert is_different_from_previous(emitter, state, EdgeVisit(_state(1)), ctx) is False
    assert is_different_from_previous(emitter, state, EdgeVisit(_state(2, name="Centre Road")), ctx) is True
    assert state.current_value == "Centre Road"


def test_walk_merges_runs_and_tracks_point_indices(street_graph: StreetGraph) -> None:
    ctx = DetailContext(stable_ids=street_graph.stable_ids)
    visits = [
        EdgeVisit(_state(EDGE_AB, points=3), time_ms=1_000),
        EdgeVisit(_state(EDGE_BC), time_ms=2_000),
        EdgeVisit(_state(EDGE_BE, name="Centre Road"), time_ms=3_000),
    ]
    details = walk_path_details(visits, [StreetNameEmitter(), TimeEmitter()], ctx, start_index=4)

    assert details["street_name"] == [
        PathDetail(4, 7, "Main Street"),
        PathDetail(7, 8, "Centre Road"),
    ]
    assert [d.value for d in details["time"]] == [1_000, 2_000, 3_000]
    assert details["time"][0].length == 2
    assert walk_path_details([], [TimeEmitter()], ctx) == {"time": []}


def test_stable_id_of_virtual_piece_is_the_original_edge_id(street_graph: StreetGraph) -> None:
    ids = street_graph.stable_ids
    ctx = DetailContext(stable_ids=ids)
    # Two pieces of a split edge read as one run.
    visits = [
        EdgeVisit(_state(50, virtual=True, original=EDGE_AB)),
        EdgeVisit(_state(51, virtual=True, original=EDGE_AB)),
        EdgeVisit(_state(EDGE_BE, reverse=True)),
    ]
    details = walk_path_details(visits, [StableIdEmitter(), EdgeKeyEmitter(), ExternalEdgeIdEmitter()], ctx)

    assert [d.value for d in details["stable_edge_ids"]] == [
        ids.get_stable_id(EDGE_AB, False),
        ids.get_stable_id(EDGE_BE, True),
    ]
    assert details["stable_edge_ids"][0] == PathDetail(0, 2, ids.get_stable_id(EDGE_AB, False))
    assert [d.value for d in details["edge_key"]] == [to_key(EDGE_AB, False), to_key(EDGE_BE, True)]
    assert [d.value for d in details["r5_edge_id"]] == [str(EDGE_AB), ids.get_stable_id(EDGE_BE, True)]


def test_u_turn_on_one_edge_yields_two_details(street_graph: StreetGraph) -> None:
    ctx = DetailContext(stable_ids=street_graph.stable_ids)
    out = _state(EDGE_AB)
    back = replace(_state(EDGE_AB, reverse=True), base_node=1, adj_node=0)
    visits = [EdgeVisit(out, time_ms=1_000), EdgeVisit(back, time_ms=1_000)]
    details = walk_path_details(visits, [AdjNodeEmitter(), TimeEmitter(), DistanceEmitter()], ctx)

    assert details["adj_node"] == [PathDetail(0, 1, 1), PathDetail(1, 2, 0)]
    assert [d.value for d in details["time"]] == [1_000, 1_000]
    assert len(details["distance"]) == 2


def test_merge_appends_per_name() -> None:
    merged: dict[str, list[PathDetail]] = {"time": [PathDetail(0, 1, 5)]}
    merge_path_details(merged, {"time": [PathDetail(1, 2, 6)], "distance": [PathDetail(1, 2, 9.0)]})
    assert merged == {
        "time": [PathDetail(0, 1, 5), PathDetail(1, 2, 6)],
        "distance": [PathDetail(1, 2, 9.0)],
    }
