from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

import edgelink.main as main_module
from edgelink import route_cache
from edgelink.engine import GraphRoutingEngine
from edgelink.link_store import LinkTable, LinkTableBuilder
from edgelink.main import app, link_table, routing_engine
from edgelink.street_graph import StreetGraph
from street_fixtures import EDGE_AB, NORTH_OF_GH, NOWHERE, ON_AB, ON_BE, ON_EF, ON_XY


def _wp(point: Any, **extra: Any) -> dict[str, Any]:
    return {"lat": point.lat, "lon": point.lon, **extra}


def _table() -> LinkTable:
    builder = LinkTableBuilder()
    builder.put_feed_id("gtfs_0", "metro")
    builder.put_link("metro", "S1", "S2", ["11", "22"])
    builder.put_route_info(
        "gtfs_0",
        "R1",
        agency_name="Metro Area Transit",
        short_name="101",
        long_name="Main",
        route_type=3,
    )
    return builder.snapshot(source="pytest")


@pytest.fixture
def client(engine: GraphRoutingEngine, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(main_module.settings, "load_assets_on_startup", False)
    app.dependency_overrides[routing_engine] = lambda: engine
    app.dependency_overrides[link_table] = _table
    route_cache.clear_route_cache()
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        route_cache.clear_route_cache()


def test_health_reports_missing_assets_without_startup_load(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module.settings, "load_assets_on_startup", False)
    with TestClient(app) as test_client:
        health = test_client.get("/health")
        assert health.status_code == 200
        assert health.json() == {"status": "ok", "street_graph": "missing", "link_table": "missing"}

        resp = test_client.post("/route", json={"waypoints": [_wp(ON_AB), _wp(ON_EF)]})
        assert resp.status_code == 503
        assert test_client.get("/links/stats").status_code == 503


def test_startup_loads_assets_from_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    graph_path = tmp_path / "street_graph.json"
    graph_path.write_text(
        '{"version": "disk", "nodes": [{"id": "a", "lat": 38.96, "lon": -94.70}, '
        '{"id": "b", "lat": 38.96, "lon": -94.69}], '
        '"edges": [{"u": "a", "v": "b", "highway": "residential", "osm_way_id": "1"}]}',
        encoding="utf-8",
    )
    table_path = _table_to_disk(tmp_path)
    monkeypatch.setattr(main_module.settings, "load_assets_on_startup", True)
    monkeypatch.setattr(main_module.settings, "street_graph_asset_path", str(graph_path))
    monkeypatch.setattr(main_module.settings, "link_table_path", str(table_path))

    with TestClient(app) as test_client:
        assert test_client.get("/health").json() == {"status": "ok", "street_graph": "loaded", "link_table": "loaded"}
        stats = test_client.get("/links/stats").json()
        assert stats["link_mappings"] == 1
        assert stats["source"] == str(table_path)


def _table_to_disk(tmp_path: Path) -> Path:
    builder = LinkTableBuilder()
    builder.put_feed_id("gtfs_0", "metro")
    builder.put_link("metro", "S1", "S2", ["11"])
    return builder.write(tmp_path / "gtfs_link_mappings.json")


def test_route_returns_geometry_details_and_caches(client: TestClient, street_graph: StreetGraph) -> None:
    payload = {
        "waypoints": [_wp(ON_AB), _wp(ON_BE), _wp(ON_EF)],
        "details": ["stable_edge_ids", " street_name "],
    }
    first = client.post("/route", json=payload)
    assert first.status_code == 200
    body = first.json()
    assert body["cached"] is False
    assert len(body["legs"]) == 2
    assert body["geometry"]["type"] == "LineString"
    lon, lat = body["geometry"]["coordinates"][0]
    assert (lat, lon) == pytest.approx((38.96, -94.695))
    assert body["details"]["stable_edge_ids"][0]["value"] == street_graph.stable_ids.get_stable_id(EDGE_AB, False)
    assert body["details"]["street_name"][0] == {"first": 0, "last": 1, "value": "Main Street"}
    assert body["hints"]["visited_nodes.sum"] == sum(leg["visited_nodes"] for leg in body["legs"])
    assert len(body["snapped_waypoints"]) == 3

    second = client.post("/route", json=payload)
    assert second.status_code == 200
    assert second.json()["cached"] is True
    assert second.json()["distance_m"] == body["distance_m"]
    assert client.get("/cache/stats").json()["hits"] >= 1


def test_time_dependent_route_reports_leg_times(client: TestClient) -> None:
    resp = client.post(
        "/route",
        json={
            "waypoints": [_wp(ON_AB), _wp(ON_BE), _wp(ON_EF)],
            "time_dependent": True,
            "departure_time_utc": "2026-03-10T08:00:00Z",
        },
    )
    assert resp.status_code == 200
    legs = resp.json()["legs"]
    assert legs[0]["departure_time_utc"].startswith("2026-03-10T08:00:00")
    assert legs[1]["departure_time_utc"] == legs[0]["arrival_time_utc"]


@pytest.mark.parametrize(
    ("payload", "status", "reason_code"),
    [
        ({"waypoints": [_wp(ON_AB)]}, 400, "invalid_request"),
        ({"waypoints": [_wp(ON_AB), _wp(ON_EF)], "time_dependent": True}, 400, "missing_departure_time"),
        ({"waypoints": [_wp(ON_AB), _wp(ON_EF)], "details": ["lanes"]}, 400, "invalid_request"),
        (
            {"waypoints": [_wp(ON_AB), _wp(NORTH_OF_GH, curbside="right")], "force_curbside": True},
            400,
            "impossible_curbside",
        ),
        ({"waypoints": [_wp(ON_AB), _wp(ON_XY)]}, 404, "connection_not_found"),
        ({"waypoints": [_wp(ON_AB), _wp(ON_EF)], "max_visited_nodes": 1}, 422, "search_exhausted"),
    ],
)
def test_route_errors_map_to_status_codes(
    client: TestClient,
    payload: dict[str, Any],
    status: int,
    reason_code: str,
) -> None:
    resp = client.post("/route", json=payload)
    assert resp.status_code == status
    assert resp.json()["detail"]["reason_code"] == reason_code


def test_unsnappable_waypoints_are_listed(client: TestClient) -> None:
    resp = client.post("/route", json={"waypoints": [_wp(ON_AB), _wp(NOWHERE), _wp(NOWHERE)]})
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["reason_code"] == "points_not_found"
    assert [point["point_index"] for point in detail["points"]] == [1, 2]


def test_out_of_range_heading_is_rejected_by_schema(client: TestClient) -> None:
    resp = client.post("/route", json={"waypoints": [_wp(ON_AB, heading=400), _wp(ON_EF)]})
    assert resp.status_code == 422


def test_decorate_endpoint(client: TestClient) -> None:
    resp = client.post(
        "/route-pt/decorate",
        json={
            "legs": [
                {"type": "walk", "distance_m": 80.0, "travel_time_ms": 60_000},
                {
                    "type": "pt",
                    "feed_id": "gtfs_0",
                    "route_id": "R1",
                    "trip_id": "T1",
                    "stops": [{"stop_id": "S1"}, {"stop_id": "S2"}],
                },
                {"type": "pt", "feed_id": "gtfs_0", "route_id": "R404", "stops": [{"stop_id": "S1"}]},
            ]
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["linked_pt_legs"] == 1
    walk, linked, unknown = body["legs"]
    assert walk["type"] == "walk"
    assert linked["stable_edge_ids"] == ["11", "22"]
    assert linked["route_short_name"] == "101"
    assert linked["route_type"] == "3"
    assert [stop["stop_id"] for stop in linked["stops"]] == ["metro:S1", "metro:S2"]
    assert unknown["stable_edge_ids"] == []
    assert unknown["agency_name"] == ""


def test_link_stats_endpoint(client: TestClient) -> None:
    resp = client.get("/links/stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["link_mappings"] == 1
    assert body["route_info"] == 1
    assert body["feed_ids"] == 1
    assert body["source"] == "pytest"
