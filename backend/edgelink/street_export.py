from __future__ import annotations

import csv
from dataclasses import astuple, dataclass
from pathlib import Path
from typing import Iterator

from .logging_utils import log_event
from .profiles import PROFILES
from .street_graph import StreetEdge, StreetGraph, _haversine_m

HIGHWAY_FILTER_TAGS: frozenset[str] = frozenset({"bridleway", "steps"})
INACCESSIBLE_MOTORWAY_TAGS: frozenset[str] = frozenset({"motorway", "motorway_link"})

COLUMN_HEADERS: tuple[str, ...] = (
    "stableEdgeId",
    "startVertex",
    "endVertex",
    "startLat",
    "startLon",
    "endLat",
    "endLon",
    "geometry",
    "streetName",
    "distance",
    "osmid",
    "speed",
    "flags",
    "highway",
)


@dataclass(frozen=True)
class StreetEdgeExportRecord:
    edge_id: str
    start_vertex: int
    end_vertex: int
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    geometry: str
    street_name: str
    distance_mm: int
    osm_id: str
    speed_cms: int
    flags: str
    highway: str


def _wkt_linestring(points: list[tuple[float, float]]) -> str:
    return "LINESTRING (" + ", ".join(f"{lon:.7f} {lat:.7f}" for lat, lon in points) + ")"


def access_flags(edge: StreetEdge, reverse: bool) -> list[str]:
    flags: list[str] = []
    car = PROFILES["car"]
    if car.allows(edge.road_class) and (edge.backward if reverse else edge.forward):
        flags.append("ALLOWS_CAR")
    if PROFILES["foot"].allows(edge.road_class):
        flags.append("ALLOWS_PEDESTRIAN")
    return flags


def generate_records(graph: StreetGraph, edge: StreetEdge) -> list[StreetEdgeExportRecord]:
    """One record per exportable direction of ``edge``."""
    # Edges without an OSM way id did not come from the street network.
    if not edge.osm_way_id or edge.road_class in HIGHWAY_FILTER_TAGS:
        return []

    start_lat, start_lon = graph.nodes[edge.base]
    end_lat, end_lon = graph.nodes[edge.adj]
    points = graph.edge_points(edge)
    distance_mm = int(round(_haversine_m(start_lat, start_lon, end_lat, end_lon))) * 1000
    speed_cms = int(edge.speed_kph / 3.6 * 100)
    stable_ids = graph.stable_ids

    out: list[StreetEdgeExportRecord] = []
    for reverse in (False, True):
        flags = access_flags(edge, reverse)
        if not flags and edge.road_class in INACCESSIBLE_MOTORWAY_TAGS:
            continue
        ordered = list(reversed(points)) if reverse else points
        a_lat, a_lon, b_lat, b_lon = (
            (end_lat, end_lon, start_lat, start_lon) if reverse else (start_lat, start_lon, end_lat, end_lon)
        )
        out.append(
            StreetEdgeExportRecord(
                edge_id=stable_ids.get_stable_id(edge.index, reverse),
                start_vertex=edge.adj if reverse else edge.base,
                end_vertex=edge.base if reverse else edge.adj,
                start_lat=a_lat,
                start_lon=a_lon,
                end_lat=b_lat,
                end_lon=b_lon,
                geometry=_wkt_linestring(ordered),
                street_name=edge.name,
                distance_mm=distance_mm,
                osm_id=edge.osm_way_id,
                speed_cms=speed_cms,
                flags="[" + ", ".join(flags) + "]",
                highway=edge.road_class,
            )
        )
    return out


def iter_records(graph: StreetGraph) -> Iterator[tuple[StreetEdge, list[StreetEdgeExportRecord]]]:
    for edge in graph.edges:
        yield edge, generate_records(graph, edge)


def write_street_edges_csv(graph: StreetGraph, path: Path) -> dict[str, int]:
    path.parent.mkdir(parents=True, exist_ok=True)
    total = 0
    skipped = 0
    rows = 0
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(COLUMN_HEADERS)
        for _, records in iter_records(graph):
            total += 1
            if not records:
                skipped += 1
            for record in records:
                writer.writerow(astuple(record))
                rows += 1
    summary = {"edges": total, "skipped_edges": skipped, "rows": rows}
    log_event("street_edges_exported", path=str(path), **summary)
    return summary
