from __future__ import annotations

import json
import math
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

from .errors import AssetUnavailableError
from .logging_utils import log_event
from .stable_id import STABLE_ID_FIELDS, StableIdAttributes, compute_directed_stable_id

EARTH_RADIUS_M = 6_371_000.0
GRID_BUCKET_DEG = 0.01

DEFAULT_SPEED_KPH: dict[str, float] = {
    "motorway": 100.0,
    "motorway_link": 70.0,
    "trunk": 70.0,
    "trunk_link": 65.0,
    "primary": 65.0,
    "primary_link": 60.0,
    "secondary": 60.0,
    "secondary_link": 50.0,
    "tertiary": 50.0,
    "tertiary_link": 40.0,
    "unclassified": 30.0,
    "residential": 30.0,
    "living_street": 5.0,
    "service": 20.0,
    "road": 20.0,
    "track": 15.0,
}


def _haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def _grid_key(lat: float, lon: float, bucket_deg: float = GRID_BUCKET_DEG) -> tuple[int, int]:
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def polyline_length_m(points: Iterable[tuple[float, float]]) -> float:
    total = 0.0
    prev: tuple[float, float] | None = None
    for point in points:
        if prev is not None:
            total += _haversine_m(prev[0], prev[1], point[0], point[1])
        prev = point
    return total


class EdgeAttributeStore:
    """Generic per-edge unsigned-byte fields."""

    def __init__(self, edge_count: int, fields: Iterable[str]) -> None:
        self._edge_count = max(0, int(edge_count))
        self._fields: dict[str, bytearray] = {name: bytearray(self._edge_count) for name in fields}

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self._fields)

    def _column(self, field: str) -> bytearray:
        column = self._fields.get(field)
        if column is None:
            raise KeyError(f"unknown edge attribute: {field}")
        return column

    def get_byte(self, field: str, edge: int) -> int:
        return self._column(field)[edge]

    def set_byte(self, field: str, edge: int, value: int) -> None:
        if not 0 <= int(value) <= 255:
            raise ValueError(f"{field} holds unsigned bytes, got {value}")
        self._column(field)[edge] = int(value)


@dataclass(frozen=True)
class StreetEdge:
    index: int
    base: int
    adj: int
    distance_m: float
    road_class: str
    forward: bool
    backward: bool
    speed_kph: float
    name: str = ""
    osm_way_id: str = ""
    # Pillar points strictly between base and adj, (lat, lon).
    geometry: tuple[tuple[float, float], ...] = ()


@dataclass(frozen=True)
class StreetGraph:
    version: str
    source: str
    nodes: tuple[tuple[float, float], ...]
    node_ids: tuple[str, ...]
    edges: tuple[StreetEdge, ...]
    adjacency: dict[int, tuple[int, ...]]
    grid_index: dict[tuple[int, int], tuple[int, ...]]
    attributes: EdgeAttributeStore

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return len(self.edges)

    @property
    def stable_ids(self) -> StableIdAttributes:
        return StableIdAttributes(self.attributes)

    def edge_points(self, edge: StreetEdge) -> list[tuple[float, float]]:
        return [self.nodes[edge.base], *edge.geometry, self.nodes[edge.adj]]


def edge_speed_kph(road_class: str, maxspeed_kph: float | None) -> float:
    if maxspeed_kph is not None and maxspeed_kph > 0:
        # Signed limits overstate what traffic actually achieves.
        return max(5.0, min(130.0, float(maxspeed_kph) * 0.9))
    return DEFAULT_SPEED_KPH.get(road_class, 25.0)


def _index_edge(grid: dict[tuple[int, int], set[int]], edge_index: int, points: list[tuple[float, float]]) -> None:
    for (lat1, lon1), (lat2, lon2) in zip(points, points[1:]):
        k1 = _grid_key(min(lat1, lat2), min(lon1, lon2))
        k2 = _grid_key(max(lat1, lat2), max(lon1, lon2))
        for gy in range(k1[0], k2[0] + 1):
            for gx in range(k1[1], k2[1] + 1):
                grid.setdefault((gy, gx), set()).add(edge_index)


def build_street_graph(
    *,
    nodes: list[tuple[str, float, float]],
    edges: list[dict[str, Any]],
    version: str = "street-graph-v1",
    source: str = "memory",
) -> StreetGraph:
    """Assemble an immutable graph and write both stable ids of every edge.

    ``edges`` rows use the asset format: ``u``, ``v``, ``highway``, ``oneway``,
    optional ``distance_m``, ``maxspeed_kph``, ``name``, ``osm_way_id`` and a
    ``geometry`` list of ``[lat, lon]`` pillar points.
    """
    node_index: dict[str, int] = {}
    coords: list[tuple[float, float]] = []
    for node_id, lat, lon in nodes:
        if node_id in node_index:
            continue
        node_index[node_id] = len(coords)
        coords.append((float(lat), float(lon)))

    built: list[StreetEdge] = []
    for raw in edges:
        u = node_index.get(str(raw["u"]))
        v = node_index.get(str(raw["v"]))
        if u is None or v is None:
            continue
        road_class = str(raw.get("highway") or "unclassified").strip().lower() or "unclassified"
        geometry = tuple((float(lat), float(lon)) for lat, lon in raw.get("geometry") or ())
        points = [coords[u], *geometry, coords[v]]
        distance_raw = raw.get("distance_m")
        distance_m = float(distance_raw) if distance_raw is not None else polyline_length_m(points)
        maxspeed_raw = raw.get("maxspeed_kph")
        oneway = bool(raw.get("oneway", False))
        built.append(
            StreetEdge(
                index=len(built),
                base=u,
                adj=v,
                distance_m=max(0.0, distance_m),
                road_class=road_class,
                forward=True,
                backward=not oneway,
                speed_kph=edge_speed_kph(road_class, float(maxspeed_raw) if maxspeed_raw is not None else None),
                name=str(raw.get("name") or ""),
                osm_way_id=str(raw.get("osm_way_id") or ""),
                geometry=geometry,
            )
        )

    adjacency_mut: dict[int, list[int]] = {}
    grid_mut: dict[tuple[int, int], set[int]] = {}
    for edge in built:
        adjacency_mut.setdefault(edge.base, []).append(edge.index)
        if edge.adj != edge.base:
            adjacency_mut.setdefault(edge.adj, []).append(edge.index)
        _index_edge(grid_mut, edge.index, [coords[edge.base], *edge.geometry, coords[edge.adj]])

    attributes = EdgeAttributeStore(len(built), STABLE_ID_FIELDS)
    stable_ids = StableIdAttributes(attributes)
    for edge in built:
        base = coords[edge.base]
        adj = coords[edge.adj]
        for reverse in (False, True):
            stable_ids.set_stable_id(
                edge.index,
                reverse,
                compute_directed_stable_id(reverse, edge.road_class, base, adj),
            )

    return StreetGraph(
        version=version,
        source=source,
        nodes=tuple(coords),
        node_ids=tuple(node_index),
        edges=tuple(built),
        adjacency={node: tuple(items) for node, items in adjacency_mut.items()},
        grid_index={key: tuple(sorted(items)) for key, items in grid_mut.items()},
        attributes=attributes,
    )


def _parse_node(raw: object) -> tuple[str, float, float] | None:
    if not isinstance(raw, dict):
        return None
    node_id_raw = raw.get("id")
    if node_id_raw is None:
        return None
    lat_raw = raw.get("lat")
    lon_raw = raw.get("lon")
    if not isinstance(lat_raw, (int, float, str, Decimal)) or isinstance(lat_raw, bool):
        return None
    if not isinstance(lon_raw, (int, float, str, Decimal)) or isinstance(lon_raw, bool):
        return None
    try:
        lat = float(lat_raw)
        lon = float(lon_raw)
    except (TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return (str(node_id_raw), lat, lon)


def _parse_edge(raw: object) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    if raw.get("u") is None or raw.get("v") is None:
        return None
    out: dict[str, Any] = {
        "u": str(raw["u"]),
        "v": str(raw["v"]),
        "highway": str(raw.get("highway", "unclassified")),
        "oneway": bool(raw.get("oneway", False)),
        "name": str(raw.get("name") or ""),
        "osm_way_id": str(raw.get("osm_way_id") or ""),
    }
    for key in ("distance_m", "maxspeed_kph"):
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            out[key] = float(value)
        except (TypeError, ValueError):
            continue
    geometry: list[tuple[float, float]] = []
    for point in raw.get("geometry") or ():
        if isinstance(point, (list, tuple)) and len(point) == 2:
            try:
                geometry.append((float(point[0]), float(point[1])))
            except (TypeError, ValueError):
                continue
    out["geometry"] = geometry
    return out


def street_graph_from_payload(payload: dict[str, Any], *, source: str = "memory") -> StreetGraph:
    nodes = [parsed for parsed in (_parse_node(raw) for raw in payload.get("nodes", ())) if parsed is not None]
    edges = [parsed for parsed in (_parse_edge(raw) for raw in payload.get("edges", ())) if parsed is not None]
    return build_street_graph(
        nodes=nodes,
        edges=edges,
        version=str(payload.get("version", "street-graph-v1")),
        source=str(payload.get("source", source)),
    )


def load_street_graph(path: Path) -> StreetGraph:
    if not path.exists():
        raise AssetUnavailableError(
            "street_graph_unavailable",
            f"Street graph asset not found: {path}",
            path=str(path),
        )
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise AssetUnavailableError(
            "street_graph_unavailable",
            f"Street graph asset unreadable: {exc}",
            path=str(path),
        ) from exc
    if not isinstance(payload, dict):
        raise AssetUnavailableError("street_graph_unavailable", "Street graph asset is not an object", path=str(path))
    graph = street_graph_from_payload(payload, source=str(path))
    if graph.edge_count == 0:
        raise AssetUnavailableError("street_graph_unavailable", "Street graph asset has no edges", path=str(path))
    log_event(
        "street_graph_loaded",
        path=str(path),
        version=graph.version,
        nodes=graph.node_count,
        edges=graph.edge_count,
    )
    return graph


@dataclass(frozen=True)
class EdgeProjection:
    edge: int
    segment: int
    fraction: float
    lat: float
    lon: float
    distance_m: float


def _project_on_segment(
    lat: float,
    lon: float,
    a: tuple[float, float],
    b: tuple[float, float],
) -> tuple[float, float, float]:
    # Local equirectangular plane around the query point.
    shrink = math.cos(math.radians(lat))
    ax, ay = a[1] * shrink, a[0]
    bx, by = b[1] * shrink, b[0]
    px, py = lon * shrink, lat
    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy
    if length_sq <= 0.0:
        return 0.0, a[0], a[1]
    t = max(0.0, min(1.0, ((px - ax) * dx + (py - ay) * dy) / length_sq))
    return t, a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t


def nearest_edge_candidates(
    graph: StreetGraph,
    *,
    lat: float,
    lon: float,
    max_distance_m: float,
    max_candidates: int = 8,
) -> list[EdgeProjection]:
    radius_lat = max(0, int(math.ceil((max_distance_m / 111_000.0) / GRID_BUCKET_DEG)))
    shrink = max(0.01, math.cos(math.radians(lat)))
    radius_lon = max(0, int(math.ceil((max_distance_m / (111_000.0 * shrink)) / GRID_BUCKET_DEG)))
    center = _grid_key(lat, lon)
    seen: set[int] = set()
    for dy in range(-radius_lat, radius_lat + 1):
        for dx in range(-radius_lon, radius_lon + 1):
            seen.update(graph.grid_index.get((center[0] + dy, center[1] + dx), ()))

    best: list[EdgeProjection] = []
    for edge_index in sorted(seen):
        edge = graph.edges[edge_index]
        points = graph.edge_points(edge)
        closest: EdgeProjection | None = None
        for segment, (a, b) in enumerate(zip(points, points[1:])):
            t, s_lat, s_lon = _project_on_segment(lat, lon, a, b)
            dist = _haversine_m(lat, lon, s_lat, s_lon)
            if closest is None or dist < closest.distance_m:
                closest = EdgeProjection(edge_index, segment, t, s_lat, s_lon, dist)
        if closest is not None and closest.distance_m <= max_distance_m:
            best.append(closest)
    best.sort(key=lambda item: (item.distance_m, item.edge))
    return best[: max(1, int(max_candidates))]
