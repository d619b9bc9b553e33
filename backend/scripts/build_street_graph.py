# ruff: noqa: E402
from __future__ import annotations

import argparse
import json
import re
import sys
import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from itertools import islice
from pathlib import Path
from typing import Any, Iterable, Iterator

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edgelink.settings import settings
from edgelink.street_graph import DEFAULT_SPEED_KPH, polyline_length_m

GRAPH_VERSION = "street-graph-v1"
WORLD_BBOX = (-90.0, 90.0, -180.0, 180.0)  # lat_min, lat_max, lon_min, lon_max
WALKWAY_HIGHWAYS = frozenset({"footway", "pedestrian", "path", "steps", "cycleway", "bridleway"})
ROUTABLE_HIGHWAYS = frozenset(DEFAULT_SPEED_KPH) | WALKWAY_HIGHWAYS
MIN_EDGE_LENGTH_M = 0.5
MPH_TO_KPH = 1.609344

_MAXSPEED_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(mph|km/h|kmh|kph)?", re.IGNORECASE)

Ref = tuple[str, float, float]


@dataclass
class RawWay:
    way_id: str
    tags: dict[str, str]
    refs: list[Ref]

    @property
    def highway(self) -> str:
        return self.tags.get("highway", "").strip().lower()


def parse_maxspeed_kph(tag: str | None) -> float | None:
    """``"30"``, ``"30 km/h"`` and ``"20 mph"`` are understood; ``"none"``, ``"walk"`` etc. are not."""
    match = _MAXSPEED_RE.match(tag or "")
    if match is None:
        return None
    value = float(match.group(1))
    if (match.group(2) or "").lower() == "mph":
        value *= MPH_TO_KPH
    return value if value > 0 else None


def way_direction(tags: dict[str, str]) -> tuple[bool, bool]:
    """Return ``(oneway, reversed)`` for a way's tags."""
    raw = tags.get("oneway", "").strip().lower()
    if raw in {"-1", "reverse"}:
        return True, True
    if raw in {"yes", "true", "1"}:
        return True, False
    if raw == "no":
        return False, False
    return tags.get("junction", "").strip().lower() in {"roundabout", "circular"}, False


def _in_bbox(lat: float, lon: float, bbox: tuple[float, float, float, float]) -> bool:
    lat_min, lat_max, lon_min, lon_max = bbox
    return lat_min <= lat <= lat_max and lon_min <= lon <= lon_max


def iter_osm_xml_ways(source: Path, bbox: tuple[float, float, float, float]) -> Iterator[RawWay]:
    # OSM XML lists every node before the ways that use it.
    coords: dict[str, tuple[float, float]] = {}
    for _, elem in ET.iterparse(source, events=("end",)):
        if elem.tag == "node":
            node_id = elem.get("id")
            try:
                lat = float(elem.get("lat", ""))
                lon = float(elem.get("lon", ""))
            except ValueError:
                lat = lon = float("nan")
            if node_id and _in_bbox(lat, lon, bbox):
                coords[node_id] = (lat, lon)
            elem.clear()
        elif elem.tag == "way":
            tags = {
                str(tag.get("k")).strip(): str(tag.get("v", "")).strip()
                for tag in elem.iter("tag")
                if tag.get("k")
            }
            refs = [str(nd.get("ref")).strip() for nd in elem.iter("nd") if nd.get("ref")]
            yield RawWay(
                way_id=str(elem.get("id", "")),
                tags=tags,
                refs=[(ref, *coords[ref]) for ref in refs if ref in coords],
            )
            elem.clear()


def iter_geojson_ways(source: Path, bbox: tuple[float, float, float, float]) -> Iterator[RawWay]:
    payload = json.loads(source.read_text(encoding="utf-8"))
    features = payload.get("features", []) if isinstance(payload, dict) else []
    for index, feature in enumerate(features):
        if not isinstance(feature, dict):
            continue
        geometry = feature.get("geometry") or {}
        if not isinstance(geometry, dict) or str(geometry.get("type", "")).lower() != "linestring":
            continue
        props = feature.get("properties") or {}
        if not isinstance(props, dict):
            props = {}
        refs: list[Ref] = []
        for coord in geometry.get("coordinates") or ():
            if not isinstance(coord, (list, tuple)) or len(coord) < 2:
                continue
            lon, lat = float(coord[0]), float(coord[1])
            if _in_bbox(lat, lon, bbox):
                # Features meet where they share a coordinate.
                refs.append((f"g_{round(lat, 6)}_{round(lon, 6)}", lat, lon))
        tags = {str(key): str(value) for key, value in props.items() if value is not None}
        tags["highway"] = (tags.get("highway") or tags.get("road_class") or "unclassified").strip().lower()
        way_id = props.get("osm_way_id", props.get("id", f"feature_{index}"))
        yield RawWay(way_id=str(way_id), tags=tags, refs=refs)


def _junction_nodes(ways: list[RawWay]) -> set[str]:
    uses = Counter(ref for way in ways for ref, _, _ in way.refs)
    junctions = {ref for ref, count in uses.items() if count > 1}
    for way in ways:
        junctions.update((way.refs[0][0], way.refs[-1][0]))
    return junctions


def split_at_junctions(way: RawWay, junctions: set[str]) -> Iterator[tuple[Ref, Ref, list[tuple[float, float]]]]:
    """Cut ``way`` at junction nodes; the nodes in between become edge geometry."""
    refs = way.refs
    start = 0
    for index in range(1, len(refs)):
        if index != len(refs) - 1 and refs[index][0] not in junctions:
            continue
        if refs[index][0] != refs[start][0]:
            yield refs[start], refs[index], [(lat, lon) for _, lat, lon in refs[start + 1 : index]]
        start = index


def ways_to_graph(ways: Iterable[RawWay]) -> tuple[dict[str, tuple[float, float]], list[dict[str, Any]]]:
    kept = [way for way in ways if way.highway in ROUTABLE_HIGHWAYS and len(way.refs) >= 2]
    junctions = _junction_nodes(kept)
    nodes: dict[str, tuple[float, float]] = {}
    edges: list[dict[str, Any]] = []
    for way in kept:
        oneway, reversed_way = way_direction(way.tags)
        maxspeed_kph = parse_maxspeed_kph(way.tags.get("maxspeed"))
        for start, end, pillars in split_at_junctions(way, junctions):
            length_m = polyline_length_m([start[1:], *pillars, end[1:]])
            if length_m <= MIN_EDGE_LENGTH_M:
                continue
            nodes.setdefault(start[0], (start[1], start[2]))
            nodes.setdefault(end[0], (end[1], end[2]))
            if reversed_way:
                start, end, pillars = end, start, pillars[::-1]
            edges.append(
                {
                    "u": start[0],
                    "v": end[0],
                    "distance_m": round(length_m, 3),
                    "oneway": oneway,
                    "highway": way.highway,
                    "maxspeed_kph": maxspeed_kph,
                    "name": way.tags.get("name", ""),
                    "osm_way_id": way.way_id,
                    "geometry": [[lat, lon] for lat, lon in pillars],
                }
            )
    return nodes, edges


def _iso_utc(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def build(
    *,
    source: Path,
    output: Path,
    bbox: tuple[float, float, float, float] = WORLD_BBOX,
    max_ways: int = 0,
) -> dict[str, Any]:
    reader = iter_osm_xml_ways if source.suffix.lower() == ".osm" else iter_geojson_ways
    ways: Iterable[RawWay] = (
        way for way in reader(source, bbox) if way.highway in ROUTABLE_HIGHWAYS and len(way.refs) >= 2
    )
    if max_ways > 0:
        ways = islice(ways, max_ways)
    nodes, edges = ways_to_graph(ways)
    if not edges:
        raise RuntimeError(f"No street edges could be extracted from {source}")

    meta: dict[str, Any] = {
        "version": GRAPH_VERSION,
        "source": str(source),
        "generated_at_utc": _iso_utc(datetime.now(UTC)),
        "as_of_utc": _iso_utc(datetime.fromtimestamp(source.stat().st_mtime, tz=UTC)),
        "bbox": dict(zip(("lat_min", "lat_max", "lon_min", "lon_max"), bbox)),
    }
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(
        json.dumps(
            {
                **meta,
                "nodes": [{"id": node_id, "lat": lat, "lon": lon} for node_id, (lat, lon) in nodes.items()],
                "edges": edges,
            }
        ),
        encoding="utf-8",
    )
    meta_path = output.with_suffix(".meta.json")
    meta_path.write_text(json.dumps({**meta, "nodes": len(nodes), "edges": len(edges)}, indent=2), encoding="utf-8")
    return {
        "nodes": len(nodes),
        "edges": len(edges),
        "source": str(source),
        "output": str(output),
        "meta": str(meta_path),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Build a street graph asset from OSM XML or GeoJSON.")
    parser.add_argument(
        "--source",
        type=Path,
        required=True,
        help="Path to source file (.osm XML, or GeoJSON LineString features).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=settings.resolved_street_graph_path(),
        help="Output graph JSON path.",
    )
    parser.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        metavar=("LAT_MIN", "LAT_MAX", "LON_MIN", "LON_MAX"),
        default=list(WORLD_BBOX),
    )
    parser.add_argument("--max-ways", type=int, default=0, help="Optional cap on extracted ways (0 means no cap).")
    args = parser.parse_args()
    report = build(
        source=args.source,
        output=args.output,
        bbox=tuple(args.bbox),
        max_ways=max(0, int(args.max_ways)),
    )
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
