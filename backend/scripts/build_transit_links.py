# ruff: noqa: E402
from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edgelink.engine import GraphRoutingEngine
from edgelink.gtfs_feed import load_gtfs_feeds
from edgelink.route_stitcher import RouteStitcher
from edgelink.settings import settings
from edgelink.street_graph import load_street_graph
from edgelink.transit_links import TransitLinkMapper, write_link_csv


def build(
    *,
    graph_path: Path,
    gtfs_paths: list[Path],
    output: Path,
    csv_output: Path | None = None,
    profile: str | None = None,
    max_visited_nodes: int | None = None,
    workers: int | None = None,
) -> dict[str, Any]:
    if not gtfs_paths:
        raise ValueError("At least one GTFS feed is required.")
    t0 = time.perf_counter()
    graph = load_street_graph(graph_path)
    feeds = load_gtfs_feeds(gtfs_paths)
    engine = GraphRoutingEngine(graph, snap_max_distance_m=settings.snap_max_distance_m)
    # Pairs are independent, so curbside forcing only costs omissions here.
    stitcher = RouteStitcher(engine, force_curbside=False)
    mapper = TransitLinkMapper(
        stitcher,
        profile=profile,
        max_visited_nodes=max_visited_nodes,
        workers=workers,
    )
    result = mapper.build(feeds)
    result.builder.write(output)
    report: dict[str, Any] = {
        "graph": str(graph_path),
        "graph_version": graph.version,
        "feeds": [{"feed_key": feed.feed_key, "feed_id": feed.feed_id} for feed in feeds],
        "output": str(output),
        "stats": result.stats.as_dict(),
        "duration_s": round(time.perf_counter() - t0, 3),
    }
    if csv_output is not None:
        write_link_csv(csv_output, result.csv_rows)
        report["csv_output"] = str(csv_output)
        report["csv_rows"] = len(result.csv_rows)
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description="Route GTFS stop pairs over the street graph and persist the link table.")
    parser.add_argument(
        "--graph",
        type=Path,
        default=settings.resolved_street_graph_path(),
        help="Street graph JSON built by build_street_graph.py.",
    )
    parser.add_argument(
        "--gtfs",
        type=Path,
        action="append",
        required=True,
        help="GTFS feed directory or zip; repeat for multiple feeds.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=settings.resolved_link_table_path(),
        help="Output link table JSON path.",
    )
    parser.add_argument(
        "--csv-output",
        type=Path,
        default=None,
        help="Optional per-trip stop pair CSV export.",
    )
    parser.add_argument("--profile", default=None, choices=["car", "foot"])
    parser.add_argument("--max-visited-nodes", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    args = parser.parse_args()
    report = build(
        graph_path=args.graph,
        gtfs_paths=list(args.gtfs),
        output=args.output,
        csv_output=args.csv_output,
        profile=args.profile,
        max_visited_nodes=args.max_visited_nodes,
        workers=args.workers,
    )
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
