# ruff: noqa: E402
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edgelink.settings import settings
from edgelink.street_export import write_street_edges_csv
from edgelink.street_graph import load_street_graph


def build(*, graph_path: Path, output: Path) -> dict[str, Any]:
    graph = load_street_graph(graph_path)
    summary = write_street_edges_csv(graph, output)
    return {
        "graph": str(graph_path),
        "graph_version": graph.version,
        "output": str(output),
        **summary,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Export one CSV row per routable direction of every street edge.")
    parser.add_argument("--graph", type=Path, default=settings.resolved_street_graph_path())
    parser.add_argument(
        "--output",
        type=Path,
        default=Path(settings.asset_dir) / "street_edges.csv",
        help="Output CSV path.",
    )
    args = parser.parse_args()
    report = build(graph_path=args.graph, output=args.output)
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
