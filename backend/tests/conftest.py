from __future__ import annotations

import pytest

from edgelink.engine import GraphRoutingEngine
from edgelink.route_stitcher import RouteStitcher
from edgelink.street_graph import StreetGraph
from street_fixtures import make_street_graph


@pytest.fixture
def street_graph() -> StreetGraph:
    return make_street_graph()


@pytest.fixture
def engine(street_graph: StreetGraph) -> GraphRoutingEngine:
    return GraphRoutingEngine(street_graph, snap_max_distance_m=500.0)


@pytest.fixture
def stitcher(engine: GraphRoutingEngine) -> RouteStitcher:
    return RouteStitcher(
        engine,
        max_visited_nodes=10_000,
        force_curbside=True,
        heading_penalty_s=300.0,
        search_timeout_s=0.0,
    )
