"""Per-request overlay over the immutable street graph.

Snapping a waypoint onto the middle of an edge splits that edge into virtual
pieces joined at a virtual node. The overlay also owns the request's
"unfavored" edges used for heading and pass-through constraints, so nothing
leaks between concurrent requests sharing one base graph.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .edge_keys import to_key
from .profiles import StreetProfile
from .stable_id import initial_bearing_deg
from .street_graph import StreetEdge, StreetGraph, _haversine_m, polyline_length_m

ANY_EDGE = -2
NO_EDGE = -1

# Turns sharper than this against the favored heading are penalised.
HEADING_TOLERANCE_DEG = 100.0
TOWER_SNAP_TOLERANCE_M = 0.01


@dataclass(frozen=True)
class SnapResult:
    valid: bool
    query_lat: float
    query_lon: float
    closest_edge: int | None = None
    closest_node: int | None = None
    segment: int = 0
    fraction: float = 0.0
    snapped_lat: float = math.nan
    snapped_lon: float = math.nan
    distance_m: float = math.inf
    position: str = "none"  # tower | edge | none


@dataclass(frozen=True)
class QueryEdge:
    id: int
    base: int
    adj: int
    distance_m: float
    road_class: str
    forward: bool
    backward: bool
    speed_kph: float
    points: tuple[tuple[float, float], ...]
    name: str = ""
    virtual: bool = False
    original_edge_key: int | None = None


@dataclass(frozen=True)
class EdgeState:
    """One edge as traversed in a given direction."""

    edge: int
    base_node: int
    adj_node: int
    reverse: bool
    distance_m: float
    road_class: str
    speed_kph: float
    points: tuple[tuple[float, float], ...]
    name: str = ""
    virtual: bool = False
    original_edge_key: int | None = None


@dataclass(frozen=True)
class DirectionResult:
    in_edge_right: int = ANY_EDGE
    out_edge_right: int = ANY_EDGE
    in_edge_left: int = ANY_EDGE
    out_edge_left: int = ANY_EDGE

    def in_edge(self, curbside: str | None) -> int:
        side = (curbside or "any").lower()
        if side == "right":
            return self.in_edge_right
        if side == "left":
            return self.in_edge_left
        return ANY_EDGE

    def out_edge(self, curbside: str | None) -> int:
        side = (curbside or "any").lower()
        if side == "right":
            return self.out_edge_right
        if side == "left":
            return self.out_edge_left
        return ANY_EDGE


UNRESTRICTED = DirectionResult()


def _heading_delta_deg(a: float, b: float) -> float:
    diff = abs(float(a) - float(b)) % 360.0
    return min(diff, 360.0 - diff)


def _dedupe_points(points: list[tuple[float, float]]) -> tuple[tuple[float, float], ...]:
    out: list[tuple[float, float]] = []
    for point in points:
        if out and math.isclose(out[-1][0], point[0], abs_tol=1e-12) and math.isclose(
            out[-1][1],
            point[1],
            abs_tol=1e-12,
        ):
            continue
        out.append(point)
    if len(out) == 1:
        out.append(out[0])
    return tuple(out)


def _to_query_edge(graph: StreetGraph, edge: StreetEdge) -> QueryEdge:
    return QueryEdge(
        id=edge.index,
        base=edge.base,
        adj=edge.adj,
        distance_m=edge.distance_m,
        road_class=edge.road_class,
        forward=edge.forward,
        backward=edge.backward,
        speed_kph=edge.speed_kph,
        points=tuple(graph.edge_points(edge)),
        name=edge.name,
    )


class QueryGraph:
    def __init__(self, graph: StreetGraph, snaps: Sequence[SnapResult]) -> None:
        self.graph = graph
        self._base_nodes = graph.node_count
        self._base_edges = graph.edge_count
        self._virtual_coords: list[tuple[float, float]] = []
        self._virtual_edges: list[QueryEdge] = []
        self._virtual_adjacency: dict[int, list[int]] = {}
        # tower node -> {original edge id: replacing virtual edge id}
        self._replacements: dict[int, dict[int, int]] = {}
        self._edge_cache: dict[int, QueryEdge] = {}
        self._unfavored: set[int] = set()
        self._query_points: dict[int, tuple[float, float]] = {}
        self.snaps: tuple[SnapResult, ...] = tuple(snaps)
        self.snapped_nodes: list[int] = [NO_EDGE] * len(self.snaps)
        self._split_edges()

    # -- construction -----------------------------------------------------

    def _split_edges(self) -> None:
        by_edge: dict[int, list[int]] = {}
        for idx, snap in enumerate(self.snaps):
            if not snap.valid:
                continue
            if snap.position == "tower" and snap.closest_node is not None:
                self.snapped_nodes[idx] = int(snap.closest_node)
                continue
            if snap.closest_edge is None:
                continue
            by_edge.setdefault(int(snap.closest_edge), []).append(idx)

        for edge_id in sorted(by_edge):
            edge = self.graph.edges[edge_id]
            original_points = self.graph.edge_points(edge)
            ordered = sorted(by_edge[edge_id], key=lambda i: (self.snaps[i].segment, self.snaps[i].fraction))

            chain_nodes: list[int] = [edge.base]
            chain_positions: list[tuple[int, float, float, float]] = [
                (0, 0.0, original_points[0][0], original_points[0][1])
            ]
            for snap_idx in ordered:
                snap = self.snaps[snap_idx]
                prev = chain_positions[-1]
                if len(chain_nodes) > 1 and prev[0] == snap.segment and math.isclose(prev[1], snap.fraction, abs_tol=1e-9):
                    self.snapped_nodes[snap_idx] = chain_nodes[-1]
                    continue
                node = self._base_nodes + len(self._virtual_coords)
                self._virtual_coords.append((snap.snapped_lat, snap.snapped_lon))
                self._query_points[node] = (snap.query_lat, snap.query_lon)
                self._virtual_adjacency[node] = []
                chain_nodes.append(node)
                chain_positions.append((snap.segment, snap.fraction, snap.snapped_lat, snap.snapped_lon))
                self.snapped_nodes[snap_idx] = node
            chain_nodes.append(edge.adj)
            chain_positions.append((len(original_points) - 2, 1.0, original_points[-1][0], original_points[-1][1]))

            full_length = polyline_length_m(original_points)
            original_key = to_key(edge.index, False)
            piece_ids: list[int] = []
            for piece in range(len(chain_nodes) - 1):
                seg_a, _, lat_a, lon_a = chain_positions[piece]
                seg_b, _, lat_b, lon_b = chain_positions[piece + 1]
                points = _dedupe_points(
                    [(lat_a, lon_a), *original_points[seg_a + 1 : seg_b + 1], (lat_b, lon_b)]
                )
                piece_length = polyline_length_m(points)
                share = (piece_length / full_length) if full_length > 0 else 1.0 / (len(chain_nodes) - 1)
                virtual_id = self._base_edges + len(self._virtual_edges)
                self._virtual_edges.append(
                    QueryEdge(
                        id=virtual_id,
                        base=chain_nodes[piece],
                        adj=chain_nodes[piece + 1],
                        distance_m=edge.distance_m * share,
                        road_class=edge.road_class,
                        forward=edge.forward,
                        backward=edge.backward,
                        speed_kph=edge.speed_kph,
                        points=points,
                        name=edge.name,
                        virtual=True,
                        original_edge_key=original_key,
                    )
                )
                piece_ids.append(virtual_id)
                for node in (chain_nodes[piece], chain_nodes[piece + 1]):
                    if node in self._virtual_adjacency:
                        self._virtual_adjacency[node].append(virtual_id)

            self._replacements.setdefault(edge.base, {})[edge.index] = piece_ids[0]
            if edge.adj != edge.base:
                self._replacements.setdefault(edge.adj, {})[edge.index] = piece_ids[-1]

    # -- lookups ----------------------------------------------------------

    @property
    def node_count(self) -> int:
        return self._base_nodes + len(self._virtual_coords)

    def is_virtual_node(self, node: int) -> bool:
        return node >= self._base_nodes

    def is_virtual_edge(self, edge_id: int) -> bool:
        return edge_id >= self._base_edges

    def node_coords(self, node: int) -> tuple[float, float]:
        if self.is_virtual_node(node):
            return self._virtual_coords[node - self._base_nodes]
        return self.graph.nodes[node]

    def snapped_node(self, point_index: int) -> int:
        return self.snapped_nodes[point_index]

    def edge(self, edge_id: int) -> QueryEdge:
        if self.is_virtual_edge(edge_id):
            return self._virtual_edges[edge_id - self._base_edges]
        cached = self._edge_cache.get(edge_id)
        if cached is None:
            cached = _to_query_edge(self.graph, self.graph.edges[edge_id])
            self._edge_cache[edge_id] = cached
        return cached

    def incident_edges(self, node: int) -> list[QueryEdge]:
        if self.is_virtual_node(node):
            return [self.edge(edge_id) for edge_id in self._virtual_adjacency.get(node, ())]
        replaced = self._replacements.get(node, {})
        out: list[QueryEdge] = []
        for edge_id in self.graph.adjacency.get(node, ()):
            out.append(self.edge(replaced.get(edge_id, edge_id)))
        return out

    @staticmethod
    def state_of(edge: QueryEdge, reverse: bool) -> EdgeState:
        return EdgeState(
            edge=edge.id,
            base_node=edge.adj if reverse else edge.base,
            adj_node=edge.base if reverse else edge.adj,
            reverse=reverse,
            distance_m=edge.distance_m,
            road_class=edge.road_class,
            speed_kph=edge.speed_kph,
            points=tuple(reversed(edge.points)) if reverse else edge.points,
            name=edge.name,
            virtual=edge.virtual,
            original_edge_key=edge.original_edge_key,
        )

    def out_states(self, node: int, profile: StreetProfile) -> list[EdgeState]:
        out: list[EdgeState] = []
        for edge in self.incident_edges(node):
            if not profile.allows(edge.road_class):
                continue
            if edge.base == node and (edge.forward or not profile.respect_oneway):
                out.append(self.state_of(edge, False))
            if edge.adj == node and (edge.backward or not profile.respect_oneway):
                out.append(self.state_of(edge, True))
        return out

    # -- request-scoped constraint state ----------------------------------

    def is_unfavored(self, edge_id: int) -> bool:
        return edge_id in self._unfavored

    @property
    def unfavored_edges(self) -> frozenset[int]:
        return frozenset(self._unfavored)

    def enforce_heading(self, node: int, heading_deg: float | None, incoming: bool) -> bool:
        """Unfavor virtual edges at ``node`` pointing against ``heading_deg``.

        Only virtual nodes carry a direction of travel; tower nodes are left
        untouched. Returns whether any edge was unfavored.
        """
        if heading_deg is None or math.isnan(heading_deg):
            return False
        if not self.is_virtual_node(node):
            return False
        enforced = False
        for edge_id in self._virtual_adjacency.get(node, ()):
            edge = self.edge(edge_id)
            points = edge.points
            if incoming:
                # arriving at node
                a, b = (points[-2], points[-1]) if edge.adj == node else (points[1], points[0])
            else:
                a, b = (points[0], points[1]) if edge.base == node else (points[-1], points[-2])
            bearing = initial_bearing_deg(a[0], a[1], b[0], b[1])
            if _heading_delta_deg(bearing, heading_deg) > HEADING_TOLERANCE_DEG:
                self._unfavored.add(edge_id)
                enforced = True
        return enforced

    def unfavor_edge_pair(self, node: int, edge_id: int) -> bool:
        if not self.is_virtual_node(node) or not self.is_virtual_edge(edge_id):
            return False
        if edge_id not in self._virtual_adjacency.get(node, ()):
            return False
        self._unfavored.add(edge_id)
        return True

    def clear_unfavored_state(self) -> None:
        self._unfavored.clear()

    def resolve_directions(self, point_index: int, profile: StreetProfile) -> DirectionResult:
        """Which in/out edges put the snapped point on the right or the left curb."""
        node = self.snapped_nodes[point_index]
        if node < 0 or not self.is_virtual_node(node):
            return UNRESTRICTED
        pieces = [self.edge(edge_id) for edge_id in self._virtual_adjacency.get(node, ())]
        incoming = next((piece for piece in pieces if piece.adj == node), None)
        outgoing = next((piece for piece in pieces if piece.base == node), None)
        if incoming is None or outgoing is None:
            return UNRESTRICTED

        snapped = self.node_coords(node)
        query = self._query_points.get(node, snapped)
        before = incoming.points[-2]
        after = outgoing.points[1]
        shrink = math.cos(math.radians(snapped[0]))
        dx = (after[1] - before[1]) * shrink
        dy = after[0] - before[0]
        px = (query[1] - snapped[1]) * shrink
        py = query[0] - snapped[0]
        cross = dx * py - dy * px
        on_right_of_forward = cross <= 0.0 or _haversine_m(query[0], query[1], snapped[0], snapped[1]) < TOWER_SNAP_TOLERANCE_M

        forward_ok = incoming.forward or not profile.respect_oneway
        backward_ok = incoming.backward or not profile.respect_oneway
        forward = (incoming.id, outgoing.id) if forward_ok else (NO_EDGE, NO_EDGE)
        backward = (outgoing.id, incoming.id) if backward_ok else (NO_EDGE, NO_EDGE)
        right, left = (forward, backward) if on_right_of_forward else (backward, forward)
        return DirectionResult(
            in_edge_right=right[0],
            out_edge_right=right[1],
            in_edge_left=left[0],
            out_edge_left=left[1],
        )
