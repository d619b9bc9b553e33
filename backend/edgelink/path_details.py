"""Run-length encoded per-edge values along a path.

Each emitter is an immutable variant; the mutable "last seen" bookkeeping of a
walk lives in an explicit :class:`DetailState` so emitters can be exercised one
edge at a time in isolation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence, Union

from .edge_keys import edge_from_key, edge_key, resolved_edge_index
from .errors import InvalidRequestError
from .query_graph import EdgeState
from .stable_id import StableIdAttributes


@dataclass(frozen=True)
class PathDetail:
    first: int
    last: int
    value: Any

    @property
    def length(self) -> int:
        return self.last - self.first

    def as_dict(self) -> dict[str, Any]:
        return {"first": self.first, "last": self.last, "value": self.value}


@dataclass(frozen=True)
class EdgeVisit:
    state: EdgeState
    time_ms: int = 0


@dataclass(frozen=True)
class DetailContext:
    stable_ids: StableIdAttributes


@dataclass
class DetailState:
    last_key: Any = None
    current_value: Any = None
    has_value: bool = False


def _stable_id(visit: EdgeVisit, ctx: DetailContext) -> str:
    # Virtual pieces carry the attributes of the edge they were split from.
    return ctx.stable_ids.get_stable_id(resolved_edge_index(visit.state), visit.state.reverse)


@dataclass(frozen=True)
class StableIdEmitter:
    name: str = "stable_edge_ids"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return self.value_of(visit, ctx)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> str:
        return _stable_id(visit, ctx)


@dataclass(frozen=True)
class EdgeKeyEmitter:
    name: str = "edge_key"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return self.value_of(visit, ctx)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> int:
        return edge_key(visit.state)


@dataclass(frozen=True)
class ExternalEdgeIdEmitter:
    """Original edge index for virtual pieces, stable id otherwise."""

    name: str = "r5_edge_id"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return self.value_of(visit, ctx)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> str:
        state = visit.state
        if state.virtual and state.original_edge_key is not None:
            return str(edge_from_key(state.original_edge_key))
        return _stable_id(visit, ctx)


@dataclass(frozen=True)
class TimeEmitter:
    name: str = "time"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return (visit.state.edge, visit.state.reverse)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> int:
        return int(visit.time_ms)


@dataclass(frozen=True)
class DistanceEmitter:
    name: str = "distance"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return (visit.state.edge, visit.state.reverse)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> float:
        return round(float(visit.state.distance_m), 3)


@dataclass(frozen=True)
class RoadClassEmitter:
    name: str = "road_class"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return self.value_of(visit, ctx)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> str:
        return visit.state.road_class


@dataclass(frozen=True)
class StreetNameEmitter:
    name: str = "street_name"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return self.value_of(visit, ctx)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> str:
        return visit.state.name


@dataclass(frozen=True)
class AdjNodeEmitter:
    name: str = "adj_node"

    def change_key(self, visit: EdgeVisit, ctx: DetailContext) -> Any:
        return (visit.state.edge, visit.state.reverse)

    def value_of(self, visit: EdgeVisit, ctx: DetailContext) -> int:
        return int(visit.state.adj_node)


DetailEmitter = Union[
    StableIdEmitter,
    EdgeKeyEmitter,
    ExternalEdgeIdEmitter,
    TimeEmitter,
    DistanceEmitter,
    RoadClassEmitter,
    StreetNameEmitter,
    AdjNodeEmitter,
]

EMITTERS: dict[str, DetailEmitter] = {
    emitter.name: emitter
    for emitter in (
        StableIdEmitter(),
        EdgeKeyEmitter(),
        ExternalEdgeIdEmitter(),
        TimeEmitter(),
        DistanceEmitter(),
        RoadClassEmitter(),
        StreetNameEmitter(),
        AdjNodeEmitter(),
    )
}


def create_detail_emitters(requested: Iterable[str]) -> list[DetailEmitter]:
    names = list(dict.fromkeys(str(name) for name in requested))
    found = [EMITTERS[name] for name in names if name in EMITTERS]
    if len(found) != len(names):
        raise InvalidRequestError(
            f"You requested the details {names} but we could only find {[emitter.name for emitter in found]}",
            details={"requested": names, "available": sorted(EMITTERS)},
        )
    return found


def is_different_from_previous(
    emitter: DetailEmitter,
    state: DetailState,
    visit: EdgeVisit,
    ctx: DetailContext,
) -> bool:
    key = emitter.change_key(visit, ctx)
    if state.has_value and key == state.last_key:
        return False
    state.last_key = key
    state.current_value = emitter.value_of(visit, ctx)
    state.has_value = True
    return True


@dataclass
class _OpenDetail:
    state: DetailState = field(default_factory=DetailState)
    first: int = 0
    value: Any = None
    open: bool = False


def walk_path_details(
    visits: Sequence[EdgeVisit],
    emitters: Sequence[DetailEmitter],
    ctx: DetailContext,
    *,
    start_index: int = 0,
) -> dict[str, list[PathDetail]]:
    """Emit a detail only where an emitter's value changes along ``visits``.

    ``first``/``last`` are point indices into the path's point list, which
    begins at ``start_index``.
    """
    out: dict[str, list[PathDetail]] = {emitter.name: [] for emitter in emitters}
    if not visits:
        return out
    tracked = {emitter.name: _OpenDetail() for emitter in emitters}
    point_index = start_index
    for visit in visits:
        for emitter in emitters:
            slot = tracked[emitter.name]
            if is_different_from_previous(emitter, slot.state, visit, ctx):
                if slot.open:
                    out[emitter.name].append(PathDetail(slot.first, point_index, slot.value))
                slot.first = point_index
                slot.value = slot.state.current_value
                slot.open = True
        point_index += max(1, len(visit.state.points) - 1)
    for emitter in emitters:
        slot = tracked[emitter.name]
        if slot.open:
            out[emitter.name].append(PathDetail(slot.first, point_index, slot.value))
    return out


def merge_path_details(
    merged: dict[str, list[PathDetail]],
    leg_details: dict[str, list[PathDetail]],
) -> dict[str, list[PathDetail]]:
    for name, details in leg_details.items():
        merged.setdefault(name, []).extend(details)
    return merged


def detail_values(details: Sequence[PathDetail]) -> list[Any]:
    return [detail.value for detail in details]
