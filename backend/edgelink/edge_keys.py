from __future__ import annotations

from typing import Protocol


class EdgeStateLike(Protocol):
    edge: int
    reverse: bool


def to_key(edge: int, reverse: bool) -> int:
    if edge < 0:
        raise ValueError(f"edge index must be non-negative: {edge}")
    return edge * 2 + (1 if reverse else 0)


def from_key(key: int) -> tuple[int, bool]:
    if key < 0:
        raise ValueError(f"edge key must be non-negative: {key}")
    return key // 2, bool(key % 2)


def edge_from_key(key: int) -> int:
    return from_key(key)[0]


def resolved_edge_index(state: EdgeStateLike) -> int:
    """Edge index of the stored edge behind ``state``.

    Virtual states created by snapping resolve to the edge they were split from.
    States without an original-edge relation are treated as normal edges.
    """
    original_key = getattr(state, "original_edge_key", None)
    if getattr(state, "virtual", False) and original_key is not None:
        return edge_from_key(int(original_key))
    return int(state.edge)


def edge_key(state: EdgeStateLike) -> int:
    return to_key(resolved_edge_index(state), bool(state.reverse))
