from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_request",
        "missing_departure_time",
        "impossible_curbside",
        "point_not_found",
        "points_not_found",
        "connection_not_found",
        "search_exhausted",
        "internal_invariant",
        "empty_search_result",
        "negative_time",
        "leg_count_mismatch",
        "street_graph_unavailable",
        "link_table_unavailable",
        "gtfs_feed_unavailable",
    }
)


@dataclass
class EdgelinkError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class InvalidRequestError(EdgelinkError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None, reason_code: str = "invalid_request") -> None:
        super().__init__(reason_code=reason_code, message=message, details=details)


class MissingDepartureTimeError(InvalidRequestError):
    def __init__(self) -> None:
        super().__init__("Must specify departure_time in request.", reason_code="missing_departure_time")


class ImpossibleCurbsideError(InvalidRequestError):
    def __init__(self, point_index: int, curbside: str) -> None:
        super().__init__(
            f"Impossible curbside constraint: 'curbside={curbside}' at point {point_index}",
            details={"point_index": point_index, "curbside": curbside},
            reason_code="impossible_curbside",
        )
        self.point_index = point_index
        self.curbside = curbside


class PointNotFoundError(EdgelinkError):
    def __init__(self, point_index: int, *, lat: float | None = None, lon: float | None = None) -> None:
        super().__init__(
            reason_code="point_not_found",
            message=f"Cannot find point {point_index}: {lat},{lon}",
            details={"point_index": point_index, "lat": lat, "lon": lon},
        )
        self.point_index = point_index


class PointsNotFoundError(EdgelinkError):
    """Every waypoint that failed to snap, reported together."""

    def __init__(self, errors: list[PointNotFoundError]) -> None:
        indices = [err.point_index for err in errors]
        super().__init__(
            reason_code="points_not_found",
            message="; ".join(err.message for err in errors) or "Cannot find points",
            details={"point_indices": indices},
        )
        self.errors = list(errors)


class ConnectionNotFoundError(EdgelinkError):
    def __init__(self, leg_index: int, *, reason: str = "") -> None:
        message = f"Connection between locations not found (leg {leg_index})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            reason_code="connection_not_found",
            message=message,
            details={"leg_index": leg_index, "reason": reason},
        )
        self.leg_index = leg_index


class SearchExhaustedError(EdgelinkError):
    def __init__(self, leg_index: int, visited_nodes: int, max_visited_nodes: int) -> None:
        super().__init__(
            reason_code="search_exhausted",
            message="No path found due to maximum nodes exceeded " + str(max_visited_nodes),
            details={
                "leg_index": leg_index,
                "visited_nodes": visited_nodes,
                "max_visited_nodes": max_visited_nodes,
            },
        )


class InternalInvariantError(EdgelinkError):
    """A bug in the cost model or stitching logic. Never recovered."""

    def __init__(self, message: str, *, reason_code: str = "internal_invariant", details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code=reason_code, message=message, details=details)


class EmptySearchResultError(InternalInvariantError):
    def __init__(self, leg_index: int, from_node: int, to_node: int) -> None:
        super().__init__(
            f"Search returned no paths for leg {leg_index} ({from_node} -> {to_node})",
            reason_code="empty_search_result",
            details={"leg_index": leg_index, "from_node": from_node, "to_node": to_node},
        )


class NegativeTimeError(InternalInvariantError):
    def __init__(self, time_ms: int, request: dict[str, Any]) -> None:
        super().__init__(
            f"Time was negative {time_ms} for index {request.get('leg_index')}. Please report as bug and include: {request}",
            reason_code="negative_time",
            details={"time_ms": time_ms, "request": request},
        )
        self.time_ms = time_ms


class LegCountMismatchError(InternalInvariantError):
    def __init__(self, points: int, legs: int) -> None:
        super().__init__(
            f"There should be exactly one more point than paths. points:{points}, paths:{legs}",
            reason_code="leg_count_mismatch",
            details={"points": points, "legs": legs},
        )


class AssetUnavailableError(EdgelinkError):
    def __init__(self, reason_code: str, message: str, *, path: str = "") -> None:
        super().__init__(reason_code=reason_code, message=message, details={"path": path} if path else None)


def normalize_reason_code(reason_code: str, *, default: str = "internal_invariant") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
