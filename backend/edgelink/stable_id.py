"""Content-derived, rebuild-invariant identifiers for directed street edges.

An id only depends on the road's form of way, its endpoint coordinates and its
rounded bearing, so a graph rebuilt from fresh map data assigns the same id to
the same real-world segment even though edge indices shift.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import farmhash

STABLE_ID_BYTES = 8
FORWARD_FIELDS: tuple[str, ...] = tuple(f"stable-id-byte-{i}" for i in range(STABLE_ID_BYTES))
REVERSE_FIELDS: tuple[str, ...] = tuple(f"reverse-stable-id-byte-{i}" for i in range(STABLE_ID_BYTES))
STABLE_ID_FIELDS: tuple[str, ...] = FORWARD_FIELDS + REVERSE_FIELDS

# Shared streets' definition of "form of way".
_FORM_OF_WAY: dict[str, int] = {
    "motorway": 1,
    "primary": 2,
    "trunk": 2,
    "secondary": 3,
    "tertiary": 3,
    "residential": 3,
    "unclassified": 3,
    "roundabout": 4,
}
OTHER_FORM_OF_WAY = 7

_SIX_PLACES = Decimal("0.000001")


class ByteAttributeStore(Protocol):
    def get_byte(self, field: str, edge: int) -> int: ...

    def set_byte(self, field: str, edge: int, value: int) -> None: ...


def form_of_way(road_class: str | None) -> int:
    return _FORM_OF_WAY.get((road_class or "").strip().lower(), OTHER_FORM_OF_WAY)


def initial_bearing_deg(start_lat: float, start_lon: float, end_lat: float, end_lon: float) -> float:
    """Great-circle initial bearing, clockwise from north, in [0, 360)."""
    phi1 = math.radians(start_lat)
    phi2 = math.radians(end_lat)
    dlambda = math.radians(end_lon - start_lon)
    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def rounded_bearing(start_lat: float, start_lon: float, end_lat: float, end_lon: float) -> int:
    # Half-up, so 359.5 becomes 360 rather than wrapping to 0.
    return int(math.floor(initial_bearing_deg(start_lat, start_lon, end_lat, end_lon) + 0.5))


def _fixed6(value: float) -> str:
    # Half-up on the shortest decimal repr, not on the binary expansion.
    return format(Decimal(repr(float(value))).quantize(_SIX_PLACES, rounding=ROUND_HALF_UP), "f")


def canonical_string(
    road_class: str | None,
    start_lat: float,
    start_lon: float,
    end_lat: float,
    end_lon: float,
) -> str:
    bucket = form_of_way(road_class)
    bearing = rounded_bearing(start_lat, start_lon, end_lat, end_lon)
    return (
        f"Reference {bucket} {_fixed6(start_lon)} {_fixed6(start_lat)} "
        f"{_fixed6(end_lon)} {_fixed6(end_lat)} {bearing}"
    )


def compute_stable_id(
    road_class: str | None,
    start_lat: float,
    start_lon: float,
    end_lat: float,
    end_lon: float,
) -> bytes:
    text = canonical_string(road_class, start_lat, start_lon, end_lat, end_lon)
    fingerprint = farmhash.fingerprint64(text.encode("utf-8"))
    # Least-significant byte first; the id string reads these bytes back most-significant first,
    # so it is the byte-swapped fingerprint.
    return int(fingerprint).to_bytes(STABLE_ID_BYTES, "little", signed=False)


def compute_directed_stable_id(
    reverse: bool,
    road_class: str | None,
    base: tuple[float, float],
    adj: tuple[float, float],
) -> bytes:
    """Id of the edge traversed base->adj, or adj->base when ``reverse``."""
    start, end = (adj, base) if reverse else (base, adj)
    return compute_stable_id(road_class, start[0], start[1], end[0], end[1])


def stable_id_to_string(stable_id: bytes) -> str:
    if len(stable_id) != STABLE_ID_BYTES:
        raise ValueError(f"stable ID must be {STABLE_ID_BYTES} bytes: {stable_id!r}")
    return str(int.from_bytes(stable_id, "big", signed=False))


class StableIdAttributes:
    """Reads and writes ids through 16 unsigned-byte per-edge fields."""

    def __init__(self, store: ByteAttributeStore) -> None:
        self._store = store

    @staticmethod
    def _fields(reverse: bool) -> tuple[str, ...]:
        return REVERSE_FIELDS if reverse else FORWARD_FIELDS

    def set_stable_id(self, edge: int, reverse: bool, stable_id: bytes) -> None:
        if len(stable_id) != STABLE_ID_BYTES:
            raise ValueError(f"stable ID must be {STABLE_ID_BYTES} bytes: {stable_id!r}")
        for field, value in zip(self._fields(reverse), stable_id):
            self._store.set_byte(field, edge, value)

    def get_stable_id_bytes(self, edge: int, reverse: bool) -> bytes:
        return bytes(self._store.get_byte(field, edge) for field in self._fields(reverse))

    def get_stable_id(self, edge: int, reverse: bool) -> str:
        return stable_id_to_string(self.get_stable_id_bytes(edge, reverse))
