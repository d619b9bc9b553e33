from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .errors import AssetUnavailableError
from .logging_utils import log_event


@dataclass(frozen=True)
class GtfsRoute:
    route_id: str
    agency_id: str
    short_name: str
    long_name: str
    route_type: int


@dataclass(frozen=True)
class GtfsTrip:
    trip_id: str
    route_id: str


@dataclass(frozen=True)
class GtfsStopTime:
    trip_id: str
    stop_id: str
    stop_sequence: int


@dataclass(frozen=True)
class GtfsStop:
    stop_id: str
    name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class GtfsFeed:
    """The handful of GTFS tables the link mapper reads, keyed for lookup."""

    feed_key: str
    feed_id: str
    agencies: dict[str, str]
    routes: dict[str, GtfsRoute]
    trips: dict[str, GtfsTrip]
    stop_times: dict[str, tuple[GtfsStopTime, ...]]
    stops: dict[str, GtfsStop]

    def ordered_stop_times(self, trip_id: str) -> tuple[GtfsStopTime, ...]:
        return self.stop_times.get(trip_id, ())

    def agency_name_for(self, route: GtfsRoute) -> str:
        if route.agency_id and route.agency_id in self.agencies:
            return self.agencies[route.agency_id]
        # Single-agency feeds may leave routes.agency_id blank.
        if len(self.agencies) == 1:
            return next(iter(self.agencies.values()))
        return ""


def _int_or(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _float_or_none(value: str | None) -> float | None:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


class _FeedSource:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._zip: zipfile.ZipFile | None = None
        if path.is_file():
            try:
                self._zip = zipfile.ZipFile(path)
            except zipfile.BadZipFile as exc:
                raise AssetUnavailableError(
                    "gtfs_feed_unavailable",
                    f"GTFS feed is not a zip archive: {path}",
                    path=str(path),
                ) from exc

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()

    def _zip_member(self, name: str) -> str | None:
        assert self._zip is not None
        for member in self._zip.namelist():
            if member == name or member.endswith("/" + name):
                return member
        return None

    def rows(self, name: str, *, required: bool = True) -> Iterator[dict[str, str]]:
        if self._zip is not None:
            member = self._zip_member(name)
            if member is None:
                if required:
                    raise AssetUnavailableError("gtfs_feed_unavailable", f"{name} missing from {self.path}", path=str(self.path))
                return
            with self._zip.open(member) as raw:
                text = io.TextIOWrapper(raw, encoding="utf-8-sig", newline="")
                for row in csv.DictReader(text):
                    yield {str(k).strip(): (v or "").strip() for k, v in row.items() if k is not None}
            return
        target = self.path / name
        if not target.exists():
            if required:
                raise AssetUnavailableError("gtfs_feed_unavailable", f"{name} missing from {self.path}", path=str(self.path))
            return
        with target.open("r", encoding="utf-8-sig", newline="") as handle:
            for row in csv.DictReader(handle):
                yield {str(k).strip(): (v or "").strip() for k, v in row.items() if k is not None}


def load_gtfs_feed(path: Path, *, feed_key: str) -> GtfsFeed:
    """Read a GTFS feed from a directory or a ``.zip`` archive.

    ``feed_id`` comes from ``feed_info.txt`` when present, else the file stem.
    """
    if not path.exists():
        raise AssetUnavailableError("gtfs_feed_unavailable", f"GTFS feed not found: {path}", path=str(path))
    source = _FeedSource(path)
    try:
        feed_id = ""
        for row in source.rows("feed_info.txt", required=False):
            feed_id = row.get("feed_id", "")
            break
        if not feed_id:
            feed_id = path.stem

        agencies: dict[str, str] = {}
        for row in source.rows("agency.txt", required=False):
            agencies[row.get("agency_id", "")] = row.get("agency_name", "")

        routes: dict[str, GtfsRoute] = {}
        for row in source.rows("routes.txt"):
            route_id = row.get("route_id", "")
            if not route_id:
                continue
            routes[route_id] = GtfsRoute(
                route_id=route_id,
                agency_id=row.get("agency_id", ""),
                short_name=row.get("route_short_name", ""),
                long_name=row.get("route_long_name", ""),
                route_type=_int_or(row.get("route_type"), -1),
            )

        trips: dict[str, GtfsTrip] = {}
        for row in source.rows("trips.txt"):
            trip_id = row.get("trip_id", "")
            if trip_id:
                trips[trip_id] = GtfsTrip(trip_id=trip_id, route_id=row.get("route_id", ""))

        grouped: dict[str, list[GtfsStopTime]] = {}
        for row in source.rows("stop_times.txt"):
            trip_id = row.get("trip_id", "")
            stop_id = row.get("stop_id", "")
            if not trip_id or not stop_id:
                continue
            grouped.setdefault(trip_id, []).append(
                GtfsStopTime(trip_id=trip_id, stop_id=stop_id, stop_sequence=_int_or(row.get("stop_sequence"), 0))
            )

        stops: dict[str, GtfsStop] = {}
        skipped_stops = 0
        for row in source.rows("stops.txt"):
            stop_id = row.get("stop_id", "")
            lat = _float_or_none(row.get("stop_lat"))
            lon = _float_or_none(row.get("stop_lon"))
            if not stop_id or lat is None or lon is None:
                skipped_stops += 1
                continue
            stops[stop_id] = GtfsStop(stop_id=stop_id, name=row.get("stop_name", ""), lat=lat, lon=lon)
    finally:
        source.close()

    feed = GtfsFeed(
        feed_key=feed_key,
        feed_id=feed_id,
        agencies=agencies,
        routes=routes,
        trips=trips,
        stop_times={
            trip_id: tuple(sorted(items, key=lambda st: st.stop_sequence)) for trip_id, items in grouped.items()
        },
        stops=stops,
    )
    log_event(
        "gtfs_feed_loaded",
        path=str(path),
        feed_key=feed_key,
        feed_id=feed_id,
        routes=len(routes),
        trips=len(trips),
        stops=len(stops),
        skipped_stops=skipped_stops,
    )
    return feed


def load_gtfs_feeds(paths: list[Path]) -> list[GtfsFeed]:
    return [load_gtfs_feed(path, feed_key=f"gtfs_{index}") for index, path in enumerate(paths)]
