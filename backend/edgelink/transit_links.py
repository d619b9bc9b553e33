"""Offline stop-pair linking for street-running transit, and serve-time decoration.

The build routes every unique consecutive stop pair of bus, tram and cable car
trips over the street graph and stores the ordered stable edge ids. Pairs that
cannot be routed are counted and left out of the table.
"""

from __future__ import annotations

import csv
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from .errors import ConnectionNotFoundError, PointsNotFoundError, SearchExhaustedError
from .gtfs_feed import GtfsFeed, GtfsStop
from .link_store import EMPTY_ROUTE_INFO, LinkTable, LinkTableBuilder, link_key
from .logging_utils import log_event, log_warning, timed_event
from .models import DecoratedPtLeg, PtLegIn, WalkLegIn
from .route_stitcher import RouteStitcher, StitchPoint, StitchRequest
from .settings import settings

# GTFS route_type values that run on the street network: tram, bus, cable car.
STREET_BASED_ROUTE_TYPES: frozenset[int] = frozenset({0, 3, 5})
STABLE_ID_DETAIL = "stable_edge_ids"
HIGH_OMISSION_RATIO = 0.5

CSV_COLUMNS: tuple[str, ...] = (
    "route_id",
    "feed_id",
    "stop_id",
    "next_stop_id",
    "stop_lat",
    "stop_lon",
    "stop_lat_next",
    "stop_lon_next",
    "street_edges",
    "transit_edge",
)


@dataclass
class LinkBuildStats:
    feeds: int = 0
    routes: int = 0
    street_routes: int = 0
    trips: int = 0
    pairs_total: int = 0
    identical_pairs: int = 0
    non_unique_pairs: int = 0
    unique_pairs: int = 0
    routed: int = 0
    omitted_not_found: int = 0
    omitted_snap_failed: int = 0
    omitted_exhausted: int = 0
    missing_stops: int = 0

    @property
    def omitted(self) -> int:
        return self.omitted_not_found + self.omitted_snap_failed + self.omitted_exhausted

    @property
    def omission_ratio(self) -> float:
        if self.unique_pairs <= 0:
            return 0.0
        return self.omitted / float(self.unique_pairs)

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["omitted"] = self.omitted
        out["omission_ratio"] = round(self.omission_ratio, 6)
        return out


@dataclass
class LinkBuildResult:
    builder: LinkTableBuilder
    stats: LinkBuildStats
    csv_rows: list[dict[str, str]] = field(default_factory=list)


def ordered_stop_pairs(feed: GtfsFeed, trip_id: str) -> tuple[list[tuple[GtfsStop, GtfsStop]], int]:
    """Consecutive stop pairs of a trip in ``stop_sequence`` order.

    Returns the pairs and how many stop times referenced unknown stops.
    """
    stops: list[GtfsStop] = []
    missing = 0
    for stop_time in feed.ordered_stop_times(trip_id):
        stop = feed.stops.get(stop_time.stop_id)
        if stop is None:
            missing += 1
            continue
        stops.append(stop)
    return list(zip(stops, stops[1:])), missing


def concat_stop_pair_edges(segments: Iterable[Sequence[str]]) -> list[str]:
    """Join per-hop edge runs, dropping repeats while keeping first-seen order.

    Neighbouring hops each include the edge under their shared stop, so the
    naive concatenation repeats it.
    """
    joined = [edge_id for segment in segments if segment for edge_id in segment if edge_id]
    return list(dict.fromkeys(joined))


def _street_edges_cell(stable_ids: list[str]) -> str:
    if not stable_ids:
        return ""
    return "[" + ",".join(f"'{edge_id}'" for edge_id in stable_ids) + "]"


class TransitLinkMapper:
    def __init__(
        self,
        stitcher: RouteStitcher,
        *,
        profile: str | None = None,
        max_visited_nodes: int | None = None,
        workers: int | None = None,
    ) -> None:
        self.stitcher = stitcher
        self.profile = profile or settings.link_mapper_profile
        self.max_visited_nodes = int(max_visited_nodes or settings.link_mapper_max_visited_nodes)
        self.workers = max(1, int(workers or settings.link_mapper_workers))

    def _route_pair(self, pair: tuple[GtfsStop, GtfsStop]) -> tuple[list[str] | None, str]:
        origin, destination = pair
        request = StitchRequest(
            points=(StitchPoint(origin.lat, origin.lon), StitchPoint(destination.lat, destination.lon)),
            details=(STABLE_ID_DETAIL,),
            profile=self.profile,
            max_visited_nodes=self.max_visited_nodes,
        )
        try:
            route = self.stitcher.route(request)
        except PointsNotFoundError:
            return None, "snap_failed"
        except SearchExhaustedError:
            return None, "exhausted"
        except ConnectionNotFoundError:
            return None, "not_found"
        return route.detail_values(STABLE_ID_DETAIL), "routed"

    def _route_pairs(self, pairs: list[tuple[GtfsStop, GtfsStop]], feed: GtfsFeed) -> list[tuple[list[str] | None, str]]:
        total = len(pairs)
        step = max(1, total // 10)
        results: list[tuple[list[str] | None, str]] = []
        if self.workers > 1 and total > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                for index, result in enumerate(pool.map(self._route_pair, pairs), start=1):
                    results.append(result)
                    if index % step == 0:
                        log_event("link_build_progress", feed_id=feed.feed_id, routed_pairs=index, total_pairs=total)
            return results
        for index, pair in enumerate(pairs, start=1):
            results.append(self._route_pair(pair))
            if index % step == 0:
                log_event("link_build_progress", feed_id=feed.feed_id, routed_pairs=index, total_pairs=total)
        return results

    def _build_feed(self, feed: GtfsFeed, result: LinkBuildResult) -> None:
        builder = result.builder
        stats = result.stats
        builder.put_feed_id(feed.feed_key, feed.feed_id)

        # Route info is kept for every route, street-running or not.
        street_route_ids: list[str] = []
        for route in feed.routes.values():
            builder.put_route_info(
                feed.feed_key,
                route.route_id,
                agency_name=feed.agency_name_for(route),
                short_name=route.short_name,
                long_name=route.long_name,
                route_type=route.route_type,
            )
            if route.route_type in STREET_BASED_ROUTE_TYPES:
                street_route_ids.append(route.route_id)
        stats.routes += len(feed.routes)
        stats.street_routes += len(street_route_ids)

        street_routes = set(street_route_ids)
        trips_by_route: dict[str, list[str]] = {}
        for trip in feed.trips.values():
            if trip.route_id in street_routes:
                trips_by_route.setdefault(trip.route_id, []).append(trip.trip_id)

        pairs_by_trip: dict[str, list[tuple[GtfsStop, GtfsStop]]] = {}
        pending: dict[str, tuple[GtfsStop, GtfsStop]] = {}
        for trip_ids in trips_by_route.values():
            for trip_id in trip_ids:
                pairs, missing = ordered_stop_pairs(feed, trip_id)
                stats.trips += 1
                stats.missing_stops += missing
                pairs_by_trip[trip_id] = pairs
                for origin, destination in pairs:
                    stats.pairs_total += 1
                    if origin.stop_id == destination.stop_id:
                        stats.identical_pairs += 1
                        continue
                    key = link_key(feed.feed_id, origin.stop_id, destination.stop_id)
                    if key in pending or builder.has_link(key):
                        stats.non_unique_pairs += 1
                        continue
                    pending[key] = (origin, destination)
        stats.unique_pairs += len(pending)

        pairs = list(pending.values())
        with timed_event(
            "link_build_feed",
            feed_key=feed.feed_key,
            feed_id=feed.feed_id,
            street_routes=len(street_route_ids),
            trips=len(pairs_by_trip),
            unique_pairs=len(pairs),
        ) as outcome_counts:
            routed = 0
            # Writes stay on this thread whatever the worker count.
            for (origin, destination), (stable_ids, outcome) in zip(pairs, self._route_pairs(pairs, feed)):
                if stable_ids is None:
                    if outcome == "snap_failed":
                        stats.omitted_snap_failed += 1
                    elif outcome == "exhausted":
                        stats.omitted_exhausted += 1
                    else:
                        stats.omitted_not_found += 1
                    continue
                builder.put_link(feed.feed_id, origin.stop_id, destination.stop_id, stable_ids)
                routed += 1
            stats.routed += routed
            outcome_counts["routed"] = routed
            outcome_counts["omitted"] = len(pairs) - routed

        result.csv_rows.extend(self._csv_rows_for_feed(feed, trips_by_route, pairs_by_trip, builder))

    @staticmethod
    def _csv_rows_for_feed(
        feed: GtfsFeed,
        trips_by_route: dict[str, list[str]],
        pairs_by_trip: dict[str, list[tuple[GtfsStop, GtfsStop]]],
        builder: LinkTableBuilder,
    ) -> list[dict[str, str]]:
        table = builder.snapshot()
        rows: list[dict[str, str]] = []
        for route_id, trip_ids in trips_by_route.items():
            for trip_id in trip_ids:
                for stop, next_stop in pairs_by_trip.get(trip_id, ()):
                    if stop.stop_id == next_stop.stop_id:
                        continue
                    stable_ids = table.stop_pair_edges(feed.feed_id, stop.stop_id, next_stop.stop_id)
                    if stable_ids is None:
                        continue
                    rows.append(
                        {
                            "route_id": route_id,
                            "feed_id": feed.feed_id,
                            "stop_id": stop.stop_id,
                            "next_stop_id": next_stop.stop_id,
                            "stop_lat": f"{stop.lat:.6f}",
                            "stop_lon": f"{stop.lon:.6f}",
                            "stop_lat_next": f"{next_stop.lat:.6f}",
                            "stop_lon_next": f"{next_stop.lon:.6f}",
                            "street_edges": _street_edges_cell(stable_ids),
                            "transit_edge": (
                                f"{feed.feed_id}:{route_id}/{feed.feed_id}:{stop.stop_id}/{feed.feed_id}:{next_stop.stop_id}"
                            ),
                        }
                    )
        return rows

    def build(self, feeds: Sequence[GtfsFeed]) -> LinkBuildResult:
        result = LinkBuildResult(builder=LinkTableBuilder(), stats=LinkBuildStats())
        for feed in feeds:
            self._build_feed(feed, result)
            result.stats.feeds += 1
        summary = result.stats.as_dict()
        log_event("link_build_summary", profile=self.profile, workers=self.workers, **summary)
        if result.stats.unique_pairs and result.stats.omission_ratio > HIGH_OMISSION_RATIO:
            log_warning("link_build_high_omission_ratio", omission_ratio=summary["omission_ratio"])
        return result


def write_link_csv(path: Path, rows: Iterable[dict[str, str]]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(CSV_COLUMNS))
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
            count += 1
    log_event("link_csv_written", path=str(path), rows=count)
    return path


class TransitLegDecorator:
    """Adds stable street edges and route info to PT legs from a link table."""

    def __init__(self, link_table: LinkTable) -> None:
        self.link_table = link_table

    def decorate(self, leg: PtLegIn) -> DecoratedPtLeg:
        route_info = self.link_table.route_info_for(leg.feed_id, leg.route_id)
        if route_info is None:
            log_event("route_info_missing", feed_id=leg.feed_id, route_id=leg.route_id, trip_id=leg.trip_id)
            route_info = EMPTY_ROUTE_INFO
        agency_name, short_name, long_name, route_type = route_info

        gtfs_feed_id = self.link_table.gtfs_feed_id(leg.feed_id)
        if gtfs_feed_id is None:
            log_event("gtfs_feed_id_missing", feed_id=leg.feed_id)
            gtfs_feed_id = leg.feed_id

        # Only street-running hops were linked, so any other hop looks up nothing.
        segments = [
            self.link_table.stop_pair_edges(gtfs_feed_id, stop.stop_id, next_stop.stop_id) or []
            for stop, next_stop in zip(leg.stops, leg.stops[1:])
        ]
        stable_ids = concat_stop_pair_edges(segments)

        stops = [stop.model_copy(update={"stop_id": f"{gtfs_feed_id}:{stop.stop_id}"}) for stop in leg.stops]
        return DecoratedPtLeg(
            **leg.model_dump(exclude={"stops"}),
            stops=stops,
            stable_edge_ids=stable_ids,
            agency_name=agency_name,
            route_short_name=short_name,
            route_long_name=long_name,
            route_type=route_type,
        )

    def decorate_legs(self, legs: Sequence[PtLegIn | WalkLegIn]) -> list[DecoratedPtLeg | WalkLegIn]:
        out: list[DecoratedPtLeg | WalkLegIn] = []
        for leg in legs:
            if isinstance(leg, PtLegIn):
                out.append(self.decorate(leg))
            else:
                out.append(leg)
        return out
