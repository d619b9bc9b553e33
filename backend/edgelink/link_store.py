"""Persisted transit link table.

The artifact holds three string-to-string tables:

* ``gtfs_link_mappings``: ``"{gtfs_feed_id}:{from_stop},{to_stop}"`` to a
  comma-joined run of stable edge ids,
* ``gtfs_route_info``: ``"{feed_key}:{route_id}"`` to a one-row CSV record of
  ``agency_name, route_short_name, route_long_name, route_type``,
* ``gtfs_feed_ids``: internal feed key (``gtfs_0``...) to the GTFS ``feed_id``.

The builder is the only writer. The serving process opens a read-only
snapshot once at startup.
"""

from __future__ import annotations

import csv
import io
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .errors import AssetUnavailableError
from .logging_utils import log_event

LINK_TABLE_VERSION = "gtfs-link-table-v1"
EMPTY_ROUTE_INFO: tuple[str, str, str, str] = ("", "", "", "")


def link_key(gtfs_feed_id: str, from_stop_id: str, to_stop_id: str) -> str:
    return f"{gtfs_feed_id}:{from_stop_id},{to_stop_id}"


def route_info_key(feed_key: str, route_id: str) -> str:
    return f"{feed_key}:{route_id}"


def encode_route_info(agency_name: str, short_name: str, long_name: str, route_type: int | str) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="").writerow([agency_name, short_name, long_name, str(route_type)])
    return buffer.getvalue()


def decode_route_info(value: str) -> tuple[str, str, str, str]:
    rows = list(csv.reader([value]))
    fields = [str(item) for item in rows[0]] if rows else []
    fields = (fields + ["", "", "", ""])[:4]
    return (fields[0], fields[1], fields[2], fields[3])


@dataclass(frozen=True)
class LinkTableStats:
    link_mappings: int
    route_info: int
    feed_ids: int
    version: str
    created_at: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "link_mappings": self.link_mappings,
            "route_info": self.route_info,
            "feed_ids": self.feed_ids,
            "version": self.version,
            "created_at": self.created_at,
        }


class LinkTable:
    """Immutable view over a built link table."""

    def __init__(
        self,
        *,
        link_mappings: Mapping[str, str],
        route_info: Mapping[str, str],
        feed_ids: Mapping[str, str],
        version: str = LINK_TABLE_VERSION,
        created_at: str = "",
        source: str = "memory",
    ) -> None:
        self._link_mappings = MappingProxyType(dict(link_mappings))
        self._route_info = MappingProxyType(dict(route_info))
        self._feed_ids = MappingProxyType(dict(feed_ids))
        self.version = version
        self.created_at = created_at
        self.source = source
        self._closed = False

    @classmethod
    def open(cls, path: Path) -> "LinkTable":
        if not path.exists():
            raise AssetUnavailableError("link_table_unavailable", f"Link table not found: {path}", path=str(path))
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise AssetUnavailableError(
                "link_table_unavailable",
                f"Link table unreadable: {exc}",
                path=str(path),
            ) from exc
        if not isinstance(payload, dict):
            raise AssetUnavailableError("link_table_unavailable", "Link table is not an object", path=str(path))

        def _table(name: str) -> dict[str, str]:
            raw = payload.get(name) or {}
            if not isinstance(raw, dict):
                raise AssetUnavailableError("link_table_unavailable", f"{name} is not an object", path=str(path))
            return {str(k): str(v) for k, v in raw.items()}

        table = cls(
            link_mappings=_table("gtfs_link_mappings"),
            route_info=_table("gtfs_route_info"),
            feed_ids=_table("gtfs_feed_ids"),
            version=str(payload.get("version", LINK_TABLE_VERSION)),
            created_at=str(payload.get("created_at", "")),
            source=str(path),
        )
        log_event("link_table_opened", path=str(path), **table.stats().as_dict())
        return table

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            log_event("link_table_closed", source=self.source)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "LinkTable":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def link_mappings(self) -> Mapping[str, str]:
        return self._link_mappings

    @property
    def route_info(self) -> Mapping[str, str]:
        return self._route_info

    @property
    def feed_ids(self) -> Mapping[str, str]:
        return self._feed_ids

    def gtfs_feed_id(self, feed_key: str) -> str | None:
        return self._feed_ids.get(feed_key)

    def stop_pair_edges(self, gtfs_feed_id: str, from_stop_id: str, to_stop_id: str) -> list[str] | None:
        """Stable ids for one hop, ``None`` when the hop was never linked."""
        value = self._link_mappings.get(link_key(gtfs_feed_id, from_stop_id, to_stop_id))
        if value is None:
            return None
        return [item for item in value.split(",") if item]

    def route_info_for(self, feed_key: str, route_id: str) -> tuple[str, str, str, str] | None:
        value = self._route_info.get(route_info_key(feed_key, route_id))
        if value is None:
            return None
        return decode_route_info(value)

    def stats(self) -> LinkTableStats:
        return LinkTableStats(
            link_mappings=len(self._link_mappings),
            route_info=len(self._route_info),
            feed_ids=len(self._feed_ids),
            version=self.version,
            created_at=self.created_at,
        )


class LinkTableBuilder:
    def __init__(self) -> None:
        self._link_mappings: dict[str, str] = {}
        self._route_info: dict[str, str] = {}
        self._feed_ids: dict[str, str] = {}

    def has_link(self, key: str) -> bool:
        return key in self._link_mappings

    def put_link(self, gtfs_feed_id: str, from_stop_id: str, to_stop_id: str, stable_ids: list[str]) -> None:
        self._link_mappings[link_key(gtfs_feed_id, from_stop_id, to_stop_id)] = ",".join(stable_ids)

    def put_route_info(
        self,
        feed_key: str,
        route_id: str,
        *,
        agency_name: str,
        short_name: str,
        long_name: str,
        route_type: int | str,
    ) -> None:
        self._route_info[route_info_key(feed_key, route_id)] = encode_route_info(
            agency_name, short_name, long_name, route_type
        )

    def put_feed_id(self, feed_key: str, gtfs_feed_id: str) -> None:
        self._feed_ids[feed_key] = gtfs_feed_id

    def snapshot(self, *, source: str = "memory") -> LinkTable:
        return LinkTable(
            link_mappings=self._link_mappings,
            route_info=self._route_info,
            feed_ids=self._feed_ids,
            created_at=datetime.now(UTC).isoformat(),
            source=source,
        )

    def payload(self) -> dict[str, Any]:
        return {
            "version": LINK_TABLE_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            "gtfs_link_mappings": dict(sorted(self._link_mappings.items())),
            "gtfs_route_info": dict(sorted(self._route_info.items())),
            "gtfs_feed_ids": dict(sorted(self._feed_ids.items())),
        }

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(self.payload(), indent=2), encoding="utf-8")
        os.replace(tmp, path)
        log_event(
            "link_table_written",
            path=str(path),
            link_mappings=len(self._link_mappings),
            route_info=len(self._route_info),
            feed_ids=len(self._feed_ids),
        )
        return path
