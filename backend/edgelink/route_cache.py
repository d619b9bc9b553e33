from __future__ import annotations

import copy
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any

from .settings import settings


@dataclass
class _CachedRoute:
    expires_at: float
    payload: dict[str, Any]


class RouteCacheStore:
    """TTL + LRU store of serialised stitched-route responses.

    Payloads are deep-copied on the way in and out, so callers may mutate what
    they get back.
    """

    def __init__(self, *, ttl_s: int, max_entries: int) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._lock = Lock()
        self._routes: OrderedDict[str, _CachedRoute] = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

    def _drop_expired(self, now: float) -> None:
        stale = [key for key, cached in self._routes.items() if cached.expires_at < now]
        for key in stale:
            del self._routes[key]
        self._stats["expirations"] += len(stale)

    def get(self, key: str) -> dict[str, Any] | None:
        now = time.monotonic()
        with self._lock:
            cached = self._routes.get(key)
            if cached is not None and cached.expires_at < now:
                del self._routes[key]
                self._stats["expirations"] += 1
                cached = None
            if cached is None:
                self._stats["misses"] += 1
                return None
            self._routes.move_to_end(key)
            self._stats["hits"] += 1
            return copy.deepcopy(cached.payload)

    def set(self, key: str, value: dict[str, Any]) -> None:
        payload = copy.deepcopy(value)
        now = time.monotonic()
        with self._lock:
            self._drop_expired(now)
            self._routes.pop(key, None)
            self._routes[key] = _CachedRoute(expires_at=now + self._ttl_s, payload=payload)
            while len(self._routes) > self._max_entries:
                self._routes.popitem(last=False)
                self._stats["evictions"] += 1

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._routes)
            self._routes.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._routes),
                **self._stats,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }


ROUTE_CACHE = RouteCacheStore(
    ttl_s=settings.route_cache_ttl_s,
    max_entries=settings.route_cache_max_entries,
)


def route_cache_key(request_payload: dict[str, Any], *, graph_version: str) -> str:
    # Same request against a rebuilt graph must miss.
    canonical = json.dumps({"graph": graph_version, "request": request_payload}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def get_cached_route(key: str) -> dict[str, Any] | None:
    return ROUTE_CACHE.get(key)


def set_cached_route(key: str, value: dict[str, Any]) -> None:
    ROUTE_CACHE.set(key, value)


def clear_route_cache() -> int:
    return ROUTE_CACHE.clear()


def route_cache_stats() -> dict[str, int]:
    return ROUTE_CACHE.snapshot()
