from __future__ import annotations

import pytest

from edgelink import route_cache
from edgelink.route_cache import RouteCacheStore, route_cache_key


def test_cache_key_is_order_insensitive_and_graph_scoped() -> None:
    a = route_cache_key({"profile": "car", "waypoints": [1, 2]}, graph_version="v1")
    b = route_cache_key({"waypoints": [1, 2], "profile": "car"}, graph_version="v1")
    c = route_cache_key({"waypoints": [1, 2], "profile": "car"}, graph_version="v2")
    assert a == b
    assert a != c


def test_store_returns_copies_and_evicts_least_recent() -> None:
    store = RouteCacheStore(ttl_s=60, max_entries=2)
    payload = {"distance_m": 10.0, "legs": [{"index": 0}]}
    store.set("a", payload)
    payload["legs"].append({"index": 1})

    got = store.get("a")
    assert got == {"distance_m": 10.0, "legs": [{"index": 0}]}
    assert got is not None
    got["distance_m"] = 0.0
    assert store.get("a") == {"distance_m": 10.0, "legs": [{"index": 0}]}

    store.set("b", {"distance_m": 20.0})
    assert store.get("a") is not None
    store.set("c", {"distance_m": 30.0})
    assert store.get("b") is None
    assert store.get("a") is not None
    stats = store.snapshot()
    assert stats["evictions"] == 1
    assert stats["size"] == 2
    assert stats["hits"] == 4
    assert stats["misses"] == 1


def test_expired_entries_miss(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = {"now": 1_000.0}
    monkeypatch.setattr(route_cache.time, "monotonic", lambda: clock["now"])
    store = RouteCacheStore(ttl_s=60, max_entries=4)
    store.set("a", {"x": 1})
    store.set("b", {"x": 2})

    clock["now"] += 30
    assert store.get("a") == {"x": 1}
    clock["now"] += 31
    assert store.get("a") is None
    store.set("c", {"x": 3})
    stats = store.snapshot()
    assert stats["size"] == 1
    assert stats["expirations"] == 2
    assert stats["misses"] == 1


def test_module_helpers_use_shared_store() -> None:
    route_cache.clear_route_cache()
    try:
        route_cache.set_cached_route("k", {"v": 1})
        assert route_cache.get_cached_route("k") == {"v": 1}
        assert route_cache.route_cache_stats()["size"] == 1
        assert route_cache.clear_route_cache() == 1
    finally:
        route_cache.clear_route_cache()
