"""Tests for the in-memory TTL cache stores."""

from requestarr.core.cache import CacheManager, CacheStore


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_entry_expires_after_ttl():
    clock = _Clock()
    store = CacheStore("tmdb", clock=clock)

    store.set("key", {"id": 1}, ttl=10)
    clock.now = 9.9
    assert store.get("key") == {"id": 1}
    clock.now = 10.0
    assert store.get("key") is None
    assert len(store) == 0


def test_store_default_ttl_applies_when_ttl_omitted():
    clock = _Clock()
    store = CacheStore("radarr", default_ttl=5, clock=clock)

    store.set("key", "value")

    assert store.remaining_ttl("key") == 5


def test_entries_without_ttl_never_expire():
    clock = _Clock()
    store = CacheStore("plexwatchlist", clock=clock)

    entry = store.set("token:0:20", {"MediaContainer": {}}, etag='"abc"')
    clock.now = 10_000_000

    assert store.get_entry("token:0:20") is entry
    assert entry.etag == '"abc"'
    assert store.remaining_ttl("token:0:20") is None


def test_stats_count_hits_and_misses():
    store = CacheStore("sonarr", clock=_Clock())
    store.set("a", 1)

    store.get("a")
    store.get("b")
    assert "a" in store

    assert store.stats() == {"name": "sonarr", "keys": 1, "hits": 2, "misses": 1}


def test_delete_and_flush():
    store = CacheStore("sonarr", clock=_Clock())
    store.set("a", 1)
    store.set("b", 2)

    assert store.delete("a") is True
    assert store.delete("a") is False
    store.flush()
    assert len(store) == 0


def test_manager_returns_one_store_per_name_with_configured_ttl():
    manager = CacheManager({"tmdb": 60})

    first = manager.get_cache("tmdb")

    assert manager.get_cache("tmdb") is first
    assert first.default_ttl == 60
    assert manager.get_cache("unknown").default_ttl is None


def test_manager_flush_all_clears_every_store():
    manager = CacheManager()
    manager.get_cache("tmdb").set("a", 1)
    manager.get_cache("radarr").set("b", 2)

    manager.flush_all()

    assert {name: stats["keys"] for name, stats in manager.stats().items()} == {"tmdb": 0, "radarr": 0}


def test_default_manager_lifetimes():
    manager = CacheManager()

    assert manager.get_cache("tmdb").default_ttl == 43200
    assert manager.get_cache("radarr").default_ttl == 300
    assert manager.get_cache("sonarr").default_ttl == 300
    assert manager.get_cache("plexwatchlist").default_ttl is None
