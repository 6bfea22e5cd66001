"""In-memory TTL cache used by the external API clients."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class CacheEntry:
    """A cached value with its freshness window and optional ETag."""
    key: str
    value: Any
    stored_at: float
    ttl: Optional[float] = None  # None = never expires
    etag: Optional[str] = None

    @property
    def expires_at(self) -> Optional[float]:
        if self.ttl is None:
            return None
        return self.stored_at + self.ttl

    def remaining(self, now: float) -> Optional[float]:
        """Seconds of freshness left, or None when the entry never expires."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return expires_at - now

    def is_expired(self, now: float) -> bool:
        remaining = self.remaining(now)
        return remaining is not None and remaining <= 0


class CacheStore:
    """Thread-safe key/value store with per-entry TTL.

    Expired entries are dropped lazily on read. The clock is injectable so
    freshness behaviour can be exercised without sleeping.
    """

    def __init__(
        self,
        name: str,
        *,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def now(self) -> float:
        return self._clock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for a key, evicting it if expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def set(self, key: str, value: Any, ttl: Optional[float] = None, *, etag: Optional[str] = None) -> CacheEntry:
        """Store a value; ``ttl`` falls back to the store default."""
        effective_ttl = ttl if ttl is not None else self.default_ttl
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=effective_ttl,
            etag=etag,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def remaining_ttl(self, key: str) -> Optional[float]:
        entry = self.get_entry(key)
        if entry is None:
            return None
        return entry.remaining(self._clock())

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "keys": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
            }


# Default lifetimes per external service, in seconds
DEFAULT_CACHE_TTLS: Dict[str, Optional[float]] = {
    "tmdb": 43200,
    "radarr": 300,
    "sonarr": 300,
    "plextv": 3600,
    "plexwatchlist": None,
}


class CacheManager:
    """Owns the named, process-scoped cache stores."""

    def __init__(self, ttls: Optional[Dict[str, Optional[float]]] = None):
        self._ttls = dict(DEFAULT_CACHE_TTLS if ttls is None else ttls)
        self._lock = threading.Lock()
        self._stores: Dict[str, CacheStore] = {}

    def get_cache(self, name: str) -> CacheStore:
        with self._lock:
            store = self._stores.get(name)
            if store is None:
                store = CacheStore(name, default_ttl=self._ttls.get(name))
                self._stores[name] = store
            return store

    def flush_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
        for store in stores:
            store.flush()
        logger.info("Flushed %d cache store(s)", len(stores))

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            stores = list(self._stores.values())
        return {store.name: store.stats() for store in stores}


cache_manager = CacheManager()
