"""Base client for external HTTP APIs with response caching and rate limiting."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional, Set

import requests

from requestarr.api.ratelimit import RateLimit, WindowRateLimiter
from requestarr.config.env import HTTP_TIMEOUT
from requestarr.core.cache import CacheStore
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

# Default cache lifetime in seconds
DEFAULT_TTL = 300

# Entries this close to expiry (seconds) are refreshed in the background by get_rolling()
DEFAULT_ROLLING_BUFFER = 10

# Background refreshes are infrequent and I/O bound.
_refresh_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="CacheRefresh")


class ExternalAPI:
    """Thin wrapper over a requests session that caches JSON responses.

    Subclasses call ``get``/``post``/``get_rolling`` instead of the session so
    repeated reads of unchanged upstream data are served from ``cache``.
    """

    def __init__(
        self,
        base_url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        cache: Optional[CacheStore] = None,
        rate_limit: Optional[RateLimit] = None,
        timeout: int = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_params = dict(params or {})
        self.timeout = timeout
        self.cache = cache
        self._limiter = WindowRateLimiter(rate_limit) if rate_limit else None

        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if headers:
            self._session.headers.update(headers)

        self._refreshing: Set[str] = set()
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        base_url: Optional[str] = None,
    ) -> requests.Response:
        """Perform one HTTP call. Raises for 4xx/5xx responses."""
        url = (base_url or self.base_url).rstrip("/") + endpoint
        request_params = {**self.default_params, **(params or {})}

        if self._limiter is not None:
            waited = self._limiter.acquire()
            if waited:
                logger.debug(f"Rate limited {method} {url} for {waited:.2f}s")

        logger.debug(f"{type(self).__name__}: {method} {url}")
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=request_params or None,
                json=json_data,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            logger.warning(f"{type(self).__name__} HTTP error {status} for {method} {url}")
            raise
        except requests.exceptions.RequestException as e:
            logger.error(f"{type(self).__name__} request failed for {method} {url}: {e}")
            raise

    @staticmethod
    def _parse_json(response: requests.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ValueError(f"Invalid JSON response from {response.url}: {e}") from e

    def _fetch(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        return self._parse_json(self._request(method, endpoint, **kwargs))

    # ------------------------------------------------------------------
    # Cache keys
    # ------------------------------------------------------------------

    def _serialize_cache_key(
        self,
        endpoint: str,
        options: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> str:
        destination = (base_url or self.base_url).rstrip("/")
        if not options:
            return f"{destination}{endpoint}"
        serialized = json.dumps(options, sort_keys=True, separators=(",", ":"), default=str)
        return f"{destination}{endpoint}{serialized}"

    @staticmethod
    def _read_options(params: Optional[Dict[str, Any]], headers: Optional[Dict[str, str]]) -> Dict[str, Any]:
        options: Dict[str, Any] = dict(params or {})
        if headers:
            options["headers"] = dict(headers)
        return options

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        # Explicit ttl, then the store's configured lifetime, then DEFAULT_TTL
        if ttl is not None:
            return ttl
        if self.cache is not None and self.cache.default_ttl is not None:
            return self.cache.default_ttl
        return DEFAULT_TTL

    def _store(self, key: str, value: Any, ttl: Optional[float]) -> None:
        if self.cache is None or ttl == 0:
            return
        self.cache.set(key, value, self._resolve_ttl(ttl))

    # ------------------------------------------------------------------
    # Cached operations
    # ------------------------------------------------------------------

    def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[float] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        """GET a JSON resource, serving it from cache while fresh.

        ``ttl`` defaults to the cache store's lifetime, else DEFAULT_TTL; ``ttl=0`` skips storing.
        """
        key = self._serialize_cache_key(endpoint, self._read_options(params, headers), base_url)
        if self.cache is not None:
            entry = self.cache.get_entry(key)
            if entry is not None:
                return entry.value

        data = self._fetch("GET", endpoint, params=params, headers=headers, base_url=base_url)
        self._store(key, data, ttl)
        return data

    def post(
        self,
        endpoint: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[float] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        """POST a JSON body with the same caching rules as ``get``, keyed on the body too."""
        options: Dict[str, Any] = {"params": dict(params or {})}
        if data is not None:
            options["data"] = data
        key = self._serialize_cache_key(endpoint, options, base_url)
        if self.cache is not None:
            entry = self.cache.get_entry(key)
            if entry is not None:
                return entry.value

        result = self._fetch(
            "POST", endpoint, params=params, json_data=data, headers=headers, base_url=base_url
        )
        self._store(key, result, ttl)
        return result

    def get_rolling(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[float] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        """Stale-while-revalidate GET.

        A cached value is always returned immediately. When it is within
        DEFAULT_ROLLING_BUFFER seconds of expiry, one background refetch
        replaces the entry; the caller never waits for it.
        """
        effective_ttl = self._resolve_ttl(ttl)
        key = self._serialize_cache_key(endpoint, self._read_options(params, headers), base_url)

        if self.cache is not None:
            entry = self.cache.get_entry(key)
            if entry is not None:
                remaining = entry.remaining(self.cache.now())
                if remaining is not None and remaining <= DEFAULT_ROLLING_BUFFER:
                    self._schedule_refresh(key, endpoint, params, headers, base_url, effective_ttl)
                return entry.value

        data = self._fetch("GET", endpoint, params=params, headers=headers, base_url=base_url)
        self._store(key, data, ttl)
        return data

    def _schedule_refresh(
        self,
        key: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
        base_url: Optional[str],
        ttl: float,
    ) -> None:
        with self._refresh_lock:
            if key in self._refreshing:
                return
            self._refreshing.add(key)

        try:
            _refresh_executor.submit(self._refresh, key, endpoint, params, headers, base_url, ttl)
        except RuntimeError as exc:
            with self._refresh_lock:
                self._refreshing.discard(key)
            logger.warning(f"Failed to queue background refresh for {endpoint}: {exc}")

    def _refresh(
        self,
        key: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
        base_url: Optional[str],
        ttl: float,
    ) -> None:
        try:
            data = self._fetch("GET", endpoint, params=params, headers=headers, base_url=base_url)
            self._store(key, data, ttl)
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning(f"Background refresh of {endpoint} failed, keeping stale value: {exc}")
        finally:
            with self._refresh_lock:
                self._refreshing.discard(key)

    def remove_cache(
        self,
        endpoint: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        base_url: Optional[str] = None,
    ) -> bool:
        """Drop the cached response for ``endpoint`` + ``options`` (the params a get() used)."""
        if self.cache is None:
            return False
        return self.cache.delete(self._serialize_cache_key(endpoint, options, base_url))
