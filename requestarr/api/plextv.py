"""Plex.tv client: conditional watchlist reads with concurrent detail lookups."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from requestarr.api.external import ExternalAPI
from requestarr.core.cache import CacheStore
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

PLEX_TV_URL = "https://plex.tv"
PLEX_DISCOVER_URL = "https://discover.provider.plex.tv"

WATCHLIST_ENDPOINT = "/library/sections/watchlist/all"


@dataclass
class WatchlistItem:
    rating_key: str
    tmdb_id: int
    tvdb_id: Optional[int]
    type: str
    title: str


@dataclass
class Watchlist:
    offset: int
    size: int
    total_size: int
    items: List[WatchlistItem] = field(default_factory=list)


def _guid_id(guids: Any, prefix: str) -> Optional[int]:
    """Pull the numeric id out of a Plex Guid list entry like 'tmdb://603'."""
    for guid in guids or []:
        value = str((guid or {}).get("id") or "")
        if not value.startswith(prefix):
            continue
        _, _, raw = value.partition("//")
        try:
            return int(raw)
        except ValueError:
            return None
    return None


class PlexTvAPI(ExternalAPI):
    """Plex.tv account API scoped to one user token."""

    def __init__(
        self,
        auth_token: str,
        *,
        cache: Optional[CacheStore] = None,
        watchlist_cache: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            PLEX_TV_URL,
            headers={"X-Plex-Token": auth_token},
            cache=cache,
            session=session,
        )
        self.auth_token = auth_token
        self.watchlist_cache = watchlist_cache if watchlist_cache is not None else CacheStore("plexwatchlist")

    def _watchlist_key(self, offset: int, size: int) -> str:
        return f"{self.auth_token}:{offset}:{size}"

    def _revalidate_watchlist(self, offset: int, size: int) -> Dict[str, Any]:
        """Conditional GET of one watchlist page; returns the current page body.

        A 304 keeps the stored body and ETag. Any 2xx replaces both.
        """
        key = self._watchlist_key(offset, size)
        cached = self.watchlist_cache.get_entry(key)

        headers = {}
        if cached is not None and cached.etag:
            headers["If-None-Match"] = cached.etag

        response = self._request(
            "GET",
            WATCHLIST_ENDPOINT,
            params={
                "X-Plex-Container-Start": offset,
                "X-Plex-Container-Size": size,
            },
            headers=headers or None,
            base_url=PLEX_DISCOVER_URL,
        )

        if response.status_code == 304 and cached is not None:
            logger.debug(f"Watchlist page {offset}+{size} not modified")
            return cached.value or {}

        if 200 <= response.status_code <= 299:
            body = self._parse_json(response) or {}
            self.watchlist_cache.set(key, body, etag=response.headers.get("ETag"))
            return body

        # 304 without anything stored to fall back on
        logger.warning(f"Unexpected watchlist response status {response.status_code}")
        return cached.value if cached is not None else {}

    def _item_details(self, rating_key: str) -> Optional[WatchlistItem]:
        try:
            detail = self.get_rolling(
                f"/library/metadata/{rating_key}",
                base_url=PLEX_DISCOVER_URL,
            )
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                logger.warning(
                    f"Item with ratingKey {rating_key} not found, it may have been removed from the server."
                )
                return None
            raise

        metadata_list = ((detail or {}).get("MediaContainer") or {}).get("Metadata") or []
        if not metadata_list:
            return None
        metadata = metadata_list[0]
        guids = metadata.get("Guid")

        return WatchlistItem(
            rating_key=str(metadata.get("ratingKey") or rating_key),
            tmdb_id=_guid_id(guids, "tmdb") or 0,
            tvdb_id=_guid_id(guids, "tvdb"),
            type=str(metadata.get("type") or ""),
            title=str(metadata.get("title") or ""),
        )

    def get_watchlist(self, offset: int = 0, size: int = 20) -> Watchlist:
        """Return one page of the user's watchlist with TMDB/TVDB ids resolved.

        Items without a TMDB id, and items whose metadata is gone (404), are
        left out. Any other lookup failure is raised.
        """
        body = self._revalidate_watchlist(offset, size)
        container = body.get("MediaContainer") or {}
        rating_keys = [
            str(item.get("ratingKey"))
            for item in container.get("Metadata") or []
            if item.get("ratingKey") is not None
        ]

        details: List[Optional[WatchlistItem]] = []
        if rating_keys:
            with ThreadPoolExecutor(
                max_workers=len(rating_keys),
                thread_name_prefix="WatchlistDetail",
            ) as executor:
                details = list(executor.map(self._item_details, rating_keys))

        items = [item for item in details if item is not None and item.tmdb_id]
        return Watchlist(
            offset=offset,
            size=size,
            total_size=int(container.get("totalSize") or 0),
            items=items,
        )

    def find_watchlist_item(
        self,
        predicate: Callable[[WatchlistItem], bool],
        page_size: int = 20,
    ) -> Optional[WatchlistItem]:
        """Page through the watchlist until an item matches."""
        offset = 0
        while True:
            page = self.get_watchlist(offset=offset, size=page_size)
            for item in page.items:
                if predicate(item):
                    return item
            offset += page_size
            if offset >= page.total_size:
                return None

    def is_on_watchlist(self, tmdb_id: int) -> bool:
        try:
            return self.find_watchlist_item(lambda item: item.tmdb_id == tmdb_id) is not None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to check watchlist status for tmdb {tmdb_id}: {e}")
            return False
