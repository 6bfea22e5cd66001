"""Tests for Plex watchlist revalidation and detail resolution."""

import json
import threading

import pytest
import requests

from requestarr.api.plextv import PLEX_DISCOVER_URL, WATCHLIST_ENDPOINT, PlexTvAPI
from requestarr.core.cache import CacheStore


def _make_response(status_code=200, payload=None, headers=None, url=""):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(payload).encode() if payload is not None else b""
    response.headers.update(headers or {})
    response.url = url
    return response


def _watchlist_body(*rating_keys, total_size=None):
    return {
        "MediaContainer": {
            "totalSize": len(rating_keys) if total_size is None else total_size,
            "Metadata": [{"ratingKey": key} for key in rating_keys],
        }
    }


def _detail_body(rating_key, title, guids, media_type="movie"):
    return {
        "MediaContainer": {
            "Metadata": [
                {
                    "ratingKey": rating_key,
                    "title": title,
                    "type": media_type,
                    "Guid": [{"id": guid} for guid in guids],
                }
            ]
        }
    }


_DETAILS = {
    "a1": _detail_body("a1", "The Matrix", ["imdb://tt0133093", "tmdb://603"]),
    "b2": _detail_body("b2", "Severance", ["tmdb://95396", "tvdb://371980"], "show"),
    "c3": _detail_body("c3", "Home Video", ["imdb://tt0000000"]),
}


class _FakePlex:
    """Serves watchlist pages with ETags and item details by rating key."""

    def __init__(self):
        self.headers = {}
        self.calls = []
        self.pages = {}
        self.etag = '"v1"'
        self.detail_status = {}
        self._lock = threading.Lock()

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "params": params, "headers": headers})

        if url == f"{PLEX_DISCOVER_URL}{WATCHLIST_ENDPOINT}":
            if (headers or {}).get("If-None-Match") == self.etag:
                return _make_response(304, url=url)
            start = params["X-Plex-Container-Start"]
            return _make_response(200, self.pages[start], {"ETag": self.etag}, url=url)

        rating_key = url.rsplit("/", 1)[-1]
        status = self.detail_status.get(rating_key, 200)
        return _make_response(status, _DETAILS.get(rating_key, {}), url=url)

    def watchlist_calls(self):
        return [call for call in self.calls if call["url"].endswith(WATCHLIST_ENDPOINT)]


@pytest.fixture
def plex():
    fake = _FakePlex()
    fake.pages[0] = _watchlist_body("a1", "b2", "c3")
    return fake


def test_get_watchlist_resolves_items_in_page_order(plex):
    api = PlexTvAPI("token-1", session=plex)

    watchlist = api.get_watchlist()

    assert watchlist.total_size == 3
    assert [(item.rating_key, item.tmdb_id, item.tvdb_id) for item in watchlist.items] == [
        ("a1", 603, None),
        ("b2", 95396, 371980),
    ]
    assert watchlist.items[1].type == "show"
    assert plex.headers["X-Plex-Token"] == "token-1"


def test_second_read_sends_etag_and_keeps_body_on_304(plex):
    watchlist_cache = CacheStore("plexwatchlist")
    api = PlexTvAPI("token-1", session=plex, watchlist_cache=watchlist_cache)

    first = api.get_watchlist()
    plex.pages[0] = _watchlist_body("b2")  # ignored: server answers 304
    second = api.get_watchlist()

    calls = plex.watchlist_calls()
    assert calls[0]["headers"] is None
    assert calls[1]["headers"] == {"If-None-Match": '"v1"'}
    assert [item.tmdb_id for item in second.items] == [item.tmdb_id for item in first.items]
    assert watchlist_cache.get_entry("token-1:0:20").etag == '"v1"'


def test_changed_watchlist_replaces_body_and_etag(plex):
    watchlist_cache = CacheStore("plexwatchlist")
    api = PlexTvAPI("token-1", session=plex, watchlist_cache=watchlist_cache)

    api.get_watchlist()
    plex.etag = '"v2"'
    plex.pages[0] = _watchlist_body("b2")
    updated = api.get_watchlist()

    assert [item.tmdb_id for item in updated.items] == [95396]
    entry = watchlist_cache.get_entry("token-1:0:20")
    assert entry.etag == '"v2"'
    assert entry.value == _watchlist_body("b2")


def test_watchlist_entries_are_kept_per_token(plex):
    watchlist_cache = CacheStore("plexwatchlist")
    PlexTvAPI("token-1", session=plex, watchlist_cache=watchlist_cache).get_watchlist()

    PlexTvAPI("token-2", session=plex, watchlist_cache=watchlist_cache).get_watchlist()

    calls = plex.watchlist_calls()
    assert calls[1]["headers"] is None
    assert watchlist_cache.get_entry("token-2:0:20") is not None


def test_missing_item_metadata_is_dropped(plex):
    plex.detail_status["a1"] = 404
    api = PlexTvAPI("token-1", session=plex)

    watchlist = api.get_watchlist()

    assert [item.rating_key for item in watchlist.items] == ["b2"]


def test_other_detail_errors_propagate(plex):
    plex.detail_status["b2"] = 500
    api = PlexTvAPI("token-1", session=plex)

    with pytest.raises(requests.exceptions.HTTPError):
        api.get_watchlist()


def test_empty_watchlist_skips_detail_lookups(plex):
    plex.pages[0] = _watchlist_body()
    api = PlexTvAPI("token-1", session=plex)

    watchlist = api.get_watchlist()

    assert watchlist.items == []
    assert len(plex.calls) == 1


def test_is_on_watchlist_pages_through_results(plex):
    plex.pages[0] = _watchlist_body("a1", total_size=2)
    plex.pages[1] = _watchlist_body("b2", total_size=2)
    api = PlexTvAPI("token-1", session=plex)

    assert api.find_watchlist_item(lambda item: item.tmdb_id == 95396, page_size=1).title == "Severance"
    assert api.is_on_watchlist(603) is True
    assert api.is_on_watchlist(1) is False


def test_is_on_watchlist_returns_false_on_errors(plex):
    plex.detail_status["a1"] = 502
    api = PlexTvAPI("token-1", session=plex)

    assert api.is_on_watchlist(603) is False


def test_empty_shared_watchlist_cache_is_kept(plex):
    shared = CacheStore("plexwatchlist")

    api = PlexTvAPI("token-1", watchlist_cache=shared, session=plex)
    api.get_watchlist()

    assert api.watchlist_cache is shared
    assert len(shared) == 1
