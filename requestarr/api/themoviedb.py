"""TMDB metadata client (movie and series lookups only)."""

from typing import Any, Dict, List, Optional

import requests

from requestarr.api.external import ExternalAPI
from requestarr.api.ratelimit import RateLimit
from requestarr.core.cache import CacheStore
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"

# TMDB keyword attached to anime titles
ANIME_KEYWORD_ID = 210024

TMDB_RATE_LIMIT = RateLimit(max_requests=20, window_seconds=1.0, max_rps=50)


class TheMovieDb(ExternalAPI):
    """Client for the subset of TMDB used to fulfil and announce requests."""

    def __init__(
        self,
        api_key: str,
        *,
        language: str = "en",
        cache: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            TMDB_BASE_URL,
            {"api_key": api_key},
            cache=cache,
            rate_limit=TMDB_RATE_LIMIT,
            session=session,
        )
        self.language = language

    def get_movie(self, movie_id: int, language: Optional[str] = None) -> Dict[str, Any]:
        """Fetch movie details: title, release_date, overview, poster_path, genres, keywords, ..."""
        data = self.get(
            f"/movie/{int(movie_id)}",
            {"language": language or self.language, "append_to_response": "keywords"},
        )
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected TMDB response for movie {movie_id}")
        return data

    def get_tv_show(self, tv_id: int, language: Optional[str] = None) -> Dict[str, Any]:
        """Fetch series details including external ids and keywords."""
        data = self.get(
            f"/tv/{int(tv_id)}",
            {
                "language": language or self.language,
                "append_to_response": "external_ids,keywords",
            },
        )
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected TMDB response for series {tv_id}")
        return data


def keyword_ids(show: Dict[str, Any]) -> List[int]:
    # TV keywords live under "results", movie keywords under "keywords".
    keywords = show.get("keywords") or {}
    entries = keywords.get("results") or keywords.get("keywords") or []
    ids: List[int] = []
    for entry in entries:
        try:
            ids.append(int(entry.get("id")))
        except (AttributeError, TypeError, ValueError):
            continue
    return ids


def genre_ids(details: Dict[str, Any]) -> List[int]:
    ids: List[int] = []
    for genre in details.get("genres") or []:
        try:
            ids.append(int(genre.get("id")))
        except (AttributeError, TypeError, ValueError):
            continue
    return ids


def is_anime(show: Dict[str, Any]) -> bool:
    return ANIME_KEYWORD_ID in keyword_ids(show)


def series_tvdb_id(show: Dict[str, Any]) -> Optional[int]:
    external_ids = show.get("external_ids") or {}
    value = external_ids.get("tvdb_id")
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
