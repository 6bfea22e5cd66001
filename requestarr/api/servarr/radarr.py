"""Radarr client: movie lookup and create-or-skip add."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from requestarr.api.servarr.base import ServarrBase
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class RadarrMovieOptions:
    title: str
    quality_profile_id: int
    root_folder_path: str
    minimum_availability: str
    tmdb_id: int
    year: Optional[int] = None
    monitored: bool = True
    tags: List[int] = field(default_factory=list)
    search_now: bool = True


class RadarrAPI(ServarrBase):
    api_name = "Radarr"

    def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        """Look a movie up by TMDB id. Result has an ``id`` when already in Radarr."""
        results = self.get("/movie/lookup", {"term": f"tmdb:{tmdb_id}"})
        if not results:
            return None
        return results[0]

    def add_movie(self, options: RadarrMovieOptions) -> Dict[str, Any]:
        """Add a movie, or reuse the existing entry.

        Monitored entries are returned unchanged; unmonitored ones are
        switched to monitored (and searched unless ``search_now`` is off).
        """
        movie = self.get_movie_by_tmdb_id(options.tmdb_id)

        if movie and movie.get("id"):
            if movie.get("monitored"):
                logger.info(f"Movie '{options.title}' is already monitored in Radarr, skipping add")
                return movie

            logger.info(f"Movie '{options.title}' exists in Radarr but is unmonitored, monitoring it")
            updated = self._fetch(
                "PUT",
                f"/movie/{movie['id']}",
                json_data={
                    **movie,
                    "monitored": True,
                    "qualityProfileId": options.quality_profile_id,
                    "tags": sorted(set(movie.get("tags") or []) | set(options.tags)),
                },
            ) or movie
            if options.search_now:
                self.run_command("MoviesSearch", movieIds=[updated["id"]])
            return updated

        payload = {
            "title": options.title,
            "qualityProfileId": options.quality_profile_id,
            "profileId": options.quality_profile_id,
            "titleSlug": str(options.tmdb_id),
            "minimumAvailability": options.minimum_availability,
            "tmdbId": options.tmdb_id,
            "year": options.year,
            "rootFolderPath": options.root_folder_path,
            "monitored": options.monitored,
            "tags": list(options.tags),
            "addOptions": {"searchForMovie": options.search_now},
        }
        created = self._fetch("POST", "/movie", json_data=payload)
        if not created or not created.get("id"):
            raise ValueError(f"Radarr did not return an id for '{options.title}'")

        logger.info(f"Radarr accepted movie '{options.title}' (id {created['id']})")
        return created

    def clear_cache(self, tmdb_id: Optional[int] = None, external_id: Optional[int] = None) -> None:
        if tmdb_id:
            self.remove_cache("/movie/lookup", {"term": f"tmdb:{tmdb_id}"})
        if external_id:
            self.remove_cache(f"/movie/{external_id}")
