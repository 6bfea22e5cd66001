"""Sonarr client: series lookup and create-or-skip add."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from requestarr.api.servarr.base import ServarrBase
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class SonarrSeriesOptions:
    title: str
    tvdb_id: int
    quality_profile_id: int
    root_folder_path: str
    seasons: List[int]
    language_profile_id: Optional[int] = None
    series_type: str = "standard"
    season_folder: bool = True
    tags: List[int] = field(default_factory=list)
    monitored: bool = True
    search_now: bool = True


def _merge_seasons(existing: List[Dict[str, Any]], wanted: List[int]) -> List[Dict[str, Any]]:
    """Mark wanted seasons monitored, leaving already monitored ones as they are."""
    wanted_set = set(wanted)
    merged = []
    for season in existing:
        number = season.get("seasonNumber")
        merged.append({**season, "monitored": bool(season.get("monitored")) or number in wanted_set})
    known = {season.get("seasonNumber") for season in existing}
    for number in sorted(wanted_set - known):
        merged.append({"seasonNumber": number, "monitored": True})
    return merged


class SonarrAPI(ServarrBase):
    api_name = "Sonarr"

    def get_series_by_tvdb_id(self, tvdb_id: int) -> Optional[Dict[str, Any]]:
        results = self.get("/series/lookup", {"term": f"tvdb:{tvdb_id}"})
        if not results:
            return None
        return results[0]

    def get_series_by_title(self, title: str) -> List[Dict[str, Any]]:
        return list(self.get("/series/lookup", {"term": title}) or [])

    def add_series(self, options: SonarrSeriesOptions) -> Dict[str, Any]:
        """Add a series, or extend the existing entry with the wanted seasons."""
        series = self.get_series_by_tvdb_id(options.tvdb_id)

        if series and series.get("id"):
            wanted = set(options.seasons)
            already_monitored = {
                season.get("seasonNumber")
                for season in series.get("seasons") or []
                if season.get("monitored")
            }
            if series.get("monitored") and wanted <= already_monitored:
                logger.info(f"Series '{options.title}' already monitored in Sonarr, skipping add")
                return series

            logger.info(f"Series '{options.title}' exists in Sonarr, monitoring seasons {sorted(wanted)}")
            updated = self._fetch(
                "PUT",
                f"/series/{series['id']}",
                json_data={
                    **series,
                    "monitored": True,
                    "seasons": _merge_seasons(series.get("seasons") or [], options.seasons),
                    "tags": sorted(set(series.get("tags") or []) | set(options.tags)),
                },
            ) or series
            if options.search_now:
                self.run_command("SeriesSearch", seriesId=updated["id"])
            return updated

        payload = {
            "tvdbId": options.tvdb_id,
            "title": options.title,
            "qualityProfileId": options.quality_profile_id,
            "profileId": options.quality_profile_id,
            "languageProfileId": options.language_profile_id,
            "seasons": [
                {"seasonNumber": number, "monitored": True} for number in sorted(set(options.seasons))
            ],
            "tags": list(options.tags),
            "seasonFolder": options.season_folder,
            "monitored": options.monitored,
            "rootFolderPath": options.root_folder_path,
            "seriesType": options.series_type,
            "addOptions": {
                "ignoreEpisodesWithFiles": True,
                "searchForMissingEpisodes": options.search_now,
            },
        }
        created = self._fetch("POST", "/series", json_data=payload)
        if not created or not created.get("id"):
            raise ValueError(f"Sonarr did not return an id for '{options.title}'")

        logger.info(f"Sonarr accepted series '{options.title}' (id {created['id']})")
        return created

    def clear_cache(
        self,
        tvdb_id: Optional[int] = None,
        external_id: Optional[int] = None,
        title: Optional[str] = None,
    ) -> None:
        if tvdb_id:
            self.remove_cache("/series/lookup", {"term": f"tvdb:{tvdb_id}"})
        if title:
            self.remove_cache("/series/lookup", {"term": title})
        if external_id:
            self.remove_cache(f"/series/{external_id}")
