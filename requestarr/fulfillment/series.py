"""Series requests are fulfilled through Sonarr."""

from typing import Any, Dict, Optional

from requestarr.api.servarr.sonarr import SonarrAPI, SonarrSeriesOptions
from requestarr.api.themoviedb import is_anime, series_tvdb_id
from requestarr.config.settings import DVRSettings, RoutingRule
from requestarr.core.logger import setup_logger
from requestarr.core.models import Media, MediaRequest, MediaType
from requestarr.fulfillment import register_coordinator
from requestarr.fulfillment.base import AcquisitionCoordinator, ResolvedOptions, UnrecoverableMappingError

logger = setup_logger(__name__)

ANIME_SERIES_TYPE = "anime"


@register_coordinator(MediaType.TV)
class SeriesCoordinator(AcquisitionCoordinator):
    media_type = MediaType.TV
    server_kind = "sonarr"
    client_class = SonarrAPI

    def load_details(self, media: Media) -> Dict[str, Any]:
        return self.metadata.get_tv_show(media.tmdb_id)

    def resolve_options(
        self,
        request: MediaRequest,
        server: DVRSettings,
        details: Dict[str, Any],
        rule: Optional[RoutingRule] = None,
    ) -> ResolvedOptions:
        series_type = getattr(server, "series_type", "standard") or "standard"
        if is_anime(details):
            series_type = getattr(server, "anime_series_type", None) or ANIME_SERIES_TYPE
        anime = series_type == ANIME_SERIES_TYPE

        anime_directory = getattr(server, "active_anime_directory", "")
        anime_profile = getattr(server, "active_anime_profile_id", None)
        anime_language = getattr(server, "active_anime_language_profile_id", None)

        resolved = ResolvedOptions(
            quality_profile_id=anime_profile if anime and anime_profile else server.active_profile_id,
            root_folder=anime_directory if anime and anime_directory else server.active_directory,
            language_profile_id=(
                anime_language if anime and anime_language
                else getattr(server, "active_language_profile_id", None)
            ),
            tags=list(getattr(server, "anime_tags", []) if anime else server.tags),
            series_type=series_type,
        )
        self.apply_rule(request, resolved, rule)

        if request.root_folder and request.root_folder != resolved.root_folder:
            resolved.root_folder = request.root_folder
            logger.info(f"Request {request.id} has an override root folder: {resolved.root_folder}")

        if request.profile_id and request.profile_id != resolved.quality_profile_id:
            resolved.quality_profile_id = request.profile_id
            logger.info(f"Request {request.id} has an override quality profile ID: {request.profile_id}")

        if request.language_profile_id and request.language_profile_id != resolved.language_profile_id:
            resolved.language_profile_id = request.language_profile_id
            logger.info(
                f"Request {request.id} has an override language profile ID: {request.language_profile_id}"
            )

        if request.tags is not None and list(request.tags) != resolved.tags:
            resolved.tags = list(request.tags)
            logger.info(f"Request {request.id} has override tags: {resolved.tags}")

        return resolved

    def prepare_dispatch(self, request: MediaRequest, media: Media, details: Dict[str, Any]) -> None:
        if series_tvdb_id(details) or media.tvdb_id:
            return

        # Without a TVDB id Sonarr can never take this title; drop it entirely.
        self.media_db.remove_request(request.id)
        self.media_db.remove_media(media.id)
        logger.error(f"TVDB ID not found for tmdb {media.tmdb_id}, removed media {media.id} and request {request.id}")
        raise UnrecoverableMappingError(f"TVDB ID not found for tmdb {media.tmdb_id}")

    def build_add_options(
        self,
        request: MediaRequest,
        media: Media,
        server: DVRSettings,
        details: Dict[str, Any],
        resolved: ResolvedOptions,
    ) -> SonarrSeriesOptions:
        return SonarrSeriesOptions(
            title=str(details.get("name") or ""),
            tvdb_id=series_tvdb_id(details) or media.tvdb_id,
            quality_profile_id=resolved.quality_profile_id,
            root_folder_path=resolved.root_folder,
            seasons=request.season_numbers,
            language_profile_id=resolved.language_profile_id,
            series_type=resolved.series_type or "standard",
            season_folder=getattr(server, "enable_season_folders", True),
            tags=list(resolved.tags),
            monitored=True,
            search_now=not server.prevent_search,
        )

    def add(self, client: SonarrAPI, options: SonarrSeriesOptions) -> Dict[str, Any]:
        return client.add_series(options)

    def clear_cache(self, client: SonarrAPI, media: Media, request: MediaRequest, details: Dict[str, Any]) -> None:
        client.clear_cache(
            tvdb_id=series_tvdb_id(details) or media.tvdb_id,
            external_id=media.external_service_id_for(request.is_4k),
            title=details.get("name"),
        )
