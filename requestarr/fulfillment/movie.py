"""Movie requests are fulfilled through Radarr."""

from typing import Any, Dict, Optional

from requestarr.api.servarr.radarr import RadarrAPI, RadarrMovieOptions
from requestarr.config.settings import DVRSettings, RoutingRule
from requestarr.core.logger import setup_logger
from requestarr.core.models import Media, MediaRequest, MediaType
from requestarr.core.utils import year_from_date
from requestarr.fulfillment import register_coordinator
from requestarr.fulfillment.base import AcquisitionCoordinator, ResolvedOptions

logger = setup_logger(__name__)


@register_coordinator(MediaType.MOVIE)
class MovieCoordinator(AcquisitionCoordinator):
    media_type = MediaType.MOVIE
    server_kind = "radarr"
    client_class = RadarrAPI

    def load_details(self, media: Media) -> Dict[str, Any]:
        return self.metadata.get_movie(media.tmdb_id)

    def resolve_options(
        self,
        request: MediaRequest,
        server: DVRSettings,
        details: Dict[str, Any],
        rule: Optional[RoutingRule] = None,
    ) -> ResolvedOptions:
        resolved = ResolvedOptions(
            quality_profile_id=server.active_profile_id,
            root_folder=server.active_directory,
            tags=list(server.tags),
            minimum_availability=getattr(server, "minimum_availability", "released"),
        )
        self.apply_rule(request, resolved, rule)

        if request.root_folder and request.root_folder != resolved.root_folder:
            resolved.root_folder = request.root_folder
            logger.info(f"Request {request.id} has an override root folder: {resolved.root_folder}")

        if request.profile_id and request.profile_id != resolved.quality_profile_id:
            resolved.quality_profile_id = request.profile_id
            logger.info(f"Request {request.id} has an override quality profile ID: {request.profile_id}")

        if request.tags is not None and list(request.tags) != resolved.tags:
            resolved.tags = list(request.tags)
            logger.info(f"Request {request.id} has override tags: {resolved.tags}")

        return resolved

    def build_add_options(
        self,
        request: MediaRequest,
        media: Media,
        server: DVRSettings,
        details: Dict[str, Any],
        resolved: ResolvedOptions,
    ) -> RadarrMovieOptions:
        return RadarrMovieOptions(
            title=str(details.get("title") or ""),
            quality_profile_id=resolved.quality_profile_id,
            root_folder_path=resolved.root_folder,
            minimum_availability=resolved.minimum_availability or "released",
            tmdb_id=int(details.get("id") or media.tmdb_id),
            year=year_from_date(details.get("release_date")),
            monitored=True,
            tags=list(resolved.tags),
            search_now=not server.prevent_search,
        )

    def add(self, client: RadarrAPI, options: RadarrMovieOptions) -> Dict[str, Any]:
        return client.add_movie(options)

    def clear_cache(self, client: RadarrAPI, media: Media, request: MediaRequest, details: Dict[str, Any]) -> None:
        client.clear_cache(
            tmdb_id=int(details.get("id") or media.tmdb_id),
            external_id=media.external_service_id_for(request.is_4k),
        )
