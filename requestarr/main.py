"""Wires the repository, metadata client, notifier, coordinators and reconciler."""

from dataclasses import dataclass
from typing import List, Optional

from requestarr.api.themoviedb import TheMovieDb
from requestarr.config.settings import Settings
from requestarr.core.cache import CacheManager, cache_manager as default_cache_manager
from requestarr.core.logger import setup_logger
from requestarr.core.media_db import MediaDB, get_media_db_path
from requestarr.core.notifications import NotificationDispatcher
from requestarr.core.reconciler import RequestReconciler
from requestarr.core.request_notifications import RequestNotifier
from requestarr.fulfillment import build_coordinators
from requestarr.fulfillment.base import AcquisitionCoordinator

logger = setup_logger(__name__)


@dataclass
class Services:
    settings: Settings
    media_db: MediaDB
    metadata: Optional[TheMovieDb]
    dispatcher: NotificationDispatcher
    notifier: RequestNotifier
    coordinators: List[AcquisitionCoordinator]
    reconciler: RequestReconciler


def build_services(
    settings: Settings,
    db_path: Optional[str] = None,
    *,
    caches: Optional[CacheManager] = None,
) -> Services:
    """Construct the service graph for ``settings``.

    The metadata client is only created when a TMDB API key is configured;
    without one notifications go out without titles and coordinators
    cannot run.
    """
    caches = caches if caches is not None else default_cache_manager

    media_db = MediaDB(db_path or get_media_db_path())
    media_db.initialize()

    metadata: Optional[TheMovieDb] = None
    if settings.metadata.tmdb_api_key:
        metadata = TheMovieDb(
            settings.metadata.tmdb_api_key,
            language=settings.metadata.language,
            cache=caches.get_cache("tmdb"),
        )
    else:
        logger.warning("No TMDB API key configured; requests cannot be fulfilled")

    dispatcher = NotificationDispatcher(settings.notifications)
    notifier = RequestNotifier(metadata, dispatcher)
    coordinators = build_coordinators(settings, media_db, metadata, notifier, caches=caches)
    reconciler = RequestReconciler(media_db, coordinators, notifier)

    logger.info(
        f"Services ready: {len(coordinators)} coordinator(s), "
        f"{len(settings.radarr)} radarr / {len(settings.sonarr)} sonarr server(s)"
    )
    return Services(
        settings=settings,
        media_db=media_db,
        metadata=metadata,
        dispatcher=dispatcher,
        notifier=notifier,
        coordinators=coordinators,
        reconciler=reconciler,
    )
