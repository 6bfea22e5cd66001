"""Builds request notifications from TMDB metadata and routes them to the dispatcher."""

from typing import Any, Dict, Optional

import requests

from requestarr.api.themoviedb import TheMovieDb
from requestarr.core.logger import setup_logger
from requestarr.core.models import Media, MediaRequest, MediaType
from requestarr.core.notifications import NotificationContext, NotificationDispatcher, NotificationEvent
from requestarr.core.utils import truncate_text, year_from_date

logger = setup_logger(__name__)

TMDB_IMAGE_URL = "https://image.tmdb.org/t/p/w600_and_h900_bestv2"

_ADMIN_EVENTS = {
    NotificationEvent.MEDIA_PENDING,
    NotificationEvent.MEDIA_AUTO_APPROVED,
    NotificationEvent.MEDIA_FAILED,
}
_USER_EVENTS = {
    NotificationEvent.MEDIA_APPROVED,
    NotificationEvent.MEDIA_DECLINED,
    NotificationEvent.MEDIA_AVAILABLE,
    NotificationEvent.MEDIA_FAILED,
}


class RequestNotifier:
    """Turns (event, request, media) into a rendered, routed notification."""

    def __init__(self, metadata: Optional[TheMovieDb], dispatcher: NotificationDispatcher):
        self.metadata = metadata
        self.dispatcher = dispatcher

    def _lookup(self, media: Media) -> Dict[str, Any]:
        if self.metadata is None:
            return {}
        if media.media_type == MediaType.MOVIE:
            return self.metadata.get_movie(media.tmdb_id)
        return self.metadata.get_tv_show(media.tmdb_id)

    def build_context(
        self,
        event: NotificationEvent,
        request: MediaRequest,
        media: Media,
        details: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> NotificationContext:
        if media.media_type == MediaType.MOVIE:
            name = details.get("title")
            year = year_from_date(details.get("release_date"))
        else:
            name = details.get("name")
            year = year_from_date(details.get("first_air_date"))

        subject = str(name or f"TMDB #{media.tmdb_id}")
        if year:
            subject = f"{subject} ({year})"

        poster_path = details.get("poster_path")
        return NotificationContext(
            event=event,
            subject=subject,
            message=truncate_text(details.get("overview"), 500),
            image=f"{TMDB_IMAGE_URL}{poster_path}" if poster_path else None,
            username=request.requested_by_name or None,
            media_label="Movie" if media.media_type == MediaType.MOVIE else "Series",
            is_4k=request.is_4k,
            seasons=request.season_numbers or None,
            error_message=error_message,
            notify_admin=event in _ADMIN_EVENTS,
            notify_user_id=request.requested_by_id if event in _USER_EVENTS else None,
        )

    def notify(
        self,
        event: NotificationEvent,
        request: MediaRequest,
        media: Media,
        *,
        error_message: Optional[str] = None,
    ) -> bool:
        """Send a notification for a request.

        Metadata is best effort: a failed lookup is logged, no notification
        goes out and False is returned. Otherwise True, even when no route
        is subscribed to the event.
        """
        try:
            details = self._lookup(media)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(
                f"Skipping '{event.value}' notification for request {request.id}: metadata lookup failed: {e}"
            )
            return False

        context = self.build_context(event, request, media, details or {}, error_message)
        if self.dispatcher.send(event, context):
            logger.debug(f"Queued '{event.value}' notification for request {request.id}")
        return True
