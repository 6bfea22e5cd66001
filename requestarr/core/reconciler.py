"""Keeps requests, their media and season requests consistent after each change.

The service layer calls the ``on_*`` hooks right after persisting a change,
passing the snapshot from before the change where there is one.
"""

import threading
import time
from concurrent.futures import Future
from typing import Iterable, List, Optional

from requestarr.core.logger import setup_logger
from requestarr.core.media_db import MediaDB
from requestarr.core.models import (
    DispatchState,
    Media,
    MediaRequest,
    MediaRequestStatus,
    MediaStatus,
    MediaType,
)
from requestarr.core.notifications import NotificationEvent
from requestarr.core.request_notifications import RequestNotifier
from requestarr.fulfillment.base import AcquisitionCoordinator, UnrecoverableMappingError

logger = setup_logger(__name__)

# A tier moving into one of these triggers request completion checks
_SETTLED_STATUSES = {
    MediaStatus.PARTIALLY_AVAILABLE,
    MediaStatus.AVAILABLE,
    MediaStatus.DELETED,
}
_COMPLETE_STATUSES = {MediaStatus.AVAILABLE, MediaStatus.DELETED}
_KEEP_ON_APPROVE = {MediaStatus.AVAILABLE, MediaStatus.PARTIALLY_AVAILABLE, MediaStatus.PROCESSING}


def _status_field(is_4k: bool) -> str:
    return "status_4k" if is_4k else "status"


class RequestReconciler:
    """Dispatches approved requests and propagates status across the entity graph."""

    def __init__(
        self,
        media_db: MediaDB,
        coordinators: Iterable[AcquisitionCoordinator],
        notifier: Optional[RequestNotifier] = None,
    ):
        self.media_db = media_db
        self.coordinators = list(coordinators)
        self.notifier = notifier
        self._notify_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    def on_request_saved(self, previous: Optional[MediaRequest], request: MediaRequest) -> List[Future]:
        """React to an inserted (``previous is None``) or updated request.

        Returns the futures of any add-media calls that were dispatched.
        """
        futures: List[Future] = []
        newly_approved = request.status == MediaRequestStatus.APPROVED and (
            previous is None or previous.status != MediaRequestStatus.APPROVED
        )
        if newly_approved:
            futures = self._dispatch(request)

        media = self.media_db.get_media(request.media_id)
        if media is None:
            logger.error(f"Media {request.media_id} not found for request {request.id}")
            return futures

        self._notify_transition(previous, request, media)
        self._update_parent_status(request, media)

        if request.status == MediaRequestStatus.COMPLETED:
            self._notify_available(request)

        return futures

    def on_request_removed(self, request: MediaRequest) -> Optional[Media]:
        """Reset tiers no request targets any more, unless they are AVAILABLE."""
        media = self.media_db.get_media(request.media_id)
        if media is None:
            return None

        remaining = self.media_db.list_requests(media_id=media.id)
        updates = {}
        for is_4k in (False, True):
            if any(other.is_4k == is_4k for other in remaining):
                continue
            status = media.tier_status(is_4k)
            if status not in (MediaStatus.AVAILABLE, MediaStatus.UNKNOWN):
                updates[_status_field(is_4k)] = MediaStatus.UNKNOWN

        if not updates:
            return media
        logger.info(f"No requests left for media {media.id}, resetting {sorted(updates)}")
        return self.media_db.update_media(media.id, **updates)

    # ------------------------------------------------------------------
    # Media hook
    # ------------------------------------------------------------------

    def on_media_updated(self, previous: Optional[Media], media: Media) -> List[MediaRequest]:
        """Advance requests after a media (or season) status change.

        Returns the requests that were completed.
        """
        completed: List[MediaRequest] = []
        for is_4k in (False, True):
            before = previous.tier_status(is_4k) if previous is not None else None
            after = media.tier_status(is_4k)

            if before == MediaStatus.PENDING and after == MediaStatus.AVAILABLE:
                self._approve_pending(media, is_4k)

            changed = before != after or (
                media.media_type == MediaType.TV and self._season_status_changed(previous, media, is_4k)
            )
            if changed and after in _SETTLED_STATUSES:
                completed.extend(self._complete_related(media, is_4k))

            for request in self.media_db.list_requests(
                media_id=media.id,
                status=MediaRequestStatus.COMPLETED,
                is_4k=is_4k,
            ):
                if not request.available_notified:
                    self._notify_available(request)

        return completed

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def sweep_unconfirmed_dispatches(self, max_age_seconds: float, now: Optional[float] = None) -> List[Future]:
        """Re-dispatch APPROVED requests whose add call was never confirmed.

        Only requests marked dispatched more than ``max_age_seconds`` ago are
        picked up. The add call is create-or-skip, so a repeat is harmless.
        """
        cutoff = (time.time() if now is None else now) - max_age_seconds
        futures: List[Future] = []
        for request in self.media_db.list_requests(
            status=MediaRequestStatus.APPROVED,
            dispatch_state=DispatchState.DISPATCHED,
        ):
            if request.dispatched_at is not None and request.dispatched_at > cutoff:
                continue
            logger.info(f"Re-dispatching unconfirmed request {request.id}")
            try:
                futures.extend(self._dispatch(request))
            except UnrecoverableMappingError as e:
                logger.error(f"Dropped request {request.id} during sweep: {e}")
        return futures

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, request: MediaRequest) -> List[Future]:
        # Each coordinator ignores requests of other types
        futures = []
        for coordinator in self.coordinators:
            future = coordinator.send(request)
            if future is not None:
                futures.append(future)
        return futures

    def _update_parent_status(self, request: MediaRequest, media: Media) -> None:
        current = media.tier_status(request.is_4k)
        field = _status_field(request.is_4k)

        if request.status == MediaRequestStatus.APPROVED:
            if current not in _KEEP_ON_APPROVE:
                self.media_db.update_media(media.id, **{field: MediaStatus.PROCESSING})
            if media.media_type == MediaType.TV:
                unapproved = [
                    season.season_number
                    for season in request.seasons
                    if season.status != MediaRequestStatus.APPROVED
                ]
                if unapproved:
                    self.media_db.set_season_request_status(
                        request.id,
                        MediaRequestStatus.APPROVED,
                        unapproved,
                    )
            return

        if request.status != MediaRequestStatus.DECLINED:
            return

        if media.media_type == MediaType.MOVIE:
            if current not in (MediaStatus.DELETED, MediaStatus.UNKNOWN):
                self.media_db.update_media(media.id, **{field: MediaStatus.UNKNOWN})
            return

        pending = self.media_db.list_requests(media_id=media.id, status=MediaRequestStatus.PENDING)
        if not pending and current == MediaStatus.PENDING:
            self.media_db.update_media(media.id, **{field: MediaStatus.UNKNOWN})

    def _notify_transition(self, previous: Optional[MediaRequest], request: MediaRequest, media: Media) -> None:
        if self.notifier is None:
            return

        previous_status = previous.status if previous is not None else None
        if previous_status == request.status:
            return

        tier_available = media.tier_status(request.is_4k) == MediaStatus.AVAILABLE
        event = None
        if request.status == MediaRequestStatus.PENDING and previous is None:
            event = NotificationEvent.MEDIA_PENDING
        elif request.status == MediaRequestStatus.APPROVED and not tier_available:
            event = (
                NotificationEvent.MEDIA_AUTO_APPROVED if previous is None else NotificationEvent.MEDIA_APPROVED
            )
        elif request.status == MediaRequestStatus.DECLINED:
            event = NotificationEvent.MEDIA_DECLINED

        if event is not None:
            self.notifier.notify(event, request, media)

    def _is_available(self, request: MediaRequest, media: Media) -> bool:
        if media.media_type == MediaType.MOVIE:
            return media.tier_status(request.is_4k) == MediaStatus.AVAILABLE

        requested = set(request.season_numbers)
        if not requested:
            return False
        available = {
            season.season_number
            for season in media.seasons
            if season.season_number in requested and season.tier_status(request.is_4k) == MediaStatus.AVAILABLE
        }
        return available == requested

    def _notify_available(self, request: MediaRequest) -> bool:
        """Send the "available" notification once per request, when it really is available."""
        with self._notify_lock:
            current = self.media_db.get_request(request.id) if request.id is not None else None
            if current is None or current.available_notified:
                return False

            media = self.media_db.get_media(current.media_id)
            if media is None or not self._is_available(current, media):
                return False

            if self.notifier is not None and not self.notifier.notify(
                NotificationEvent.MEDIA_AVAILABLE, current, media
            ):
                # Metadata lookup failed; leave the marker unset so a later pass retries
                return False

            self.media_db.update_request(current.id, available_notified=True)
            return True

    def _approve_pending(self, media: Media, is_4k: bool) -> None:
        for request in self.media_db.list_requests(
            media_id=media.id,
            status=MediaRequestStatus.PENDING,
            is_4k=is_4k,
        ):
            logger.info(f"Media {media.id} became available, approving pending request {request.id}")
            updated = self.media_db.update_request(request.id, status=MediaRequestStatus.APPROVED)
            self.on_request_saved(request, updated)

    @staticmethod
    def _season_status_changed(previous: Optional[Media], media: Media, is_4k: bool) -> bool:
        for season in media.seasons:
            old = previous.season(season.season_number) if previous is not None else None
            old_status = old.tier_status(is_4k) if old is not None else None
            if season.tier_status(is_4k) != old_status:
                return True
        return False

    def _complete_related(self, media: Media, is_4k: bool) -> List[MediaRequest]:
        completed: List[MediaRequest] = []
        for request in self.media_db.list_requests(
            media_id=media.id,
            status=MediaRequestStatus.APPROVED,
            is_4k=is_4k,
        ):
            if media.media_type == MediaType.MOVIE:
                should_complete = media.tier_status(is_4k) in _COMPLETE_STATUSES
            else:
                should_complete = self._complete_seasons(media, request)

            if not should_complete:
                continue

            logger.info(f"Completing request {request.id} for media {media.id}")
            updated = self.media_db.update_request(request.id, status=MediaRequestStatus.COMPLETED)
            self.on_request_saved(request, updated)
            completed.append(updated)
        return completed

    def _complete_seasons(self, media: Media, request: MediaRequest) -> bool:
        """Complete the season requests whose season settled; True when all did."""
        ready = []
        for season_request in request.seasons:
            season = media.season(season_request.season_number)
            if season is None or season.tier_status(request.is_4k) not in _COMPLETE_STATUSES:
                ready.append(False)
                continue

            if season_request.status != MediaRequestStatus.COMPLETED:
                self.media_db.set_season_request_status(
                    request.id,
                    MediaRequestStatus.COMPLETED,
                    [season_request.season_number],
                )
            ready.append(True)
        return all(ready)
