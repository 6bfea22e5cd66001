"""Shared algorithm for turning an approved request into an acquisition-service add."""

import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from requestarr.api.servarr.base import ServarrBase
from requestarr.api.themoviedb import TheMovieDb
from requestarr.config.env import DISPATCH_WORKERS
from requestarr.config.settings import DVRSettings, RoutingRule, Settings
from requestarr.core.cache import CacheManager, cache_manager as default_cache_manager
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
from requestarr.fulfillment.routing import Route, RouteNotFound, resolve_route

logger = setup_logger(__name__)

# Add-media calls run detached from the request that triggered them.
_dispatch_executor = ThreadPoolExecutor(max_workers=DISPATCH_WORKERS, thread_name_prefix="Dispatch")

_TAG_LABEL_INVALID = re.compile(r"[^a-z0-9-]+")


class FulfillmentError(Exception):
    """Base class for errors raised while fulfilling a request."""


class ConfigurationError(FulfillmentError):
    """No acquisition server matches the request."""


class UnrecoverableMappingError(FulfillmentError):
    """The title cannot be mapped to the identifier the acquisition service needs."""


class DispatchFailure(FulfillmentError):
    """The detached add-media call failed."""


@dataclass
class ResolvedOptions:
    """Destination options after applying request overrides to server defaults."""
    quality_profile_id: Optional[int]
    root_folder: str
    tags: List[int] = field(default_factory=list)
    language_profile_id: Optional[int] = None
    series_type: Optional[str] = None
    minimum_availability: Optional[str] = None


def user_tag_label(user_id: int, display_name: str) -> str:
    """Acquisition-side tag for a requester, e.g. '7-jane'. Servers only accept [a-z0-9-]."""
    name = _TAG_LABEL_INVALID.sub("", str(display_name or "").lower())
    return f"{user_id}-{name}"


class AcquisitionCoordinator(ABC):
    """Template for the movie and series coordinators.

    ``send`` runs the synchronous steps (routing, option
    resolution, tagging, duplicate guard, id mapping), marks the request
    dispatched, then hands the add call to ``_dispatch_executor``.
    """

    media_type: MediaType
    server_kind: str
    client_class: type

    def __init__(
        self,
        settings: Settings,
        media_db: MediaDB,
        metadata: Optional[TheMovieDb],
        notifier: Optional[RequestNotifier] = None,
        *,
        client_factory: Optional[Callable[[DVRSettings], ServarrBase]] = None,
        caches: Optional[CacheManager] = None,
    ):
        self.settings = settings
        self.media_db = media_db
        self.metadata = metadata
        self.notifier = notifier
        self._client_factory = client_factory
        self._caches = caches if caches is not None else default_cache_manager

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def load_details(self, media: Media) -> Dict[str, Any]:
        """Fetch the TMDB details the add call needs."""

    @abstractmethod
    def resolve_options(
        self,
        request: MediaRequest,
        server: DVRSettings,
        details: Dict[str, Any],
        rule: Optional[RoutingRule] = None,
    ) -> ResolvedOptions:
        """Server defaults, then the routing rule, then the request's own overrides."""

    @abstractmethod
    def build_add_options(
        self,
        request: MediaRequest,
        media: Media,
        server: DVRSettings,
        details: Dict[str, Any],
        resolved: ResolvedOptions,
    ) -> Any:
        ...

    @abstractmethod
    def add(self, client: ServarrBase, options: Any) -> Dict[str, Any]:
        ...

    @abstractmethod
    def clear_cache(self, client: ServarrBase, media: Media, request: MediaRequest, details: Dict[str, Any]) -> None:
        ...

    def prepare_dispatch(self, request: MediaRequest, media: Media, details: Dict[str, Any]) -> None:
        """Last check before dispatch; may raise UnrecoverableMappingError."""

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def build_client(self, server: DVRSettings) -> ServarrBase:
        if self._client_factory is not None:
            return self._client_factory(server)
        return self.client_class.from_settings(server, cache=self._caches.get_cache(self.server_kind))

    def resolve_server(self, request: MediaRequest, details: Optional[Dict[str, Any]] = None) -> Route:
        """Request override server when set, else the first matching routing rule, else the tier default."""
        try:
            route = resolve_route(
                self.settings,
                self.server_kind,
                request.is_4k,
                user_id=request.requested_by_id,
                details=details,
                server_id=request.server_id,
            )
        except RouteNotFound as e:
            raise ConfigurationError(str(e)) from e

        if request.server_id is not None and request.server_id >= 0:
            logger.info(f"Request {request.id} has an override server: {route.server.name}")
        elif route.rule is not None:
            logger.info(f"Request {request.id} routed to {route.server.name} by rule '{route.rule.name}'")
        return route

    def apply_rule(self, request: MediaRequest, resolved: ResolvedOptions, rule: Optional[RoutingRule]) -> None:
        """Overlay a routing rule's options on the server defaults."""
        if rule is None:
            return
        if rule.active_profile_id:
            resolved.quality_profile_id = rule.active_profile_id
        if rule.root_folder:
            resolved.root_folder = rule.root_folder
        if rule.tags is not None:
            resolved.tags = list(rule.tags)
        if rule.series_type:
            resolved.series_type = rule.series_type
        if rule.minimum_availability:
            resolved.minimum_availability = rule.minimum_availability
        logger.debug(f"Request {request.id}: applied routing rule '{rule.name}'")

    def apply_user_tag(self, client: ServarrBase, request: MediaRequest, tags: List[int]) -> List[int]:
        """Append the requester's tag, creating it when needed. Failures only warn."""
        try:
            existing = client.get_tags()
            user_id = request.requested_by_id
            # Older tags were written with spaces around the hyphen
            user_tag = next(
                (tag for tag in existing if str(tag.get("label", "")).startswith(f"{user_id} - ")),
                None,
            )
            if user_tag is None:
                user_tag = next(
                    (tag for tag in existing if str(tag.get("label", "")).startswith(f"{user_id}-")),
                    None,
                )
            if user_tag is None:
                label = user_tag_label(user_id, request.requested_by_name)
                logger.info(f"Requester has no active tag, creating '{label}'")
                user_tag = client.create_tag(label)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Failed to read or create requester tag for request {request.id}: {e}")
            return tags

        tag_id = (user_tag or {}).get("id")
        if tag_id is None:
            logger.warning(f"Requester has no tag and failed to add one (request {request.id})")
            return tags
        if tag_id not in tags:
            tags = tags + [tag_id]
        return tags

    def send(self, request: MediaRequest) -> Optional["Future[Optional[Dict[str, Any]]]"]:
        """Fulfil an APPROVED request of this coordinator's type.

        Returns the Future of the detached add call, or None when nothing was
        dispatched (other type, not approved, no server, already available).
        """
        if request.status != MediaRequestStatus.APPROVED or request.media_type != self.media_type:
            return None

        if self.metadata is None:
            logger.warning(f"Request {request.id} left unfulfilled: no metadata provider configured")
            return None

        media = self.media_db.get_media(request.media_id)
        if media is None:
            raise FulfillmentError(f"Media {request.media_id} not found for request {request.id}")

        # Routing rules match on genres, language and keywords, so details come first
        details = self.load_details(media)
        try:
            route = self.resolve_server(request, details)
        except ConfigurationError as e:
            logger.warning(f"Request {request.id} left unfulfilled: {e}")
            return None

        server = route.server
        resolved = self.resolve_options(request, server, details, route.rule)
        client = self.build_client(server)

        if server.tag_requests:
            resolved.tags = self.apply_user_tag(client, request, list(resolved.tags))

        # Re-read so a concurrent availability update is seen
        fresh = self.media_db.get_media(media.id) or media
        if fresh.tier_status(request.is_4k) == MediaStatus.AVAILABLE:
            self._keep_approved(request)
            return None

        self.prepare_dispatch(request, fresh, details)
        options = self.build_add_options(request, fresh, server, details, resolved)

        dispatched = self.media_db.update_request(
            request.id,
            dispatch_state=DispatchState.DISPATCHED,
            dispatched_at=time.time(),
        )
        future = _dispatch_executor.submit(self._dispatch, client, server, dispatched, fresh, options, details)
        logger.info(f"Sent request {request.id} to {server.name}")
        return future

    def _keep_approved(self, request: MediaRequest) -> None:
        stored = self.media_db.get_request(request.id)
        if stored is not None and stored.status != MediaRequestStatus.APPROVED:
            self.media_db.update_request(request.id, status=MediaRequestStatus.APPROVED)
        logger.warning(f"Media already exists, leaving request {request.id} APPROVED")

    def _dispatch(
        self,
        client: ServarrBase,
        server: DVRSettings,
        request: MediaRequest,
        media: Media,
        options: Any,
        details: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        try:
            try:
                result = self.add(client, options)
            except Exception as e:
                # Runs on a worker thread; the failure is recorded on the request instead.
                logger.error(f"{server.name} rejected request {request.id}: {e}")
                self._fail(request, media, DispatchFailure(str(e)))
                return None

            try:
                self._confirm(server, request, media, result)
            except Exception as e:
                logger.error(
                    f"{server.name} accepted request {request.id} as item {result.get('id')}, "
                    f"but recording it failed: {e}"
                )
                self._fail(request, media, DispatchFailure(f"Added to {server.name} but not recorded: {e}"))
                return None
            return result
        finally:
            self.clear_cache(client, media, request, details)

    def _confirm(self, server: DVRSettings, request: MediaRequest, media: Media, result: Dict[str, Any]) -> None:
        linkage = Media.external_linkage(
            request.is_4k,
            service_id=server.id,
            external_id=result.get("id"),
            slug=result.get("titleSlug"),
        )
        self.media_db.update_media(media.id, **linkage)
        self.media_db.update_request(request.id, dispatch_state=DispatchState.CONFIRMED)
        logger.info(
            f"{server.name} accepted request {request.id} as item {result.get('id')} ({result.get('titleSlug')})"
        )

    def _fail(self, request: MediaRequest, media: Media, failure: DispatchFailure) -> None:
        logger.warning(
            f"Something went wrong sending request {request.id} to {self.server_kind}, "
            f"marking status as FAILED: {failure}"
        )
        failed = self.media_db.update_request(
            request.id,
            status=MediaRequestStatus.FAILED,
            dispatch_state=DispatchState.FAILED,
        )
        if self.notifier is not None:
            self.notifier.notify(NotificationEvent.MEDIA_FAILED, failed, media, error_message=str(failure))
