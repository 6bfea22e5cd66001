"""Request lifecycle operations: validate, persist, then reconcile."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping

from requestarr.core.logger import setup_logger
from requestarr.core.models import (
    DispatchState,
    Media,
    MediaRequest,
    MediaRequestStatus,
    MediaStatus,
    MediaType,
    Season,
    SeasonRequest,
)
from requestarr.fulfillment.base import UnrecoverableMappingError
from requestarr.fulfillment.routing import RouteNotFound, merge_tags, resolve_route

if TYPE_CHECKING:
    from requestarr.config.settings import RoutingRule, Settings
    from requestarr.core.media_db import MediaDB
    from requestarr.core.reconciler import RequestReconciler

logger = setup_logger(__name__)

_ALLOWED_TRANSITIONS: dict[MediaRequestStatus, frozenset[MediaRequestStatus]] = {
    MediaRequestStatus.PENDING: frozenset({MediaRequestStatus.APPROVED, MediaRequestStatus.DECLINED}),
    MediaRequestStatus.APPROVED: frozenset(
        {MediaRequestStatus.COMPLETED, MediaRequestStatus.DECLINED, MediaRequestStatus.FAILED}
    ),
    MediaRequestStatus.FAILED: frozenset({MediaRequestStatus.APPROVED}),
    MediaRequestStatus.DECLINED: frozenset(),
    MediaRequestStatus.COMPLETED: frozenset(),
}
ACTIVE_REQUEST_STATUSES = frozenset({MediaRequestStatus.PENDING, MediaRequestStatus.APPROVED})


class RequestServiceError(ValueError):
    """Structured error raised by request lifecycle service methods."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 400,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def _enum_text(value: Any) -> str:
    # str() of a str Enum member is "Class.NAME", so read .value first
    return str(getattr(value, "value", value)).strip().lower()


def normalize_request_status(status: Any) -> MediaRequestStatus:
    """Validate and normalize request status values."""
    try:
        return MediaRequestStatus(_enum_text(status))
    except ValueError as exc:
        raise ValueError(f"Invalid request status: {status}") from exc


def normalize_media_status(status: Any) -> MediaStatus:
    try:
        return MediaStatus(_enum_text(status))
    except ValueError as exc:
        raise ValueError(f"Invalid media status: {status}") from exc


def validate_status_transition(current_status: Any, new_status: Any) -> tuple[MediaRequestStatus, MediaRequestStatus]:
    """Validate a request status change against the lifecycle graph."""
    current = normalize_request_status(current_status)
    new = normalize_request_status(new_status)
    if new not in _ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"Cannot move request from {current.value} to {new.value}")
    return current, new


def _validate_seasons(media_type: MediaType, seasons: Any) -> list[int]:
    if media_type == MediaType.MOVIE:
        if seasons:
            raise RequestServiceError("Movie requests cannot include seasons", status_code=400)
        return []

    if not isinstance(seasons, (list, tuple)) or not seasons:
        raise RequestServiceError("Series requests need at least one season", status_code=400)

    numbers: list[int] = []
    for value in seasons:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise RequestServiceError(f"Invalid season number: {value!r}", status_code=400)
        if value not in numbers:
            numbers.append(value)
    return sorted(numbers)


def _optional_int(value: Any, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise RequestServiceError(f"{field} must be an integer", status_code=400)
    return value


def _validate_tags(tags: Any) -> list[int] | None:
    if tags is None:
        return None
    if not isinstance(tags, (list, tuple)):
        raise RequestServiceError("tags must be a list of integers", status_code=400)
    return [_optional_int(tag, "tags") for tag in tags]


def _find_active_requests(media_db: "MediaDB", media: Media, is_4k: bool) -> list[MediaRequest]:
    return [
        request
        for request in media_db.list_requests(media_id=media.id, is_4k=is_4k)
        if request.status in ACTIVE_REQUEST_STATUSES
    ]


def _reconcile_saved(
    media_db: "MediaDB",
    reconciler: "RequestReconciler",
    previous: MediaRequest | None,
    saved: MediaRequest,
) -> MediaRequest:
    try:
        reconciler.on_request_saved(previous, saved)
    except UnrecoverableMappingError as exc:
        raise RequestServiceError(str(exc), status_code=422, code="unrecoverable_mapping") from exc
    return media_db.get_request(saved.id) or saved


def _match_routing_rule(
    settings: "Settings",
    media_type: MediaType,
    is_4k: bool,
    user_id: int,
    details: Mapping[str, Any],
    server_id: int | None,
) -> "RoutingRule | None":
    kind = "radarr" if media_type == MediaType.MOVIE else "sonarr"
    try:
        route = resolve_route(settings, kind, is_4k, user_id=user_id, details=dict(details), server_id=server_id)
    except RouteNotFound as exc:
        # Dispatch reports the missing server; creation still succeeds
        logger.warning(f"No route for new {media_type.value} request: {exc}")
        return None
    return route.rule


def get_request_or_404(media_db: "MediaDB", request_id: int) -> MediaRequest:
    request = media_db.get_request(request_id)
    if request is None:
        raise RequestServiceError("Request not found", status_code=404)
    return request


def create_request(
    media_db: "MediaDB",
    reconciler: "RequestReconciler",
    *,
    media_type: Any,
    tmdb_id: Any,
    user_id: int,
    username: str = "",
    is_4k: bool = False,
    seasons: Iterable[int] | None = None,
    tvdb_id: int | None = None,
    auto_approve: bool = False,
    server_id: Any = None,
    profile_id: Any = None,
    root_folder: str | None = None,
    language_profile_id: Any = None,
    tags: Any = None,
    settings: "Settings | None" = None,
    details: Mapping[str, Any] | None = None,
) -> MediaRequest:
    """Create a request (PENDING, or APPROVED with auto-approve) and reconcile it.

    With ``settings`` and the title's TMDB ``details``, a matching routing
    rule fills in the profile and root folder the caller left unset and adds
    its tags.
    """
    try:
        normalized_type = MediaType(_enum_text(media_type))
    except ValueError as exc:
        raise RequestServiceError(f"Invalid media type: {media_type}", status_code=400) from exc

    if isinstance(tmdb_id, bool) or not isinstance(tmdb_id, int) or tmdb_id < 1:
        raise RequestServiceError("tmdb_id must be a positive integer", status_code=400)

    season_numbers = _validate_seasons(normalized_type, list(seasons) if seasons is not None else None)
    validated_tags = _validate_tags(tags)
    requested_server_id = _optional_int(server_id, "server_id")
    profile_id = _optional_int(profile_id, "profile_id")

    media = media_db.get_media_by_tmdb_id(tmdb_id, normalized_type)
    if media is None:
        media = media_db.save_media(Media(media_type=normalized_type, tmdb_id=tmdb_id, tvdb_id=tvdb_id))
    elif tvdb_id and not media.tvdb_id:
        media = media_db.update_media(media.id, tvdb_id=tvdb_id)

    tier_status = media.tier_status(is_4k)
    if normalized_type == MediaType.MOVIE and tier_status == MediaStatus.AVAILABLE:
        raise RequestServiceError("Media is already available", status_code=409, code="already_available")

    active = _find_active_requests(media_db, media, is_4k)
    if normalized_type == MediaType.MOVIE:
        if active:
            raise RequestServiceError(
                "Request for this media already exists",
                status_code=409,
                code="duplicate_request",
            )
    else:
        requested = {number for request in active for number in request.season_numbers}
        unavailable = {
            season.season_number
            for season in media.seasons
            if season.tier_status(is_4k) == MediaStatus.AVAILABLE
        }
        season_numbers = [n for n in season_numbers if n not in requested and n not in unavailable]
        if not season_numbers:
            raise RequestServiceError(
                "All requested seasons are already requested or available",
                status_code=409,
                code="duplicate_request",
            )

    if tier_status in (MediaStatus.UNKNOWN, MediaStatus.DELETED):
        field = "status_4k" if is_4k else "status"
        media = media_db.update_media(media.id, **{field: MediaStatus.PENDING})

    if settings is not None and details is not None:
        rule = _match_routing_rule(settings, normalized_type, is_4k, user_id, details, requested_server_id)
        if rule is not None:
            if profile_id is None and rule.active_profile_id:
                profile_id = rule.active_profile_id
            if not root_folder and rule.root_folder:
                root_folder = rule.root_folder
            validated_tags = merge_tags(validated_tags, rule.tags)
            logger.info(f"Routing rule '{rule.name}' applied to new request for tmdb {tmdb_id}")

    status = MediaRequestStatus.APPROVED if auto_approve else MediaRequestStatus.PENDING
    request = MediaRequest(
        media_id=media.id,
        media_type=normalized_type,
        requested_by_id=user_id,
        requested_by_name=username or "",
        is_4k=bool(is_4k),
        status=status,
        server_id=requested_server_id,
        profile_id=profile_id,
        root_folder=(root_folder or None),
        language_profile_id=_optional_int(language_profile_id, "language_profile_id"),
        tags=validated_tags,
        seasons=[SeasonRequest(season_number=number, status=status) for number in season_numbers],
    )
    saved = media_db.save_request(request)
    logger.info(f"Created {status.value} request {saved.id} for {normalized_type.value} tmdb {tmdb_id}")
    return _reconcile_saved(media_db, reconciler, None, saved)


def _transition(
    media_db: "MediaDB",
    reconciler: "RequestReconciler",
    request_id: int,
    new_status: MediaRequestStatus,
    **changes: Any,
) -> MediaRequest:
    current = get_request_or_404(media_db, request_id)
    try:
        validate_status_transition(current.status, new_status)
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="stale_transition") from exc

    updated = current.copy()
    updated.status = new_status
    for key, value in changes.items():
        setattr(updated, key, value)

    saved = media_db.save_request(updated)
    logger.info(f"Request {request_id}: {current.status.value} -> {new_status.value}")
    return _reconcile_saved(media_db, reconciler, current, saved)


def approve_request(
    media_db: "MediaDB",
    reconciler: "RequestReconciler",
    *,
    request_id: int,
    server_id: Any = None,
    profile_id: Any = None,
    root_folder: str | None = None,
    language_profile_id: Any = None,
    tags: Any = None,
) -> MediaRequest:
    """Approve a pending request, optionally overriding destination options."""
    overrides: dict[str, Any] = {}
    if server_id is not None:
        overrides["server_id"] = _optional_int(server_id, "server_id")
    if profile_id is not None:
        overrides["profile_id"] = _optional_int(profile_id, "profile_id")
    if root_folder:
        overrides["root_folder"] = root_folder
    if language_profile_id is not None:
        overrides["language_profile_id"] = _optional_int(language_profile_id, "language_profile_id")
    if tags is not None:
        overrides["tags"] = _validate_tags(tags)

    return _transition(media_db, reconciler, request_id, MediaRequestStatus.APPROVED, **overrides)


def decline_request(media_db: "MediaDB", reconciler: "RequestReconciler", *, request_id: int) -> MediaRequest:
    return _transition(media_db, reconciler, request_id, MediaRequestStatus.DECLINED)


def retry_request(media_db: "MediaDB", reconciler: "RequestReconciler", *, request_id: int) -> MediaRequest:
    """Send a FAILED request to the acquisition service again."""
    return _transition(
        media_db,
        reconciler,
        request_id,
        MediaRequestStatus.APPROVED,
        dispatch_state=DispatchState.NONE,
        dispatched_at=None,
    )


def complete_request(media_db: "MediaDB", reconciler: "RequestReconciler", *, request_id: int) -> MediaRequest:
    return _transition(media_db, reconciler, request_id, MediaRequestStatus.COMPLETED)


def delete_request(media_db: "MediaDB", reconciler: "RequestReconciler", *, request_id: int) -> MediaRequest:
    """Remove a request and reset media tiers it alone was holding."""
    request = get_request_or_404(media_db, request_id)
    media_db.remove_request(request_id)
    logger.info(f"Deleted request {request_id}")
    reconciler.on_request_removed(request)
    return request


def update_media_status(
    media_db: "MediaDB",
    reconciler: "RequestReconciler",
    *,
    media_id: int,
    status: Any = None,
    status_4k: Any = None,
    seasons: Mapping[int, Mapping[str, Any]] | None = None,
) -> Media:
    """Record availability for a media item (and its seasons) and advance its requests.

    ``seasons`` maps season numbers to ``{"status": ..., "status_4k": ...}``.
    """
    previous = media_db.get_media(media_id)
    if previous is None:
        raise RequestServiceError("Media not found", status_code=404)

    updated = previous.copy()
    try:
        for is_4k, value in ((False, status), (True, status_4k)):
            if value is not None:
                updated.set_tier_status(is_4k, normalize_media_status(value))
        for season_number, values in (seasons or {}).items():
            season = updated.season(int(season_number))
            if season is None:
                season = Season(season_number=int(season_number), media_id=media_id)
                updated.seasons.append(season)
            for is_4k, key in ((False, "status"), (True, "status_4k")):
                if values.get(key) is not None:
                    season.set_tier_status(is_4k, normalize_media_status(values[key]))
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=400) from exc

    saved = media_db.save_media(updated)
    reconciler.on_media_updated(previous, saved)
    return media_db.get_media(media_id) or saved
