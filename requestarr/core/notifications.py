"""Apprise notification dispatch for admin and per-user request events."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable
from urllib.parse import urlsplit

import apprise

from requestarr.config.settings import NotificationSettings
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

# Small pool for non-blocking dispatch. Notification sends are I/O bound and infrequent.
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="Notify")
_ROUTE_EVENT_ALL = "all"
_APPRISE_APP_DESC = "Media request notifications"


class NotificationEvent(str, Enum):
    """Request lifecycle events that can be routed to Apprise URLs."""

    MEDIA_PENDING = "media_pending"
    MEDIA_APPROVED = "media_approved"
    MEDIA_AUTO_APPROVED = "media_auto_approved"
    MEDIA_DECLINED = "media_declined"
    MEDIA_FAILED = "media_failed"
    MEDIA_AVAILABLE = "media_available"


@dataclass
class NotificationContext:
    """Rendered inputs and routing for a single notification."""

    event: NotificationEvent
    subject: str
    message: str = ""
    image: str | None = None
    username: str | None = None
    media_label: str = "Movie"
    is_4k: bool = False
    seasons: list[int] | None = None
    error_message: str | None = None
    notify_admin: bool = False
    notify_user_id: int | None = None


def _normalize_urls(value: Any) -> list[str]:
    if value is None:
        return []

    raw_values = value if isinstance(value, list) else [value]
    normalized: list[str] = []
    seen: set[str] = set()
    for raw_url in raw_values:
        # Copy-pasted URLs can carry zero-width or non-breaking characters.
        url = str(raw_url or "").encode("ascii", errors="ignore").decode("ascii").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        normalized.append(url)
    return normalized


def _normalize_routes(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []

    allowed_events = {_ROUTE_EVENT_ALL, *(event.value for event in NotificationEvent)}
    normalized: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()

    for row in value:
        if not isinstance(row, dict):
            continue

        url = str(row.get("url") or "").strip()
        if not url:
            continue

        raw_events = row.get("event")
        event_values = list(raw_events) if isinstance(raw_events, (list, tuple, set)) else [raw_events]
        row_events: list[str] = []
        for raw_event in event_values:
            event = str(getattr(raw_event, "value", raw_event) or "").strip().lower()
            if event in allowed_events and event not in row_events:
                row_events.append(event)

        if _ROUTE_EVENT_ALL in row_events:
            row_events = [_ROUTE_EVENT_ALL]

        for event in row_events:
            key = (event, url)
            if key in seen:
                continue
            seen.add(key)
            normalized.append({"event": event, "url": url})

    return normalized


def _normalize_user_id(value: Any) -> int | None:
    try:
        user_id = int(value)
    except (TypeError, ValueError):
        return None
    if user_id < 1:
        return None
    return user_id


def _resolve_route_urls_for_event(
    routes: list[dict[str, str]],
    event: NotificationEvent,
) -> list[str]:
    selected: list[str] = []
    seen: set[str] = set()

    for row in routes:
        if row.get("event", "") not in {_ROUTE_EVENT_ALL, event.value}:
            continue
        url = row.get("url", "")
        if not url or url in seen:
            continue
        seen.add(url)
        selected.append(url)

    return selected


def _resolve_notify_type(event: NotificationEvent) -> Any:
    mapping = {
        NotificationEvent.MEDIA_PENDING: apprise.NotifyType.INFO,
        NotificationEvent.MEDIA_APPROVED: apprise.NotifyType.SUCCESS,
        NotificationEvent.MEDIA_AUTO_APPROVED: apprise.NotifyType.SUCCESS,
        NotificationEvent.MEDIA_DECLINED: apprise.NotifyType.WARNING,
        NotificationEvent.MEDIA_FAILED: apprise.NotifyType.FAILURE,
        NotificationEvent.MEDIA_AVAILABLE: apprise.NotifyType.SUCCESS,
    }
    return mapping[event]


def _clean_text(value: Any, fallback: str) -> str:
    text = str(value or "").strip()
    return text or fallback


_EVENT_HEADINGS = {
    NotificationEvent.MEDIA_PENDING: "Request Pending Approval",
    NotificationEvent.MEDIA_APPROVED: "Request Approved",
    NotificationEvent.MEDIA_AUTO_APPROVED: "Request Automatically Approved",
    NotificationEvent.MEDIA_DECLINED: "Request Declined",
    NotificationEvent.MEDIA_FAILED: "Request Failed",
    NotificationEvent.MEDIA_AVAILABLE: "Now Available",
}


def _render_message(context: NotificationContext) -> tuple[str, str]:
    event = context.event
    subject = _clean_text(context.subject, "Unknown title")
    username = _clean_text(context.username, "A user")
    tier = "4K " if context.is_4k else ""
    title = f"{tier}{context.media_label} {_EVENT_HEADINGS[event]}"

    if event == NotificationEvent.MEDIA_PENDING:
        lead = f"{username} requested {subject}."
    elif event == NotificationEvent.MEDIA_AUTO_APPROVED:
        lead = f"{username} requested {subject}; the request was approved automatically."
    elif event == NotificationEvent.MEDIA_APPROVED:
        lead = f"Your request for {subject} was approved."
    elif event == NotificationEvent.MEDIA_DECLINED:
        lead = f"Your request for {subject} was declined."
    elif event == NotificationEvent.MEDIA_FAILED:
        lead = f"The request for {subject} could not be sent to the download service."
    else:
        lead = f"{subject} is now available."

    lines = [lead]
    if context.seasons:
        lines.append("Seasons: " + ", ".join(str(number) for number in context.seasons))
    error_message = _clean_text(context.error_message, "")
    if error_message:
        lines.append(f"Error: {error_message}")
    message = _clean_text(context.message, "")
    if message:
        lines.append("")
        lines.append(message)
    return title, "\n".join(lines)


def _dispatch_to_apprise(
    urls: Iterable[str],
    *,
    title: str,
    body: str,
    notify_type: Any,
    app_id: str,
    attach: str | None = None,
) -> dict[str, Any]:
    normalized_urls = _normalize_urls(list(urls))
    if not normalized_urls:
        return {"success": False, "message": "No notification URLs configured"}

    apobj = apprise.Apprise(asset=apprise.AppriseAsset(app_id=app_id, app_desc=_APPRISE_APP_DESC))

    invalid_urls = 0
    for url in normalized_urls:
        if not apobj.add(url):
            invalid_urls += 1
            logger.warning("Apprise rejected notification route URL for scheme '%s'", urlsplit(url).scheme)

    if invalid_urls == len(normalized_urls):
        return {"success": False, "message": "No valid notification URLs configured"}

    try:
        notify_kwargs: dict[str, Any] = {"title": title, "body": body, "notify_type": notify_type}
        if attach:
            # Poster URL; Apprise fetches it for services that take attachments
            notify_kwargs["attach"] = attach
        delivered = bool(apobj.notify(**notify_kwargs))
    except Exception as exc:
        logger.warning("Apprise notify raised %s: %s", type(exc).__name__, exc)
        return {"success": False, "message": f"Notification delivery failed: {exc}"}

    if not delivered:
        return {"success": False, "message": "Notification delivery failed"}

    message = f"Notification sent to {len(normalized_urls) - invalid_urls} URL(s)"
    if invalid_urls:
        message += f" ({invalid_urls} URL(s) rejected)"
    return {"success": True, "message": message}


class NotificationDispatcher:
    """Routes request events to admin and per-user Apprise URLs."""

    def __init__(self, settings: NotificationSettings):
        self.settings = settings

    def _admin_routes(self) -> list[dict[str, str]]:
        return _normalize_routes(self.settings.admin_routes)

    def _user_routes(self, user_id: int) -> list[dict[str, str]]:
        return _normalize_routes(self.settings.user_routes.get(user_id, []))

    def notify_admin(self, event: NotificationEvent, context: NotificationContext) -> bool:
        """Queue an admin notification for an event if subscribed."""
        urls = _resolve_route_urls_for_event(self._admin_routes(), event)
        if not urls:
            return False

        try:
            _executor.submit(self._deliver, event, context, urls, "admin")
        except RuntimeError as exc:
            logger.warning("Failed to queue admin notification '%s': %s", event.value, exc)
            return False
        return True

    def notify_user(self, user_id: int | None, event: NotificationEvent, context: NotificationContext) -> bool:
        """Queue a per-user notification for an event if subscribed."""
        normalized_user_id = _normalize_user_id(user_id)
        if normalized_user_id is None:
            return False

        urls = _resolve_route_urls_for_event(self._user_routes(normalized_user_id), event)
        if not urls:
            return False

        try:
            _executor.submit(self._deliver, event, context, urls, f"user_id={normalized_user_id}")
        except RuntimeError as exc:
            logger.warning(
                "Failed to queue user notification '%s' for user_id=%s: %s",
                event.value,
                normalized_user_id,
                exc,
            )
            return False
        return True

    def send(self, event: NotificationEvent, context: NotificationContext) -> int:
        """Fan a notification out to the audiences flagged on the context.

        Returns the number of audiences a delivery was queued for.
        """
        queued = 0
        if context.notify_admin and self.notify_admin(event, context):
            queued += 1
        if context.notify_user_id is not None and self.notify_user(context.notify_user_id, event, context):
            queued += 1
        return queued

    def _deliver(
        self,
        event: NotificationEvent,
        context: NotificationContext,
        urls: list[str],
        audience: str,
    ) -> None:
        title, body = _render_message(context)
        result = _dispatch_to_apprise(
            urls,
            title=title,
            body=body,
            notify_type=_resolve_notify_type(event),
            app_id=self.settings.application_title,
            attach=context.image,
        )
        if not result.get("success", False):
            logger.warning(
                "Notification failed for event '%s' (%s): %s",
                event.value,
                audience,
                result.get("message"),
            )
