"""Pick the acquisition server, and any rule options, for a request.

Rules of the request's server kind and tier are tried highest priority
first and the first match wins. Without a match the tier's default server
is used.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from requestarr.api.themoviedb import ANIME_KEYWORD_ID, genre_ids, keyword_ids
from requestarr.config.settings import DVRSettings, RoutingRule, Settings
from requestarr.core.logger import setup_logger
from requestarr.core.models import tier_label

logger = setup_logger(__name__)


class RouteNotFound(LookupError):
    """No server can take the request."""


@dataclass
class Route:
    server: DVRSettings
    rule: Optional[RoutingRule] = None


def rule_matches(rule: RoutingRule, *, user_id: Optional[int], details: Dict[str, Any]) -> bool:
    if rule.is_fallback or not rule.has_conditions:
        return True

    if rule.users and user_id not in rule.users:
        return False
    if rule.genres and not set(rule.genres) & set(genre_ids(details)):
        return False
    if rule.languages and details.get("original_language") not in rule.languages:
        return False
    if rule.keywords and not set(rule.keywords) & set(keyword_ids(details)):
        return False
    return True


def match_rule(
    settings: Settings,
    kind: str,
    is_4k: bool,
    *,
    user_id: Optional[int],
    details: Dict[str, Any],
) -> Optional[RoutingRule]:
    anime = kind == "sonarr" and ANIME_KEYWORD_ID in keyword_ids(details)
    for rule in settings.rules_for(kind, is_4k):
        # Anime series are left to the server's anime defaults unless a rule names the keyword
        if anime and rule.has_conditions and not rule.is_fallback and ANIME_KEYWORD_ID not in rule.keywords:
            continue
        if rule_matches(rule, user_id=user_id, details=details):
            logger.debug(f"Routing rule '{rule.name}' matched (priority {rule.priority})")
            return rule
    return None


def resolve_route(
    settings: Settings,
    kind: str,
    is_4k: bool,
    *,
    user_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    server_id: Optional[int] = None,
) -> Route:
    """Return the server for a request and the rule that chose it, if any.

    An explicit ``server_id`` wins over the rules; a matching rule's options
    still apply when it targets that same server. Raises RouteNotFound when
    no server fits.
    """
    rule = match_rule(settings, kind, is_4k, user_id=user_id, details=details or {})

    if server_id is not None and server_id >= 0:
        server = settings.find_server(kind, server_id)
        if server is None:
            raise RouteNotFound(f"Override {kind} server {server_id} is not configured")
        if rule is not None and rule.target_service_id != server.id:
            rule = None
        return Route(server, rule)

    if rule is not None:
        server = settings.find_server(kind, rule.target_service_id)
        if server is None:
            raise RouteNotFound(
                f"Routing rule '{rule.name}' targets {kind} server {rule.target_service_id}, which is not configured"
            )
        return Route(server, rule)

    server = settings.find_default_server(kind, is_4k)
    if server is None:
        tier = tier_label(is_4k)
        raise RouteNotFound(
            f"There is no default {tier}{kind} server configured. "
            f"Did you set any of your {tier}{kind} servers as default?"
        )
    return Route(server)


def merge_tags(base: Optional[List[int]], extra: Optional[List[int]]) -> Optional[List[int]]:
    """Union of two tag lists in first-seen order; None when both are None."""
    if base is None and extra is None:
        return None
    merged: List[int] = []
    for tag in list(base or []) + list(extra or []):
        if tag not in merged:
            merged.append(tag)
    return merged
