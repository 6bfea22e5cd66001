"""Application settings loaded once at start and passed explicitly to components."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from requestarr.config.env import SETTINGS_FILE
from requestarr.core.logger import setup_logger
from requestarr.core.utils import normalize_http_url, normalize_url_base

logger = setup_logger(__name__)

SERVER_KINDS = ("radarr", "sonarr")
SERIES_TYPES = ("standard", "daily", "anime")
MINIMUM_AVAILABILITIES = ("announced", "inCinemas", "released")


class SettingsError(ValueError):
    """Raised when settings.json cannot be parsed into valid settings."""


def _parse_int(value: Any, label: str, *, required: bool = False) -> Optional[int]:
    if value is None or value == "":
        if required:
            raise SettingsError(f"{label} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"{label} must be a number") from exc


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "y", "on")
    return bool(value)


def _parse_int_list(value: Any, label: str) -> List[int]:
    if value in (None, ""):
        return []
    if not isinstance(value, list):
        raise SettingsError(f"{label} must be a list")
    return [_parse_int(item, label, required=True) for item in value]


@dataclass
class DVRSettings:
    """Connection and default acquisition options for one Radarr/Sonarr server."""
    id: int
    name: str
    hostname: str
    port: int
    api_key: str
    use_ssl: bool = False
    base_url: str = ""
    active_profile_id: Optional[int] = None
    active_profile_name: str = ""
    active_directory: str = ""
    tags: List[int] = field(default_factory=list)
    is_4k: bool = False
    is_default: bool = False
    external_url: str = ""
    sync_enabled: bool = False
    prevent_search: bool = False
    tag_requests: bool = False

    @property
    def api_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.hostname}:{self.port}{self.base_url}/api/v3"

    @classmethod
    def _common_from_dict(cls, data: Mapping[str, Any], label: str) -> Dict[str, Any]:
        hostname = str(data.get("hostname") or "").strip()
        if not hostname:
            raise SettingsError(f"{label}: hostname is required")
        api_key = str(data.get("api_key") or "").strip()
        if not api_key:
            raise SettingsError(f"{label}: api_key is required")

        # Hostnames are sometimes pasted with a scheme
        if "://" in hostname:
            hostname = hostname.split("://", 1)[1]
        hostname = hostname.rstrip("/")

        return {
            "id": _parse_int(data.get("id"), f"{label}: id", required=True),
            "name": str(data.get("name") or hostname),
            "hostname": hostname,
            "port": _parse_int(data.get("port"), f"{label}: port", required=True),
            "api_key": api_key,
            "use_ssl": _parse_bool(data.get("use_ssl")),
            "base_url": normalize_url_base(data.get("base_url")),
            "active_profile_id": _parse_int(data.get("active_profile_id"), f"{label}: active_profile_id"),
            "active_profile_name": str(data.get("active_profile_name") or ""),
            "active_directory": str(data.get("active_directory") or ""),
            "tags": _parse_int_list(data.get("tags"), f"{label}: tags"),
            "is_4k": _parse_bool(data.get("is_4k")),
            "is_default": _parse_bool(data.get("is_default")),
            "external_url": normalize_http_url(data.get("external_url")),
            "sync_enabled": _parse_bool(data.get("sync_enabled")),
            "prevent_search": _parse_bool(data.get("prevent_search")),
            "tag_requests": _parse_bool(data.get("tag_requests")),
        }


@dataclass
class RadarrSettings(DVRSettings):
    minimum_availability: str = "released"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RadarrSettings":
        values = cls._common_from_dict(data, "radarr")
        values["minimum_availability"] = str(data.get("minimum_availability") or "released")
        return cls(**values)


@dataclass
class SonarrSettings(DVRSettings):
    series_type: str = "standard"
    anime_series_type: str = "anime"
    active_language_profile_id: Optional[int] = None
    active_anime_profile_id: Optional[int] = None
    active_anime_profile_name: str = ""
    active_anime_directory: str = ""
    active_anime_language_profile_id: Optional[int] = None
    anime_tags: List[int] = field(default_factory=list)
    enable_season_folders: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SonarrSettings":
        values = cls._common_from_dict(data, "sonarr")
        values.update({
            "series_type": str(data.get("series_type") or "standard"),
            "anime_series_type": str(data.get("anime_series_type") or "anime"),
            "active_language_profile_id": _parse_int(
                data.get("active_language_profile_id"), "sonarr: active_language_profile_id"
            ),
            "active_anime_profile_id": _parse_int(
                data.get("active_anime_profile_id"), "sonarr: active_anime_profile_id"
            ),
            "active_anime_profile_name": str(data.get("active_anime_profile_name") or ""),
            "active_anime_directory": str(data.get("active_anime_directory") or ""),
            "active_anime_language_profile_id": _parse_int(
                data.get("active_anime_language_profile_id"), "sonarr: active_anime_language_profile_id"
            ),
            "anime_tags": _parse_int_list(data.get("anime_tags"), "sonarr: anime_tags"),
            "enable_season_folders": _parse_bool(data.get("enable_season_folders"), default=True),
        })
        return cls(**values)


@dataclass
class NotificationSettings:
    """Apprise routes. Each route is {"event": <event or "all">, "url": <apprise url>}."""
    admin_routes: List[Dict[str, str]] = field(default_factory=list)
    user_routes: Dict[int, List[Dict[str, str]]] = field(default_factory=dict)
    application_title: str = "Requestarr"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "NotificationSettings":
        data = data or {}
        user_routes: Dict[int, List[Dict[str, str]]] = {}
        raw_user_routes = data.get("user_routes") or {}
        if not isinstance(raw_user_routes, Mapping):
            raise SettingsError("notifications: user_routes must be an object keyed by user id")
        for user_id, routes in raw_user_routes.items():
            parsed_id = _parse_int(user_id, "notifications: user id", required=True)
            user_routes[parsed_id] = list(routes or [])

        admin_routes = data.get("admin_routes") or []
        if not isinstance(admin_routes, list):
            raise SettingsError("notifications: admin_routes must be a list")

        return cls(
            admin_routes=list(admin_routes),
            user_routes=user_routes,
            application_title=str(data.get("application_title") or "Requestarr"),
        )


@dataclass
class MetadataSettings:
    tmdb_api_key: str = ""
    language: str = "en"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "MetadataSettings":
        data = data or {}
        return cls(
            tmdb_api_key=str(data.get("tmdb_api_key") or "").strip(),
            language=str(data.get("language") or "en"),
        )


@dataclass
class RoutingRule:
    """Sends matching requests to a chosen server with its own options.

    Populated conditions must all match; within one condition any listed
    value matches. A rule without conditions, or flagged ``is_fallback``,
    matches everything.
    """
    name: str
    service_type: str
    target_service_id: int
    is_4k: bool = False
    priority: int = 0
    users: List[int] = field(default_factory=list)
    genres: List[int] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    keywords: List[int] = field(default_factory=list)
    active_profile_id: Optional[int] = None
    root_folder: str = ""
    series_type: str = ""
    tags: Optional[List[int]] = None
    minimum_availability: str = ""
    is_fallback: bool = False

    @property
    def has_conditions(self) -> bool:
        return bool(self.users or self.genres or self.languages or self.keywords)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RoutingRule":
        name = str(data.get("name") or "").strip()
        label = f"routing rule '{name}'" if name else "routing rule"
        service_type = str(data.get("service_type") or "").strip().lower()
        if service_type not in SERVER_KINDS:
            raise SettingsError(f"{label}: service_type must be one of {', '.join(SERVER_KINDS)}")

        series_type = str(data.get("series_type") or "").strip()
        if series_type and series_type not in SERIES_TYPES:
            raise SettingsError(f"{label}: series_type must be one of {', '.join(SERIES_TYPES)}")
        minimum_availability = str(data.get("minimum_availability") or "").strip()
        if minimum_availability and minimum_availability not in MINIMUM_AVAILABILITIES:
            raise SettingsError(
                f"{label}: minimum_availability must be one of {', '.join(MINIMUM_AVAILABILITIES)}"
            )

        # Either a list or a "en|ja" string
        languages = data.get("languages") or []
        if isinstance(languages, str):
            languages = languages.split("|")
        if not isinstance(languages, list):
            raise SettingsError(f"{label}: languages must be a list")

        tags = data.get("tags")
        return cls(
            name=name or f"{service_type} rule",
            service_type=service_type,
            target_service_id=_parse_int(data.get("target_service_id"), f"{label}: target_service_id", required=True),
            is_4k=_parse_bool(data.get("is_4k")),
            priority=_parse_int(data.get("priority"), f"{label}: priority") or 0,
            users=_parse_int_list(data.get("users"), f"{label}: users"),
            genres=_parse_int_list(data.get("genres"), f"{label}: genres"),
            languages=[str(language).strip() for language in languages if str(language).strip()],
            keywords=_parse_int_list(data.get("keywords"), f"{label}: keywords"),
            active_profile_id=_parse_int(data.get("active_profile_id"), f"{label}: active_profile_id"),
            root_folder=str(data.get("root_folder") or ""),
            series_type=series_type,
            tags=None if tags is None else _parse_int_list(tags, f"{label}: tags"),
            minimum_availability=minimum_availability,
            is_fallback=_parse_bool(data.get("is_fallback")),
        )


@dataclass
class Settings:
    radarr: List[RadarrSettings] = field(default_factory=list)
    sonarr: List[SonarrSettings] = field(default_factory=list)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    metadata: MetadataSettings = field(default_factory=MetadataSettings)
    routing_rules: List[RoutingRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Settings":
        data = data or {}
        for kind in SERVER_KINDS:
            if not isinstance(data.get(kind) or [], list):
                raise SettingsError(f"{kind} must be a list of servers")

        radarr = [RadarrSettings.from_dict(entry) for entry in data.get("radarr") or []]
        sonarr = [SonarrSettings.from_dict(entry) for entry in data.get("sonarr") or []]

        for kind, servers in (("radarr", radarr), ("sonarr", sonarr)):
            seen = set()
            for server in servers:
                if server.id in seen:
                    raise SettingsError(f"{kind}: duplicate server id {server.id}")
                seen.add(server.id)

        if not isinstance(data.get("routing_rules") or [], list):
            raise SettingsError("routing_rules must be a list of rules")
        routing_rules = [RoutingRule.from_dict(entry) for entry in data.get("routing_rules") or []]
        known_ids = {"radarr": {s.id for s in radarr}, "sonarr": {s.id for s in sonarr}}
        for rule in routing_rules:
            if rule.target_service_id not in known_ids[rule.service_type]:
                raise SettingsError(
                    f"routing rule '{rule.name}' targets unknown {rule.service_type} server {rule.target_service_id}"
                )

        return cls(
            radarr=radarr,
            sonarr=sonarr,
            notifications=NotificationSettings.from_dict(data.get("notifications")),
            metadata=MetadataSettings.from_dict(data.get("metadata")),
            routing_rules=routing_rules,
        )

    def servers(self, kind: str) -> List[DVRSettings]:
        if kind not in SERVER_KINDS:
            raise ValueError(f"Unknown server kind: {kind}")
        return list(getattr(self, kind))

    def find_default_server(self, kind: str, is_4k: bool) -> Optional[DVRSettings]:
        """Return the default server of ``kind`` for the requested tier."""
        for server in self.servers(kind):
            if server.is_default and server.is_4k == is_4k:
                return server
        return None

    def find_server(self, kind: str, server_id: int) -> Optional[DVRSettings]:
        for server in self.servers(kind):
            if server.id == server_id:
                return server
        return None

    def rules_for(self, kind: str, is_4k: bool) -> List[RoutingRule]:
        """Rules of ``kind`` for the tier, highest priority first (ties keep file order)."""
        if kind not in SERVER_KINDS:
            raise ValueError(f"Unknown server kind: {kind}")
        rules = [rule for rule in self.routing_rules if rule.service_type == kind and rule.is_4k == is_4k]
        return sorted(rules, key=lambda rule: -rule.priority)


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Read settings.json (defaults to CONFIG_DIR/settings.json).

    A missing file yields empty settings; a malformed one raises SettingsError.
    """
    settings_path = Path(path) if path is not None else SETTINGS_FILE
    if not settings_path.exists():
        logger.info(f"No settings file at {settings_path}, using defaults")
        return Settings()

    try:
        with open(settings_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in {settings_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise SettingsError(f"{settings_path} must contain a JSON object")

    settings = Settings.from_dict(data)
    logger.info(
        "Loaded settings: %d radarr server(s), %d sonarr server(s)",
        len(settings.radarr),
        len(settings.sonarr),
    )
    return settings
