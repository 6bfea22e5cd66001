"""Shared Radarr/Sonarr (v3 API) client behaviour."""

from typing import Any, Dict, List, Optional

import requests

from requestarr.api.external import ExternalAPI
from requestarr.config.settings import DVRSettings
from requestarr.core.cache import CacheStore
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)


class ServarrBase(ExternalAPI):
    """Common tag and command endpoints plus URL building."""

    api_name = "Servarr"

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        cache: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            url,
            {"apikey": api_key},
            cache=cache,
            session=session,
        )

    @classmethod
    def from_settings(
        cls,
        settings: DVRSettings,
        *,
        cache: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
    ) -> "ServarrBase":
        return cls(cls.build_url(settings, "/api/v3"), settings.api_key, cache=cache, session=session)

    @staticmethod
    def build_url(settings: DVRSettings, path: str = "") -> str:
        """Base URL for a configured server, e.g. http://host:7878/radarr/api/v3."""
        scheme = "https" if settings.use_ssl else "http"
        return f"{scheme}://{settings.hostname}:{settings.port}{settings.base_url}{path}"

    def get_tags(self) -> List[Dict[str, Any]]:
        # Uncached: tags are read right before a create that must see them.
        data = self._fetch("GET", "/tag")
        return list(data or [])

    def create_tag(self, label: str) -> Dict[str, Any]:
        logger.info(f"Creating {self.api_name} tag '{label}'")
        return self._fetch("POST", "/tag", json_data={"label": label}) or {}

    def run_command(self, name: str, **options: Any) -> Optional[Dict[str, Any]]:
        """Queue a command (e.g. MoviesSearch). Failures are logged, not raised."""
        logger.info(f"Executing {self.api_name} command {name}")
        try:
            return self._fetch("POST", "/command", json_data={"name": name, **options})
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.api_name} command {name} failed: {e}")
            return None
