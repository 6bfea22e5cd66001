"""Data structures shared by the repository, reconciler and coordinators."""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MediaType(str, Enum):
    """Target type of a request and its media."""
    MOVIE = "movie"
    TV = "tv"


class MediaRequestStatus(str, Enum):
    """Lifecycle status of a media request."""
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    FAILED = "failed"
    COMPLETED = "completed"


class MediaStatus(str, Enum):
    """Per-tier availability of a media item or season."""
    UNKNOWN = "unknown"
    PENDING = "pending"
    PROCESSING = "processing"
    PARTIALLY_AVAILABLE = "partially_available"
    AVAILABLE = "available"
    DELETED = "deleted"


class DispatchState(str, Enum):
    """Whether the add-media call for an approved request went through."""
    NONE = "none"
    DISPATCHED = "dispatched"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def tier_label(is_4k: bool) -> str:
    return "4K " if is_4k else ""


@dataclass
class Season:
    season_number: int
    status: MediaStatus = MediaStatus.UNKNOWN
    status_4k: MediaStatus = MediaStatus.UNKNOWN
    id: Optional[int] = None
    media_id: Optional[int] = None

    def tier_status(self, is_4k: bool) -> MediaStatus:
        return self.status_4k if is_4k else self.status

    def set_tier_status(self, is_4k: bool, status: MediaStatus) -> None:
        if is_4k:
            self.status_4k = status
        else:
            self.status = status


@dataclass
class Media:
    """A movie or series tracked across both quality tiers."""
    media_type: MediaType
    tmdb_id: int
    tvdb_id: Optional[int] = None
    id: Optional[int] = None

    status: MediaStatus = MediaStatus.UNKNOWN
    status_4k: MediaStatus = MediaStatus.UNKNOWN

    # Acquisition service linkage, one set per tier
    service_id: Optional[int] = None
    service_id_4k: Optional[int] = None
    external_service_id: Optional[int] = None
    external_service_id_4k: Optional[int] = None
    external_service_slug: Optional[str] = None
    external_service_slug_4k: Optional[str] = None

    seasons: List[Season] = field(default_factory=list)

    def tier_status(self, is_4k: bool) -> MediaStatus:
        return self.status_4k if is_4k else self.status

    def set_tier_status(self, is_4k: bool, status: MediaStatus) -> None:
        if is_4k:
            self.status_4k = status
        else:
            self.status = status

    def external_service_id_for(self, is_4k: bool) -> Optional[int]:
        return self.external_service_id_4k if is_4k else self.external_service_id

    @staticmethod
    def external_linkage(
        is_4k: bool,
        *,
        service_id: Optional[int],
        external_id: Optional[int],
        slug: Optional[str],
    ) -> Dict[str, Any]:
        """Column values linking one tier to its acquisition-service item."""
        suffix = "_4k" if is_4k else ""
        return {
            f"service_id{suffix}": service_id,
            f"external_service_id{suffix}": external_id,
            f"external_service_slug{suffix}": slug,
        }

    def season(self, season_number: int) -> Optional[Season]:
        for season in self.seasons:
            if season.season_number == season_number:
                return season
        return None

    def copy(self) -> "Media":
        return copy.deepcopy(self)


@dataclass
class SeasonRequest:
    season_number: int
    status: MediaRequestStatus = MediaRequestStatus.PENDING
    id: Optional[int] = None
    request_id: Optional[int] = None


@dataclass
class MediaRequest:
    """A user's request for one tier of a media item."""
    media_id: int
    media_type: MediaType
    requested_by_id: int
    requested_by_name: str = ""
    is_4k: bool = False
    status: MediaRequestStatus = MediaRequestStatus.PENDING
    id: Optional[int] = None

    # Per-request overrides of the destination server defaults
    server_id: Optional[int] = None
    profile_id: Optional[int] = None
    root_folder: Optional[str] = None
    language_profile_id: Optional[int] = None
    tags: Optional[List[int]] = None

    seasons: List[SeasonRequest] = field(default_factory=list)

    dispatch_state: DispatchState = DispatchState.NONE
    dispatched_at: Optional[float] = None
    available_notified: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def season_numbers(self) -> List[int]:
        return [season.season_number for season in self.seasons]

    def copy(self) -> "MediaRequest":
        return copy.deepcopy(self)
