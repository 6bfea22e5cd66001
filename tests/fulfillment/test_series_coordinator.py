"""Tests for sending approved series requests to Sonarr."""

import os
import tempfile
from concurrent.futures import Future

import pytest

from requestarr.api.themoviedb import ANIME_KEYWORD_ID
from requestarr.config.settings import RoutingRule, Settings, SonarrSettings
from requestarr.core.media_db import MediaDB
from requestarr.core.models import (
    DispatchState,
    Media,
    MediaRequest,
    MediaRequestStatus,
    MediaType,
    SeasonRequest,
)
from requestarr.fulfillment import base as base_module
from requestarr.fulfillment.base import UnrecoverableMappingError
from requestarr.fulfillment.series import SeriesCoordinator


class _ImmediateExecutor:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


class _FakeSonarr:
    def __init__(self):
        self.added = []
        self.cleared = []

    def get_tags(self):
        return []

    def create_tag(self, label):
        return {"id": 50, "label": label}

    def add_series(self, options):
        self.added.append(options)
        return {"id": 21, "titleSlug": "severance"}

    def clear_cache(self, tvdb_id=None, external_id=None, title=None):
        self.cleared.append((tvdb_id, external_id, title))


class _FakeMetadata:
    def __init__(self, show):
        self.show = show

    def get_tv_show(self, tv_id):
        return dict(self.show, id=tv_id)


def _show(tvdb_id=371980, anime=False):
    keywords = [{"id": 9840, "name": "workplace"}]
    if anime:
        keywords.append({"id": ANIME_KEYWORD_ID, "name": "anime"})
    return {
        "name": "Severance",
        "first_air_date": "2022-02-18",
        "external_ids": {"tvdb_id": tvdb_id},
        "keywords": {"results": keywords},
    }


def _sonarr(**overrides):
    values = {
        "id": 0,
        "name": "Sonarr",
        "hostname": "localhost",
        "port": 8989,
        "api_key": "key",
        "active_profile_id": 6,
        "active_directory": "/tv",
        "active_language_profile_id": 1,
        "tags": [2],
        "is_default": True,
        "active_anime_profile_id": 9,
        "active_anime_directory": "/anime",
        "active_anime_language_profile_id": 3,
        "anime_tags": [8],
    }
    values.update(overrides)
    return SonarrSettings(**values)


@pytest.fixture(autouse=True)
def immediate_dispatch(monkeypatch):
    monkeypatch.setattr(base_module, "_dispatch_executor", _ImmediateExecutor())


@pytest.fixture
def media_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = MediaDB(os.path.join(tmpdir, "requestarr.db"))
        db.initialize()
        yield db


@pytest.fixture
def sonarr():
    return _FakeSonarr()


def _coordinator(media_db, sonarr, show, server=None, rules=()):
    return SeriesCoordinator(
        Settings(sonarr=[server or _sonarr()], routing_rules=list(rules)),
        media_db,
        _FakeMetadata(show),
        client_factory=lambda _server: sonarr,
    )


def _approved_series(media_db, tvdb_id=None, **overrides):
    media = media_db.save_media(Media(media_type=MediaType.TV, tmdb_id=95396, tvdb_id=tvdb_id))
    values = {
        "media_id": media.id,
        "media_type": MediaType.TV,
        "requested_by_id": 7,
        "status": MediaRequestStatus.APPROVED,
        "seasons": [
            SeasonRequest(season_number=1, status=MediaRequestStatus.APPROVED),
            SeasonRequest(season_number=2, status=MediaRequestStatus.APPROVED),
        ],
    }
    values.update(overrides)
    return media, media_db.save_request(MediaRequest(**values))


def test_send_adds_standard_series(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show())
    media, request = _approved_series(media_db)

    coordinator.send(request).result()

    options = sonarr.added[0]
    assert options.title == "Severance"
    assert options.tvdb_id == 371980
    assert options.seasons == [1, 2]
    assert options.quality_profile_id == 6
    assert options.root_folder_path == "/tv"
    assert options.language_profile_id == 1
    assert options.series_type == "standard"
    assert options.tags == [2]
    assert options.season_folder is True

    stored = media_db.get_media(media.id)
    assert stored.external_service_id == 21
    assert stored.external_service_slug == "severance"
    assert media_db.get_request(request.id).dispatch_state == DispatchState.CONFIRMED
    assert sonarr.cleared == [(371980, None, "Severance")]


def test_anime_series_uses_anime_defaults(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show(anime=True))
    _, request = _approved_series(media_db)

    coordinator.send(request).result()

    options = sonarr.added[0]
    assert options.series_type == "anime"
    assert options.quality_profile_id == 9
    assert options.root_folder_path == "/anime"
    assert options.language_profile_id == 3
    assert options.tags == [8]


def test_anime_without_anime_directory_keeps_default_directory(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show(anime=True), _sonarr(active_anime_directory=""))
    _, request = _approved_series(media_db)

    coordinator.send(request).result()

    assert sonarr.added[0].root_folder_path == "/tv"


def test_request_overrides_apply_after_anime_defaults(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show(anime=True))
    _, request = _approved_series(
        media_db,
        profile_id=12,
        root_folder="/kids",
        language_profile_id=4,
        tags=[],
    )

    coordinator.send(request).result()

    options = sonarr.added[0]
    assert options.quality_profile_id == 12
    assert options.root_folder_path == "/kids"
    assert options.language_profile_id == 4
    assert options.tags == []
    assert options.series_type == "anime"


def test_tvdb_id_falls_back_to_media_record(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show(tvdb_id=None))
    _, request = _approved_series(media_db, tvdb_id=4242)

    coordinator.send(request).result()

    assert sonarr.added[0].tvdb_id == 4242


def test_missing_tvdb_id_removes_request_and_media(media_db, sonarr):
    coordinator = _coordinator(media_db, sonarr, _show(tvdb_id=None))
    media, request = _approved_series(media_db)

    with pytest.raises(UnrecoverableMappingError, match="TVDB ID not found"):
        coordinator.send(request)

    assert media_db.get_request(request.id) is None
    assert media_db.get_media(media.id) is None
    assert sonarr.added == []


def test_routing_rule_overlays_series_options(media_db, sonarr):
    rule = RoutingRule(
        name="Daily shows",
        service_type="sonarr",
        target_service_id=0,
        keywords=[9840],
        series_type="daily",
        root_folder="/daily",
        tags=[],
    )
    coordinator = _coordinator(media_db, sonarr, _show(), rules=[rule])
    _, request = _approved_series(media_db)

    coordinator.send(request).result()

    options = sonarr.added[0]
    assert options.series_type == "daily"
    assert options.root_folder_path == "/daily"
    assert options.quality_profile_id == 6
    assert options.tags == []


def test_anime_series_ignore_rules_without_anime_keyword(media_db, sonarr):
    rule = RoutingRule(
        name="Workplace",
        service_type="sonarr",
        target_service_id=0,
        keywords=[9840],
        series_type="standard",
        root_folder="/office",
    )
    coordinator = _coordinator(media_db, sonarr, _show(anime=True), rules=[rule])
    _, request = _approved_series(media_db)

    coordinator.send(request).result()

    options = sonarr.added[0]
    assert options.series_type == "anime"
    assert options.root_folder_path == "/anime"
