"""Tests for sending approved movie requests to Radarr."""

import os
import sqlite3
import tempfile
from concurrent.futures import Future

import pytest
import requests

from requestarr.config.settings import RadarrSettings, RoutingRule, Settings
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
from requestarr.fulfillment import base as base_module
from requestarr.fulfillment import build_coordinators, get_coordinator_classes
from requestarr.fulfillment.base import user_tag_label
from requestarr.fulfillment.movie import MovieCoordinator
from requestarr.fulfillment.series import SeriesCoordinator


class _ImmediateExecutor:
    def __init__(self):
        self.calls = []

    def submit(self, fn, *args, **kwargs):
        self.calls.append((fn, args, kwargs))
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class _FakeRadarr:
    def __init__(self, server):
        self.server = server
        self.tags = []
        self.created_tags = []
        self.added = []
        self.cleared = []
        self.add_error = None
        self.tag_error = None

    def get_tags(self):
        if self.tag_error:
            raise self.tag_error
        return list(self.tags)

    def create_tag(self, label):
        tag = {"id": 100 + len(self.created_tags), "label": label}
        self.created_tags.append(tag)
        return tag

    def add_movie(self, options):
        self.added.append(options)
        if self.add_error:
            raise self.add_error
        return {"id": 11, "titleSlug": "the-matrix-603"}

    def clear_cache(self, tmdb_id=None, external_id=None):
        self.cleared.append((tmdb_id, external_id))


class _FakeMetadata:
    def __init__(self):
        self.movie_calls = []

    def get_movie(self, movie_id):
        self.movie_calls.append(movie_id)
        return {"id": movie_id, "title": "The Matrix", "release_date": "1999-03-30"}


class _RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, event, request, media, *, error_message=None):
        self.calls.append((event, request, media, error_message))
        return True


def _radarr(server_id, **overrides):
    values = {
        "id": server_id,
        "name": f"Radarr {server_id}",
        "hostname": "localhost",
        "port": 7878,
        "api_key": "key",
        "active_profile_id": 4,
        "active_directory": "/movies",
        "tags": [1],
        "is_default": True,
    }
    values.update(overrides)
    return RadarrSettings(**values)


@pytest.fixture(autouse=True)
def immediate_dispatch(monkeypatch):
    executor = _ImmediateExecutor()
    monkeypatch.setattr(base_module, "_dispatch_executor", executor)
    return executor


@pytest.fixture
def media_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = MediaDB(os.path.join(tmpdir, "requestarr.db"))
        db.initialize()
        yield db


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def notifier():
    return _RecordingNotifier()


def _coordinator(media_db, clients, notifier, servers, rules=()):
    def factory(server):
        return clients.setdefault(server.id, _FakeRadarr(server))

    return MovieCoordinator(
        Settings(radarr=servers, routing_rules=list(rules)),
        media_db,
        _FakeMetadata(),
        notifier,
        client_factory=factory,
    )


def _approved_movie(media_db, **overrides):
    media = media_db.save_media(Media(media_type=MediaType.MOVIE, tmdb_id=603, status=MediaStatus.PROCESSING))
    values = {
        "media_id": media.id,
        "media_type": MediaType.MOVIE,
        "requested_by_id": 7,
        "requested_by_name": "Jane Doe",
        "status": MediaRequestStatus.APPROVED,
    }
    values.update(overrides)
    return media, media_db.save_request(MediaRequest(**values))


def test_send_adds_movie_with_default_server_options(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    media, request = _approved_movie(media_db)

    future = coordinator.send(request)

    assert future.result() == {"id": 11, "titleSlug": "the-matrix-603"}
    options = clients[0].added[0]
    assert options.title == "The Matrix"
    assert options.tmdb_id == 603
    assert options.year == 1999
    assert options.quality_profile_id == 4
    assert options.root_folder_path == "/movies"
    assert options.minimum_availability == "released"
    assert options.tags == [1]
    assert options.search_now is True

    stored_media = media_db.get_media(media.id)
    assert stored_media.service_id == 0
    assert stored_media.external_service_id == 11
    assert stored_media.external_service_slug == "the-matrix-603"
    stored_request = media_db.get_request(request.id)
    assert stored_request.dispatch_state == DispatchState.CONFIRMED
    assert stored_request.dispatched_at is not None
    assert clients[0].cleared == [(603, None)]


def test_send_ignores_requests_it_does_not_own(media_db, clients, notifier, immediate_dispatch):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    _, pending = _approved_movie(media_db, status=MediaRequestStatus.PENDING)
    series_request = pending.copy()
    series_request.media_type = MediaType.TV
    series_request.status = MediaRequestStatus.APPROVED

    assert coordinator.send(pending) is None
    assert coordinator.send(series_request) is None
    assert immediate_dispatch.calls == []


def test_request_overrides_take_precedence(media_db, clients, notifier):
    coordinator = _coordinator(
        media_db,
        clients,
        notifier,
        [_radarr(0), _radarr(3, is_default=False, active_profile_id=8, prevent_search=True)],
    )
    _, request = _approved_movie(media_db, server_id=3, profile_id=12, root_folder="/kids", tags=[5, 6])

    coordinator.send(request).result()

    options = clients[3].added[0]
    assert options.quality_profile_id == 12
    assert options.root_folder_path == "/kids"
    assert options.tags == [5, 6]
    assert options.search_now is False
    assert 0 not in clients


def test_unknown_override_server_is_a_no_op(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    _, request = _approved_movie(media_db, server_id=42)

    assert coordinator.send(request) is None
    assert clients == {}


def test_4k_request_uses_4k_server_and_fields(media_db, clients, notifier):
    coordinator = _coordinator(
        media_db,
        clients,
        notifier,
        [_radarr(0), _radarr(1, is_4k=True, active_directory="/movies-4k")],
    )
    media, request = _approved_movie(media_db, is_4k=True)

    coordinator.send(request).result()

    assert clients[1].added[0].root_folder_path == "/movies-4k"
    stored = media_db.get_media(media.id)
    assert stored.service_id_4k == 1
    assert stored.external_service_id_4k == 11
    assert stored.external_service_id is None


def test_missing_default_server_is_a_no_op(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0, is_default=False)])
    _, request = _approved_movie(media_db)

    assert coordinator.send(request) is None
    assert media_db.get_request(request.id).dispatch_state == DispatchState.NONE
    assert clients == {}


def test_missing_metadata_client_is_a_no_op(media_db, clients, notifier):
    coordinator = MovieCoordinator(Settings(radarr=[_radarr(0)]), media_db, None, notifier)
    _, request = _approved_movie(media_db)

    assert coordinator.send(request) is None


def test_already_available_media_is_not_sent(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    media, request = _approved_movie(media_db)
    media_db.update_media(media.id, status=MediaStatus.AVAILABLE)

    assert coordinator.send(request) is None
    assert clients[0].added == []
    stored = media_db.get_request(request.id)
    assert stored.status == MediaRequestStatus.APPROVED
    assert stored.dispatch_state == DispatchState.NONE


def test_add_failure_marks_request_failed_and_notifies(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    client = clients.setdefault(0, _FakeRadarr(_radarr(0)))
    client.add_error = requests.exceptions.ConnectionError("radarr unreachable")
    _, request = _approved_movie(media_db)

    assert coordinator.send(request).result() is None

    stored = media_db.get_request(request.id)
    assert stored.status == MediaRequestStatus.FAILED
    assert stored.dispatch_state == DispatchState.FAILED
    event, failed_request, _, error_message = notifier.calls[0]
    assert event == NotificationEvent.MEDIA_FAILED
    assert failed_request.id == request.id
    assert "radarr unreachable" in error_message
    assert client.cleared == [(603, None)]


def test_routing_rule_chooses_server_and_options(media_db, clients, notifier):
    rule = RoutingRule(
        name="Jane's movies",
        service_type="radarr",
        target_service_id=2,
        users=[7],
        active_profile_id=9,
        minimum_availability="announced",
        tags=[4],
    )
    coordinator = _coordinator(
        media_db,
        clients,
        notifier,
        [_radarr(0), _radarr(2, is_default=False, active_directory="/jane")],
        rules=[rule],
    )
    media, request = _approved_movie(media_db)

    coordinator.send(request).result()

    options = clients[2].added[0]
    assert options.quality_profile_id == 9
    assert options.root_folder_path == "/jane"
    assert options.minimum_availability == "announced"
    assert options.tags == [4]
    assert 0 not in clients
    assert media_db.get_media(media.id).service_id == 2


def test_request_overrides_beat_routing_rule(media_db, clients, notifier):
    rule = RoutingRule(name="Everyone", service_type="radarr", target_service_id=0, active_profile_id=9, root_folder="/rule")
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)], rules=[rule])
    _, request = _approved_movie(media_db, profile_id=12)

    coordinator.send(request).result()

    options = clients[0].added[0]
    assert options.quality_profile_id == 12
    assert options.root_folder_path == "/rule"


def test_second_send_after_availability_is_skipped(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    media, request = _approved_movie(media_db)
    coordinator.send(request).result()
    media_db.update_media(media.id, status=MediaStatus.AVAILABLE)

    assert coordinator.send(request) is None
    assert len(clients[0].added) == 1
    assert media_db.get_request(request.id).status == MediaRequestStatus.APPROVED


def test_already_available_restores_approved_status(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    media, stored = _approved_movie(media_db, status=MediaRequestStatus.PENDING)
    media_db.update_media(media.id, status=MediaStatus.AVAILABLE)
    snapshot = stored.copy()
    snapshot.status = MediaRequestStatus.APPROVED

    assert coordinator.send(snapshot) is None
    assert media_db.get_request(stored.id).status == MediaRequestStatus.APPROVED


class _RecordingLogger:
    def __init__(self):
        self.messages = []

    def _record(self, level, message, *args):
        self.messages.append((level, message % args if args else message))

    def debug(self, message, *args):
        self._record("debug", message, *args)

    def info(self, message, *args):
        self._record("info", message, *args)

    def warning(self, message, *args):
        self._record("warning", message, *args)

    def error(self, message, *args):
        self._record("error", message, *args)


def test_failed_bookkeeping_after_add_is_logged_separately(media_db, clients, notifier, monkeypatch):
    recorder = _RecordingLogger()
    monkeypatch.setattr(base_module, "logger", recorder)
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    media, request = _approved_movie(media_db)
    original_update_media = media_db.update_media

    def failing_update_media(media_id, **kwargs):
        if "external_service_id" in kwargs:
            raise sqlite3.OperationalError("database is locked")
        return original_update_media(media_id, **kwargs)

    monkeypatch.setattr(media_db, "update_media", failing_update_media)

    assert coordinator.send(request).result() is None

    assert len(clients[0].added) == 1
    errors = [message for level, message in recorder.messages if level == "error"]
    assert errors == ["Radarr 0 accepted request 1 as item 11, but recording it failed: database is locked"]
    stored = media_db.get_request(request.id)
    assert stored.status == MediaRequestStatus.FAILED
    assert "not recorded" in notifier.calls[0][3]


def test_rejected_add_is_logged_as_rejection(media_db, clients, notifier, monkeypatch):
    recorder = _RecordingLogger()
    monkeypatch.setattr(base_module, "logger", recorder)
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0)])
    clients.setdefault(0, _FakeRadarr(_radarr(0))).add_error = ValueError("bad payload")
    _, request = _approved_movie(media_db)

    coordinator.send(request).result()

    errors = [message for level, message in recorder.messages if level == "error"]
    assert errors == ["Radarr 0 rejected request 1: bad payload"]


def test_user_tag_label_strips_invalid_characters():
    assert user_tag_label(7, "Jane Doe!") == "7-janedoe"
    assert user_tag_label(3, None) == "3-"


def test_tag_requests_reuses_legacy_user_tag(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0, tag_requests=True)])
    client = clients.setdefault(0, _FakeRadarr(_radarr(0)))
    client.tags = [{"id": 40, "label": "7-jane"}, {"id": 41, "label": "7 - Jane Doe"}]
    _, request = _approved_movie(media_db)

    coordinator.send(request).result()

    assert client.added[0].tags == [1, 41]
    assert client.created_tags == []


def test_tag_requests_creates_missing_user_tag(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0, tag_requests=True)])
    client = clients.setdefault(0, _FakeRadarr(_radarr(0)))
    client.tags = [{"id": 40, "label": "17-someone"}]
    _, request = _approved_movie(media_db)

    coordinator.send(request).result()

    assert client.created_tags == [{"id": 100, "label": "7-janedoe"}]
    assert client.added[0].tags == [1, 100]


def test_tag_failure_does_not_block_dispatch(media_db, clients, notifier):
    coordinator = _coordinator(media_db, clients, notifier, [_radarr(0, tag_requests=True)])
    client = clients.setdefault(0, _FakeRadarr(_radarr(0)))
    client.tag_error = requests.exceptions.Timeout("slow")
    _, request = _approved_movie(media_db)

    coordinator.send(request).result()

    assert client.added[0].tags == [1]


def test_registry_builds_one_coordinator_per_media_type(media_db):
    classes = get_coordinator_classes()

    assert classes == {MediaType.MOVIE: MovieCoordinator, MediaType.TV: SeriesCoordinator}
    coordinators = build_coordinators(Settings(), media_db, None)
    assert {type(coordinator) for coordinator in coordinators} == {MovieCoordinator, SeriesCoordinator}
