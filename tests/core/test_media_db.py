"""Tests for the SQLite media/request repository."""

import os
import tempfile

import pytest

from requestarr.core.media_db import MediaDB, get_media_db_path
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


@pytest.fixture
def media_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = MediaDB(os.path.join(tmpdir, "db", "requestarr.db"))
        db.initialize()
        yield db


def _series(media_db, *season_numbers):
    return media_db.save_media(Media(
        media_type=MediaType.TV,
        tmdb_id=95396,
        tvdb_id=371980,
        seasons=[Season(season_number=number) for number in season_numbers],
    ))


def test_get_media_db_path_uses_config_dir():
    assert get_media_db_path("/data") == os.path.join("/data", "db", "requestarr.db")


def test_save_media_inserts_and_loads_seasons(media_db):
    media = _series(media_db, 2, 1)

    assert media.id is not None
    assert [season.season_number for season in media.seasons] == [1, 2]
    assert media_db.get_media_by_tmdb_id(95396, MediaType.TV).id == media.id
    assert media_db.get_media_by_tmdb_id(95396, MediaType.MOVIE) is None


def test_save_media_updates_row_and_upserts_seasons(media_db):
    media = _series(media_db, 1)
    media.status = MediaStatus.PARTIALLY_AVAILABLE
    media.seasons[0].status = MediaStatus.AVAILABLE
    media.seasons.append(Season(season_number=2, status_4k=MediaStatus.PROCESSING))

    saved = media_db.save_media(media)

    assert saved.status == MediaStatus.PARTIALLY_AVAILABLE
    assert saved.season(1).status == MediaStatus.AVAILABLE
    assert saved.season(2).status_4k == MediaStatus.PROCESSING


def test_update_media_changes_only_given_columns(media_db):
    media = _series(media_db, 1)

    updated = media_db.update_media(media.id, status_4k=MediaStatus.PROCESSING, external_service_id_4k=21)

    assert updated.status == MediaStatus.UNKNOWN
    assert updated.status_4k == MediaStatus.PROCESSING
    assert updated.external_service_id_for(True) == 21
    assert updated.tvdb_id == 371980


def test_update_media_rejects_unknown_columns(media_db):
    media = _series(media_db, 1)

    with pytest.raises(ValueError, match="Invalid media column"):
        media_db.update_media(media.id, tmdb_id=1)


def test_save_request_round_trips_fields(media_db):
    media = _series(media_db, 1, 2)

    saved = media_db.save_request(MediaRequest(
        media_id=media.id,
        media_type=MediaType.TV,
        requested_by_id=7,
        requested_by_name="jane",
        is_4k=True,
        tags=[3, 4],
        server_id=2,
        seasons=[SeasonRequest(season_number=1), SeasonRequest(season_number=2)],
    ))

    loaded = media_db.get_request(saved.id)
    assert loaded.is_4k is True
    assert loaded.tags == [3, 4]
    assert loaded.server_id == 2
    assert loaded.season_numbers == [1, 2]
    assert loaded.dispatch_state == DispatchState.NONE
    assert loaded.available_notified is False
    assert loaded.created_at is not None


def test_save_request_drops_removed_season_requests(media_db):
    media = _series(media_db, 1, 2)
    saved = media_db.save_request(MediaRequest(
        media_id=media.id,
        media_type=MediaType.TV,
        requested_by_id=7,
        seasons=[SeasonRequest(season_number=1), SeasonRequest(season_number=2)],
    ))

    saved.seasons = [season for season in saved.seasons if season.season_number == 2]
    updated = media_db.save_request(saved)

    assert updated.season_numbers == [2]


def test_update_request_serializes_special_columns(media_db):
    media = _series(media_db, 1)
    saved = media_db.save_request(MediaRequest(media_id=media.id, media_type=MediaType.TV, requested_by_id=7))

    updated = media_db.update_request(
        saved.id,
        status=MediaRequestStatus.APPROVED,
        dispatch_state=DispatchState.DISPATCHED,
        dispatched_at=1234.5,
        tags=[9],
        available_notified=True,
    )

    assert updated.status == MediaRequestStatus.APPROVED
    assert updated.dispatch_state == DispatchState.DISPATCHED
    assert updated.dispatched_at == 1234.5
    assert updated.tags == [9]
    assert updated.available_notified is True


def test_update_request_rejects_unknown_columns(media_db):
    media = _series(media_db, 1)
    saved = media_db.save_request(MediaRequest(media_id=media.id, media_type=MediaType.TV, requested_by_id=7))

    with pytest.raises(ValueError, match="Invalid request column"):
        media_db.update_request(saved.id, media_id=99)


def test_set_season_request_status_limits_to_given_seasons(media_db):
    media = _series(media_db, 1, 2)
    saved = media_db.save_request(MediaRequest(
        media_id=media.id,
        media_type=MediaType.TV,
        requested_by_id=7,
        seasons=[SeasonRequest(season_number=1), SeasonRequest(season_number=2)],
    ))

    assert media_db.set_season_request_status(saved.id, MediaRequestStatus.COMPLETED, [2]) == 1
    assert media_db.set_season_request_status(saved.id, MediaRequestStatus.COMPLETED, []) == 0

    statuses = {season.season_number: season.status for season in media_db.get_request(saved.id).seasons}
    assert statuses == {1: MediaRequestStatus.PENDING, 2: MediaRequestStatus.COMPLETED}


def test_list_requests_filters(media_db):
    media = _series(media_db, 1)
    first = media_db.save_request(MediaRequest(media_id=media.id, media_type=MediaType.TV, requested_by_id=7))
    media_db.save_request(MediaRequest(
        media_id=media.id,
        media_type=MediaType.TV,
        requested_by_id=8,
        is_4k=True,
        status=MediaRequestStatus.APPROVED,
    ))

    assert [r.id for r in media_db.list_requests(media_id=media.id)][0] == first.id
    assert len(media_db.list_requests(is_4k=True)) == 1
    assert len(media_db.list_requests(status=MediaRequestStatus.PENDING)) == 1
    assert len(media_db.list_requests(requested_by_id=8)) == 1
    assert media_db.list_requests(dispatch_state=DispatchState.DISPATCHED) == []


def test_remove_media_cascades_to_requests(media_db):
    media = _series(media_db, 1)
    saved = media_db.save_request(MediaRequest(
        media_id=media.id,
        media_type=MediaType.TV,
        requested_by_id=7,
        seasons=[SeasonRequest(season_number=1)],
    ))

    assert media_db.remove_media(media.id) is True
    assert media_db.get_request(saved.id) is None
    assert media_db.remove_media(media.id) is False


def test_remove_request(media_db):
    media = _series(media_db, 1)
    saved = media_db.save_request(MediaRequest(media_id=media.id, media_type=MediaType.TV, requested_by_id=7))

    assert media_db.remove_request(saved.id) is True
    assert media_db.get_request(saved.id) is None
