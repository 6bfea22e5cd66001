"""SQLite repository for media, seasons, requests and season requests."""

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from requestarr.config.env import DB_FILE
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
from requestarr.core.utils import now_timestamp

logger = setup_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS media (
    id                        INTEGER PRIMARY KEY AUTOINCREMENT,
    media_type                TEXT NOT NULL,
    tmdb_id                   INTEGER NOT NULL,
    tvdb_id                   INTEGER,
    status                    TEXT NOT NULL DEFAULT 'unknown',
    status_4k                 TEXT NOT NULL DEFAULT 'unknown',
    service_id                INTEGER,
    service_id_4k             INTEGER,
    external_service_id       INTEGER,
    external_service_id_4k    INTEGER,
    external_service_slug     TEXT,
    external_service_slug_4k  TEXT,
    created_at                TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at                TIMESTAMP,
    UNIQUE(media_type, tmdb_id)
);

CREATE TABLE IF NOT EXISTS seasons (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id      INTEGER NOT NULL REFERENCES media(id) ON DELETE CASCADE,
    season_number INTEGER NOT NULL,
    status        TEXT NOT NULL DEFAULT 'unknown',
    status_4k     TEXT NOT NULL DEFAULT 'unknown',
    UNIQUE(media_id, season_number)
);

CREATE TABLE IF NOT EXISTS media_requests (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id             INTEGER NOT NULL REFERENCES media(id) ON DELETE CASCADE,
    media_type           TEXT NOT NULL,
    is_4k                INTEGER NOT NULL DEFAULT 0,
    status               TEXT NOT NULL DEFAULT 'pending',
    requested_by_id      INTEGER NOT NULL,
    requested_by_name    TEXT NOT NULL DEFAULT '',
    server_id            INTEGER,
    profile_id           INTEGER,
    root_folder          TEXT,
    language_profile_id  INTEGER,
    tags                 TEXT,
    dispatch_state       TEXT NOT NULL DEFAULT 'none',
    dispatched_at        REAL,
    available_notified   INTEGER NOT NULL DEFAULT 0,
    created_at           TIMESTAMP,
    updated_at           TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_media_requests_media_tier_status
ON media_requests (media_id, is_4k, status);

CREATE INDEX IF NOT EXISTS idx_media_requests_dispatch
ON media_requests (status, dispatch_state);

CREATE TABLE IF NOT EXISTS season_requests (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id    INTEGER NOT NULL REFERENCES media_requests(id) ON DELETE CASCADE,
    season_number INTEGER NOT NULL,
    status        TEXT NOT NULL DEFAULT 'pending',
    UNIQUE(request_id, season_number)
);
"""


def get_media_db_path(config_dir: Optional[str] = None) -> str:
    """Return the configured media database path."""
    if config_dir:
        return os.path.join(config_dir, "db", "requestarr.db")
    return str(DB_FILE)


class MediaDB:
    """Thread-safe SQLite store for the request/media entity graph."""

    _MEDIA_UPDATE_COLUMNS = {
        "tvdb_id",
        "status",
        "status_4k",
        "service_id",
        "service_id_4k",
        "external_service_id",
        "external_service_id_4k",
        "external_service_slug",
        "external_service_slug_4k",
    }

    _REQUEST_UPDATE_COLUMNS = {
        "status",
        "server_id",
        "profile_id",
        "root_folder",
        "language_profile_id",
        "tags",
        "dispatch_state",
        "dispatched_at",
        "available_notified",
    }

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                conn.commit()
                # WAL mode must be changed outside an open transaction.
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_season(row: sqlite3.Row) -> Season:
        return Season(
            id=row["id"],
            media_id=row["media_id"],
            season_number=row["season_number"],
            status=MediaStatus(row["status"]),
            status_4k=MediaStatus(row["status_4k"]),
        )

    def _load_media(self, conn: sqlite3.Connection, row: Optional[sqlite3.Row]) -> Optional[Media]:
        if row is None:
            return None
        season_rows = conn.execute(
            "SELECT * FROM seasons WHERE media_id = ? ORDER BY season_number",
            (row["id"],),
        ).fetchall()
        return Media(
            id=row["id"],
            media_type=MediaType(row["media_type"]),
            tmdb_id=row["tmdb_id"],
            tvdb_id=row["tvdb_id"],
            status=MediaStatus(row["status"]),
            status_4k=MediaStatus(row["status_4k"]),
            service_id=row["service_id"],
            service_id_4k=row["service_id_4k"],
            external_service_id=row["external_service_id"],
            external_service_id_4k=row["external_service_id_4k"],
            external_service_slug=row["external_service_slug"],
            external_service_slug_4k=row["external_service_slug_4k"],
            seasons=[self._row_to_season(season_row) for season_row in season_rows],
        )

    @staticmethod
    def _parse_tags(raw_value: Optional[str]) -> Optional[List[int]]:
        if raw_value is None:
            return None
        try:
            parsed = json.loads(raw_value)
        except (ValueError, TypeError):
            return None
        return [int(tag) for tag in parsed] if isinstance(parsed, list) else None

    def _load_request(self, conn: sqlite3.Connection, row: Optional[sqlite3.Row]) -> Optional[MediaRequest]:
        if row is None:
            return None
        season_rows = conn.execute(
            "SELECT * FROM season_requests WHERE request_id = ? ORDER BY season_number",
            (row["id"],),
        ).fetchall()
        return MediaRequest(
            id=row["id"],
            media_id=row["media_id"],
            media_type=MediaType(row["media_type"]),
            is_4k=bool(row["is_4k"]),
            status=MediaRequestStatus(row["status"]),
            requested_by_id=row["requested_by_id"],
            requested_by_name=row["requested_by_name"] or "",
            server_id=row["server_id"],
            profile_id=row["profile_id"],
            root_folder=row["root_folder"],
            language_profile_id=row["language_profile_id"],
            tags=self._parse_tags(row["tags"]),
            dispatch_state=DispatchState(row["dispatch_state"]),
            dispatched_at=row["dispatched_at"],
            available_notified=bool(row["available_notified"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            seasons=[
                SeasonRequest(
                    id=season_row["id"],
                    request_id=season_row["request_id"],
                    season_number=season_row["season_number"],
                    status=MediaRequestStatus(season_row["status"]),
                )
                for season_row in season_rows
            ],
        )

    @staticmethod
    def _serialize_tags(tags: Optional[List[int]]) -> Optional[str]:
        if tags is None:
            return None
        return json.dumps([int(tag) for tag in tags])

    @staticmethod
    def _enum_value(value: Any) -> Any:
        return value.value if hasattr(value, "value") else value

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def get_media(self, media_id: int) -> Optional[Media]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
            return self._load_media(conn, row)
        finally:
            conn.close()

    def get_media_by_tmdb_id(self, tmdb_id: int, media_type: MediaType) -> Optional[Media]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM media WHERE tmdb_id = ? AND media_type = ?",
                (tmdb_id, MediaType(media_type).value),
            ).fetchone()
            return self._load_media(conn, row)
        finally:
            conn.close()

    def save_media(self, media: Media) -> Media:
        """Insert or update a media row and its seasons; returns the stored record."""
        values = (
            media.tvdb_id,
            MediaStatus(media.status).value,
            MediaStatus(media.status_4k).value,
            media.service_id,
            media.service_id_4k,
            media.external_service_id,
            media.external_service_id_4k,
            media.external_service_slug,
            media.external_service_slug_4k,
        )
        with self._lock:
            conn = self._connect()
            try:
                if media.id is None:
                    cursor = conn.execute(
                        """
                        INSERT INTO media (
                            media_type,
                            tmdb_id,
                            tvdb_id,
                            status,
                            status_4k,
                            service_id,
                            service_id_4k,
                            external_service_id,
                            external_service_id_4k,
                            external_service_slug,
                            external_service_slug_4k,
                            updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (MediaType(media.media_type).value, media.tmdb_id) + values + (now_timestamp(),),
                    )
                    media_id = cursor.lastrowid
                else:
                    media_id = media.id
                    cursor = conn.execute(
                        """
                        UPDATE media SET
                            tvdb_id = ?,
                            status = ?,
                            status_4k = ?,
                            service_id = ?,
                            service_id_4k = ?,
                            external_service_id = ?,
                            external_service_id_4k = ?,
                            external_service_slug = ?,
                            external_service_slug_4k = ?,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        values + (now_timestamp(), media_id),
                    )
                    if cursor.rowcount == 0:
                        raise ValueError(f"Media {media_id} not found")

                for season in media.seasons:
                    conn.execute(
                        """
                        INSERT INTO seasons (media_id, season_number, status, status_4k)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(media_id, season_number) DO UPDATE SET
                            status = excluded.status,
                            status_4k = excluded.status_4k
                        """,
                        (
                            media_id,
                            season.season_number,
                            MediaStatus(season.status).value,
                            MediaStatus(season.status_4k).value,
                        ),
                    )
                conn.commit()

                row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
                stored = self._load_media(conn, row)
                if stored is None:
                    raise ValueError(f"Media {media_id} not found after save")
                return stored
            finally:
                conn.close()

    def update_media(self, media_id: int, **kwargs) -> Media:
        """Update individual media columns without touching the rest of the row."""
        for key in kwargs:
            if key not in self._MEDIA_UPDATE_COLUMNS:
                raise ValueError(f"Invalid media column: {key}")

        with self._lock:
            conn = self._connect()
            try:
                if kwargs:
                    updates = {key: self._enum_value(value) for key, value in kwargs.items()}
                    updates["updated_at"] = now_timestamp()
                    set_clause = ", ".join(f"{column} = ?" for column in updates)
                    conn.execute(
                        f"UPDATE media SET {set_clause} WHERE id = ?",
                        list(updates.values()) + [media_id],
                    )
                    conn.commit()
                row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
                stored = self._load_media(conn, row)
                if stored is None:
                    raise ValueError(f"Media {media_id} not found")
                return stored
            finally:
                conn.close()

    def remove_media(self, media_id: int) -> bool:
        """Delete a media row; seasons and requests cascade."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def get_request(self, request_id: int) -> Optional[MediaRequest]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM media_requests WHERE id = ?", (request_id,)).fetchone()
            return self._load_request(conn, row)
        finally:
            conn.close()

    def list_requests(
        self,
        *,
        media_id: Optional[int] = None,
        status: Optional[MediaRequestStatus] = None,
        is_4k: Optional[bool] = None,
        dispatch_state: Optional[DispatchState] = None,
        requested_by_id: Optional[int] = None,
    ) -> List[MediaRequest]:
        """List requests with optional filters, oldest first."""
        where_clauses: List[str] = []
        params: List[Any] = []

        if media_id is not None:
            where_clauses.append("media_id = ?")
            params.append(media_id)
        if status is not None:
            where_clauses.append("status = ?")
            params.append(MediaRequestStatus(status).value)
        if is_4k is not None:
            where_clauses.append("is_4k = ?")
            params.append(1 if is_4k else 0)
        if dispatch_state is not None:
            where_clauses.append("dispatch_state = ?")
            params.append(DispatchState(dispatch_state).value)
        if requested_by_id is not None:
            where_clauses.append("requested_by_id = ?")
            params.append(requested_by_id)

        query = "SELECT * FROM media_requests"
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += " ORDER BY id ASC"

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            results: List[MediaRequest] = []
            for row in rows:
                parsed = self._load_request(conn, row)
                if parsed is not None:
                    results.append(parsed)
            return results
        finally:
            conn.close()

    def save_request(self, request: MediaRequest) -> MediaRequest:
        """Insert or update a request and its season requests."""
        timestamp = now_timestamp()
        values = (
            MediaRequestStatus(request.status).value,
            request.server_id,
            request.profile_id,
            request.root_folder,
            request.language_profile_id,
            self._serialize_tags(request.tags),
            DispatchState(request.dispatch_state).value,
            request.dispatched_at,
            1 if request.available_notified else 0,
        )
        with self._lock:
            conn = self._connect()
            try:
                if request.id is None:
                    cursor = conn.execute(
                        """
                        INSERT INTO media_requests (
                            media_id,
                            media_type,
                            is_4k,
                            requested_by_id,
                            requested_by_name,
                            status,
                            server_id,
                            profile_id,
                            root_folder,
                            language_profile_id,
                            tags,
                            dispatch_state,
                            dispatched_at,
                            available_notified,
                            created_at,
                            updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            request.media_id,
                            MediaType(request.media_type).value,
                            1 if request.is_4k else 0,
                            request.requested_by_id,
                            request.requested_by_name or "",
                        )
                        + values
                        + (request.created_at or timestamp, timestamp),
                    )
                    request_id = cursor.lastrowid
                else:
                    request_id = request.id
                    cursor = conn.execute(
                        """
                        UPDATE media_requests SET
                            status = ?,
                            server_id = ?,
                            profile_id = ?,
                            root_folder = ?,
                            language_profile_id = ?,
                            tags = ?,
                            dispatch_state = ?,
                            dispatched_at = ?,
                            available_notified = ?,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        values + (timestamp, request_id),
                    )
                    if cursor.rowcount == 0:
                        raise ValueError(f"Request {request_id} not found")

                wanted = [season.season_number for season in request.seasons]
                for season in request.seasons:
                    conn.execute(
                        """
                        INSERT INTO season_requests (request_id, season_number, status)
                        VALUES (?, ?, ?)
                        ON CONFLICT(request_id, season_number) DO UPDATE SET
                            status = excluded.status
                        """,
                        (request_id, season.season_number, MediaRequestStatus(season.status).value),
                    )
                if wanted:
                    placeholders = ", ".join("?" for _ in wanted)
                    conn.execute(
                        f"DELETE FROM season_requests WHERE request_id = ? AND season_number NOT IN ({placeholders})",
                        [request_id] + wanted,
                    )
                else:
                    conn.execute("DELETE FROM season_requests WHERE request_id = ?", (request_id,))
                conn.commit()

                row = conn.execute("SELECT * FROM media_requests WHERE id = ?", (request_id,)).fetchone()
                stored = self._load_request(conn, row)
                if stored is None:
                    raise ValueError(f"Request {request_id} not found after save")
                return stored
            finally:
                conn.close()

    def update_request(self, request_id: int, **kwargs) -> MediaRequest:
        """Update individual request columns and return the updated record."""
        for key in kwargs:
            if key not in self._REQUEST_UPDATE_COLUMNS:
                raise ValueError(f"Invalid request column: {key}")

        with self._lock:
            conn = self._connect()
            try:
                if kwargs:
                    updates: Dict[str, Any] = {}
                    for key, value in kwargs.items():
                        if key == "tags":
                            updates[key] = self._serialize_tags(value)
                        elif key == "available_notified":
                            updates[key] = 1 if value else 0
                        else:
                            updates[key] = self._enum_value(value)
                    updates["updated_at"] = now_timestamp()
                    set_clause = ", ".join(f"{column} = ?" for column in updates)
                    conn.execute(
                        f"UPDATE media_requests SET {set_clause} WHERE id = ?",
                        list(updates.values()) + [request_id],
                    )
                    conn.commit()

                row = conn.execute("SELECT * FROM media_requests WHERE id = ?", (request_id,)).fetchone()
                stored = self._load_request(conn, row)
                if stored is None:
                    raise ValueError(f"Request {request_id} not found")
                return stored
            finally:
                conn.close()

    def set_season_request_status(
        self,
        request_id: int,
        status: MediaRequestStatus,
        season_numbers: Optional[List[int]] = None,
    ) -> int:
        """Set the status of a request's season requests (all, or only ``season_numbers``)."""
        query = "UPDATE season_requests SET status = ? WHERE request_id = ?"
        params: List[Any] = [MediaRequestStatus(status).value, request_id]
        if season_numbers is not None:
            if not season_numbers:
                return 0
            placeholders = ", ".join("?" for _ in season_numbers)
            query += f" AND season_number IN ({placeholders})"
            params.extend(season_numbers)

        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

    def remove_request(self, request_id: int) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM media_requests WHERE id = ?", (request_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()
