"""SQLite Database Storage Module for Activity Recorder.

This module provides the record store shared by every capture loop. It owns
the persisted rows for the five record kinds and a key/value settings table,
and exposes a small CRUD surface keyed by ``RecordKind``.

Database Schema:
    screenshots:       id, timestamp, path, text_description, metadata
    audio_recordings:  id, timestamp, path, duration, transcript, metadata
    web_history:       id, timestamp, url, title, duration, metadata
    app_usage:         id, timestamp, app_name, window_title, start_time,
                       end_time, duration, metadata
    ai_insights:       id, timestamp, content, type, metadata
    settings:          key, value, updated_at

All time columns hold UTC epoch seconds (REAL) and are returned as aware UTC
datetimes. ``metadata`` and setting values are JSON text.

Key Features:
- Automatic schema initialization with timestamp indexes
- WAL journal so readers never block the capture loops' appends
- Process-level write lock so concurrent loops serialize their commits
- Last-write-wins upsert for settings

Example:
    >>> storage = ActivityStorage()
    >>> shot = storage.create(RecordKind.SCREENSHOT, {
    ...     "path": "/path/to/screenshot.webp",
    ...     "metadata": {"width": 1920, "height": 1080},
    ... })
    >>> storage.find(RecordKind.SCREENSHOT, start, end)
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import NotFound, StorageFailure
from .models import RECORD_TYPES, Record, RecordKind, to_jsonable

logger = logging.getLogger(__name__)

# table name, writable columns (id is always store-assigned)
_TABLES = {
    RecordKind.SCREENSHOT: ("screenshots", ("timestamp", "path", "text_description", "metadata")),
    RecordKind.AUDIO: ("audio_recordings", ("timestamp", "path", "duration", "transcript", "metadata")),
    RecordKind.WEB: ("web_history", ("timestamp", "url", "title", "duration", "metadata")),
    RecordKind.APP: ("app_usage", ("timestamp", "app_name", "window_title", "start_time",
                                   "end_time", "duration", "metadata")),
    RecordKind.INSIGHT: ("ai_insights", ("timestamp", "content", "type", "metadata")),
}

_DATETIME_COLUMNS = {"timestamp", "start_time", "end_time"}

KindLike = Union[RecordKind, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS:
        if isinstance(value, datetime):
            return value.timestamp()
        return float(value)
    if column == "metadata":
        return json.dumps(to_jsonable(value or {}))
    return value


def _decode(column: str, value: Any) -> Any:
    if column in _DATETIME_COLUMNS:
        return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None
    if column == "metadata":
        if not value:
            return {}
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Discarding unparseable metadata: {value[:80]!r}")
            return {}
    return value


class ActivityStorage:
    """SQLite record store for Activity Recorder.

    One connection is opened per operation (sqlite3 connections are not
    shared between threads); writes additionally take a process-level lock so
    that the capture loops, the AI worker and API callers never interleave
    commits.

    Attributes:
        db_path (str): Absolute path to the SQLite database file
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """Initialize ActivityStorage and ensure the schema exists.

        Args:
            db_path: Path to SQLite database file. If None, uses
                ~/activity-recorder-data/activity.db

        Raises:
            StorageFailure: If the data directory or database cannot be created
        """
        if db_path is None:
            db_path = Path.home() / "activity-recorder-data" / "activity.db"
        db_path = Path(db_path).expanduser()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create data directory {db_path.parent}: {e}") from e

        self.db_path = str(db_path)
        self._write_lock = threading.RLock()
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite database connections.

        Yields:
            sqlite3.Connection: Connection with Row factory enabled

        Raises:
            StorageFailure: If the database cannot be opened or a statement fails
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Database error for {self.db_path}: {e}") from e

    def init_db(self):
        """Create tables and indexes if they do not exist yet."""
        with self._write_lock, self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS screenshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    path TEXT NOT NULL,
                    text_description TEXT,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audio_recordings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    path TEXT NOT NULL,
                    duration REAL NOT NULL DEFAULT 0,
                    transcript TEXT,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS web_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT,
                    duration INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS app_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    app_name TEXT NOT NULL,
                    window_title TEXT,
                    start_time REAL NOT NULL,
                    end_time REAL,
                    duration INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ai_insights (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    content TEXT NOT NULL,
                    type TEXT NOT NULL,
                    metadata TEXT
                )
            """)

            for table, _ in _TABLES.values():
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_timestamp ON {table}(timestamp)"
                )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            conn.commit()

    # =========================================================================
    # Record CRUD
    # =========================================================================

    def create(self, kind: KindLike, fields: Dict[str, Any]) -> Record:
        """Insert a new record and return it with its store-assigned id.

        Args:
            kind: Record kind (enum or its string value)
            fields: Column values. ``timestamp`` defaults to now (UTC); for
                app usage it defaults to ``start_time``.

        Returns:
            The persisted record.

        Raises:
            ValueError: If ``fields`` contains unknown columns
            StorageFailure: If the insert fails
        """
        kind = RecordKind.parse(kind)
        table, columns = _TABLES[kind]
        values = self._validated(kind, fields)
        if values.get("timestamp") is None:
            values["timestamp"] = values.get("start_time") or _utcnow()
        if "metadata" not in values:
            values["metadata"] = {}

        names = [c for c in columns if c in values]
        placeholders = ", ".join("?" for _ in names)
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                [_encode(c, values[c]) for c in names],
            )
            conn.commit()
            record_id = cursor.lastrowid

        record = self.find_by_id(kind, record_id)
        if record is None:
            raise StorageFailure(f"{kind.value} {record_id} vanished after insert")
        return record

    def find(
        self,
        kind: KindLike,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Query records of one kind whose timestamp falls in ``[start, end]``.

        Args:
            kind: Record kind
            start: Inclusive lower bound (None = unbounded)
            end: Inclusive upper bound (None = unbounded)
            descending: Newest first when True (ties broken by id)
            limit: Maximum rows to return

        Returns:
            List of records.
        """
        kind = RecordKind.parse(kind)
        table, _ = _TABLES[kind]
        clauses, params = self._range_clause(start, end)
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {table}{clauses} ORDER BY timestamp {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(kind, row) for row in rows]

    def find_by_id(self, kind: KindLike, record_id: int) -> Optional[Record]:
        """Fetch a single record, or None if it does not exist."""
        kind = RecordKind.parse(kind)
        table, _ = _TABLES[kind]
        with self.get_connection() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(kind, row) if row else None

    def count(
        self,
        kind: KindLike,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Number of records of one kind whose timestamp falls in ``[start, end]``."""
        kind = RecordKind.parse(kind)
        table, _ = _TABLES[kind]
        clauses, params = self._range_clause(start, end)
        with self.get_connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}{clauses}", params).fetchone()[0]

    def update(self, kind: KindLike, record_id: int, fields: Dict[str, Any]) -> Record:
        """Overwrite the given columns of an existing record.

        Raises:
            NotFound: If no record has this id
            ValueError: If ``fields`` contains unknown columns
        """
        kind = RecordKind.parse(kind)
        table, columns = _TABLES[kind]
        values = self._validated(kind, fields)
        if values:
            names = [c for c in columns if c in values]
            assignments = ", ".join(f"{c} = ?" for c in names)
            with self._write_lock, self.get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    [_encode(c, values[c]) for c in names] + [record_id],
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise NotFound(kind.value, record_id)

        record = self.find_by_id(kind, record_id)
        if record is None:
            raise NotFound(kind.value, record_id)
        return record

    def delete(self, kind: KindLike, record_id: int) -> bool:
        """Delete one record. Returns False if it did not exist."""
        kind = RecordKind.parse(kind)
        table, _ = _TABLES[kind]
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_where(
        self,
        kind: KindLike,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Delete every record whose timestamp falls in ``[start, end]``.

        Returns:
            Number of rows deleted.
        """
        kind = RecordKind.parse(kind)
        table, _ = _TABLES[kind]
        clauses, params = self._range_clause(start, end)
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {table}{clauses}", params)
            conn.commit()
            return cursor.rowcount

    # =========================================================================
    # Settings
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the JSON-decoded value stored under ``key``."""
        with self.get_connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            return row["value"]

    def set_setting(self, key: str, value: Any) -> None:
        """Upsert a setting; the last write wins."""
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO settings(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(to_jsonable(value)), _utcnow().timestamp()),
            )
            conn.commit()

    def all_settings(self) -> Dict[str, Any]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        settings = {}
        for row in rows:
            try:
                settings[row["key"]] = json.loads(row["value"])
            except ValueError:
                settings[row["key"]] = row["value"]
        return settings

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _validated(kind: RecordKind, fields: Dict[str, Any]) -> Dict[str, Any]:
        _, columns = _TABLES[kind]
        unknown = set(fields) - set(columns)
        if unknown:
            raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")
        return dict(fields)

    @staticmethod
    def _range_clause(start: Optional[datetime], end: Optional[datetime]):
        clauses = []
        params: List[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(_encode("timestamp", start))
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(_encode("timestamp", end))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_record(kind: RecordKind, row: sqlite3.Row) -> Record:
        record_type = RECORD_TYPES[kind]
        values = {key: _decode(key, row[key]) for key in row.keys()}
        return record_type(**values)
