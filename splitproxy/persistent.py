"""Bucket/key persistent storage backed by an SQLite database file."""

from __future__ import annotations

import dataclasses
import json
import logging
import sqlite3
import struct
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

BOLT_IN_MEMORY_MODE = ":memory:"
_IN_MEMORY_DB_NAME = "splitio_"

_logger = logging.getLogger(__name__)

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS buckets ("
    " name TEXT PRIMARY KEY,"
    " sequence INTEGER NOT NULL DEFAULT 0)",
    "CREATE TABLE IF NOT EXISTS items ("
    " bucket TEXT NOT NULL,"
    " key BLOB NOT NULL,"
    " value BLOB NOT NULL,"
    " PRIMARY KEY (bucket, key))",
)


class BucketNotFoundError(LookupError):
    """Raised when the requested bucket does not exist."""

    def __init__(self, message: str = "Bucket not found") -> None:
        super().__init__(message)


class KeyNotFoundError(LookupError):
    """Raised when the requested key does not exist within a bucket."""

    def __init__(self, message: str = "key not found") -> None:
        super().__init__(message)


def itob(value: int) -> bytes:
    """Return the 8-byte big endian representation of an unsigned integer."""
    return struct.pack(">Q", value)


def btoi(data: bytes) -> int:
    """Return the unsigned integer held in an 8-byte big endian buffer."""
    return struct.unpack(">Q", data)[0]


class DBWrapper:
    """A database file holding named buckets of byte keys and values."""

    def __init__(self, path: str | Path, *, temporary: bool = False) -> None:
        self.path = Path(path)
        self._temporary = temporary
        self._mutex = threading.RLock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._mutex, self._conn:
            yield self._conn

    def close(self) -> None:
        """Close the database, deleting it if it was a temporary one."""
        with self._mutex:
            self._conn.close()
            if self._temporary:
                self.path.unlink(missing_ok=True)

    def get_raw_snapshot(self) -> bytes:
        """Dump the whole contents of the database into a byte string."""
        with self._mutex:
            return "\n".join(self._conn.iterdump()).encode("utf-8")

    def __enter__(self) -> DBWrapper:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def open_db(path: str | Path) -> DBWrapper:
    """Open (or create) a database; ``:memory:`` gives a temporary file."""
    temporary = str(path) == BOLT_IN_MEMORY_MODE
    if temporary:
        path = Path(tempfile.gettempdir()) / f"{_IN_MEMORY_DB_NAME}_{time.time_ns()}.db"
    try:
        return DBWrapper(path, temporary=temporary)
    except sqlite3.Error as exc:
        raise OSError(f"error opening db: {exc}") from exc


def _as_key(key: str | bytes) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else bytes(key)


def _encode(item: Any) -> bytes:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item)
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        item = dataclasses.asdict(item)
    return json.dumps(item).encode("utf-8")


class CollectionWrapper:
    """A named bucket within a database."""

    def __init__(self, db: DBWrapper, name: str, logger: logging.Logger | None = None) -> None:
        self.db = db
        self.name = name
        self.logger = logger or _logger

    def _ensure_bucket(self, conn: sqlite3.Connection) -> None:
        conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (self.name,))

    def _require_bucket(self, conn: sqlite3.Connection) -> None:
        row = conn.execute("SELECT 1 FROM buckets WHERE name = ?", (self.name,)).fetchone()
        if row is None:
            raise BucketNotFoundError()

    def _put(self, conn: sqlite3.Connection, key: bytes, value: bytes) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO items (bucket, key, value) VALUES (?, ?, ?)",
            (self.name, key, value),
        )

    def delete(self, key: str | bytes) -> None:
        """Remove the item stored under ``key``."""
        with self.db._transaction() as conn:
            self._ensure_bucket(conn)
            conn.execute(
                "DELETE FROM items WHERE bucket = ? AND key = ?", (self.name, _as_key(key))
            )

    def save_as(self, key: str | bytes, item: Any) -> None:
        """Store ``item`` under ``key``, replacing any previous value."""
        with self.db._transaction() as conn:
            self._ensure_bucket(conn)
            self._put(conn, _as_key(key), _encode(item))

    def save(self, item: Any) -> int:
        """Store ``item`` under a freshly allocated sequential id and return it."""
        try:
            with self.db._transaction() as conn:
                self._ensure_bucket(conn)
                conn.execute(
                    "UPDATE buckets SET sequence = sequence + 1 WHERE name = ?", (self.name,)
                )
                (item_id,) = conn.execute(
                    "SELECT sequence FROM buckets WHERE name = ?", (self.name,)
                ).fetchone()
                item.id = item_id
                self._put(conn, itob(item_id), _encode(item))
        except sqlite3.Error as exc:
            self.logger.error("%s", exc)
            raise
        return item_id

    def update(self, item: Any) -> None:
        """Store ``item`` again under its existing id."""
        if not item.id > 0:
            self.logger.error("Trying to update an item with ID 0")
            raise ValueError("Invalid ID, it must be grater than zero")
        try:
            with self.db._transaction() as conn:
                self._ensure_bucket(conn)
                self._put(conn, itob(item.id), _encode(item))
        except sqlite3.Error as exc:
            self.logger.error("%s", exc)
            raise

    def _get(self, key: bytes) -> bytes:
        with self.db._transaction() as conn:
            self._require_bucket(conn)
            row = conn.execute(
                "SELECT value FROM items WHERE bucket = ? AND key = ?", (self.name, key)
            ).fetchone()
        if row is None:
            raise KeyNotFoundError()
        return bytes(row[0])

    def fetch(self, item_id: int) -> bytes:
        """Return the raw value stored under a sequential id."""
        return self._get(itob(item_id))

    def fetch_by(self, key: str | bytes) -> bytes:
        """Return the raw value stored under ``key``."""
        return self._get(_as_key(key))

    def fetch_all(self) -> list[bytes]:
        """Return every raw value in the bucket, ordered by key."""
        with self.db._transaction() as conn:
            self._require_bucket(conn)
            rows = conn.execute(
                "SELECT value FROM items WHERE bucket = ? ORDER BY key", (self.name,)
            ).fetchall()
        return [bytes(value) for (value,) in rows]