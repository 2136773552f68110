"""
Persistent Key-Value Store
==========================

Durable get/set store for identity and session state, backed by SQLite.

Properties:
- Values are JSON-encoded (str, int, float, bool, list, dict, None)
- Lazily created on first use, survives process restarts
- Multi-key writes run in one transaction: a process killed mid-write
  leaves either the old record or the new one, never a mix
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Final, Iterable, Mapping, Optional


# Persisted state keys
UID: Final[str] = "uid"
FINGERPRINT: Final[str] = "fingerprint"
FINGERPRINT_SOURCE_COUNT: Final[str] = "fingerprint_source_count"
PREVIOUS_UID: Final[str] = "previous_uid"
AUTH_TOKEN: Final[str] = "auth_token"
USER_INFO: Final[str] = "user_info"
DEVICE_INFO: Final[str] = "device_info"
API_BASE_URL: Final[str] = "api_base_url"
RANDOM_DEVICE_ID: Final[str] = "random_device_id"

_MISSING: Final[object] = object()


class StoreError(Exception):
    """Raised when the backing database cannot be read or written."""
    pass


class KeyValueStore:
    """
    JSON key-value store on a single SQLite table.

    Usage:
        store = KeyValueStore(config.paths.state_db)
        store.set(UID, "3f2a...")
        store.set_many({UID: uid, FINGERPRINT: fp, FINGERPRINT_SOURCE_COUNT: 3})
        uid = store.get(UID)

    A fresh connection is opened per operation so the store can be shared
    across threads; a process-local lock serializes writers.
    """

    __slots__ = ("_db_path", "_write_lock", "_initialized")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS kv (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path | str) -> None:
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file (created on first use)
        """
        self._db_path = Path(db_path)
        self._write_lock = threading.Lock()
        self._initialized = False

    @property
    def path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        if not self._initialized:
            self.initialize_db()
        return sqlite3.connect(self._db_path, timeout=10)

    def initialize_db(self) -> None:
        """Create the database file and schema if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(self._SCHEMA)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot initialize state store at {self._db_path}: {e}") from e
        self._initialized = True

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for key, or default when absent."""
        try:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot read {key!r}: {e}") from e

        if row is None:
            return default
        return json.loads(row[0])

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any], remove: Iterable[str] = ()) -> None:
        """
        Write several keys, and optionally remove others, in one transaction.

        Args:
            values: Keys to insert or replace
            remove: Keys to delete in the same transaction

        Raises:
            StoreError: If the write fails (nothing is written)
            TypeError: If a value is not JSON serializable
        """
        encoded = [(key, json.dumps(value)) for key, value in values.items()]
        self._write(upserts=encoded, deletes=[(key,) for key in remove])

    def delete(self, *keys: str) -> None:
        """Remove keys; missing keys are ignored."""
        self._write(deletes=[(key,) for key in keys])

    def _write(self, upserts: Iterable[tuple] = (), deletes: Iterable[tuple] = ()) -> None:
        with self._write_lock:
            try:
                conn = self._get_connection()
                try:
                    with conn:
                        conn.executemany(
                            "INSERT INTO kv (key, value) VALUES (?, ?) "
                            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                            upserts,
                        )
                        conn.executemany("DELETE FROM kv WHERE key = ?", deletes)
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise StoreError(f"Cannot write state store: {e}") from e

    def snapshot(self, keys: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """Return a dict of all stored values, or only the given keys."""
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute("SELECT key, value FROM kv").fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot read state store: {e}") from e

        data = {key: json.loads(value) for key, value in rows}
        if keys is None:
            return data
        wanted = set(keys)
        return {key: value for key, value in data.items() if key in wanted}

    def __repr__(self) -> str:
        return f"KeyValueStore(path={str(self._db_path)!r})"
