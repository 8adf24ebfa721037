"""Embedded key-value store backing the offline cache.

Values are JSON documents addressed by ``(namespace, key)`` in a single
SQLite file. One connection is shared by request handlers and background
threads, so every statement runs under a lock.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator
import json
import logging
import sqlite3
import threading

log = logging.getLogger(__name__)

__all__ = ["LocalStore", "LocalStoreError"]


class LocalStoreError(Exception):
    """Raised when the local store cannot be read or written."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
)
"""


class LocalStore:
    def __init__(self, path: Path | str = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.execute(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Unable to open local store at {self.path}: {exc}") from exc

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall()
                self._conn.commit()
            except sqlite3.Error as exc:
                raise LocalStoreError(str(exc)) from exc
        return rows

    def put(self, namespace: str, key: str, value: Any) -> None:
        payload = json.dumps(value, default=str)
        self._execute(
            "INSERT INTO kv (namespace, key, value) VALUES (?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value",
            (namespace, key, payload),
        )

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        rows = self._execute("SELECT value FROM kv WHERE namespace = ? AND key = ?", (namespace, key))
        if not rows:
            return default
        try:
            return json.loads(rows[0][0])
        except ValueError:
            log.warning("Corrupt local entry %s/%s", namespace, key)
            return default

    def contains(self, namespace: str, key: str) -> bool:
        rows = self._execute("SELECT 1 FROM kv WHERE namespace = ? AND key = ?", (namespace, key))
        return bool(rows)

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            existed = self.contains(namespace, key)
            self._execute("DELETE FROM kv WHERE namespace = ? AND key = ?", (namespace, key))
        return existed

    def keys(self, namespace: str, prefix: str | None = None) -> list[str]:
        if prefix:
            # substr comparison avoids LIKE wildcards in ids such as "a_b".
            rows = self._execute(
                "SELECT key FROM kv WHERE namespace = ? AND substr(key, 1, ?) = ? ORDER BY rowid",
                (namespace, len(prefix), prefix),
            )
        else:
            rows = self._execute("SELECT key FROM kv WHERE namespace = ? ORDER BY rowid", (namespace,))
        return [row[0] for row in rows]

    def items(self, namespace: str, prefix: str | None = None) -> Iterator[tuple[str, Any]]:
        if prefix:
            rows = self._execute(
                "SELECT key, value FROM kv WHERE namespace = ? AND substr(key, 1, ?) = ? ORDER BY rowid",
                (namespace, len(prefix), prefix),
            )
        else:
            rows = self._execute("SELECT key, value FROM kv WHERE namespace = ? ORDER BY rowid", (namespace,))
        for key, raw in rows:
            try:
                yield key, json.loads(raw)
            except ValueError:
                log.warning("Skipping corrupt local entry %s/%s", namespace, key)

    def count(self, namespace: str) -> int:
        rows = self._execute("SELECT COUNT(*) FROM kv WHERE namespace = ?", (namespace,))
        return int(rows[0][0]) if rows else 0

    def clear(self, namespace: str | None = None) -> None:
        if namespace is None:
            self._execute("DELETE FROM kv")
        else:
            self._execute("DELETE FROM kv WHERE namespace = ?", (namespace,))

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                log.warning("Error closing local store: %s", exc)
