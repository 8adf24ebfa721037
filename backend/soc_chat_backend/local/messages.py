"""Local-only archive of chat messages.

Messages are copied here before the cleanup sweep removes them from
Firestore, so a device keeps its history after the cloud copy expires.
Entries are addressed by :class:`LocalMessageKey` (chat, message, user).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
import json
import logging
import sqlite3

from .store import LocalStore, LocalStoreError

log = logging.getLogger(__name__)

__all__ = ["LocalMessageKey", "LocalMessageStorage", "parse_timestamp"]

_LOCAL_MESSAGE_MAX_AGE = timedelta(days=30)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS local_messages (
        chat_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        stored_at TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (chat_id, message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS local_chats (
        chat_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
)


@dataclass(frozen=True, slots=True)
class LocalMessageKey:
    chat_id: str
    message_id: str
    user_id: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of the timestamp shapes found in message documents."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        return to_datetime(tz=timezone.utc)
    if isinstance(value, (int, float)):
        # Millisecond epoch values come from the mobile clients.
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class LocalMessageStorage:
    def __init__(self, store: LocalStore, *, clock: Callable[[], datetime] = _now) -> None:
        self.store = store
        self.clock = clock
        with store.lock:
            for statement in _SCHEMA:
                store.connection.execute(statement)
            store.connection.commit()

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        with self.store.lock:
            try:
                rows = self.store.connection.execute(sql, params).fetchall()
                self.store.connection.commit()
            except sqlite3.Error as exc:
                raise LocalStoreError(str(exc)) from exc
        return rows

    def store_message(self, key: LocalMessageKey, message_data: dict[str, Any]) -> dict[str, Any]:
        stored_at = self.clock().isoformat()
        local_data = {
            **message_data,
            "messageId": message_data.get("messageId") or key.message_id,
            "chatId": message_data.get("chatId") or key.chat_id,
            "storedAt": stored_at,
            "userId": key.user_id,
            "isLocal": True,
        }
        self._query(
            "INSERT INTO local_messages (chat_id, message_id, user_id, stored_at, data) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(chat_id, message_id, user_id) DO UPDATE SET "
            "stored_at = excluded.stored_at, data = excluded.data",
            (key.chat_id, key.message_id, key.user_id, stored_at, json.dumps(local_data, default=str)),
        )
        log.debug("Message stored locally: %s", key)
        return local_data

    def get_local_message(self, key: LocalMessageKey) -> Optional[dict[str, Any]]:
        rows = self._query(
            "SELECT data FROM local_messages WHERE chat_id = ? AND message_id = ? AND user_id = ?",
            (key.chat_id, key.message_id, key.user_id),
        )
        if not rows:
            return None
        return json.loads(rows[0][0])

    def get_local_messages(self, chat_id: str, user_id: str | None = None) -> list[dict[str, Any]]:
        if user_id is None:
            rows = self._query("SELECT data FROM local_messages WHERE chat_id = ?", (chat_id,))
        else:
            rows = self._query(
                "SELECT data FROM local_messages WHERE chat_id = ? AND user_id = ?",
                (chat_id, user_id),
            )

        messages = []
        for (raw,) in rows:
            try:
                messages.append(json.loads(raw))
            except ValueError:
                log.warning("Skipping corrupt local message in chat %s", chat_id)

        far_future = datetime.max.replace(tzinfo=timezone.utc)
        messages.sort(key=lambda item: parse_timestamp(item.get("timestamp")) or far_future)
        return messages

    def _update_flags(self, key: LocalMessageKey, updates: dict[str, Any]) -> bool:
        with self.store.lock:
            current = self.get_local_message(key)
            if current is None:
                return False
            current.update(updates)
            self._query(
                "UPDATE local_messages SET data = ? WHERE chat_id = ? AND message_id = ? AND user_id = ?",
                (json.dumps(current, default=str), key.chat_id, key.message_id, key.user_id),
            )
        return True

    def mark_delivered(self, key: LocalMessageKey) -> bool:
        return self._update_flags(key, {"deliveredAt": self.clock().isoformat(), "isDelivered": True})

    def mark_read(self, key: LocalMessageKey) -> bool:
        return self._update_flags(key, {"readAt": self.clock().isoformat(), "isRead": True})

    def store_chat(self, chat_id: str, user_id: str, chat_data: dict[str, Any]) -> None:
        payload = {**chat_data, "storedAt": self.clock().isoformat(), "userId": user_id}
        self._query(
            "INSERT INTO local_chats (chat_id, user_id, data) VALUES (?, ?, ?) "
            "ON CONFLICT(chat_id, user_id) DO UPDATE SET data = excluded.data",
            (chat_id, user_id, json.dumps(payload, default=str)),
        )

    def get_local_chat(self, chat_id: str, user_id: str) -> Optional[dict[str, Any]]:
        rows = self._query(
            "SELECT data FROM local_chats WHERE chat_id = ? AND user_id = ?",
            (chat_id, user_id),
        )
        return json.loads(rows[0][0]) if rows else None

    def cleanup_old_messages(self, max_age: timedelta = _LOCAL_MESSAGE_MAX_AGE) -> int:
        cutoff = self.clock() - max_age
        rows = self._query("SELECT chat_id, message_id, user_id, stored_at FROM local_messages")
        stale = []
        for chat_id, message_id, user_id, stored_at in rows:
            stored = parse_timestamp(stored_at)
            # Unparseable rows are dropped along with expired ones.
            if stored is None or stored < cutoff:
                stale.append((chat_id, message_id, user_id))

        for params in stale:
            self._query(
                "DELETE FROM local_messages WHERE chat_id = ? AND message_id = ? AND user_id = ?",
                params,
            )

        log.info("Cleaned up %d old local messages", len(stale))
        return len(stale)

    def get_storage_stats(self) -> dict[str, int]:
        messages = self._query("SELECT COUNT(*) FROM local_messages")[0][0]
        chats = self._query("SELECT COUNT(*) FROM local_chats")[0][0]
        return {"totalMessages": int(messages), "totalChats": int(chats)}

    def clear_all(self) -> None:
        self._query("DELETE FROM local_messages")
        self._query("DELETE FROM local_chats")
        log.info("All local message data cleared")
