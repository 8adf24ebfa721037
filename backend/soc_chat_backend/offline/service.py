from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional
import json
import logging
import threading
import uuid

from google.api_core import exceptions as google_exceptions

from ..chats import chat_members
from ..firebase import get_firestore_client, get_storage_bucket
from ..local.messages import parse_timestamp
from ..local.store import LocalStore
from ..storage import upload_bytes

log = logging.getLogger(__name__)

__all__ = [
    "OfflineError",
    "OfflineMedia",
    "OfflinePermissionError",
    "OfflineService",
    "SyncError",
    "SyncQueueItem",
    "SYNC_ACTIONS",
]

MESSAGES_NS = "offline_messages"
USERS_NS = "offline_users"
CHATS_NS = "offline_chats"
MEDIA_NS = "offline_media"
SYNC_QUEUE_NS = "sync_queue"
SETTINGS_NS = "offline_settings"

SYNC_ACTIONS = ("message", "user_update", "chat_update", "media_upload")

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BACKOFF = timedelta(seconds=30)


class OfflineError(Exception):
    """Base exception for offline cache operations."""


class SyncError(OfflineError):
    """Raised when a queued action cannot be pushed to Firebase."""


class OfflinePermissionError(OfflineError):
    """Raised when a user acts on a chat they are not a member of."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncQueueItem:
    id: str
    action_type: str
    data: dict[str, Any]
    timestamp: str
    retry_count: int = 0
    max_retries: int = _DEFAULT_MAX_RETRIES
    next_attempt_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actionType": self.action_type,
            "data": self.data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "nextAttemptAt": self.next_attempt_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncQueueItem":
        return cls(
            id=str(payload["id"]),
            action_type=str(payload.get("actionType", "")),
            data=dict(payload.get("data") or {}),
            timestamp=str(payload.get("timestamp", "")),
            retry_count=int(payload.get("retryCount") or 0),
            max_retries=int(payload.get("maxRetries") or _DEFAULT_MAX_RETRIES),
            next_attempt_at=payload.get("nextAttemptAt"),
        )

    def is_due(self, now: datetime) -> bool:
        if not self.next_attempt_at:
            return True
        try:
            due_at = datetime.fromisoformat(self.next_attempt_at)
        except ValueError:
            return True
        return due_at <= now


@dataclass(slots=True)
class OfflineMedia:
    file_name: str
    file_path: str
    file_type: str
    file_size: int
    saved_at: str
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "filePath": self.file_path,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "savedAt": self.saved_at,
            **self.extra,
        }


class OfflineService:
    """Local cache of chat data plus the queue of writes awaiting connectivity."""

    def __init__(
        self,
        store: LocalStore,
        media_dir: Path,
        *,
        db: Any = None,
        bucket: Any = None,
        clock: Callable[[], datetime] = _now,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        backoff: timedelta = _DEFAULT_BACKOFF,
    ) -> None:
        self.store = store
        self.media_dir = Path(media_dir)
        self._db = db
        self._bucket = bucket
        self.clock = clock
        self.max_retries = max_retries
        self.backoff = backoff
        self.is_online = True
        self._sync_lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []
        self._listeners_lock = threading.Lock()

    @property
    def db(self):
        if self._db is None:
            self._db = get_firestore_client()
        return self._db

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = get_storage_bucket()
        return self._bucket

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def _millis_id(self) -> str:
        return str(int(self.clock().timestamp() * 1000))

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def add_connectivity_listener(self, listener: Callable[[bool], None]) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_connectivity_listener(self, listener: Callable[[bool], None]) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_online(self, online: bool) -> bool:
        """Record the reachability status; returns True when it changed."""

        was_online = self.is_online
        self.is_online = online
        if was_online == online:
            return False

        log.info("Connectivity changed: %s", "online" if online else "offline")
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(online)
            except Exception as exc:
                log.error("Error notifying connectivity listener: %s", exc)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def save_message_offline(self, message: dict[str, Any]) -> dict[str, Any]:
        chat_id = message.get("chatId")
        if not chat_id:
            raise OfflineError("chatId is required to save a message offline")

        payload = dict(message)
        payload["messageId"] = str(payload.get("messageId") or self._millis_id())
        message_id = payload["messageId"]
        self.store.put(MESSAGES_NS, _message_key(chat_id, message_id), payload)
        self.enqueue("message", payload)
        log.info("Message saved offline: %s", message_id)
        return payload

    def get_offline_messages(self, chat_id: str) -> list[dict[str, Any]]:
        messages = [
            value
            for _, value in self.store.items(MESSAGES_NS, prefix=_chat_prefix(chat_id))
            if isinstance(value, dict)
        ]
        messages.sort(key=lambda item: _sortable_timestamp(item.get("timestamp")))
        return messages

    def delete_offline_message(self, chat_id: str, message_id: str) -> bool:
        removed = self.store.delete(MESSAGES_NS, _message_key(chat_id, message_id))
        if removed:
            log.info("Offline message deleted: %s", message_id)
        return removed

    # ------------------------------------------------------------------
    # Users and chats
    # ------------------------------------------------------------------

    def cache_user(self, user: dict[str, Any]) -> None:
        user_id = user.get("userId")
        if not user_id:
            raise OfflineError("userId is required to cache a user")
        self.store.put(USERS_NS, str(user_id), dict(user))

    def get_cached_user(self, user_id: str) -> Optional[dict[str, Any]]:
        return self.store.get(USERS_NS, user_id)

    def get_all_cached_users(self) -> list[dict[str, Any]]:
        return [value for _, value in self.store.items(USERS_NS)]

    def search_cached_users(self, query: str) -> list[dict[str, Any]]:
        needle = (query or "").strip().lower()
        results = []
        for user in self.get_all_cached_users():
            name = str(user.get("displayName") or "").lower()
            email = str(user.get("email") or "").lower()
            if needle in name or needle in email:
                results.append(user)
        return results

    def cache_chat(self, chat: dict[str, Any]) -> None:
        chat_id = chat.get("chatId")
        if not chat_id:
            raise OfflineError("chatId is required to cache a chat")
        self.store.put(CHATS_NS, str(chat_id), dict(chat))

    def get_cached_chat(self, chat_id: str) -> Optional[dict[str, Any]]:
        return self.store.get(CHATS_NS, chat_id)

    def get_all_cached_chats(self) -> list[dict[str, Any]]:
        return [value for _, value in self.store.items(CHATS_NS)]

    def ensure_chat_member(self, chat_id: str, uid: str) -> None:
        """Reject users who are not in the chat's member list.

        Firestore answers while online; the cached chat answers offline or
        when Firestore cannot be reached.
        """

        members: Optional[list[str]] = None
        if self.is_online:
            try:
                members = chat_members(self.db, chat_id)
            except google_exceptions.GoogleAPICallError as exc:
                log.warning("Could not load members of chat %s: %s", chat_id, exc)
        if members is None:
            cached = self.get_cached_chat(chat_id) or {}
            members = list(cached.get("members") or [])
        if not uid or uid not in members:
            raise OfflinePermissionError(f"User '{uid}' is not a member of chat '{chat_id}'.")

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def save_media_offline(self, data: bytes, file_name: str, file_type: str) -> str:
        safe_name = Path(file_name or "").name
        if not safe_name:
            raise OfflineError("file_name is required")

        self.media_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.media_dir / safe_name
        try:
            file_path.write_bytes(data)
        except OSError as exc:
            raise OfflineError(f"Unable to write offline media '{safe_name}': {exc}") from exc

        record = OfflineMedia(
            file_name=safe_name,
            file_path=str(file_path),
            file_type=file_type,
            file_size=len(data),
            saved_at=self.clock().isoformat(),
        )
        self.store.put(MEDIA_NS, safe_name, record.to_dict())
        log.info("Media saved offline: %s", safe_name)
        return str(file_path)

    def get_offline_media(self, file_name: str) -> Optional[Path]:
        metadata = self.store.get(MEDIA_NS, Path(file_name).name)
        if not metadata:
            return None
        path = Path(metadata.get("filePath", ""))
        return path if path.is_file() else None

    def get_all_offline_media(self) -> list[dict[str, Any]]:
        return [value for _, value in self.store.items(MEDIA_NS)]

    def delete_offline_media(self, file_name: str) -> bool:
        name = Path(file_name).name
        metadata = self.store.get(MEDIA_NS, name)
        if not metadata:
            return False

        path = Path(metadata.get("filePath", ""))
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise OfflineError(f"Unable to delete offline media '{name}': {exc}") from exc

        self.store.delete(MEDIA_NS, name)
        log.info("Offline media deleted: %s", name)
        return True

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    def enqueue(self, action_type: str, data: dict[str, Any]) -> SyncQueueItem:
        if action_type not in SYNC_ACTIONS:
            raise OfflineError(f"Unknown sync action '{action_type}'")

        item = SyncQueueItem(
            id=uuid.uuid4().hex,
            action_type=action_type,
            data=dict(data),
            timestamp=self.clock().isoformat(),
            max_retries=self.max_retries,
        )
        self.store.put(SYNC_QUEUE_NS, item.id, item.to_dict())
        log.info("Added to sync queue: %s", action_type)
        return item

    def queue_user_update(self, user: dict[str, Any]) -> SyncQueueItem:
        if not user.get("userId"):
            raise OfflineError("userId is required")
        return self.enqueue("user_update", user)

    def queue_chat_update(self, chat: dict[str, Any]) -> SyncQueueItem:
        if not chat.get("chatId"):
            raise OfflineError("chatId is required")
        return self.enqueue("chat_update", chat)

    def queue_media_upload(
        self,
        file_name: str,
        *,
        chat_id: str,
        message_id: str,
    ) -> SyncQueueItem:
        metadata = self.store.get(MEDIA_NS, Path(file_name).name)
        if not metadata:
            raise OfflineError(f"No offline media named '{file_name}'")
        return self.enqueue(
            "media_upload",
            {**metadata, "chatId": chat_id, "messageId": message_id},
        )

    def get_sync_queue(self) -> list[SyncQueueItem]:
        items = []
        for _, payload in self.store.items(SYNC_QUEUE_NS):
            try:
                items.append(SyncQueueItem.from_dict(payload))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Dropping malformed sync queue entry: %s", exc)
        return items

    def has_due_items(self) -> bool:
        now = self.clock()
        return any(item.is_due(now) for item in self.get_sync_queue())

    def sync_now(self) -> dict[str, Any]:
        """Push every due queue item to Firebase.

        A second call while a pass is running returns immediately with
        ``skipped`` set.
        """

        if not self._sync_lock.acquire(blocking=False):
            return {"skipped": True, "synced": 0, "failed": 0, "dropped": 0}

        synced = failed = dropped = 0
        try:
            queue = self.get_sync_queue()
            if not queue:
                return {"skipped": False, "synced": 0, "failed": 0, "dropped": 0, "pending": 0}

            log.info("Starting sync of %d queued items", len(queue))
            for item in queue:
                now = self.clock()
                if not item.is_due(now):
                    continue
                try:
                    self._process_item(item)
                except OfflinePermissionError as exc:
                    self.store.delete(SYNC_QUEUE_NS, item.id)
                    dropped += 1
                    log.warning("Dropping sync item %s (%s): %s", item.id, item.action_type, exc)
                    continue
                except Exception as exc:
                    item.retry_count += 1
                    if item.retry_count >= item.max_retries:
                        self.store.delete(SYNC_QUEUE_NS, item.id)
                        dropped += 1
                        log.warning(
                            "Max retries reached for sync item %s (%s): %s",
                            item.id,
                            item.action_type,
                            exc,
                        )
                    else:
                        item.next_attempt_at = (now + self.backoff * item.retry_count).isoformat()
                        self.store.put(SYNC_QUEUE_NS, item.id, item.to_dict())
                        failed += 1
                        log.info(
                            "Sync item %s failed (attempt %d/%d): %s",
                            item.id,
                            item.retry_count,
                            item.max_retries,
                            exc,
                        )
                    continue

                self.store.delete(SYNC_QUEUE_NS, item.id)
                synced += 1

            pending = self.store.count(SYNC_QUEUE_NS)
            log.info("Sync completed: %d synced, %d failed, %d dropped", synced, failed, dropped)
            return {"skipped": False, "synced": synced, "failed": failed, "dropped": dropped, "pending": pending}
        finally:
            self._sync_lock.release()

    def _process_item(self, item: SyncQueueItem) -> None:
        handler = {
            "message": self._sync_message,
            "user_update": self._sync_user_update,
            "chat_update": self._sync_chat_update,
            "media_upload": self._sync_media_upload,
        }.get(item.action_type)
        if handler is None:
            log.warning("Unknown sync action: %s", item.action_type)
            return
        handler(item.data)

    def _sync_message(self, data: dict[str, Any]) -> None:
        chat_id = data.get("chatId")
        message_id = data.get("messageId")
        if not chat_id or not message_id:
            raise SyncError("Queued message is missing chatId or messageId")
        sender_id = data.get("senderId")
        if sender_id not in chat_members(self.db, chat_id):
            raise OfflinePermissionError(f"Sender '{sender_id}' is not a member of chat '{chat_id}'.")
        (
            self.db.collection("chats")
            .document(chat_id)
            .collection("messages")
            .document(message_id)
            .set(data)
        )
        log.info("Message synced: %s", message_id)

    def _sync_user_update(self, data: dict[str, Any]) -> None:
        user_id = data.get("userId")
        if not user_id:
            raise SyncError("Queued user update is missing userId")
        self.db.collection("users").document(user_id).update(data)
        log.info("User update synced: %s", user_id)

    def _sync_chat_update(self, data: dict[str, Any]) -> None:
        chat_id = data.get("chatId")
        if not chat_id:
            raise SyncError("Queued chat update is missing chatId")
        self.db.collection("chats").document(chat_id).update(data)
        log.info("Chat update synced: %s", chat_id)

    def _sync_media_upload(self, data: dict[str, Any]) -> None:
        file_name = data.get("fileName")
        file_path = Path(data.get("filePath") or "")
        chat_id = data.get("chatId")
        message_id = data.get("messageId")
        if not file_name or not chat_id or not message_id:
            raise SyncError("Queued media upload is missing fileName, chatId or messageId")

        if not file_path.is_file():
            log.warning("Offline media %s no longer exists; skipping upload", file_name)
            return

        download_url = upload_bytes(
            f"chat_media/{file_name}",
            file_path.read_bytes(),
            data.get("fileType"),
            bucket=self.bucket,
        )
        (
            self.db.collection("chats")
            .document(chat_id)
            .collection("messages")
            .document(message_id)
            .update({
                "mediaUrl": download_url,
                "mediaType": data.get("fileType"),
                "synced": True,
            })
        )
        log.info("Media synced: %s", file_name)

    # ------------------------------------------------------------------
    # Settings and housekeeping
    # ------------------------------------------------------------------

    def save_setting(self, key: str, value: Any) -> None:
        self.store.put(SETTINGS_NS, key, value)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.store.get(SETTINGS_NS, key, default)

    def get_offline_stats(self) -> dict[str, Any]:
        return {
            "messages": self.store.count(MESSAGES_NS),
            "users": self.store.count(USERS_NS),
            "chats": self.store.count(CHATS_NS),
            "media": self.store.count(MEDIA_NS),
            "syncQueue": self.store.count(SYNC_QUEUE_NS),
            "settings": self.store.count(SETTINGS_NS),
            "isOnline": self.is_online,
            "isSyncing": self.is_syncing,
        }

    def clear_all_offline_data(self) -> None:
        for media in self.get_all_offline_media():
            file_path = media.get("filePath")
            if file_path:
                Path(file_path).unlink(missing_ok=True)
        for namespace in (MESSAGES_NS, USERS_NS, CHATS_NS, MEDIA_NS, SYNC_QUEUE_NS, SETTINGS_NS):
            self.store.clear(namespace)
        log.info("All offline data cleared")

    def dispose(self) -> None:
        with self._listeners_lock:
            self._listeners.clear()
        self.store.close()


def _message_key(chat_id: str, message_id: str) -> str:
    return json.dumps([str(chat_id), str(message_id)])


def _chat_prefix(chat_id: str) -> str:
    # Every key of the chat starts with '["<chat_id>", '.
    return json.dumps([str(chat_id)])[:-1] + ", "


def _sortable_timestamp(value: Any) -> float:
    parsed = parse_timestamp(value)
    return parsed.timestamp() if parsed else float("inf")
