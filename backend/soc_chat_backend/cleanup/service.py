"""Expiry sweep for chat messages and their media.

Messages are copied into the local archive before they are removed from
Firestore. Storage objects referenced by deleted messages go with them, and
stale files in the chat media folders and local caches are pruned by age.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
import logging
import threading
import time

from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..background import PeriodicService
from ..chats import chat_members
from ..firebase import get_firestore_client, get_storage_bucket
from ..local.messages import LocalMessageKey, LocalMessageStorage, parse_timestamp
from ..storage import StorageError, blob_created_at, delete_by_url, list_blobs

log = logging.getLogger(__name__)

__all__ = [
    "CleanupError",
    "CleanupInProgress",
    "CleanupPermissionError",
    "CleanupResult",
    "MEDIA_URL_FIELDS",
    "MessageCleanupService",
    "is_read_by",
    "should_delete_message",
]

MEDIA_URL_FIELDS = ("imageUrl", "documentUrl", "voiceUrl", "mediaUrl")
STORAGE_FOLDERS = ("chat_images", "chat_documents", "voice_messages")

_STATS_COLLECTION = "system_stats"
_STATS_DOCUMENT = "message_cleanup"
_LOGS_COLLECTION = "cleanup_logs"
_MAX_RETRIES = 3
_BATCH_LIMIT = 500


class CleanupError(Exception):
    """Raised when a cleanup pass cannot complete."""


class CleanupPermissionError(CleanupError):
    """Raised when a user cleans a chat they are not a member of."""


class CleanupInProgress(CleanupError):
    """Raised when another cleanup pass holds the lock."""


@dataclass(slots=True)
class CleanupResult:
    firestore_removed: int = 0
    local_removed: int = 0
    storage_removed: int = 0

    @property
    def total(self) -> int:
        return self.firestore_removed + self.local_removed + self.storage_removed

    def to_dict(self) -> dict[str, int]:
        return {
            "firestoreMessagesRemoved": self.firestore_removed,
            "localFilesRemoved": self.local_removed,
            "storageFilesRemoved": self.storage_removed,
            "totalRemoved": self.total,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_read_by(message: dict[str, Any], uid: str) -> bool:
    read_by = message.get("readBy")
    if isinstance(read_by, dict):
        return read_by.get(uid) is True
    if isinstance(read_by, (list, tuple)):
        return uid in read_by
    return False


def should_delete_message(
    message: dict[str, Any],
    uid: str,
    now: datetime,
    *,
    read_expiry: timedelta,
    unread_expiry: timedelta,
    members: Iterable[str] = (),
) -> bool:
    """Decide whether a message document has outlived its retention."""

    expires_at = parse_timestamp(message.get("expiresAt"))
    if expires_at is not None and expires_at <= now:
        return True

    members = [member for member in members if member]
    if members and all(is_read_by(message, member) for member in members):
        return True

    sent_at = parse_timestamp(message.get("timestamp"))
    if sent_at is None:
        return False
    if sent_at < now - unread_expiry:
        return True
    return is_read_by(message, uid) and sent_at < now - read_expiry


class MessageCleanupService(PeriodicService):
    name = "MessageCleanupService"

    def __init__(
        self,
        archive: Optional[LocalMessageStorage],
        local_data_dir: Path | str,
        *,
        db: Any = None,
        bucket: Any = None,
        agent_uid: Optional[str] = None,
        temp_dir: Path | str | None = None,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], None] = time.sleep,
        interval_hours: float = 6,
        read_expiry: timedelta = timedelta(days=3),
        unread_expiry: timedelta = timedelta(days=7),
        media_expiry: timedelta = timedelta(days=14),
        temp_expiry: timedelta = timedelta(hours=24),
        local_message_expiry: timedelta = timedelta(days=30),
    ) -> None:
        super().__init__(interval_hours * 3600)
        self.archive = archive
        self.local_data_dir = Path(local_data_dir)
        self.temp_dir = Path(temp_dir) if temp_dir is not None else self.local_data_dir
        self.agent_uid = agent_uid
        self.clock = clock
        self.sleep = sleep
        self.read_expiry = read_expiry
        self.unread_expiry = unread_expiry
        self.media_expiry = media_expiry
        self.temp_expiry = temp_expiry
        self.local_message_expiry = local_message_expiry
        self._db = db
        self._bucket = bucket
        self._pass_lock = threading.Lock()

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
    def interval_hours(self) -> float:
        return self.interval / 3600

    def settings(self) -> dict[str, float]:
        return {
            "cleanupInterval": self.interval_hours,
            "readMessageExpiry": self.read_expiry.days,
            "unreadMessageExpiry": self.unread_expiry.days,
            "mediaFileExpiry": self.media_expiry.days,
            "tempFileExpiryHours": self.temp_expiry.total_seconds() / 3600,
        }

    @property
    def is_cleaning(self) -> bool:
        return self._pass_lock.locked()

    def run_once(self) -> None:
        try:
            self.perform_cleanup()
        except CleanupInProgress:
            log.debug("Cleanup already in progress; skipping scheduled pass")

    # ------------------------------------------------------------------
    # Firestore messages
    # ------------------------------------------------------------------

    def cleanup_chat_messages(
        self,
        chat_id: str,
        uid: str,
        now: Optional[datetime] = None,
        *,
        members: Optional[Iterable[str]] = None,
    ) -> int:
        """Remove expired messages of one chat and return how many went."""

        now = now or self.clock()
        chat_ref = self.db.collection("chats").document(chat_id)

        try:
            if members is None:
                members = chat_members(self.db, chat_id)
            documents = list(chat_ref.collection("messages").stream())
        except google_exceptions.GoogleAPICallError as exc:
            raise CleanupError(f"Failed to read messages of chat {chat_id}: {exc}") from exc

        members = list(members)
        expired = []
        for doc in documents:
            data = doc.to_dict() or {}
            if should_delete_message(
                data,
                uid,
                now,
                read_expiry=self.read_expiry,
                unread_expiry=self.unread_expiry,
                members=members,
            ):
                expired.append((doc, data))

        if not expired:
            return 0

        for doc, data in expired:
            self._archive(chat_id, doc.id, uid, data)

        try:
            for start in range(0, len(expired), _BATCH_LIMIT):
                batch = self.db.batch()
                for doc, _ in expired[start:start + _BATCH_LIMIT]:
                    batch.delete(doc.reference)
                batch.commit()
        except google_exceptions.GoogleAPICallError as exc:
            raise CleanupError(f"Failed to delete messages of chat {chat_id}: {exc}") from exc

        for _, data in expired:
            self._remove_media(data)

        log.info("Removed %d messages from chat %s", len(expired), chat_id)
        return len(expired)

    def _archive(self, chat_id: str, message_id: str, uid: str, data: dict[str, Any]) -> None:
        if self.archive is None:
            return
        try:
            self.archive.store_message(LocalMessageKey(chat_id, message_id, uid), data)
        except Exception as exc:
            log.warning("Could not archive message %s/%s locally: %s", chat_id, message_id, exc)

    def _remove_media(self, message: dict[str, Any]) -> int:
        removed = 0
        urls = {message.get(name) for name in MEDIA_URL_FIELDS}
        for url in urls:
            if not isinstance(url, str) or not url:
                continue
            try:
                if delete_by_url(url, bucket=self.bucket):
                    removed += 1
            except StorageError as exc:
                log.warning("Error removing media from storage: %s", exc)
        return removed

    def cleanup_firestore_messages(self, uid: str, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        query = self.db.collection("chats").where(filter=FieldFilter("members", "array_contains", uid))
        try:
            chats = list(query.stream())
        except google_exceptions.GoogleAPICallError as exc:
            raise CleanupError(f"Failed to list chats for {uid}: {exc}") from exc

        removed = 0
        for chat in chats:
            members = (chat.to_dict() or {}).get("members") or []
            try:
                removed += self.cleanup_chat_messages(chat.id, uid, now, members=members)
            except CleanupError as exc:
                log.error("Error cleaning up chat %s: %s", chat.id, exc)
        return removed

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _cleanup_directory(self, directory: Path, expiry: timedelta, now: datetime) -> int:
        if not directory.is_dir():
            return 0

        cutoff = (now - expiry).timestamp()
        removed = 0
        for path in directory.rglob("*"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                log.warning("Could not remove %s: %s", path, exc)
        return removed

    def cleanup_local_storage(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        removed = self._cleanup_directory(self.local_data_dir / "chat_files", self.media_expiry, now)
        removed += self._cleanup_directory(self.temp_dir / "chat_temp", self.temp_expiry, now)
        if self.archive is not None:
            removed += self.archive.cleanup_old_messages(self.local_message_expiry)
        return removed

    def cleanup_firebase_storage(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        cutoff = now - self.media_expiry
        removed = 0
        for folder in STORAGE_FOLDERS:
            try:
                blobs = list_blobs(folder, bucket=self.bucket)
            except StorageError as exc:
                log.error("Error cleaning up storage folder %s: %s", folder, exc)
                continue

            for blob in blobs:
                created = blob_created_at(blob)
                if created is None or created >= cutoff:
                    continue
                try:
                    blob.delete()
                    removed += 1
                except google_exceptions.NotFound:
                    continue
                except google_exceptions.GoogleAPICallError as exc:
                    log.warning("Could not delete %s: %s", getattr(blob, "name", blob), exc)
        return removed

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def perform_cleanup(self, uid: Optional[str] = None) -> Optional[CleanupResult]:
        """Run the full sweep, retrying whole-pass failures.

        Returns None once every attempt has failed; the failure is recorded
        in ``cleanup_logs``. Raises CleanupInProgress while another pass runs.
        """

        if not self._pass_lock.acquire(blocking=False):
            raise CleanupInProgress("A cleanup pass is already running")
        try:
            return self._perform_cleanup(uid)
        finally:
            self._pass_lock.release()

    def _perform_cleanup(self, uid: Optional[str]) -> Optional[CleanupResult]:
        account = uid or self.agent_uid
        last_error: Optional[Exception] = None

        for attempt in range(1, _MAX_RETRIES + 1):
            log.info("Starting message cleanup (attempt %d)", attempt)
            try:
                now = self.clock()
                result = CleanupResult()
                if account:
                    result.firestore_removed = self.cleanup_firestore_messages(account, now)
                else:
                    log.debug("No cleanup account configured; skipping Firestore messages")
                result.local_removed = self.cleanup_local_storage(now)
                result.storage_removed = self.cleanup_firebase_storage(now)
            except (CleanupError, google_exceptions.GoogleAPICallError, OSError) as exc:
                last_error = exc
                log.error("Error during cleanup (attempt %d): %s", attempt, exc)
                if attempt < _MAX_RETRIES:
                    delay = attempt * 2
                    log.info("Retrying cleanup in %d seconds", delay)
                    self.sleep(delay)
                continue

            log.info(
                "Cleanup completed. Firestore: %d, Local: %d, Storage: %d",
                result.firestore_removed,
                result.local_removed,
                result.storage_removed,
            )
            self._record_statistics(result, account)
            return result

        log.error("Max retries reached. Cleanup failed.")
        self._log_failure(str(last_error), account)
        return None

    def _record_statistics(self, result: CleanupResult, account: Optional[str]) -> None:
        payload: dict[str, Any] = {
            "lastCleanup": firebase_firestore.SERVER_TIMESTAMP,
            **result.to_dict(),
            **self.settings(),
            "performedBy": account,
        }
        try:
            self.db.collection(_STATS_COLLECTION).document(_STATS_DOCUMENT).set(payload, merge=True)
        except google_exceptions.GoogleAPICallError as exc:
            log.error("Error updating cleanup statistics: %s", exc)

    def _log_failure(self, error: str, account: Optional[str]) -> None:
        try:
            self.db.collection(_LOGS_COLLECTION).add({
                "timestamp": firebase_firestore.SERVER_TIMESTAMP,
                "error": error,
                "type": "automatic_cleanup_failure",
                "userId": account,
            })
        except google_exceptions.GoogleAPICallError as exc:
            log.error("Failed to log cleanup failure: %s", exc)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def manual_cleanup(self, chat_id: str, uid: str) -> int:
        """Clean one chat on behalf of a member of that chat."""

        try:
            members = chat_members(self.db, chat_id)
        except google_exceptions.GoogleAPICallError as exc:
            raise CleanupError(f"Failed to load chat {chat_id}: {exc}") from exc
        if uid not in members:
            raise CleanupPermissionError(f"User '{uid}' is not a member of chat '{chat_id}'.")

        if not self._pass_lock.acquire(blocking=False):
            raise CleanupInProgress("A cleanup pass is already running")
        try:
            return self.cleanup_chat_messages(chat_id, uid, members=members)
        finally:
            self._pass_lock.release()

    def get_cleanup_stats(self) -> Optional[dict[str, Any]]:
        try:
            snapshot = self.db.collection(_STATS_COLLECTION).document(_STATS_DOCUMENT).get()
        except google_exceptions.GoogleAPICallError as exc:
            raise CleanupError(f"Failed to load cleanup statistics: {exc}") from exc
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    def update_cleanup_settings(
        self,
        *,
        read_expiry: Optional[timedelta] = None,
        unread_expiry: Optional[timedelta] = None,
        media_expiry: Optional[timedelta] = None,
        interval_hours: Optional[float] = None,
    ) -> dict[str, float]:
        new_read = read_expiry if read_expiry is not None else self.read_expiry
        new_unread = unread_expiry if unread_expiry is not None else self.unread_expiry
        for value in (new_read, new_unread, media_expiry):
            if value is not None and value <= timedelta(0):
                raise CleanupError("Expiry durations must be positive")
        if new_unread < new_read:
            raise CleanupError("Unread expiry cannot be shorter than read expiry")
        if interval_hours is not None and interval_hours <= 0:
            raise CleanupError("Cleanup interval must be positive")

        self.read_expiry = new_read
        self.unread_expiry = new_unread
        if media_expiry is not None:
            self.media_expiry = media_expiry

        if interval_hours is not None and interval_hours * 3600 != self.interval:
            log.info("Cleanup interval updated to %s hours", interval_hours)
            self.restart(interval_hours * 3600)

        return self.settings()
