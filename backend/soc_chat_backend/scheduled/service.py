from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
import logging
import threading

from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..background import PeriodicService
from ..chats import chat_members
from ..firebase import get_firestore_client, get_storage_bucket
from ..local.messages import parse_timestamp
from ..notifications.service import notify_users
from ..storage import StorageError, upload_bytes
from .recurrence import next_occurrence, normalize_pattern

log = logging.getLogger(__name__)

__all__ = [
    "ScheduleError",
    "ScheduleNotFound",
    "SchedulePermissionError",
    "ScheduledMessage",
    "ScheduledMessageRunner",
    "ScheduledMessagesService",
    "serialize_schedule",
]

_SCHEDULED_COLLECTION = "scheduled_messages"
_TEMPLATES_COLLECTION = "message_templates"
_MAX_DELIVERY_ATTEMPTS = 3
_RETRY_STEP = timedelta(minutes=5)
_PROCESS_INTERVAL = 60  # seconds

STATUS_SCHEDULED = "scheduled"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
STATUSES = (STATUS_SCHEDULED, STATUS_DELIVERED, STATUS_FAILED, STATUS_CANCELLED)


class ScheduleError(Exception):
    """Base exception for scheduled message operations."""


class ScheduleNotFound(ScheduleError):
    """Raised when a schedule document does not exist."""


class SchedulePermissionError(ScheduleError):
    """Raised when a caller acts on a schedule they did not create or a chat they are not in."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _to_iso(value: Any) -> Optional[str]:
    dt = parse_timestamp(value)
    return dt.isoformat() if dt else None


@dataclass(slots=True)
class ScheduledMessage:
    schedule_id: str
    chat_id: str
    sender_id: str
    sender_name: str
    message_text: str
    scheduled_time: datetime
    next_delivery_time: datetime
    status: str = STATUS_SCHEDULED
    is_group_chat: bool = False
    recurring_pattern: Optional[str] = None
    delivery_attempts: int = 0
    max_delivery_attempts: int = _MAX_DELIVERY_ATTEMPTS
    occurrence_count: int = 0
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    file_name: Optional[str] = None
    additional_data: dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "scheduleId": self.schedule_id,
            "chatId": self.chat_id,
            "isGroupChat": self.is_group_chat,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "messageText": self.message_text,
            "scheduledTime": self.scheduled_time,
            "nextDeliveryTime": self.next_delivery_time,
            "status": self.status,
            "recurringPattern": self.recurring_pattern,
            "deliveryAttempts": self.delivery_attempts,
            "maxDeliveryAttempts": self.max_delivery_attempts,
            "occurrenceCount": self.occurrence_count,
            "additionalData": self.additional_data,
        }
        if self.media_url:
            payload["mediaUrl"] = self.media_url
            payload["mediaType"] = self.media_type
        if self.file_name:
            payload["fileName"] = self.file_name
        if self.last_error:
            payload["lastError"] = self.last_error
        return payload

    def to_json(self) -> dict[str, Any]:
        return serialize_schedule(self.schedule_id, self.to_document())

    @classmethod
    def from_document(cls, document_id: str, data: dict[str, Any]) -> "ScheduledMessage":
        required = ("chatId", "senderId", "messageText", "scheduledTime")
        missing = [name for name in required if data.get(name) in (None, "")]
        scheduled_time = parse_timestamp(data.get("scheduledTime"))
        if missing or scheduled_time is None:
            raise ScheduleError(
                f"Scheduled message '{document_id}' is missing required fields: "
                f"{', '.join(missing) or 'scheduledTime'}"
            )
        next_time = parse_timestamp(data.get("nextDeliveryTime")) or scheduled_time
        try:
            pattern = normalize_pattern(data.get("recurringPattern"))
        except ValueError as exc:
            raise ScheduleError(str(exc)) from exc

        return cls(
            schedule_id=data.get("scheduleId") or document_id,
            chat_id=data["chatId"],
            sender_id=data["senderId"],
            sender_name=data.get("senderName") or "Unknown User",
            message_text=data["messageText"],
            scheduled_time=scheduled_time,
            next_delivery_time=next_time,
            status=data.get("status", STATUS_SCHEDULED),
            is_group_chat=bool(data.get("isGroupChat")),
            recurring_pattern=pattern,
            delivery_attempts=int(data.get("deliveryAttempts") or 0),
            max_delivery_attempts=int(data.get("maxDeliveryAttempts") or _MAX_DELIVERY_ATTEMPTS),
            occurrence_count=int(data.get("occurrenceCount") or 0),
            media_url=data.get("mediaUrl"),
            media_type=data.get("mediaType"),
            file_name=data.get("fileName"),
            additional_data=dict(data.get("additionalData") or {}),
            last_error=data.get("lastError"),
        )


def serialize_schedule(document_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "scheduleId": data.get("scheduleId") or document_id,
        "chatId": data.get("chatId"),
        "isGroupChat": bool(data.get("isGroupChat")),
        "senderId": data.get("senderId"),
        "senderName": data.get("senderName"),
        "messageText": data.get("messageText"),
        "scheduledTime": _to_iso(data.get("scheduledTime")),
        "nextDeliveryTime": _to_iso(data.get("nextDeliveryTime")),
        "status": data.get("status"),
        "recurringPattern": data.get("recurringPattern"),
        "deliveryAttempts": int(data.get("deliveryAttempts") or 0),
        "maxDeliveryAttempts": int(data.get("maxDeliveryAttempts") or _MAX_DELIVERY_ATTEMPTS),
        "mediaUrl": data.get("mediaUrl"),
        "mediaType": data.get("mediaType"),
        "fileName": data.get("fileName"),
        "additionalData": data.get("additionalData") or {},
        "lastError": data.get("lastError"),
        "createdAt": _to_iso(data.get("createdAt")),
        "deliveredAt": _to_iso(data.get("deliveredAt")),
        "lastDeliveredAt": _to_iso(data.get("lastDeliveredAt")),
    }


def serialize_template(document_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "templateId": data.get("templateId") or document_id,
        "name": data.get("name"),
        "messageText": data.get("messageText"),
        "mediaUrl": data.get("mediaUrl"),
        "mediaType": data.get("mediaType"),
        "createdBy": data.get("createdBy"),
        "createdAt": _to_iso(data.get("createdAt")),
        "additionalData": data.get("additionalData") or {},
    }


class ScheduledMessagesService:
    """Deferred and recurring message delivery backed by Firestore."""

    def __init__(
        self,
        *,
        db: Any = None,
        bucket: Any = None,
        clock: Callable[[], datetime] = _now,
        notifier: Optional[Callable[..., int]] = notify_users,
    ) -> None:
        self._db = db
        self._bucket = bucket
        self.clock = clock
        self.notifier = notifier
        self._processing = threading.Lock()

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

    def _collection(self):
        return self.db.collection(_SCHEDULED_COLLECTION)

    def _load(self, schedule_id: str) -> tuple[Any, dict[str, Any]]:
        doc_ref = self._collection().document(schedule_id)
        try:
            snapshot = doc_ref.get()
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(str(exc)) from exc
        if not snapshot.exists:
            raise ScheduleNotFound(f"Scheduled message '{schedule_id}' not found")
        return doc_ref, snapshot.to_dict() or {}

    def _load_owned(self, schedule_id: str, uid: str) -> tuple[Any, dict[str, Any]]:
        doc_ref, data = self._load(schedule_id)
        if data.get("senderId") != uid:
            raise SchedulePermissionError(
                f"Scheduled message '{schedule_id}' does not belong to uid '{uid}'."
            )
        return doc_ref, data

    def _require_member(self, chat_id: str, uid: str) -> list[str]:
        try:
            members = chat_members(self.db, chat_id)
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to load chat '{chat_id}': {exc}") from exc
        if uid not in members:
            raise SchedulePermissionError(f"User '{uid}' is not a member of chat '{chat_id}'.")
        return members

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_message(
        self,
        *,
        sender_id: str,
        chat_id: str,
        message_text: str,
        scheduled_time: datetime,
        sender_name: str | None = None,
        is_group_chat: bool = False,
        media_url: str | None = None,
        media_type: str | None = None,
        media_bytes: bytes | None = None,
        file_name: str | None = None,
        recurring_pattern: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> ScheduledMessage:
        if not sender_id:
            raise ScheduleError("sender_id is required to schedule a message")
        if not chat_id:
            raise ScheduleError("chat_id is required to schedule a message")
        if message_text is None or (not str(message_text).strip() and not (media_url or media_bytes)):
            raise ScheduleError("message_text is required")
        scheduled = parse_timestamp(scheduled_time)
        if scheduled is None:
            raise ScheduleError("scheduled_time must be a datetime")
        try:
            pattern = normalize_pattern(recurring_pattern)
        except ValueError as exc:
            raise ScheduleError(str(exc)) from exc
        self._require_member(chat_id, sender_id)

        now = self.clock()
        schedule_id = f"schedule_{_millis(now)}_{sender_id}"

        if media_bytes is not None and file_name:
            try:
                media_url = upload_bytes(
                    f"scheduled_media/{_millis(now)}_{file_name}",
                    media_bytes,
                    media_type,
                    bucket=self.bucket,
                )
            except StorageError as exc:
                raise ScheduleError(f"Failed to upload media: {exc}") from exc

        record = ScheduledMessage(
            schedule_id=schedule_id,
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender_name or "Unknown User",
            message_text=str(message_text),
            scheduled_time=scheduled,
            next_delivery_time=scheduled,
            is_group_chat=is_group_chat,
            recurring_pattern=pattern,
            media_url=media_url,
            media_type=media_type if media_url else None,
            file_name=file_name if media_url else None,
            additional_data=dict(additional_data or {}),
        )

        payload = record.to_document()
        payload["createdAt"] = firebase_firestore.SERVER_TIMESTAMP
        try:
            self._collection().document(schedule_id).set(payload)
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to schedule message: {exc}") from exc

        log.info("Message scheduled: %s for %s", schedule_id, scheduled.isoformat())
        return record

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def process_due_messages(self, now: datetime | None = None) -> dict[str, int]:
        """Deliver every schedule whose ``nextDeliveryTime`` has passed."""

        if not self._processing.acquire(blocking=False):
            log.debug("Scheduled message processing already in progress")
            return {"delivered": 0, "failed": 0, "skipped": 1}

        delivered = failed = 0
        try:
            current = now or self.clock()
            query = (
                self._collection()
                .where(filter=FieldFilter("status", "==", STATUS_SCHEDULED))
                .where(filter=FieldFilter("nextDeliveryTime", "<=", current))
            )
            try:
                documents = list(query.stream())
            except google_exceptions.GoogleAPICallError as exc:
                log.error("Failed to query scheduled messages: %s", exc)
                return {"delivered": 0, "failed": 0, "skipped": 0}

            for doc in documents:
                data = doc.to_dict() or {}
                try:
                    record = ScheduledMessage.from_document(doc.id, data)
                except ScheduleError as exc:
                    log.warning("Invalid scheduled message %s: %s", doc.id, exc)
                    self._mark_failed(doc.id, str(exc))
                    failed += 1
                    continue

                try:
                    self._deliver(record, current)
                    delivered += 1
                except SchedulePermissionError as exc:
                    log.warning("Dropping scheduled message %s: %s", doc.id, exc)
                    self._mark_failed(doc.id, str(exc))
                    failed += 1
                except Exception as exc:
                    log.error("Error delivering scheduled message %s: %s", doc.id, exc)
                    self._handle_delivery_failure(doc.id, str(exc), current)
                    failed += 1

            return {"delivered": delivered, "failed": failed, "skipped": 0}
        finally:
            self._processing.release()

    def _deliver(self, record: ScheduledMessage, now: datetime) -> None:
        members = chat_members(self.db, record.chat_id)
        if record.sender_id not in members:
            raise SchedulePermissionError(
                f"Sender '{record.sender_id}' is not a member of chat '{record.chat_id}'."
            )

        message_type = (record.media_type or "document") if record.media_url else "text"
        message_data = {
            "text": record.message_text,
            "senderId": record.sender_id,
            "senderName": record.sender_name,
            "timestamp": firebase_firestore.SERVER_TIMESTAMP,
            "type": message_type,
            "mediaUrl": record.media_url,
            "mediaType": record.media_type,
            "scheduledMessageId": record.schedule_id,
            "isScheduled": True,
        }

        chat_ref = self.db.collection("chats").document(record.chat_id)
        chat_ref.collection("messages").add(message_data)

        doc_ref = self._collection().document(record.schedule_id)
        if record.recurring_pattern:
            next_time, index = next_occurrence(
                record.scheduled_time,
                record.recurring_pattern,
                record.occurrence_count,
                after=now,
            )
            doc_ref.update({
                "nextDeliveryTime": next_time,
                "occurrenceCount": index,
                "lastDeliveredAt": firebase_firestore.SERVER_TIMESTAMP,
                "deliveryAttempts": 0,
            })
            log.info("Recurring schedule %s advanced to %s", record.schedule_id, next_time.isoformat())
        else:
            doc_ref.update({
                "status": STATUS_DELIVERED,
                "deliveredAt": firebase_firestore.SERVER_TIMESTAMP,
            })

        log.info("Scheduled message delivered: %s", record.schedule_id)
        self._notify_members(members, record)

    def _notify_members(self, members: list[str], record: ScheduledMessage) -> None:
        if self.notifier is None:
            return
        recipients = [uid for uid in members if uid != record.sender_id]
        if not recipients:
            return
        try:
            body = record.message_text if record.message_text else "Sent an attachment"
            self.notifier(
                recipients,
                title=record.sender_name,
                body=body,
                data={"chatId": record.chat_id, "type": "scheduled_message"},
            )
        except Exception as exc:
            log.warning("Failed to notify members of chat %s: %s", record.chat_id, exc)

    def _mark_failed(self, schedule_id: str, error: str) -> None:
        try:
            self._collection().document(schedule_id).update({
                "status": STATUS_FAILED,
                "lastError": error,
                "failedAt": firebase_firestore.SERVER_TIMESTAMP,
            })
        except google_exceptions.GoogleAPICallError as exc:
            log.error("Failed to mark schedule %s as failed: %s", schedule_id, exc)

    def _handle_delivery_failure(self, schedule_id: str, error: str, now: datetime) -> None:
        doc_ref = self._collection().document(schedule_id)
        try:
            snapshot = doc_ref.get()
        except google_exceptions.GoogleAPICallError as exc:
            log.error("Error handling delivery failure for %s: %s", schedule_id, exc)
            return
        if not snapshot.exists:
            return

        data = snapshot.to_dict() or {}
        attempts = int(data.get("deliveryAttempts") or 0) + 1
        max_attempts = int(data.get("maxDeliveryAttempts") or _MAX_DELIVERY_ATTEMPTS)

        try:
            if attempts >= max_attempts:
                doc_ref.update({
                    "status": STATUS_FAILED,
                    "deliveryAttempts": attempts,
                    "lastError": error,
                    "failedAt": firebase_firestore.SERVER_TIMESTAMP,
                })
                log.warning("Scheduled message %s failed after %d attempts", schedule_id, attempts)
            else:
                doc_ref.update({
                    "deliveryAttempts": attempts,
                    "nextDeliveryTime": now + _RETRY_STEP * attempts,
                    "lastError": error,
                })
        except google_exceptions.GoogleAPICallError as exc:
            log.error("Error handling delivery failure for %s: %s", schedule_id, exc)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def get_schedule(self, schedule_id: str) -> dict[str, Any]:
        _, data = self._load(schedule_id)
        return serialize_schedule(schedule_id, data)

    def _stream(self, *filters: FieldFilter) -> list[tuple[str, dict[str, Any]]]:
        query = self._collection()
        for item in filters:
            query = query.where(filter=item)
        try:
            return [(doc.id, doc.to_dict() or {}) for doc in query.stream()]
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(str(exc)) from exc

    def get_scheduled_messages(self, chat_id: str, uid: str | None = None) -> list[dict[str, Any]]:
        """Pending schedules of a chat ordered by their first delivery time.

        When ``uid`` is given the caller must be a member of the chat.
        """

        if uid is not None:
            self._require_member(chat_id, uid)
        rows = self._stream(
            FieldFilter("chatId", "==", chat_id),
            FieldFilter("status", "==", STATUS_SCHEDULED),
        )
        return _sorted_by_scheduled_time(rows)

    def get_user_scheduled_messages(self, uid: str) -> list[dict[str, Any]]:
        rows = self._stream(FieldFilter("senderId", "==", uid))
        return _sorted_by_scheduled_time(rows)

    def update_scheduled_message(
        self,
        schedule_id: str,
        uid: str,
        *,
        message_text: str | None = None,
        scheduled_time: datetime | None = None,
        recurring_pattern: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        doc_ref, data = self._load_owned(schedule_id, uid)
        if data.get("status") != STATUS_SCHEDULED:
            raise ScheduleError(f"Scheduled message '{schedule_id}' is no longer pending")

        updates: dict[str, Any] = {}
        if message_text is not None:
            updates["messageText"] = message_text
        if scheduled_time is not None:
            when = parse_timestamp(scheduled_time)
            if when is None:
                raise ScheduleError("scheduled_time must be a datetime")
            updates["scheduledTime"] = when
            updates["nextDeliveryTime"] = when
            updates["occurrenceCount"] = 0
            updates["deliveryAttempts"] = 0
        if recurring_pattern is not None:
            try:
                pattern = normalize_pattern(recurring_pattern)
            except ValueError as exc:
                raise ScheduleError(str(exc)) from exc
            updates["recurringPattern"] = pattern
            if scheduled_time is None and pattern != data.get("recurringPattern"):
                # Occurrences of the new pattern count from the pending delivery.
                pending = parse_timestamp(data.get("nextDeliveryTime")) or parse_timestamp(
                    data.get("scheduledTime")
                )
                if pending is not None:
                    updates["scheduledTime"] = pending
                    updates["nextDeliveryTime"] = pending
                updates["occurrenceCount"] = 0
        if additional_data is not None:
            updates["additionalData"] = dict(additional_data)

        updates["updatedAt"] = firebase_firestore.SERVER_TIMESTAMP
        try:
            doc_ref.update(updates)
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to update scheduled message: {exc}") from exc

        log.info("Scheduled message updated: %s", schedule_id)
        merged = {**data, **updates}
        merged.pop("updatedAt", None)
        return serialize_schedule(schedule_id, merged)

    def cancel_scheduled_message(self, schedule_id: str, uid: str) -> None:
        doc_ref, _ = self._load_owned(schedule_id, uid)
        try:
            doc_ref.update({
                "status": STATUS_CANCELLED,
                "cancelledAt": firebase_firestore.SERVER_TIMESTAMP,
            })
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to cancel scheduled message: {exc}") from exc
        log.info("Scheduled message cancelled: %s", schedule_id)

    def delete_scheduled_message(self, schedule_id: str, uid: str) -> None:
        doc_ref, _ = self._load_owned(schedule_id, uid)
        try:
            doc_ref.delete()
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to delete scheduled message: {exc}") from exc
        log.info("Scheduled message deleted: %s", schedule_id)

    def get_schedule_stats(self, uid: str) -> dict[str, int]:
        rows = self._stream(FieldFilter("senderId", "==", uid))
        stats = {status: 0 for status in STATUSES}
        for _, data in rows:
            status = data.get("status")
            if status in stats:
                stats[status] += 1
        return {"total": len(rows), **stats}

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_message_template(
        self,
        uid: str,
        *,
        name: str,
        message_text: str,
        media_url: str | None = None,
        media_type: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not uid:
            raise ScheduleError("uid is required to save a template")
        if not (name or "").strip():
            raise ScheduleError("Template name is required")

        now = self.clock()
        template_id = f"template_{_millis(now)}_{uid}"
        payload = {
            "templateId": template_id,
            "name": name.strip(),
            "messageText": message_text or "",
            "mediaUrl": media_url,
            "mediaType": media_type,
            "createdBy": uid,
            "createdAt": now,
            "additionalData": dict(additional_data or {}),
        }
        try:
            self.db.collection(_TEMPLATES_COLLECTION).document(template_id).set(payload)
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(f"Failed to save template: {exc}") from exc

        log.info("Template saved: %s", template_id)
        return serialize_template(template_id, payload)

    def get_user_templates(self, uid: str) -> list[dict[str, Any]]:
        query = self.db.collection(_TEMPLATES_COLLECTION).where(
            filter=FieldFilter("createdBy", "==", uid)
        )
        try:
            rows = [(doc.id, doc.to_dict() or {}) for doc in query.stream()]
        except google_exceptions.GoogleAPICallError as exc:
            raise ScheduleError(str(exc)) from exc

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        rows.sort(key=lambda row: parse_timestamp(row[1].get("createdAt")) or epoch, reverse=True)
        return [serialize_template(doc_id, data) for doc_id, data in rows]


def _sorted_by_scheduled_time(rows: list[tuple[str, dict[str, Any]]]) -> list[dict[str, Any]]:
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    rows = sorted(rows, key=lambda row: parse_timestamp(row[1].get("scheduledTime")) or far_future)
    return [serialize_schedule(doc_id, data) for doc_id, data in rows]


class ScheduledMessageRunner(PeriodicService):
    """Background sweep delivering due scheduled messages."""

    name = "ScheduledMessageRunner"

    def __init__(self, service: ScheduledMessagesService, *, interval: int = _PROCESS_INTERVAL) -> None:
        super().__init__(interval)
        self.service = service

    def run_once(self) -> None:
        result = self.service.process_due_messages()
        if result["delivered"] or result["failed"]:
            log.info(
                "Scheduled message sweep: %d delivered, %d failed",
                result["delivered"],
                result["failed"],
            )
