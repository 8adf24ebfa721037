from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
import tempfile

from soc_chat_backend.cleanup.service import (
    CleanupError,
    CleanupInProgress,
    CleanupPermissionError,
    MessageCleanupService,
    is_read_by,
    should_delete_message,
)
from soc_chat_backend.local.messages import LocalMessageStorage
from soc_chat_backend.local.store import LocalStore

from firestore_fakes import FakeBucket, FakeFirestore, FrozenClock

START = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
READ = timedelta(days=3)
UNREAD = timedelta(days=7)


def _ago(**kwargs) -> datetime:
    return START - timedelta(**kwargs)


def _touch(path: Path, when: datetime) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x")
    os.utime(path, (when.timestamp(), when.timestamp()))


class ShouldDeleteMessageTests(unittest.TestCase):
    def _decide(self, message, uid="alice", members=()):
        return should_delete_message(
            message, uid, START, read_expiry=READ, unread_expiry=UNREAD, members=members
        )

    def test_read_message_older_than_three_days_is_deleted(self):
        self.assertTrue(self._decide({"timestamp": _ago(days=3, seconds=1), "readBy": {"alice": True}}))

    def test_unread_message_survives_until_seven_days(self):
        self.assertFalse(self._decide({"timestamp": _ago(days=5), "readBy": {}}))
        self.assertFalse(self._decide({"timestamp": _ago(days=6, hours=23)}))
        self.assertTrue(self._decide({"timestamp": _ago(days=8)}))

    def test_read_by_someone_else_does_not_count(self):
        self.assertFalse(self._decide({"timestamp": _ago(days=4), "readBy": {"bob": True}}))

    def test_read_by_list_shape(self):
        self.assertTrue(self._decide({"timestamp": _ago(days=4), "readBy": ["alice"]}))
        self.assertTrue(is_read_by({"readBy": ["alice"]}, "alice"))
        self.assertFalse(is_read_by({"readBy": "alice"}, "alice"))

    def test_expires_at_is_honoured(self):
        self.assertTrue(self._decide({"timestamp": _ago(minutes=5), "expiresAt": _ago(minutes=1)}))
        self.assertFalse(self._decide({"timestamp": _ago(minutes=5), "expiresAt": START + timedelta(hours=1)}))

    def test_read_by_every_member_is_deleted(self):
        message = {"timestamp": _ago(hours=1), "readBy": {"alice": True, "bob": True}}
        self.assertTrue(self._decide(message, members=["alice", "bob"]))
        self.assertFalse(self._decide(message, members=["alice", "bob", "carol"]))
        self.assertFalse(self._decide(message))

    def test_messages_without_timestamp_are_kept(self):
        self.assertFalse(self._decide({"text": "no time", "readBy": {"alice": True}}))


class MessageCleanupServiceTests(unittest.TestCase):
    def setUp(self):
        self.clock = FrozenClock(START)
        self.db = FakeFirestore(self.clock)
        self.bucket = FakeBucket("demo-bucket")
        self.store = LocalStore()
        self.archive = LocalMessageStorage(self.store, clock=self.clock)
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.sleeps: list[float] = []
        self.service = MessageCleanupService(
            self.archive,
            self.data_dir,
            db=self.db,
            bucket=self.bucket,
            agent_uid="alice",
            clock=self.clock,
            sleep=self.sleeps.append,
        )

        self.db.seed("chats/c1", {"members": ["alice", "bob"]})
        messages = {
            "read_old": {"timestamp": _ago(days=4), "readBy": {"alice": True}},
            "unread_5d": {"timestamp": _ago(days=5), "readBy": {}},
            "unread_8d": {"timestamp": _ago(days=8)},
            "read_list": {"timestamp": _ago(days=4), "readBy": ["alice"]},
            "read_recent": {"timestamp": _ago(days=1), "readBy": {"alice": True}},
            "all_read": {"timestamp": _ago(hours=1), "readBy": {"alice": True, "bob": True}},
            "expired": {"timestamp": _ago(minutes=10), "expiresAt": _ago(minutes=1)},
            "no_timestamp": {"text": "keep me"},
            "image": {
                "timestamp": _ago(days=8),
                "type": "image",
                "imageUrl": "gs://demo-bucket/chat_images/a.png",
            },
        }
        for message_id, data in messages.items():
            self.db.seed(f"chats/c1/messages/{message_id}", {"text": message_id, **data})
        self.bucket.add("chat_images/a.png", _ago(days=1))

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def _remaining(self) -> set[str]:
        return set(self.db.children("chats/c1/messages"))

    def test_chat_sweep_applies_retention_rules(self):
        removed = self.service.cleanup_chat_messages("c1", "alice")

        self.assertEqual(removed, 6)
        self.assertEqual(self._remaining(), {"unread_5d", "read_recent", "no_timestamp"})
        self.assertEqual(self.db.commits, 1)

    def test_deleted_messages_are_archived_and_media_removed(self):
        self.service.cleanup_chat_messages("c1", "alice")

        archived = {message["messageId"] for message in self.archive.get_local_messages("c1", "alice")}
        self.assertEqual(archived, {"read_old", "unread_8d", "read_list", "all_read", "expired", "image"})
        self.assertIn("chat_images/a.png", self.bucket.deleted)

    def test_manual_cleanup_uses_the_callers_read_state(self):
        removed = self.service.manual_cleanup("c1", "bob")

        # bob has not read read_old / read_list, so only the unconditional rules apply.
        self.assertEqual(removed, 4)
        self.assertIn("read_old", self._remaining())

    def test_manual_cleanup_requires_membership(self):
        with self.assertRaises(CleanupPermissionError):
            self.service.manual_cleanup("c1", "mallory")
        with self.assertRaises(CleanupPermissionError):
            self.service.manual_cleanup("missing", "alice")

        self.assertEqual(len(self._remaining()), 9)

    def test_overlapping_passes_are_refused(self):
        self.service._pass_lock.acquire()
        try:
            self.assertTrue(self.service.is_cleaning)
            with self.assertRaises(CleanupInProgress):
                self.service.perform_cleanup()
            with self.assertRaises(CleanupInProgress):
                self.service.manual_cleanup("c1", "alice")
            self.service.run_once()
        finally:
            self.service._pass_lock.release()

        self.assertEqual(len(self._remaining()), 9)
        self.assertIsNone(self.db.read("system_stats/message_cleanup"))
        self.assertFalse(self.service.is_cleaning)
        self.assertIsNotNone(self.service.perform_cleanup())

    def test_local_storage_sweep(self):
        _touch(self.data_dir / "chat_files" / "old.bin", _ago(days=15))
        _touch(self.data_dir / "chat_files" / "nested" / "new.bin", _ago(days=2))
        _touch(self.data_dir / "chat_temp" / "old.tmp", _ago(hours=25))
        _touch(self.data_dir / "chat_temp" / "new.tmp", _ago(hours=2))

        removed = self.service.cleanup_local_storage()

        self.assertEqual(removed, 2)
        self.assertFalse((self.data_dir / "chat_files" / "old.bin").exists())
        self.assertTrue((self.data_dir / "chat_files" / "nested" / "new.bin").exists())
        self.assertFalse((self.data_dir / "chat_temp" / "old.tmp").exists())

    def test_storage_sweep_only_touches_chat_folders(self):
        self.bucket.add("chat_images/old.png", _ago(days=15))
        self.bucket.add("chat_documents/new.pdf", _ago(days=1))
        self.bucket.add("voice_messages/old.m4a", _ago(days=20))
        self.bucket.add("profile_pictures/old.png", _ago(days=30))

        removed = self.service.cleanup_firebase_storage()

        self.assertEqual(removed, 2)
        self.assertEqual(
            set(self.bucket.blobs),
            {"chat_images/a.png", "chat_documents/new.pdf", "profile_pictures/old.png"},
        )

    def test_perform_cleanup_records_statistics(self):
        result = self.service.perform_cleanup()

        self.assertIsNotNone(result)
        self.assertEqual(result.firestore_removed, 6)
        stats = self.db.read("system_stats/message_cleanup")
        self.assertEqual(stats["firestoreMessagesRemoved"], 6)
        self.assertEqual(stats["totalRemoved"], result.total)
        self.assertEqual(stats["performedBy"], "alice")
        self.assertEqual(stats["readMessageExpiry"], 3)
        self.assertEqual(stats["lastCleanup"], START)
        self.assertEqual(self.sleeps, [])

    def test_perform_cleanup_retries_then_succeeds(self):
        self.db.fail_next("stream")

        result = self.service.perform_cleanup()

        self.assertIsNotNone(result)
        self.assertEqual(self.sleeps, [2])

    def test_perform_cleanup_logs_failure_after_three_attempts(self):
        self.db.fail_next("stream", times=3)

        result = self.service.perform_cleanup()

        self.assertIsNone(result)
        self.assertEqual(self.sleeps, [2, 4])
        logs = list(self.db.children("cleanup_logs").values())
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["type"], "automatic_cleanup_failure")
        self.assertEqual(logs[0]["userId"], "alice")
        self.assertIsNone(self.db.read("system_stats/message_cleanup"))

    def test_cleanup_without_account_skips_firestore_messages(self):
        self.service.agent_uid = None

        result = self.service.perform_cleanup()

        self.assertEqual(result.firestore_removed, 0)
        self.assertEqual(len(self._remaining()), 9)

    def test_get_cleanup_stats(self):
        self.assertIsNone(self.service.get_cleanup_stats())
        self.service.perform_cleanup()
        self.assertEqual(self.service.get_cleanup_stats()["performedBy"], "alice")

    def test_update_cleanup_settings(self):
        settings = self.service.update_cleanup_settings(
            read_expiry=timedelta(days=1),
            interval_hours=12,
        )

        self.assertEqual(settings["readMessageExpiry"], 1)
        self.assertEqual(settings["cleanupInterval"], 12)
        self.assertFalse(self.service.running)

        with self.assertRaises(CleanupError):
            self.service.update_cleanup_settings(unread_expiry=timedelta(hours=12))
        with self.assertRaises(CleanupError):
            self.service.update_cleanup_settings(interval_hours=0)


if __name__ == "__main__":
    unittest.main()
