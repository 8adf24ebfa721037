from datetime import datetime, timedelta, timezone

import pytest

from soc_chat_backend.local.messages import LocalMessageKey, LocalMessageStorage, parse_timestamp
from soc_chat_backend.local.store import LocalStore

from firestore_fakes import FrozenClock

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def archive(clock):
    store = LocalStore()
    yield LocalMessageStorage(store, clock=clock)
    store.close()


def test_ids_with_underscores_do_not_collide(archive):
    first = LocalMessageKey("chat_a", "b_c", "user")
    second = LocalMessageKey("chat_a_b", "c", "user")

    archive.store_message(first, {"text": "one"})
    archive.store_message(second, {"text": "two"})

    assert archive.get_local_message(first)["text"] == "one"
    assert archive.get_local_message(second)["text"] == "two"
    assert archive.get_storage_stats()["totalMessages"] == 2


def test_store_message_adds_local_metadata(archive):
    key = LocalMessageKey("c1", "m1", "u1")

    stored = archive.store_message(key, {"text": "hi"})

    assert stored["messageId"] == "m1"
    assert stored["chatId"] == "c1"
    assert stored["userId"] == "u1"
    assert stored["isLocal"] is True
    assert stored["storedAt"] == START.isoformat()


def test_messages_sorted_by_timestamp_with_missing_last(archive):
    archive.store_message(LocalMessageKey("c1", "late", "u1"), {"timestamp": "2024-05-01T10:00:00Z"})
    archive.store_message(LocalMessageKey("c1", "none", "u1"), {"text": "no time"})
    archive.store_message(LocalMessageKey("c1", "early", "u1"), {"timestamp": 1714550400000})
    archive.store_message(LocalMessageKey("c2", "other", "u1"), {"timestamp": "2024-04-01T00:00:00Z"})

    ids = [message["messageId"] for message in archive.get_local_messages("c1")]

    assert ids == ["early", "late", "none"]


def test_mark_read_and_delivered(archive, clock):
    key = LocalMessageKey("c1", "m1", "u1")
    archive.store_message(key, {"text": "hi"})
    clock.advance(minutes=5)

    assert archive.mark_delivered(key) is True
    assert archive.mark_read(key) is True
    assert archive.mark_read(LocalMessageKey("c1", "missing", "u1")) is False

    message = archive.get_local_message(key)
    assert message["isDelivered"] is True
    assert message["isRead"] is True
    assert message["readAt"] == (START + timedelta(minutes=5)).isoformat()


def test_cleanup_old_messages_drops_expired_rows(archive, clock):
    archive.store_message(LocalMessageKey("c1", "old", "u1"), {"text": "old"})
    clock.advance(days=31)
    archive.store_message(LocalMessageKey("c1", "new", "u1"), {"text": "new"})

    removed = archive.cleanup_old_messages()

    assert removed == 1
    assert archive.get_local_message(LocalMessageKey("c1", "old", "u1")) is None
    assert archive.get_local_message(LocalMessageKey("c1", "new", "u1")) is not None


def test_chats_are_stored_per_user(archive):
    archive.store_chat("c1", "u1", {"name": "Team"})

    assert archive.get_local_chat("c1", "u1")["name"] == "Team"
    assert archive.get_local_chat("c1", "u2") is None

    archive.clear_all()
    assert archive.get_storage_stats() == {"totalMessages": 0, "totalChats": 0}


def test_parse_timestamp_shapes():
    assert parse_timestamp(None) is None
    assert parse_timestamp("garbage") is None
    assert parse_timestamp("2024-05-01T12:00:00Z") == START
    assert parse_timestamp(START.timestamp()) == START
    assert parse_timestamp(int(START.timestamp() * 1000)) == START
    assert parse_timestamp(datetime(2024, 5, 1, 12, 0)) == START
