from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path

import pytest

from soc_chat_backend import create_app
from soc_chat_backend.auth import utils as auth_utils
from soc_chat_backend.config import AppConfig
from soc_chat_backend.services import build_services, install_services

from firestore_fakes import FakeBucket, FakeFirestore


@pytest.fixture
def db():
    firestore = FakeFirestore()
    firestore.seed("chats/c1", {"members": ["alice", "bob"]})
    return firestore


@pytest.fixture
def app(tmp_path, db, monkeypatch):
    config = AppConfig(
        port=5000,
        firebase_credentials_path=Path("unused.json"),
        local_data_dir=tmp_path,
        agent_uid="alice",
    )
    services = build_services(config, db=db, bucket=FakeBucket())
    services.scheduled.notifier = None
    monkeypatch.setattr(auth_utils.firebase_auth, "verify_id_token", lambda token: {"uid": token, "name": token.title()})
    flask_app = create_app(config, services=services)
    yield flask_app
    services.store.close()
    install_services(None)


@pytest.fixture
def client(app):
    return app.test_client()


def _auth(uid: str = "alice") -> dict[str, str]:
    return {"Authorization": f"Bearer {uid}"}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_routes_require_authentication(client):
    assert client.get("/offline/stats").status_code == 401
    assert client.get("/scheduled").status_code == 401
    assert client.get("/cleanup/stats").status_code == 401
    assert client.post("/notifications/token", json={"token": "t"}).status_code == 401


def test_offline_message_flow(client, db):
    response = client.post("/offline/messages", json={"chatId": "c1", "messageId": "m1", "text": "hi"}, headers=_auth())
    assert response.status_code == 201
    assert response.get_json()["senderId"] == "alice"

    listed = client.get("/offline/messages/c1", headers=_auth()).get_json()["items"]
    assert [item["messageId"] for item in listed] == ["m1"]

    queue = client.get("/offline/queue", headers=_auth()).get_json()["items"]
    assert queue[0]["actionType"] == "message"

    synced = client.post("/offline/sync", headers=_auth())
    assert synced.status_code == 200
    assert synced.get_json()["synced"] == 1
    assert db.read("chats/c1/messages/m1")["text"] == "hi"

    assert client.delete("/offline/messages/c1/m1", headers=_auth()).status_code == 204
    assert client.delete("/offline/messages/c1/m1", headers=_auth()).status_code == 404


def test_offline_message_requires_chat(client):
    response = client.post("/offline/messages", json={"text": "orphan"}, headers=_auth())

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"


def test_sync_refused_while_offline(app, client):
    app.extensions["soc_chat"].offline.set_online(False)

    assert client.post("/offline/sync", headers=_auth()).status_code == 503


def test_schedule_lifecycle(client):
    when = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    created = client.post(
        "/scheduled",
        json={"chatId": "c1", "messageText": "Reminder", "scheduledTime": when, "recurringPattern": "weekly"},
        headers=_auth(),
    )
    assert created.status_code == 201
    body = created.get_json()
    schedule_id = body["scheduleId"]
    assert body["senderName"] == "Alice"
    assert body["recurringPattern"] == "weekly"

    assert client.get(f"/scheduled/{schedule_id}", headers=_auth("bob")).status_code == 403
    assert client.get(f"/scheduled/{schedule_id}", headers=_auth()).status_code == 200

    chat_items = client.get("/scheduled/chats/c1", headers=_auth()).get_json()["items"]
    assert [item["scheduleId"] for item in chat_items] == [schedule_id]

    patched = client.patch(f"/scheduled/{schedule_id}", json={"messageText": "Updated"}, headers=_auth())
    assert patched.get_json()["messageText"] == "Updated"

    assert client.post(f"/scheduled/{schedule_id}/cancel", headers=_auth("bob")).status_code == 403
    assert client.post(f"/scheduled/{schedule_id}/cancel", headers=_auth()).status_code == 200
    assert client.get("/scheduled/stats", headers=_auth()).get_json()["cancelled"] == 1

    assert client.delete(f"/scheduled/{schedule_id}", headers=_auth()).status_code == 204
    assert client.delete(f"/scheduled/{schedule_id}", headers=_auth()).status_code == 404


def test_schedule_validation(client):
    missing_time = client.post("/scheduled", json={"chatId": "c1", "messageText": "x"}, headers=_auth())
    bad_pattern = client.post(
        "/scheduled",
        json={"chatId": "c1", "messageText": "x", "scheduledTime": "2030-01-01T00:00:00Z", "recurringPattern": "hourly"},
        headers=_auth(),
    )

    assert missing_time.status_code == 400
    assert bad_pattern.status_code == 400


def test_templates(client):
    created = client.post("/scheduled/templates", json={"name": "Hi", "messageText": "Hello"}, headers=_auth())
    assert created.status_code == 201

    items = client.get("/scheduled/templates", headers=_auth()).get_json()["items"]
    assert [item["name"] for item in items] == ["Hi"]


def test_cleanup_routes(client, db):
    old = datetime.now(timezone.utc) - timedelta(days=8)
    db.seed("chats/c1/messages/old", {"text": "old", "timestamp": old})

    chat = client.post("/cleanup/chats/c1", headers=_auth())
    assert chat.get_json() == {"chatId": "c1", "removed": 1}

    run = client.post("/cleanup/run", headers=_auth())
    assert run.status_code == 200
    assert "totalRemoved" in run.get_json()

    stats = client.get("/cleanup/stats", headers=_auth()).get_json()
    assert stats["stats"]["performedBy"] == "alice"
    assert stats["settings"]["readMessageExpiry"] == 3


def test_notification_token_routes(client, db):
    assert client.post("/notifications/token", json={"token": "abc", "platform": "web"}, headers=_auth()).status_code == 200
    assert db.read("users/alice")["fcmToken"] == "abc"

    assert client.post("/notifications/token", json={}, headers=_auth()).status_code == 400

    assert client.delete("/notifications/token", headers=_auth()).status_code == 200
    assert "fcmToken" not in db.read("users/alice")


def test_non_members_are_forbidden(client, db):
    when = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    mallory = _auth("mallory")

    scheduled = client.post("/scheduled", json={"chatId": "c1", "messageText": "x", "scheduledTime": when}, headers=mallory)
    assert scheduled.status_code == 403
    assert scheduled.get_json()["error"] == "forbidden"
    assert client.get("/scheduled/chats/c1", headers=mallory).status_code == 403

    assert client.post("/offline/messages", json={"chatId": "c1", "text": "hi"}, headers=mallory).status_code == 403
    assert client.get("/offline/messages/c1", headers=mallory).status_code == 403
    assert client.delete("/offline/messages/c1/m1", headers=mallory).status_code == 403

    db.seed("chats/c1/messages/old", {"text": "old", "timestamp": datetime.now(timezone.utc) - timedelta(days=8)})
    assert client.post("/cleanup/chats/c1", headers=mallory).status_code == 403
    assert db.read("chats/c1/messages/old") is not None

    assert db.children("scheduled_messages") == {}
    assert client.get("/offline/queue", headers=_auth()).get_json()["items"] == []


def test_cleanup_refused_while_a_pass_is_running(app, client):
    cleanup = app.extensions["soc_chat"].cleanup
    cleanup._pass_lock.acquire()
    try:
        run = client.post("/cleanup/run", headers=_auth())
        chat = client.post("/cleanup/chats/c1", headers=_auth())
    finally:
        cleanup._pass_lock.release()

    assert run.status_code == 409
    assert run.get_json()["error"] == "cleanup_in_progress"
    assert chat.status_code == 409


def test_notification_token_errors(client, db):
    bad_type = client.post("/notifications/token", json={"token": 42}, headers=_auth())
    assert bad_type.status_code == 400
    assert bad_type.get_json()["error"] == "validation_error"

    db.fail_next("set")
    outage = client.post("/notifications/token", json={"token": "abc"}, headers=_auth())
    assert outage.status_code == 503
    assert outage.get_json()["error"] == "firestore_error"


def test_create_app_applies_configured_log_level(tmp_path, db):
    root = logging.getLogger()
    previous = root.level
    config = AppConfig(
        port=5000,
        firebase_credentials_path=Path("unused.json"),
        local_data_dir=tmp_path,
        log_level="DEBUG",
    )
    services = build_services(config, db=db, bucket=FakeBucket())
    try:
        flask_app = create_app(config, services=services)

        assert root.level == logging.DEBUG
        assert flask_app.config["LOG_LEVEL"] == "DEBUG"
    finally:
        root.setLevel(previous)
        services.store.close()
