import pytest
from flask import Flask

from soc_chat_backend.auth import utils
from soc_chat_backend.auth.utils import AuthError


@pytest.fixture
def flask_app():
    return Flask(__name__)


def _bearer(token: str = "test_token") -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_missing_header_is_rejected(flask_app):
    with flask_app.test_request_context("/offline/stats"):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "unauthorized"
    assert excinfo.value.status.value == 401


def test_non_bearer_scheme_is_rejected(flask_app):
    with flask_app.test_request_context("/offline/stats", headers={"Authorization": "Basic abc"}):
        with pytest.raises(AuthError):
            utils.require_firebase_user()


def test_expired_token_maps_to_token_expired(monkeypatch, flask_app):
    def fake_verify(token: str):
        raise utils.firebase_auth.ExpiredIdTokenError("expired", None)

    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", fake_verify)

    with flask_app.test_request_context("/scheduled", headers=_bearer()):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "token_expired"
    assert excinfo.value.status.value == 401


def test_returns_context_with_display_name(monkeypatch, flask_app):
    def fake_verify(token: str):
        assert token == "valid_token"
        return {"uid": "user-123", "name": "Ada"}

    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", fake_verify)

    with flask_app.test_request_context("/scheduled", headers=_bearer("valid_token")):
        ctx = utils.require_firebase_user()

    assert ctx.uid == "user-123"
    assert ctx.token == "valid_token"
    assert ctx.display_name == "Ada"


def test_token_without_uid_is_rejected(monkeypatch, flask_app):
    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", lambda token: {"name": "ghost"})

    with flask_app.test_request_context("/scheduled", headers=_bearer()):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "invalid_token"
