from __future__ import annotations

from functools import wraps
from http import HTTPStatus
from typing import Any, Callable

from flask import Blueprint, jsonify, request

from ..auth.utils import AuthError, require_firebase_user
from ..local.store import LocalStoreError
from ..services import get_offline_service
from .service import OfflineError, OfflinePermissionError

offline_bp = Blueprint("offline", __name__, url_prefix="/offline")


def _offline_error_handler(fn: Callable[..., Any]):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except AuthError as exc:
            return exc.to_response()
        except OfflinePermissionError as exc:
            return jsonify({"error": "forbidden", "message": str(exc)}), HTTPStatus.FORBIDDEN
        except OfflineError as exc:
            return jsonify({"error": "validation_error", "message": str(exc)}), HTTPStatus.BAD_REQUEST
        except LocalStoreError as exc:
            return jsonify({"error": "local_store_error", "message": str(exc)}), HTTPStatus.INTERNAL_SERVER_ERROR

    return wrapper


@offline_bp.get("/stats")
@_offline_error_handler
def offline_stats():
    require_firebase_user()
    return jsonify(get_offline_service().get_offline_stats()), HTTPStatus.OK


@offline_bp.post("/messages")
@_offline_error_handler
def save_offline_message():
    auth_ctx = require_firebase_user()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise OfflineError("Message payload must be a JSON object")
    if not payload.get("chatId"):
        raise OfflineError("chatId is required to save a message offline")

    service = get_offline_service()
    service.ensure_chat_member(payload["chatId"], auth_ctx.uid)
    payload["senderId"] = auth_ctx.uid
    payload.setdefault("senderName", auth_ctx.display_name)
    message = service.save_message_offline(payload)
    return jsonify(message), HTTPStatus.CREATED


@offline_bp.get("/messages/<chat_id>")
@_offline_error_handler
def list_offline_messages(chat_id: str):
    auth_ctx = require_firebase_user()
    service = get_offline_service()
    service.ensure_chat_member(chat_id, auth_ctx.uid)
    messages = service.get_offline_messages(chat_id)
    return jsonify({"items": messages}), HTTPStatus.OK


@offline_bp.delete("/messages/<chat_id>/<message_id>")
@_offline_error_handler
def delete_offline_message(chat_id: str, message_id: str):
    auth_ctx = require_firebase_user()
    service = get_offline_service()
    service.ensure_chat_member(chat_id, auth_ctx.uid)
    if not service.delete_offline_message(chat_id, message_id):
        return jsonify({"error": "not_found", "message": "Offline message not found."}), HTTPStatus.NOT_FOUND
    return "", HTTPStatus.NO_CONTENT


@offline_bp.get("/queue")
@_offline_error_handler
def sync_queue():
    require_firebase_user()
    items = [item.to_dict() for item in get_offline_service().get_sync_queue()]
    return jsonify({"items": items}), HTTPStatus.OK


@offline_bp.post("/sync")
@_offline_error_handler
def trigger_sync():
    require_firebase_user()
    service = get_offline_service()
    if not service.is_online:
        return (
            jsonify({"error": "offline", "message": "No connectivity; queued items will sync later."}),
            HTTPStatus.SERVICE_UNAVAILABLE,
        )
    result = service.sync_now()
    status = HTTPStatus.CONFLICT if result.get("skipped") else HTTPStatus.OK
    return jsonify(result), status
