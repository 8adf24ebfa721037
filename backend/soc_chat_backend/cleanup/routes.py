from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify

from ..auth.utils import AuthError, require_firebase_user
from ..local.messages import parse_timestamp
from ..services import get_cleanup_service
from .service import CleanupError, CleanupInProgress, CleanupPermissionError

cleanup_bp = Blueprint("cleanup", __name__, url_prefix="/cleanup")


def _in_progress(exc: CleanupInProgress) -> tuple[Any, int]:
    return jsonify({"error": "cleanup_in_progress", "message": str(exc)}), HTTPStatus.CONFLICT


def _serialize_stats(stats: dict[str, Any]) -> dict[str, Any]:
    payload = dict(stats)
    last_cleanup = parse_timestamp(payload.get("lastCleanup"))
    payload["lastCleanup"] = last_cleanup.isoformat() if last_cleanup else None
    return payload


@cleanup_bp.post("/chats/<chat_id>")
def cleanup_chat(chat_id: str) -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        removed = get_cleanup_service().manual_cleanup(chat_id, auth_ctx.uid)
    except CleanupPermissionError as exc:
        return jsonify({"error": "forbidden", "message": str(exc)}), HTTPStatus.FORBIDDEN
    except CleanupInProgress as exc:
        return _in_progress(exc)
    except CleanupError as exc:
        return jsonify({"error": "cleanup_failed", "message": str(exc)}), HTTPStatus.SERVICE_UNAVAILABLE

    return jsonify({"chatId": chat_id, "removed": removed}), HTTPStatus.OK


@cleanup_bp.get("/stats")
def cleanup_stats() -> tuple[Any, int]:
    try:
        require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    service = get_cleanup_service()
    try:
        stats = service.get_cleanup_stats()
    except CleanupError as exc:
        return jsonify({"error": "firestore_error", "message": str(exc)}), HTTPStatus.SERVICE_UNAVAILABLE

    return jsonify({
        "stats": _serialize_stats(stats) if stats is not None else None,
        "settings": service.settings(),
    }), HTTPStatus.OK


@cleanup_bp.post("/run")
def run_cleanup() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        result = get_cleanup_service().perform_cleanup(auth_ctx.uid)
    except CleanupInProgress as exc:
        return _in_progress(exc)
    if result is None:
        return (
            jsonify({"error": "cleanup_failed", "message": "Cleanup failed after retries."}),
            HTTPStatus.SERVICE_UNAVAILABLE,
        )
    return jsonify(result.to_dict()), HTTPStatus.OK
