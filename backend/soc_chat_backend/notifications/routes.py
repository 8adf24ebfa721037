from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..auth.utils import AuthError, require_firebase_user
from ..services import get_firestore
from .service import NotificationError, TokenValidationError, remove_fcm_token, save_fcm_token

notifications_bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@notifications_bp.post("/token")
def register_token() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}
    try:
        result = save_fcm_token(
            auth_ctx.uid,
            payload.get("token"),
            payload.get("platform") or "android",
            db=get_firestore(),
        )
    except TokenValidationError as exc:
        return jsonify({"error": "validation_error", "message": str(exc)}), HTTPStatus.BAD_REQUEST
    except NotificationError as exc:
        return jsonify({"error": "firestore_error", "message": str(exc)}), HTTPStatus.SERVICE_UNAVAILABLE

    return jsonify(result), HTTPStatus.OK


@notifications_bp.delete("/token")
def unregister_token() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        remove_fcm_token(auth_ctx.uid, db=get_firestore())
    except NotificationError as exc:
        return jsonify({"error": "firestore_error", "message": str(exc)}), HTTPStatus.SERVICE_UNAVAILABLE

    return jsonify({"status": "removed"}), HTTPStatus.OK
