from __future__ import annotations

from functools import wraps
from http import HTTPStatus
from typing import Any, Callable

from flask import Blueprint, jsonify, request

from ..auth.utils import AuthError, require_firebase_user
from ..local.messages import parse_timestamp
from ..services import get_scheduled_service
from .service import ScheduleError, ScheduleNotFound, SchedulePermissionError

scheduled_bp = Blueprint("scheduled", __name__, url_prefix="/scheduled")


def _schedule_error_handler(fn: Callable[..., Any]):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except AuthError as exc:
            return exc.to_response()
        except ScheduleNotFound as exc:
            return jsonify({"error": "not_found", "message": str(exc)}), HTTPStatus.NOT_FOUND
        except SchedulePermissionError as exc:
            return jsonify({"error": "forbidden", "message": str(exc)}), HTTPStatus.FORBIDDEN
        except ScheduleError as exc:
            return jsonify({"error": "validation_error", "message": str(exc)}), HTTPStatus.BAD_REQUEST

    return wrapper


def _request_payload() -> dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True) or {}
        return payload if isinstance(payload, dict) else {}
    return request.form.to_dict()


def _scheduled_time(raw: Any):
    if raw in (None, ""):
        return None
    if isinstance(raw, str) and raw.isdigit():
        raw = int(raw)
    when = parse_timestamp(raw)
    if when is None:
        raise ScheduleError("scheduledTime must be an ISO 8601 string or epoch milliseconds")
    return when


@scheduled_bp.post("")
@_schedule_error_handler
def create_schedule():
    auth_ctx = require_firebase_user()
    payload = _request_payload()

    scheduled_time = _scheduled_time(payload.get("scheduledTime"))
    if scheduled_time is None:
        raise ScheduleError("scheduledTime is required")

    media_bytes = None
    file_name = payload.get("fileName")
    media_type = payload.get("mediaType")
    upload = request.files.get("file")
    if upload is not None and upload.filename:
        media_bytes = upload.read()
        file_name = file_name or upload.filename
        media_type = media_type or upload.mimetype

    additional = payload.get("additionalData")
    record = get_scheduled_service().schedule_message(
        sender_id=auth_ctx.uid,
        sender_name=payload.get("senderName") or auth_ctx.display_name,
        chat_id=payload.get("chatId"),
        message_text=payload.get("messageText", ""),
        scheduled_time=scheduled_time,
        is_group_chat=str(payload.get("isGroupChat", "")).lower() in {"1", "true", "yes"},
        media_url=payload.get("mediaUrl"),
        media_type=media_type,
        media_bytes=media_bytes,
        file_name=file_name,
        recurring_pattern=payload.get("recurringPattern"),
        additional_data=additional if isinstance(additional, dict) else None,
    )
    return jsonify(record.to_json()), HTTPStatus.CREATED


@scheduled_bp.get("")
@_schedule_error_handler
def list_own_schedules():
    auth_ctx = require_firebase_user()
    items = get_scheduled_service().get_user_scheduled_messages(auth_ctx.uid)
    return jsonify({"items": items}), HTTPStatus.OK


@scheduled_bp.get("/chats/<chat_id>")
@_schedule_error_handler
def list_chat_schedules(chat_id: str):
    auth_ctx = require_firebase_user()
    items = get_scheduled_service().get_scheduled_messages(chat_id, auth_ctx.uid)
    return jsonify({"items": items}), HTTPStatus.OK


@scheduled_bp.get("/stats")
@_schedule_error_handler
def schedule_stats():
    auth_ctx = require_firebase_user()
    return jsonify(get_scheduled_service().get_schedule_stats(auth_ctx.uid)), HTTPStatus.OK


@scheduled_bp.post("/templates")
@_schedule_error_handler
def create_template():
    auth_ctx = require_firebase_user()
    payload = _request_payload()
    additional = payload.get("additionalData")
    template = get_scheduled_service().save_message_template(
        auth_ctx.uid,
        name=payload.get("name") or "",
        message_text=payload.get("messageText") or "",
        media_url=payload.get("mediaUrl"),
        media_type=payload.get("mediaType"),
        additional_data=additional if isinstance(additional, dict) else None,
    )
    return jsonify(template), HTTPStatus.CREATED


@scheduled_bp.get("/templates")
@_schedule_error_handler
def list_templates():
    auth_ctx = require_firebase_user()
    items = get_scheduled_service().get_user_templates(auth_ctx.uid)
    return jsonify({"items": items}), HTTPStatus.OK


@scheduled_bp.get("/<schedule_id>")
@_schedule_error_handler
def get_schedule(schedule_id: str):
    auth_ctx = require_firebase_user()
    schedule = get_scheduled_service().get_schedule(schedule_id)
    if schedule.get("senderId") != auth_ctx.uid:
        raise SchedulePermissionError("You do not have access to this scheduled message.")
    return jsonify(schedule), HTTPStatus.OK


@scheduled_bp.patch("/<schedule_id>")
@_schedule_error_handler
def update_schedule(schedule_id: str):
    auth_ctx = require_firebase_user()
    payload = _request_payload()
    additional = payload.get("additionalData")
    schedule = get_scheduled_service().update_scheduled_message(
        schedule_id,
        auth_ctx.uid,
        message_text=payload.get("messageText"),
        scheduled_time=_scheduled_time(payload.get("scheduledTime")),
        recurring_pattern=payload.get("recurringPattern"),
        additional_data=additional if isinstance(additional, dict) else None,
    )
    return jsonify(schedule), HTTPStatus.OK


@scheduled_bp.post("/<schedule_id>/cancel")
@_schedule_error_handler
def cancel_schedule(schedule_id: str):
    auth_ctx = require_firebase_user()
    get_scheduled_service().cancel_scheduled_message(schedule_id, auth_ctx.uid)
    return jsonify({"scheduleId": schedule_id, "status": "cancelled"}), HTTPStatus.OK


@scheduled_bp.delete("/<schedule_id>")
@_schedule_error_handler
def delete_schedule(schedule_id: str):
    auth_ctx = require_firebase_user()
    get_scheduled_service().delete_scheduled_message(schedule_id, auth_ctx.uid)
    return "", HTTPStatus.NO_CONTENT
