"""FCM device tokens and push delivery for chat events."""

from __future__ import annotations

from typing import Any, Iterable, Optional
import logging

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import firestore as firebase_firestore
from firebase_admin import messaging
from google.api_core import exceptions as google_exceptions

from ..firebase import get_firestore_client

log = logging.getLogger(__name__)

__all__ = [
    "NotificationError",
    "TokenValidationError",
    "notify_users",
    "remove_fcm_token",
    "save_fcm_token",
]

_USERS_COLLECTION = "users"
_PLATFORMS = {"android", "ios", "web"}


class NotificationError(Exception):
    """Raised when a device token cannot be stored or removed."""


class TokenValidationError(NotificationError):
    """Raised when a token registration request is malformed."""


def save_fcm_token(uid: str, token: str, platform: str = "android", *, db: Any = None) -> dict[str, Any]:
    if not uid:
        raise TokenValidationError("uid is required")
    if token is not None and not isinstance(token, str):
        raise TokenValidationError("token must be a string")
    token = (token or "").strip()
    if not token:
        raise TokenValidationError("token is required")
    if platform is not None and not isinstance(platform, str):
        raise TokenValidationError("platform must be a string")
    platform = (platform or "android").strip().lower()
    if platform not in _PLATFORMS:
        raise TokenValidationError(f"Unsupported platform '{platform}'")

    client = db or get_firestore_client()
    try:
        client.collection(_USERS_COLLECTION).document(uid).set(
            {
                "fcmToken": token,
                "platform": platform,
                "fcmTokenUpdatedAt": firebase_firestore.SERVER_TIMESTAMP,
            },
            merge=True,
        )
    except google_exceptions.GoogleAPICallError as exc:
        raise NotificationError(f"Failed to save FCM token: {exc}") from exc

    log.info("FCM token saved for %s (%s)", uid, platform)
    return {"uid": uid, "platform": platform}


def remove_fcm_token(uid: str, *, db: Any = None) -> None:
    client = db or get_firestore_client()
    try:
        client.collection(_USERS_COLLECTION).document(uid).set(
            {"fcmToken": firebase_firestore.DELETE_FIELD},
            merge=True,
        )
    except google_exceptions.GoogleAPICallError as exc:
        raise NotificationError(f"Failed to remove FCM token: {exc}") from exc
    log.info("FCM token removed for %s", uid)


def _token_for(client: Any, uid: str) -> Optional[str]:
    snapshot = client.collection(_USERS_COLLECTION).document(uid).get()
    if not snapshot.exists:
        return None
    token = (snapshot.to_dict() or {}).get("fcmToken")
    return token if isinstance(token, str) and token else None


def notify_users(
    uids: Iterable[str],
    *,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    db: Any = None,
) -> int:
    """Send one push per registered device and return how many went out.

    Tokens FCM reports as unregistered are removed from the user profile.
    Failures are logged and never raised to the caller.
    """

    client = db or get_firestore_client()
    payload = {key: str(value) for key, value in (data or {}).items() if value is not None}
    sent = 0

    for uid in dict.fromkeys(uids):
        try:
            token = _token_for(client, uid)
        except google_exceptions.GoogleAPICallError as exc:
            log.warning("Could not load FCM token for %s: %s", uid, exc)
            continue
        if token is None:
            continue

        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data=payload,
            android=messaging.AndroidConfig(priority="high"),
        )
        try:
            messaging.send(message)
            sent += 1
        except messaging.UnregisteredError:
            log.info("Pruning unregistered FCM token for %s", uid)
            try:
                remove_fcm_token(uid, db=client)
            except NotificationError as exc:
                log.warning("%s", exc)
        except (firebase_exceptions.FirebaseError, ValueError) as exc:
            log.warning("FCM send to %s failed: %s", uid, exc)

    return sent
