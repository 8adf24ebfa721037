from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from flask import Request, jsonify, request
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions

_TOKEN_FAILURES = (
    (firebase_auth.ExpiredIdTokenError, "token_expired", "ID token has expired."),
    (firebase_auth.RevokedIdTokenError, "token_revoked", "ID token has been revoked."),
    (firebase_auth.InvalidIdTokenError, "invalid_token", "ID token is invalid."),
    (firebase_exceptions.InvalidArgumentError, "invalid_token", "ID token is invalid."),
)


class AuthError(Exception):
    """Raised when a chat client cannot be identified."""

    def __init__(self, error: str, message: str, status: HTTPStatus = HTTPStatus.UNAUTHORIZED) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status = status

    def to_response(self) -> tuple[Any, int]:
        return jsonify({"error": self.error, "message": self.message}), self.status


@dataclass(slots=True)
class AuthContext:
    uid: str
    token: str
    claims: dict[str, Any]

    @property
    def display_name(self) -> str:
        name = self.claims.get("name") or self.claims.get("email")
        return name if isinstance(name, str) and name else "Unknown User"


def _bearer_token(req: Request) -> str:
    scheme, _, token = req.headers.get("Authorization", "").strip().partition(" ")
    if not scheme:
        raise AuthError("unauthorized", "Authorization header is required.")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("unauthorized", "Authorization header must be 'Bearer <id token>'.")
    return token.strip()


def require_firebase_user() -> AuthContext:
    """Verify the request's Firebase ID token and return the caller's context."""

    token = _bearer_token(request)

    try:
        claims = firebase_auth.verify_id_token(token)
    except firebase_exceptions.FirebaseError as exc:
        for error_type, code, message in _TOKEN_FAILURES:
            if isinstance(exc, error_type):
                raise AuthError(code, message) from None
        raise AuthError("firebase_auth_error", str(exc), HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    except ValueError:
        raise AuthError("invalid_token", "ID token is invalid.") from None

    uid = claims.get("uid")
    if not isinstance(uid, str) or not uid:
        raise AuthError("invalid_token", "ID token carries no uid claim.")

    return AuthContext(uid=uid, token=token, claims=claims)
