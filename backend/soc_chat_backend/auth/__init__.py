from .utils import AuthContext, AuthError, require_firebase_user

__all__ = ["AuthContext", "AuthError", "require_firebase_user"]
