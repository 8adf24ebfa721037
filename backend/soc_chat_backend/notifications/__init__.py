from .service import NotificationError, TokenValidationError, notify_users, remove_fcm_token, save_fcm_token

__all__ = ["NotificationError", "TokenValidationError", "notify_users", "remove_fcm_token", "save_fcm_token"]
