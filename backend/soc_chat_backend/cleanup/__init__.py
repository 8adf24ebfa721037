from .service import (
    CleanupError,
    CleanupInProgress,
    CleanupPermissionError,
    CleanupResult,
    MessageCleanupService,
    should_delete_message,
)

__all__ = [
    "CleanupError",
    "CleanupInProgress",
    "CleanupPermissionError",
    "CleanupResult",
    "MessageCleanupService",
    "should_delete_message",
]
