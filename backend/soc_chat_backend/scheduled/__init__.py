"""Deferred and recurring message delivery."""

from .recurrence import RECURRING_PATTERNS, next_occurrence, normalize_pattern
from .service import (
    ScheduleError,
    ScheduleNotFound,
    SchedulePermissionError,
    ScheduledMessage,
    ScheduledMessageRunner,
    ScheduledMessagesService,
)

__all__ = [
    "RECURRING_PATTERNS",
    "ScheduleError",
    "ScheduleNotFound",
    "SchedulePermissionError",
    "ScheduledMessage",
    "ScheduledMessageRunner",
    "ScheduledMessagesService",
    "next_occurrence",
    "normalize_pattern",
]
