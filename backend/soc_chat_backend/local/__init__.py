"""On-device persistence: the key-value cache and the local message archive."""

from __future__ import annotations

from .messages import LocalMessageKey, LocalMessageStorage, parse_timestamp
from .store import LocalStore, LocalStoreError

__all__ = [
    "LocalMessageKey",
    "LocalMessageStorage",
    "LocalStore",
    "LocalStoreError",
    "parse_timestamp",
]
