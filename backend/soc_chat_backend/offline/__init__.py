"""Offline cache and sync queue."""

from .connectivity import ConnectivityMonitor, check_connectivity
from .service import (
    OfflineError,
    OfflineMedia,
    OfflinePermissionError,
    OfflineService,
    SyncError,
    SyncQueueItem,
)

__all__ = [
    "ConnectivityMonitor",
    "OfflineError",
    "OfflineMedia",
    "OfflinePermissionError",
    "OfflineService",
    "SyncError",
    "SyncQueueItem",
    "check_connectivity",
]
