"""Process-wide service instances shared by the HTTP routes and background loops."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Optional
import logging

from .cleanup.service import MessageCleanupService
from .config import AppConfig
from .firebase import get_firestore_client
from .local import LocalMessageStorage, LocalStore
from .notifications.service import notify_users
from .offline.connectivity import ConnectivityMonitor
from .offline.service import OfflineService
from .scheduled.service import ScheduledMessageRunner, ScheduledMessagesService

log = logging.getLogger(__name__)

_STORE_FILENAME = "soc_chat.sqlite3"


@dataclass(slots=True)
class Services:
    store: LocalStore
    local_messages: LocalMessageStorage
    offline: OfflineService
    connectivity: ConnectivityMonitor
    scheduled: ScheduledMessagesService
    scheduler: ScheduledMessageRunner
    cleanup: MessageCleanupService
    db: Any = None

    @property
    def background(self) -> tuple[Any, ...]:
        return (self.connectivity, self.scheduler, self.cleanup)


def build_services(config: AppConfig, *, db: Any = None, bucket: Any = None) -> Services:
    store = LocalStore(config.local_data_dir / _STORE_FILENAME)
    local_messages = LocalMessageStorage(store)

    offline = OfflineService(
        store,
        config.local_data_dir / "offline_media",
        db=db,
        bucket=bucket,
        max_retries=config.sync_max_retries,
        backoff=timedelta(seconds=config.sync_backoff_seconds),
    )
    connectivity = ConnectivityMonitor(
        offline,
        interval=config.connectivity_check_interval,
        probe_url=config.connectivity_probe_url,
    )

    notifier = partial(notify_users, db=db) if db is not None else notify_users
    scheduled = ScheduledMessagesService(db=db, bucket=bucket, notifier=notifier)
    scheduler = ScheduledMessageRunner(scheduled, interval=config.scheduler_interval)

    cleanup = MessageCleanupService(
        local_messages,
        config.local_data_dir,
        db=db,
        bucket=bucket,
        agent_uid=config.agent_uid,
        interval_hours=config.cleanup_interval_hours,
        read_expiry=timedelta(days=config.read_message_expiry_days),
        unread_expiry=timedelta(days=config.unread_message_expiry_days),
        media_expiry=timedelta(days=config.media_file_expiry_days),
    )

    return Services(
        store=store,
        local_messages=local_messages,
        offline=offline,
        connectivity=connectivity,
        scheduled=scheduled,
        scheduler=scheduler,
        cleanup=cleanup,
        db=db,
    )


_services: Optional[Services] = None


def install_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services have not been configured; call create_app() first")
    return _services


def get_offline_service() -> OfflineService:
    return get_services().offline


def get_scheduled_service() -> ScheduledMessagesService:
    return get_services().scheduled


def get_cleanup_service() -> MessageCleanupService:
    return get_services().cleanup


def get_firestore() -> Any:
    services = get_services()
    return services.db if services.db is not None else get_firestore_client()


def start_background_services() -> Services:
    """Start the connectivity monitor, scheduled-message runner and cleanup sweep."""
    services = get_services()
    for service in services.background:
        service.start()
    return services


def stop_background_services() -> None:
    if _services is None:
        return
    for service in _services.background:
        service.stop()
    _services.offline.dispose()
    log.info("Background services stopped")
