from __future__ import annotations

import logging

import requests

from ..background import PeriodicService
from .service import OfflineService

log = logging.getLogger(__name__)

_DEFAULT_CHECK_INTERVAL = 5  # seconds
_DEFAULT_PROBE_URL = "https://firestore.googleapis.com/"
_PROBE_TIMEOUT = 3


def check_connectivity(
    probe_url: str = _DEFAULT_PROBE_URL,
    *,
    session: requests.Session | None = None,
    timeout: float = _PROBE_TIMEOUT,
) -> bool:
    """Return True when ``probe_url`` answers at all, whatever the status code."""

    http = session or requests
    try:
        http.head(probe_url, timeout=timeout, allow_redirects=False)
    except requests.RequestException as exc:
        log.debug("Connectivity probe to %s failed: %s", probe_url, exc)
        return False
    return True


class ConnectivityMonitor(PeriodicService):
    """Poll reachability and drain the sync queue while online."""

    name = "ConnectivityMonitor"

    def __init__(
        self,
        offline_service: OfflineService,
        *,
        interval: int = _DEFAULT_CHECK_INTERVAL,
        probe_url: str = _DEFAULT_PROBE_URL,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(interval)
        self.offline_service = offline_service
        self.probe_url = probe_url
        self.session = session

    def run_once(self) -> None:
        online = check_connectivity(self.probe_url, session=self.session)
        self.offline_service.set_online(online)

        if online and self.offline_service.has_due_items():
            self.offline_service.sync_now()
