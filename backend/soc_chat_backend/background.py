"""Shared plumbing for the periodic background sweeps."""

from __future__ import annotations

import logging
import threading

log = logging.getLogger(__name__)


class PeriodicService:
    """Run :meth:`run_once` on a daemon thread every ``interval`` seconds.

    Subclasses implement ``run_once``. Exceptions raised by a pass are logged
    and the loop keeps going; ``stop`` wakes the thread immediately.
    """

    name = "PeriodicService"

    def __init__(self, interval: float, *, run_immediately: bool = True) -> None:
        self.interval = interval
        self.run_immediately = run_immediately
        self.thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stop_event.is_set()

    def run_once(self) -> None:
        raise NotImplementedError

    def run(self) -> None:
        """Main loop running in the background thread."""
        log.info("Starting %s (interval: %ss)", self.name, self.interval)

        if not self.run_immediately:
            self._stop_event.wait(self.interval)

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as exc:
                log.error("Error in %s loop: %s", self.name, exc)

            self._stop_event.wait(self.interval)

        log.info("%s stopped", self.name)

    def start(self) -> None:
        """Start the service in a background thread."""
        if self.thread and self.thread.is_alive():
            log.warning("%s is already running", self.name)
            return

        self._stop_event.clear()
        self.thread = threading.Thread(target=self.run, daemon=True, name=self.name)
        self.thread.start()
        log.info("%s thread started", self.name)

    def stop(self) -> None:
        """Stop the service and wait briefly for the thread to exit."""
        self._stop_event.set()

        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=5)
        self.thread = None

    def restart(self, interval: float | None = None) -> None:
        if interval is not None:
            self.interval = interval
        was_running = self.thread is not None
        self.stop()
        if was_running:
            self.start()
