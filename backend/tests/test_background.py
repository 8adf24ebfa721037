import threading

from soc_chat_backend.background import PeriodicService


class CountingService(PeriodicService):
    name = "CountingService"

    def __init__(self, interval=0.01):
        super().__init__(interval)
        self.calls = 0
        self.ran = threading.Event()

    def run_once(self):
        self.calls += 1
        self.ran.set()
        if self.calls == 1:
            raise RuntimeError("first pass fails")


def test_loop_survives_errors_and_stops():
    service = CountingService()
    service.start()
    try:
        assert service.ran.wait(2)
        service.ran.clear()
        assert service.ran.wait(2)
        assert service.running
    finally:
        service.stop()

    assert not service.running
    assert service.calls >= 2


def test_restart_updates_interval_without_starting():
    service = CountingService()

    service.restart(30)

    assert service.interval == 30
    assert service.thread is None
