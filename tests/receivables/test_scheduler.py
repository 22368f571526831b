import threading

from backend.apps.receivables.errors import ConfigurationError, SyncAlreadyRunningError
from backend.apps.receivables.scheduler import SyncScheduler
from tests.receivables.factories import receipt


class StubOrchestrator:
    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.called = threading.Event()
        self.is_running = False

    def run_cycle(self, entity_type="both", mode="manual", triggered_by="system"):
        self.calls.append((entity_type, mode, triggered_by))
        self.called.set()
        if self.error is not None:
            raise self.error
        return type("Report", (), {"status": "success"})()


def test_interval_zero_disables():
    scheduler = SyncScheduler(StubOrchestrator(), interval_minutes=0)

    assert scheduler.start() is False
    assert scheduler.status()["enabled"] is False


def test_tick_runs_automatic_cycle(orchestrator, fake_client, store):
    fake_client.receipts = [receipt("R-1")]
    scheduler = SyncScheduler(orchestrator, interval_minutes=5)

    report = scheduler.run_once()

    assert report.status == "success"
    assert scheduler.last_outcome == "success"
    assert store.list_sync_logs()[0]["mode"] == "auto"
    assert store.list_sync_logs()[0]["triggered_by"] == "scheduler"


def test_tick_skipped_while_cycle_in_flight():
    stub = StubOrchestrator(error=SyncAlreadyRunningError("busy"))
    scheduler = SyncScheduler(stub, interval_minutes=5)

    assert scheduler.run_once() is None
    assert scheduler.last_outcome == "skipped_running"


def test_tick_skipped_without_credentials():
    stub = StubOrchestrator(error=ConfigurationError("BHB API nicht konfiguriert"))
    scheduler = SyncScheduler(stub, interval_minutes=5)

    assert scheduler.run_once() is None
    assert scheduler.status()["last_outcome"] == "skipped_unconfigured"


def test_loop_runs_and_stops():
    stub = StubOrchestrator()
    scheduler = SyncScheduler(stub, interval_minutes=0.001)

    assert scheduler.start() is True
    assert scheduler.start() is False
    assert stub.called.wait(timeout=5)
    scheduler.stop()

    assert scheduler.running is False
    assert stub.calls[0] == ("both", "auto", "scheduler")


def test_set_interval_zero_stops_loop():
    scheduler = SyncScheduler(StubOrchestrator(), interval_minutes=10)
    scheduler.start()

    scheduler.set_interval(0)

    assert scheduler.running is False
    assert scheduler.status()["interval_minutes"] == 0
