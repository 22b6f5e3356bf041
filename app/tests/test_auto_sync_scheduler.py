import asyncio
import threading
import time
from pathlib import Path

from cardsync.core.config import SyncConfig
from cardsync.core.errors import SyncBusyError
from cardsync.core.models import SyncLogEntry
from cardsync.web.scheduler import AutoSyncScheduler, LocalStoreWatcher


class _FakeService:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[tuple[str, bool]] = []
        self._lock = threading.Lock()

    def perform_incremental_sync(self, trigger: str = "manual", full_resync: bool = False) -> SyncLogEntry:
        if not self._lock.acquire(blocking=False):
            raise SyncBusyError("sync_busy")
        try:
            time.sleep(self.delay)
            self.calls.append((trigger, full_resync))
            return SyncLogEntry(trigger=trigger, status="success")
        finally:
            self._lock.release()


class _FakeSupervisor:
    def __init__(self, connected: bool):
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected


def test_file_changes_are_debounced_into_one_run():
    service = _FakeService()
    scheduler = AutoSyncScheduler(service, debounce_sec=0.05)

    async def scenario():
        for i in range(5):
            scheduler.notify_file_changed(f"deck-{i}.json")
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        await scheduler.stop()

    asyncio.run(scenario())

    assert service.calls == [("file_change", False)]
    assert scheduler.state()["pending_file_changes"] == 0


def test_overlapping_triggers_are_single_flight():
    service = _FakeService(delay=0.2)
    scheduler = AutoSyncScheduler(service)

    async def scenario():
        return await asyncio.gather(scheduler.trigger("manual"), scheduler.trigger("interval"))

    results = asyncio.run(scenario())

    assert sum(1 for r in results if r is None) == 1
    assert len(service.calls) == 1
    state = scheduler.state()
    assert state["skipped_busy_count"] == 1
    assert state["run_count"] == 1


def test_disconnected_peer_gates_the_run():
    service = _FakeService()
    scheduler = AutoSyncScheduler(service, _FakeSupervisor(connected=False))

    assert asyncio.run(scheduler.trigger("interval")) is None
    assert service.calls == []
    assert scheduler.state()["skipped_disconnected_count"] == 1

    ungated = AutoSyncScheduler(service, _FakeSupervisor(connected=False), only_when_connected=False)
    assert asyncio.run(ungated.trigger("manual", full_resync=True)).status == "success"
    assert service.calls == [("manual", True)]


def test_interval_and_startup_triggers_share_the_entry_point():
    service = _FakeService()
    scheduler = AutoSyncScheduler(service, poll_interval_sec=0.05, sync_on_startup=True, startup_delay_sec=0)

    async def scenario():
        scheduler.start()
        assert scheduler.state()["running"] is True
        await asyncio.sleep(0.18)
        await scheduler.stop()

    asyncio.run(scenario())

    triggers = [t for t, _ in service.calls]
    assert triggers[0] == "startup"
    assert triggers.count("interval") >= 2
    assert scheduler.state()["running"] is False


def test_from_config_clamps_poll_interval():
    cfg = SyncConfig(poll_interval_sec=3, debounce_sec=1.5)
    scheduler = AutoSyncScheduler.from_config(_FakeService(), None, cfg)

    assert scheduler.poll_interval_sec == 10
    assert scheduler.debounce_sec == 1.5
    assert AutoSyncScheduler.from_config(_FakeService(), None, SyncConfig()).poll_interval_sec == 0


def test_store_watcher_reports_new_and_removed_files(tmp_path: Path):
    seen: list[str] = []
    watcher = LocalStoreWatcher(tmp_path, seen.append, poll_sec=0.02)

    async def scenario():
        watcher.start()
        await asyncio.sleep(0.05)
        (tmp_path / "bio.json").write_text("{}", encoding="utf-8")
        await asyncio.sleep(0.1)
        (tmp_path / "bio.json").unlink()
        await asyncio.sleep(0.1)
        await watcher.stop()

    asyncio.run(scenario())

    assert seen == [str(tmp_path / "bio.json"), str(tmp_path / "bio.json")]


def test_finished_debounce_runs_are_not_retained():
    service = _FakeService()
    scheduler = AutoSyncScheduler(service, debounce_sec=0)

    async def scenario():
        for i in range(50):
            scheduler.notify_file_changed(f"deck-{i}.json")
            await asyncio.sleep(0.01)
        retained = len(scheduler._tasks)
        await scheduler.stop()
        return retained

    assert asyncio.run(scenario()) == 0
    assert len(service.calls) == 50
