import asyncio
import threading
import time
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

from cardsync.core.config import AppConfig
from cardsync.core.errors import SyncBusyError
from cardsync.core.models import Card, SyncLogEntry
from cardsync.providers.ankiconnect.supervisor import ConnectionState
from cardsync.sync.backup import BackupManager
from cardsync.web import api as api_module
from cardsync.web.main import build_app
from cardsync.web.scheduler import AutoSyncScheduler
from cardsync.web.security import ALLOWED_NETS_ENV, ControlApiAllowlist, resolve_allowed_nets


class _FakeService:
    def __init__(self, backups: BackupManager, busy: bool = False):
        self.backups = backups
        self.busy = busy
        self.runs: list[SyncLogEntry] = []
        self.restored: list[str] = []
        self.is_running = busy

    def status(self):
        return {"running": self.is_running, "last_run": None, "mappings": {"total": 0}}

    def perform_incremental_sync(self, trigger="manual", full_resync=False):
        if self.busy:
            raise SyncBusyError("sync_busy")
        entry = SyncLogEntry(run_id=len(self.runs) + 1, trigger=trigger, status="success", error="full" if full_resync else None)
        self.runs.append(entry)
        return entry

    def cancel(self):
        return self.is_running

    def list_runs(self, limit=20):
        return list(reversed(self.runs))[:limit]

    def restore_backup(self, backup_id):
        self.restored.append(backup_id)
        return len(self.backups.restore_backup(backup_id))


class _FakeSupervisor:
    def __init__(self):
        self.state = ConnectionState(status="disconnected", error="anki_not_running")

    async def manual_reconnect(self):
        await asyncio.sleep(0)
        self.state = ConnectionState(status="connected", last_heartbeat=1.0)
        return True


def _build_client() -> TestClient:
    app = FastAPI()
    app.include_router(api_module.router)
    return TestClient(app)


def _install(monkeypatch, tmp_path: Path, busy: bool = False) -> _FakeService:
    service = _FakeService(BackupManager(tmp_path / "backups"), busy=busy)
    monkeypatch.setitem(api_module._runtime, "service", service)
    monkeypatch.setitem(api_module._runtime, "supervisor", _FakeSupervisor())
    monkeypatch.setitem(api_module._runtime, "scheduler", None)
    return service


def test_healthz_returns_alive():
    client = _build_client()
    resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_status_requires_a_started_runtime(monkeypatch):
    monkeypatch.setitem(api_module._runtime, "service", None)
    resp = _build_client().get("/api/status")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "service_not_started"


def test_status_reports_connection_and_sync(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)

    payload = _build_client().get("/api/status").json()

    assert payload["connection"]["status"] == "disconnected"
    assert payload["connection"]["error"] == "anki_not_running"
    assert payload["sync"]["running"] is False
    assert payload["scheduler"] is None


def test_manual_sync_and_run_listing(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = _build_client()

    first = client.post("/api/sync")
    second = client.post("/api/sync", json={"full": True})

    assert first.status_code == 200
    assert first.json()["trigger"] == "manual_web"
    assert second.json()["error"] == "full"
    runs = client.get("/api/runs").json()["items"]
    assert [r["run_id"] for r in runs] == [2, 1]


def test_sync_while_busy_returns_409(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path, busy=True)
    client = _build_client()

    assert client.post("/api/sync").status_code == 409
    assert client.post("/api/sync/cancel").json()["cancelled"] is True


def test_backups_listing_and_restore(monkeypatch, tmp_path: Path):
    service = _install(monkeypatch, tmp_path)
    backup_id = service.backups.create_backup("bio", [Card(id="c1")], reason="manual")
    client = _build_client()

    items = client.get("/api/backups", params={"scope": "bio"}).json()["items"]
    assert [b["id"] for b in items] == [backup_id]

    resp = client.post("/api/backups/restore", json={"backup_id": backup_id})
    assert resp.json() == {"ok": True, "backup_id": backup_id, "records": 1}
    assert client.post("/api/backups/restore", json={"backup_id": "missing"}).status_code == 404


def test_reconnect_resets_connection(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)

    payload = _build_client().post("/api/reconnect").json()

    assert payload["ok"] is True
    assert payload["connection"]["status"] == "connected"


def test_allowlist_rejects_unknown_clients():
    app = FastAPI()
    app.add_middleware(ControlApiAllowlist, allowed_nets=["127.0.0.1/32"])
    app.include_router(api_module.router)

    # TestClient reports its host as "testclient", which is not an address
    assert TestClient(app).get("/api/healthz").status_code == 403

    broken = FastAPI()
    broken.add_middleware(ControlApiAllowlist, allowed_nets=["not-a-net"])
    broken.include_router(api_module.router)
    assert TestClient(broken).get("/api/healthz").status_code == 503


def test_allowed_nets_come_from_config_unless_env_overrides(monkeypatch, tmp_path: Path):
    cfg = AppConfig(web_allowed_nets=["10.0.0.0/8"])
    cfg.database.path = str(tmp_path / "service.db")

    monkeypatch.delenv(ALLOWED_NETS_ENV, raising=False)
    assert resolve_allowed_nets(cfg.web_allowed_nets) == ["10.0.0.0/8"]
    with TestClient(build_app(cfg, with_runtime=False)) as client:
        assert client.get("/api/healthz").status_code == 403

    monkeypatch.setenv(ALLOWED_NETS_ENV, "192.168.1.0/24, ::1")
    assert resolve_allowed_nets(cfg.web_allowed_nets) == ["192.168.1.0/24", "::1"]

    # an explicitly empty override opens the API to any caller
    monkeypatch.setenv(ALLOWED_NETS_ENV, "")
    with TestClient(build_app(cfg, with_runtime=False)) as client:
        assert client.get("/api/healthz").status_code == 200


def test_allowlist_matches_ipv4_and_ipv6_hosts():
    allowlist = ControlApiAllowlist(FastAPI(), ["10.0.0.0/8", "::1"])

    assert allowlist.permits("10.20.30.40")
    assert allowlist.permits("::1")
    assert not allowlist.permits("192.168.0.1")
    assert not allowlist.permits("testclient")


class _SlowService:
    """Holds a run open until cancelled, like a large batch between records."""

    def __init__(self):
        self.cancel_event = threading.Event()
        self.started = threading.Event()
        self.entries: list[SyncLogEntry] = []
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> bool:
        if not self.is_running:
            return False
        self.cancel_event.set()
        return True

    def perform_incremental_sync(self, trigger="manual", full_resync=False):
        with self._lock:
            self.started.set()
            cancelled = self.cancel_event.wait(timeout=3.0)
            entry = SyncLogEntry(trigger=trigger, status="cancelled" if cancelled else "success")
            self.entries.append(entry)
            return entry


def test_shutdown_cancels_an_in_flight_run(monkeypatch):
    service = _SlowService()
    scheduler = AutoSyncScheduler(service, sync_on_startup=True, startup_delay_sec=0)
    monkeypatch.setitem(api_module._runtime, "service", service)
    monkeypatch.setitem(api_module._runtime, "scheduler", scheduler)
    monkeypatch.setitem(api_module._runtime, "supervisor", None)
    monkeypatch.setitem(api_module._runtime, "watcher", None)

    async def scenario():
        scheduler.start()
        assert await asyncio.to_thread(service.started.wait, 2.0)
        started = time.monotonic()
        await api_module.stop_runtime()
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())

    assert elapsed < 1.0
    assert [e.status for e in service.entries] == ["cancelled"]
    assert api_module._runtime["service"] is None
