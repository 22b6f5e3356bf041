from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from cardsync.core.config import AppConfig
from cardsync.core.errors import BackupError, SyncBusyError
from cardsync.providers.ankiconnect.client import AnkiConnectClient
from cardsync.providers.ankiconnect.supervisor import ConnectionSupervisor
from cardsync.sync.service import SyncService
from cardsync.web.scheduler import AutoSyncScheduler, LocalStoreWatcher

router = APIRouter(prefix="/api")

logger = logging.getLogger("web")

_runtime: dict[str, object] = {
    "service": None,
    "supervisor": None,
    "scheduler": None,
    "watcher": None,
}


class SyncRequest(BaseModel):
    full: bool = False


class RestoreRequest(BaseModel):
    backup_id: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require(name: str):
    component = _runtime.get(name)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name}_not_started")
    return component


def start_runtime(cfg: AppConfig) -> None:
    """Build the engine and start its background loops; needs a running event loop."""
    if _runtime["service"] is not None:
        return
    client = AnkiConnectClient(cfg.ankiconnect.endpoint, cfg.ankiconnect.timeout_sec, cfg.ankiconnect.api_version)
    service = SyncService.build(cfg, client)
    supervisor = ConnectionSupervisor.from_config(client, cfg.connection)
    scheduler = AutoSyncScheduler.from_config(service, supervisor, cfg.sync)
    watcher = None
    if cfg.sync.watch_local_store and any(m.enabled and m.direction == "export" for m in cfg.sync.deck_mappings):
        watcher = LocalStoreWatcher(cfg.storage.local_store_root, scheduler.notify_file_changed, cfg.sync.watch_poll_sec)

    _runtime.update(service=service, supervisor=supervisor, scheduler=scheduler, watcher=watcher)
    supervisor.start()
    scheduler.start()
    if watcher is not None:
        watcher.start()


async def stop_runtime() -> None:
    service = _runtime.get("service")
    # scheduler.stop() awaits the in-flight run, so cancel it first
    if service is not None and service.is_running:
        service.cancel()
    for name in ("watcher", "scheduler", "supervisor"):
        component = _runtime.get(name)
        if component is None:
            continue
        try:
            await component.stop()
        except Exception:
            logger.exception("%s_stop_error", name)
    _runtime.update(service=None, supervisor=None, scheduler=None, watcher=None)


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/status")
def status():
    service = _require("service")
    supervisor = _runtime.get("supervisor")
    scheduler = _runtime.get("scheduler")
    connection = supervisor.state.model_dump() if supervisor is not None else None
    return {
        "ok": True,
        "checked_at": _now_iso(),
        "connection": connection,
        "scheduler": scheduler.state() if scheduler is not None else None,
        "sync": service.status(),
    }


@router.post("/sync")
def run_sync(req: SyncRequest | None = None):
    """Run one sync now and return its log entry."""
    service = _require("service")
    full = bool(req and req.full)
    try:
        entry = service.perform_incremental_sync("manual_web", full_resync=full)
    except SyncBusyError:
        raise HTTPException(status_code=409, detail="sync_busy")
    return entry.model_dump()


@router.post("/sync/cancel")
def cancel_sync():
    service = _require("service")
    return {"ok": True, "cancelled": service.cancel()}


@router.get("/runs")
def list_runs(limit: int = 20):
    service = _require("service")
    limit = max(1, min(limit, 200))
    return {"items": [e.model_dump() for e in service.list_runs(limit)]}


@router.get("/backups")
def list_backups(scope: str | None = None):
    service = _require("service")
    return {"items": [b.model_dump() for b in service.backups.list_backups(scope)]}


@router.post("/backups/restore")
def restore_backup(req: RestoreRequest):
    service = _require("service")
    try:
        restored = service.restore_backup(req.backup_id)
    except SyncBusyError:
        raise HTTPException(status_code=409, detail="sync_busy")
    except BackupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "backup_id": req.backup_id, "records": restored}


@router.post("/reconnect")
async def reconnect():
    supervisor = _require("supervisor")
    ok = await supervisor.manual_reconnect()
    return {"ok": ok, "connection": supervisor.state.model_dump()}
