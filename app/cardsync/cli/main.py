from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cardsync.core.config import DEFAULT_CONFIG_PATH, load_config, save_config
from cardsync.core.errors import BackupError, SyncBusyError
from cardsync.core.logging_setup import setup_logging
from cardsync.providers.ankiconnect.client import AnkiConnectClient
from cardsync.sync.service import SyncService

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _dump(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _build_service(config: Path = DEFAULT_CONFIG_PATH) -> SyncService:
    cfg = load_config(config)
    setup_logging(cfg.logging.level, cfg.logging.file)
    return SyncService.build(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _dump(cfg.model_dump())


@app.command("config-set-endpoint")
def config_set_endpoint(
    endpoint: str = typer.Option(..., "--endpoint", help="AnkiConnect URL, e.g. http://127.0.0.1:8765"),
    timeout: float = typer.Option(5.0, "--timeout"),
):
    """Point the engine at another AnkiConnect instance."""
    cfg = load_config()
    cfg.ankiconnect.endpoint = endpoint
    cfg.ankiconnect.timeout_sec = timeout
    save_config(cfg)
    print(f"OK: endpoint={endpoint} timeout_sec={timeout}")


@app.command()
def status():
    """Show runtime and readiness summary."""
    cfg = load_config()
    table = Table(title="cardsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("endpoint", cfg.ankiconnect.endpoint)
    table.add_row("local_store", cfg.storage.local_store_root)
    table.add_row("mapping_file", cfg.storage.mapping_file)
    table.add_row("backups", f"{cfg.storage.backup_dir} (keep {cfg.storage.backup_retention})")
    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    table.add_row("auto_sync", "on" if poll_interval > 0 else "off")
    table.add_row("poll_interval_sec", str(poll_interval))
    for m in cfg.sync.deck_mappings:
        state = m.direction if m.enabled else f"{m.direction} (disabled)"
        table.add_row(f"deck {m.local_scope}", f"{m.remote_deck} [{state}]")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def probe():
    """Check whether AnkiConnect answers and speaks a compatible version."""
    cfg = load_config()
    client = AnkiConnectClient(cfg.ankiconnect.endpoint, cfg.ankiconnect.timeout_sec, cfg.ankiconnect.api_version)
    result = client.check_connection()
    out = {"checked_at": _now_iso(), "endpoint": cfg.ankiconnect.endpoint, **result.model_dump()}
    _dump(out)
    if not result.ok:
        raise typer.Exit(2)


@app.command()
def sync(
    full: bool = typer.Option(False, "--full", help="Ignore timestamps and reconsider every record."),
    trigger: str = typer.Option("manual_cli", "--trigger", help="Run label stored in the run log."),
):
    """Run one sync across all enabled deck mappings and print the run summary."""
    service = _build_service()
    try:
        entry = service.perform_incremental_sync(trigger, full_resync=full)
    except SyncBusyError as e:
        _dump({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _dump(entry.model_dump())
    if entry.status in ("failed", "partial"):
        raise typer.Exit(2)


@app.command()
def runs(limit: int = typer.Option(10, "--limit", min=1, max=200)):
    """List recent sync runs."""
    service = _build_service()
    table = Table(title="sync runs")
    for col in ("run", "trigger", "status", "started", "sec", "ok", "failed", "skipped", "error"):
        table.add_column(col)
    for e in service.list_runs(limit):
        table.add_row(
            str(e.run_id),
            e.trigger,
            e.status,
            _fmt_ts(e.started_at),
            f"{e.duration_sec:.1f}",
            str(e.succeeded),
            str(e.failed),
            str(e.skipped),
            e.error or "",
        )
    console.print(table)


@app.command()
def backups(scope: str | None = typer.Option(None, "--scope")):
    """List local backups, newest first."""
    service = _build_service()
    table = Table(title="backups")
    for col in ("id", "scope", "reason", "created", "records"):
        table.add_column(col)
    for b in service.backups.list_backups(scope):
        table.add_row(b.id, b.scope, b.reason, _fmt_ts(b.created_at), str(b.record_count))
    console.print(table)


@app.command()
def restore(backup_id: str = typer.Argument(..., help="Backup id as shown by `backups`.")):
    """Write a backup's records back into the local store."""
    service = _build_service()
    try:
        count = service.restore_backup(backup_id)
    except (BackupError, SyncBusyError) as e:
        _dump({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _dump({"ok": True, "backup_id": backup_id, "records": count})


@app.command("cleanup-mappings")
def cleanup_mappings():
    """Drop orphaned mappings and expired sync timestamps."""
    service = _build_service()
    result = service.cleanup_mappings()
    logging.getLogger("sync").info("cleanup_done %s", result)
    _dump({"ok": True, **result})


@app.command()
def serve():
    """Run the control API with the auto-sync scheduler."""
    from cardsync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
