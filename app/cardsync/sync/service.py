from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable

from cardsync.core.config import AppConfig, DeckMapping
from cardsync.core.errors import SyncBusyError, SyncError
from cardsync.core.models import BatchResult, ItemError, SyncLogEntry, now_iso
from cardsync.providers.ankiconnect.client import AnkiConnectClient
from cardsync.providers.ankiconnect.media import MediaTransferService
from cardsync.sync.backup import BackupManager
from cardsync.sync.db import get_conn, init_db
from cardsync.sync.exporter import CardExporter
from cardsync.sync.importer import CardImporter
from cardsync.sync.local_store import JsonDirectoryStore
from cardsync.sync.registry import MappingRegistry
from cardsync.sync.templates import TemplateConverter
from cardsync.sync.tracker import IncrementalSyncTracker
from cardsync.transcode.pipeline import ContentPipeline

logger = logging.getLogger("sync")


class SyncService:
    """The one entry point every trigger (CLI, API, timer, file watcher) calls.

    Runs are single-flight: a second caller gets SyncBusyError instead of
    queueing behind the first.
    """

    def __init__(
        self,
        client,
        importer: CardImporter,
        exporter: CardExporter,
        registry: MappingRegistry,
        tracker: IncrementalSyncTracker,
        backups: BackupManager,
        local_store,
        db_path: str,
        deck_mappings: list[DeckMapping],
    ):
        self.client = client
        self.importer = importer
        self.exporter = exporter
        self.registry = registry
        self.tracker = tracker
        self.backups = backups
        self.local_store = local_store
        self.db_path = db_path
        self.deck_mappings = deck_mappings
        self._run_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._subscribers: list[Callable[[SyncLogEntry], None]] = []
        self.last_entry: SyncLogEntry | None = None
        init_db(db_path)

    @classmethod
    def build(cls, cfg: AppConfig, client=None) -> "SyncService":
        client = client or AnkiConnectClient(cfg.ankiconnect.endpoint, cfg.ankiconnect.timeout_sec, cfg.ankiconnect.api_version)
        store = JsonDirectoryStore(cfg.storage.local_store_root)
        registry = MappingRegistry(cfg.storage.mapping_file, local_store=store)
        tracker = IncrementalSyncTracker(cfg.database.path)
        backups = BackupManager(cfg.storage.backup_dir, retention=cfg.storage.backup_retention)
        converter = TemplateConverter(client, registry, store)
        media = MediaTransferService.from_config(client, cfg.media, cfg.transcode)
        importer = CardImporter(client, registry, tracker, converter, backups, store, media, concurrency=cfg.sync.concurrency)
        exporter = CardExporter(
            client,
            registry,
            tracker,
            converter,
            ContentPipeline.from_config(cfg.transcode),
            store,
            media,
            append_backlink=cfg.sync.append_source_backlink,
            vault_name=cfg.transcode.vault_name,
            deep_link_scheme=cfg.transcode.deep_link_scheme,
        )
        return cls(client, importer, exporter, registry, tracker, backups, store, cfg.database.path, cfg.sync.deck_mappings)

    # run bookkeeping

    def _db(self):
        return get_conn(self.db_path)

    def _insert_sync_run(self, run_type: str) -> int:
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO sync_runs(run_type,status,started_at,summary_json) VALUES (?,?,?,?)",
            (run_type, "running", now_iso(), "{}"),
        )
        rid = cur.lastrowid
        conn.commit()
        conn.close()
        return int(rid)

    def _finish_sync_run(self, run_id: int, entry: SyncLogEntry) -> None:
        conn = self._db()
        conn.execute(
            "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
            (entry.status, now_iso(), entry.model_dump_json(), run_id),
        )
        conn.commit()
        conn.close()

    def list_runs(self, limit: int = 20) -> list[SyncLogEntry]:
        conn = self._db()
        rows = conn.execute("SELECT id, run_type, status, summary_json FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        conn.close()
        out = []
        for row in rows:
            payload = json.loads(row["summary_json"] or "{}")
            payload.setdefault("trigger", row["run_type"])
            payload["status"] = row["status"]
            payload["run_id"] = row["id"]
            out.append(SyncLogEntry.model_validate(payload))
        return out

    # subscribers

    def subscribe(self, callback: Callable[[SyncLogEntry], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, entry: SyncLogEntry) -> None:
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:
                logger.exception("sync_subscriber_failed")

    # runs

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> bool:
        if not self.is_running:
            return False
        self._cancel_event.set()
        logger.warning("sync_cancel_requested")
        return True

    def perform_incremental_sync(self, trigger: str = "manual", full_resync: bool = False) -> SyncLogEntry:
        if not self._run_lock.acquire(blocking=False):
            raise SyncBusyError("sync_busy: a run is already in progress")
        try:
            self._cancel_event.clear()
            entry = SyncLogEntry(trigger=trigger)
            entry.run_id = self._insert_sync_run(trigger)
            logger.info("sync_started run_id=%s trigger=%s full=%s", entry.run_id, trigger, full_resync)
            try:
                self._run(entry, full_resync)
            except Exception as e:
                logger.exception("sync_crashed run_id=%s", entry.run_id)
                entry.error = f"sync_crashed: {e}"

            entry.finished_at = time.time()
            entry.duration_sec = round(entry.finished_at - entry.started_at, 3)
            if entry.error:
                entry.status = "failed"
            elif any(b.cancelled for b in entry.batches):
                entry.status = "cancelled"
            elif entry.failed:
                entry.status = "partial"
            else:
                entry.status = "success"
                if full_resync:
                    self.tracker.mark_full_sync()
            self._finish_sync_run(entry.run_id, entry)
            self.last_entry = entry
            log = logger.info if entry.status == "success" else logger.warning
            log("sync_finished run_id=%s %s duration=%.2fs", entry.run_id, entry.summary_line(), entry.duration_sec)
        finally:
            self._run_lock.release()
        self._notify(entry)
        return entry

    def _run(self, entry: SyncLogEntry, full_resync: bool) -> None:
        probe = self.client.check_connection()
        if not probe.ok:
            entry.error = f"{probe.error or probe.status}" + (f" ({probe.hint})" if probe.hint else "")
            return

        for mapping in self.deck_mappings:
            if not mapping.enabled:
                continue
            if self._cancel_event.is_set():
                entry.batches.append(BatchResult(scope=mapping.local_scope, remote_deck=mapping.remote_deck, direction=mapping.direction, cancelled=True))
                continue
            runner = self.importer if mapping.direction == "import" else self.exporter
            try:
                batch = runner.run(mapping, full_resync=full_resync, cancel_event=self._cancel_event)
            except SyncError as e:
                entry.error = str(e)
                entry.errors.append(ItemError(record_id=mapping.local_scope, stage="orchestration", error=str(e)))
                return
            entry.batches.append(batch)
            entry.succeeded += batch.succeeded
            entry.failed += batch.failed
            entry.skipped += batch.skipped
            entry.errors.extend(batch.errors)
            entry.warnings.extend(batch.warnings)
            if batch.direction == "import":
                entry.imported += batch.succeeded
            else:
                entry.exported += batch.succeeded

    # maintenance

    def cleanup_mappings(self) -> dict[str, int]:
        removed = self.registry.cleanup()
        expired = self.tracker.cleanup_old_records()
        return {"mappings_removed": removed, "timestamps_removed": expired}

    def restore_backup(self, backup_id: str) -> int:
        """Write a backup's records back into its scope; the backup itself is kept."""
        if not self._run_lock.acquire(blocking=False):
            raise SyncBusyError("sync_busy: cannot restore while a run is in progress")
        try:
            records = self.backups.restore_backup(backup_id)
            info = self.backups.get_info(backup_id)
            self.local_store.save_records(info.scope, records)
        finally:
            self._run_lock.release()
        logger.warning("backup_restored id=%s scope=%s records=%s", backup_id, info.scope, len(records))
        return len(records)

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "last_run": self.last_entry.model_dump() if self.last_entry else None,
            "deck_mappings": [m.model_dump() for m in self.deck_mappings],
            "mappings": self.registry.stats(),
            "timestamps": self.tracker.stats(),
        }
