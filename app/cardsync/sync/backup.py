from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Literal

from cardsync.core.errors import BackupError
from cardsync.core.models import BackupInfo, Card

META_FILE = "meta.json"
RECORDS_FILE = "records.json"

logger = logging.getLogger("backup")


class BackupManager:
    """Immutable per-scope snapshots, one directory each.

    A backup directory only appears once both files are written (the
    directory is assembled under a temp name and renamed into place).
    """

    def __init__(self, root: str | Path, retention: int = 3, clock=time.time):
        if retention < 1:
            raise ValueError("retention must be >= 1")
        self.root = Path(root)
        self.retention = retention
        self.clock = clock

    def _new_id(self, scope: str, created_at: float) -> str:
        stamp = datetime.fromtimestamp(created_at).strftime("%Y%m%d-%H%M%S")
        slug = re.sub(r"[^A-Za-z0-9_-]+", "_", scope).strip("_")[:40] or "scope"
        return f"{stamp}-{slug}-{uuid.uuid4().hex[:8]}"

    def create_backup(self, scope: str, records: list[Card], reason: Literal["import", "manual"] = "import") -> str:
        created_at = self.clock()
        backup_id = self._new_id(scope, created_at)
        info = BackupInfo(id=backup_id, scope=scope, reason=reason, created_at=created_at, record_count=len(records))

        self.root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=str(self.root)))
        try:
            (staging / RECORDS_FILE).write_text(
                json.dumps([r.model_dump() for r in records], ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            (staging / META_FILE).write_text(json.dumps(info.model_dump(), ensure_ascii=False, indent=2), encoding="utf-8")
            staging.rename(self.root / backup_id)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"backup_write_failed: {scope}: {e}") from e

        logger.info("backup_created id=%s scope=%s reason=%s records=%s", backup_id, scope, reason, len(records))
        self._enforce_retention(scope)
        return backup_id

    def _read_info(self, backup_dir: Path) -> BackupInfo | None:
        meta = backup_dir / META_FILE
        if not meta.is_file():
            return None
        try:
            return BackupInfo.model_validate_json(meta.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("backup_meta_unreadable dir=%s", backup_dir)
            return None

    def get_info(self, backup_id: str) -> BackupInfo | None:
        return self._read_info(self.root / backup_id)

    def list_backups(self, scope: str | None = None) -> list[BackupInfo]:
        if not self.root.is_dir():
            return []
        out: list[BackupInfo] = []
        for d in self.root.iterdir():
            if not d.is_dir() or d.name.startswith("."):
                continue
            info = self._read_info(d)
            if info and (scope is None or info.scope == scope):
                out.append(info)
        return sorted(out, key=lambda b: (b.created_at, b.id), reverse=True)

    def restore_backup(self, backup_id: str) -> list[Card]:
        backup_dir = self.root / backup_id
        info = self._read_info(backup_dir)
        if info is None:
            raise BackupError(f"backup_not_found: {backup_id}")
        try:
            raw = json.loads((backup_dir / RECORDS_FILE).read_text(encoding="utf-8"))
            records = [Card.model_validate(item) for item in raw]
        except (OSError, ValueError) as e:
            raise BackupError(f"backup_corrupt: {backup_id}: {e}") from e
        if len(records) != info.record_count:
            raise BackupError(f"backup_corrupt: {backup_id}: expected {info.record_count} records, found {len(records)}")
        logger.info("backup_loaded id=%s scope=%s records=%s", backup_id, info.scope, len(records))
        return records

    def delete_backup(self, backup_id: str) -> bool:
        backup_dir = self.root / backup_id
        if not backup_dir.is_dir() or backup_id.startswith("."):
            return False
        shutil.rmtree(backup_dir)
        logger.info("backup_deleted id=%s", backup_id)
        return True

    def _enforce_retention(self, scope: str) -> None:
        for stale in self.list_backups(scope)[self.retention:]:
            self.delete_backup(stale.id)
            logger.info("backup_evicted id=%s scope=%s", stale.id, scope)
