from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable

from cardsync.core.errors import TemplateMappingLocked
from cardsync.core.models import Card, FieldRole, MappingRecord, SyncDirection, SyncStatus, TemplateMapping, content_hash, now_iso

REGISTRY_FORMAT_VERSION = "1.0"

logger = logging.getLogger("registry")


class MappingRegistry:
    """Persistent local id <-> remote note id index keyed by a stable uuid.

    The whole table lives in one versioned JSON document that is rewritten
    atomically after every mutation.
    """

    def __init__(self, path: str | Path, local_store=None):
        self.path = Path(path)
        self.local_store = local_store
        self._lock = threading.RLock()
        self._by_uuid: dict[str, MappingRecord] = {}
        self._by_local: dict[str, str] = {}
        self._by_remote: dict[int, str] = {}
        self._templates: dict[str, TemplateMapping] = {}
        self.load()

    # persistence

    def load(self) -> None:
        with self._lock:
            self._by_uuid.clear()
            self._templates.clear()
            if self.path.exists():
                data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
                version = str(data.get("version", REGISTRY_FORMAT_VERSION))
                if version != REGISTRY_FORMAT_VERSION:
                    raise RuntimeError(f"unsupported_registry_version: {version}")
                for raw in data.get("mappings", []):
                    record = MappingRecord.model_validate(raw)
                    self._by_uuid[record.stable_uuid] = record
                for raw in data.get("templates", []):
                    tm = TemplateMapping.model_validate(raw)
                    self._templates[tm.local_schema_id] = tm
            self._rebuild_indexes()
        logger.debug("registry_loaded path=%s mappings=%s templates=%s", self.path, len(self._by_uuid), len(self._templates))

    def _rebuild_indexes(self) -> None:
        self._by_local = {r.local_id: u for u, r in self._by_uuid.items()}
        self._by_remote = {r.remote_id: u for u, r in self._by_uuid.items()}

    def _persist(self) -> None:
        payload = {
            "version": REGISTRY_FORMAT_VERSION,
            "last_updated": now_iso(),
            "mappings": [self._by_uuid[u].model_dump() for u in sorted(self._by_uuid)],
            "templates": [self._templates[k].model_dump() for k in sorted(self._templates)],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".mappings-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(payload, fp, ensure_ascii=False, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # record mappings

    def record_mapping(
        self,
        local_id: str,
        remote_id: int,
        uuid: str,
        digest: str,
        schema_id: str | None = None,
        *,
        media_hash: str | None = None,
        local_modified_at: float = 0.0,
        remote_modified_at: float = 0.0,
        direction: SyncDirection = "export",
    ) -> MappingRecord:
        with self._lock:
            previous = self._by_uuid.get(uuid)
            # a local or remote id may only ever belong to one mapping
            for stale in {self._by_local.get(local_id), self._by_remote.get(remote_id)} - {None, uuid}:
                dropped = self._by_uuid.pop(stale)
                logger.warning("mapping_superseded uuid=%s local_id=%s remote_id=%s", stale, dropped.local_id, dropped.remote_id)

            record = MappingRecord(
                local_id=local_id,
                remote_id=remote_id,
                stable_uuid=uuid,
                content_hash=digest,
                media_hash=media_hash,
                schema_id=schema_id,
                local_modified_at=local_modified_at,
                remote_modified_at=remote_modified_at,
                sync_version=(previous.sync_version + 1) if previous else 1,
                sync_status="synced",
                direction=direction,
            )
            self._by_uuid[uuid] = record
            self._rebuild_indexes()
            self._persist()
            return record

    def update_status(self, uuid: str, status: SyncStatus) -> MappingRecord | None:
        with self._lock:
            record = self._by_uuid.get(uuid)
            if record is None or record.sync_status == status:
                return record
            record = record.model_copy(update={"sync_status": status, "updated_at": now_iso()})
            self._by_uuid[uuid] = record
            self._persist()
            return record

    def mark_pending_if_changed(self, card: Card) -> bool:
        """True when the card's synchronizable fields drifted from the mapped hash."""
        record = self.find_by_local_id(card.id)
        if record is None:
            return False
        if record.content_hash == content_hash(card):
            return False
        if record.sync_status != "pending":
            self.update_status(record.stable_uuid, "pending")
        return True

    def find_by_local_id(self, local_id: str) -> MappingRecord | None:
        with self._lock:
            uuid = self._by_local.get(local_id)
            return self._by_uuid.get(uuid) if uuid else None

    def find_by_remote_id(self, remote_id: int) -> MappingRecord | None:
        with self._lock:
            uuid = self._by_remote.get(remote_id)
            return self._by_uuid.get(uuid) if uuid else None

    def find_by_uuid(self, uuid: str) -> MappingRecord | None:
        with self._lock:
            return self._by_uuid.get(uuid)

    def remove_mapping(self, uuid: str) -> bool:
        with self._lock:
            if self._by_uuid.pop(uuid, None) is None:
                return False
            self._rebuild_indexes()
            self._persist()
            return True

    def all(self) -> list[MappingRecord]:
        with self._lock:
            return list(self._by_uuid.values())

    def cleanup(self, existing_local_ids: Iterable[str] | None = None) -> int:
        if existing_local_ids is None:
            if self.local_store is None:
                raise RuntimeError("cleanup_requires_local_ids")
            existing_local_ids = [card.id for scope in self.local_store.list_scopes() for card in self.local_store.get_all_records(scope)]
        keep = set(existing_local_ids)
        with self._lock:
            orphans = [u for u, r in self._by_uuid.items() if r.local_id not in keep]
            if not orphans:
                return 0
            for u in orphans:
                del self._by_uuid[u]
            self._rebuild_indexes()
            self._persist()
        logger.info("mappings_cleaned removed=%s remaining=%s", len(orphans), len(self._by_uuid))
        return len(orphans)

    def snapshot(self) -> dict[str, MappingRecord]:
        with self._lock:
            return {u: r.model_copy() for u, r in self._by_uuid.items()}

    def restore(self, snapshot: dict[str, MappingRecord]) -> None:
        """Replace the record table with a previous snapshot; templates are kept."""
        with self._lock:
            if snapshot == self._by_uuid:
                return
            self._by_uuid = dict(snapshot)
            self._rebuild_indexes()
            self._persist()
        logger.info("mappings_restored total=%s", len(snapshot))

    def stats(self) -> dict[str, object]:
        with self._lock:
            by_status: dict[str, int] = {}
            by_direction: dict[str, int] = {}
            for r in self._by_uuid.values():
                by_status[r.sync_status] = by_status.get(r.sync_status, 0) + 1
                by_direction[r.direction] = by_direction.get(r.direction, 0) + 1
            return {
                "total": len(self._by_uuid),
                "by_status": by_status,
                "by_direction": by_direction,
                "templates": len(self._templates),
                "sync_capable_templates": sum(1 for t in self._templates.values() if t.sync_capable),
            }

    # template mappings

    def find_template(self, local_schema_id: str) -> TemplateMapping | None:
        with self._lock:
            return self._templates.get(local_schema_id)

    def find_template_by_remote_model(self, remote_model_id: int) -> TemplateMapping | None:
        with self._lock:
            return next((t for t in self._templates.values() if t.remote_model_id == remote_model_id), None)

    def record_template(
        self,
        local_schema_id: str,
        remote_model_id: int,
        remote_model_name: str,
        field_roles: dict[str, FieldRole],
        *,
        sync_capable: bool = False,
    ) -> TemplateMapping:
        with self._lock:
            existing = self._templates.get(local_schema_id)
            if existing and existing.sync_capable:
                same = (
                    existing.remote_model_id == remote_model_id
                    and existing.remote_model_name == remote_model_name
                    and existing.field_roles == field_roles
                )
                if not same:
                    raise TemplateMappingLocked(f"template_mapping_locked: {local_schema_id}")
                return existing
            mapping = TemplateMapping(
                local_schema_id=local_schema_id,
                remote_model_id=remote_model_id,
                remote_model_name=remote_model_name,
                field_roles=dict(field_roles),
                sync_capable=sync_capable,
            )
            if existing is not None:
                mapping.created_at = existing.created_at
            self._templates[local_schema_id] = mapping
            self._persist()
            return mapping

    def lock_template(self, local_schema_id: str) -> None:
        with self._lock:
            existing = self._templates.get(local_schema_id)
            if existing is None or existing.sync_capable:
                return
            self._templates[local_schema_id] = existing.model_copy(update={"sync_capable": True})
            self._persist()
            logger.info("template_mapping_locked schema=%s model=%s", local_schema_id, existing.remote_model_name)
