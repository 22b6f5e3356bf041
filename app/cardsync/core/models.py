from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

FieldRole = Literal["front", "back", "both", "custom"]
SyncDirection = Literal["import", "export"]
SyncStatus = Literal["synced", "pending", "conflict", "error"]


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def new_uuid() -> str:
    return uuid.uuid4().hex


class Card(BaseModel):
    id: str
    uuid: str = Field(default_factory=new_uuid)
    template_id: str = "basic"
    fields: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    source_file: str | None = None
    source_anchor: str | None = None
    created_at: float = Field(default_factory=time.time)
    modified_at: float = Field(default_factory=time.time)


class SchemaField(BaseModel):
    name: str
    role: FieldRole = "both"
    remote_name: str | None = None


class LocalSchema(BaseModel):
    id: str
    name: str
    fields: list[SchemaField] = Field(default_factory=list)
    card_type: str = "basic"
    remote_model_id: int | None = None
    remote_model_name: str | None = None
    front_template: str = ""
    back_template: str = ""
    css: str = ""

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


class MappingRecord(BaseModel):
    local_id: str
    remote_id: int
    stable_uuid: str
    content_hash: str
    media_hash: str | None = None
    schema_id: str | None = None
    local_modified_at: float = 0.0
    remote_modified_at: float = 0.0
    sync_version: int = 1
    sync_status: SyncStatus = "synced"
    direction: SyncDirection = "export"
    updated_at: str = Field(default_factory=now_iso)


class TemplateMapping(BaseModel):
    local_schema_id: str
    remote_model_id: int
    remote_model_name: str
    field_roles: dict[str, FieldRole] = Field(default_factory=dict)
    sync_capable: bool = False
    created_at: str = Field(default_factory=now_iso)


class SyncTimestamp(BaseModel):
    record_id: str
    last_sync_time: float
    direction: SyncDirection
    remote_id: int | None = None


class BackupInfo(BaseModel):
    id: str
    scope: str
    reason: Literal["import", "manual"] = "import"
    created_at: float
    record_count: int


class ItemError(BaseModel):
    record_id: str
    stage: str
    error: str


class BatchResult(BaseModel):
    scope: str
    remote_deck: str
    direction: SyncDirection
    total: int = 0
    changed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cancelled: bool = False
    backup_id: str | None = None


class SyncLogEntry(BaseModel):
    run_id: int | None = None
    trigger: str = "manual"
    status: Literal["running", "success", "partial", "failed", "cancelled"] = "running"
    started_at: float = Field(default_factory=time.time)
    finished_at: float | None = None
    duration_sec: float = 0.0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    imported: int = 0
    exported: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    batches: list[BatchResult] = Field(default_factory=list)
    error: str | None = None

    def summary_line(self) -> str:
        return f"status={self.status} succeeded={self.succeeded} failed={self.failed} skipped={self.skipped}"


def content_hash(card: Card) -> str:
    """Hash of the fields that travel to the peer; used to detect un-synced edits."""
    payload = {
        "template_id": card.template_id,
        "fields": card.fields,
        "tags": sorted(card.tags),
    }
    raw = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
