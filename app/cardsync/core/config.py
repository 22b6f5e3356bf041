from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("CARDSYNC_HOME") or (Path.home() / ".cardsync"))
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class AnkiConnectConfig(BaseModel):
    endpoint: str = "http://127.0.0.1:8765"
    timeout_sec: float = Field(default=5.0, gt=0, le=120)
    api_version: int = 6


class ConnectionConfig(BaseModel):
    heartbeat_interval_sec: float = Field(default=30.0, gt=0)
    # Reconnect delays grow as base * 2**n and never exceed the cap.
    backoff_base_sec: float = Field(default=1.0, gt=0)
    backoff_cap_sec: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=3, ge=1, le=20)


class TranscodeConfig(BaseModel):
    math_enabled: bool = True
    detect_currency: bool = True
    wikilink_enabled: bool = True
    # - text: [[Page|alias]] becomes plain "alias"
    # - deep_link: [[Page|alias]] becomes an anchor back to the source vault
    wikilink_mode: Literal["text", "deep_link"] = "deep_link"
    callout_enabled: bool = True
    highlight_enabled: bool = True
    highlight_style: Literal["underline", "bold", "mark"] = "underline"
    vault_name: str = ""
    deep_link_scheme: str = "obsidian"


class MediaConfig(BaseModel):
    enabled: bool = True
    media_root: str = str(PROJECT_ROOT / "vault")
    # Files at or above this size are linked back instead of uploaded.
    size_threshold_mb: float = Field(default=5.0, gt=0)


class DeckMapping(BaseModel):
    local_scope: str
    remote_deck: str
    # One direction per mapping; there is no two-way merge.
    direction: Literal["import", "export"] = "export"
    enabled: bool = True


class SyncConfig(BaseModel):
    deck_mappings: list[DeckMapping] = Field(default_factory=list)
    concurrency: int = Field(default=3, ge=1, le=8)
    # 0 means disabled; positive values are seconds between scheduled runs.
    poll_interval_sec: int = Field(default=0, ge=0, le=86400)
    sync_on_startup: bool = False
    startup_delay_sec: float = Field(default=2.0, ge=0)
    debounce_sec: float = Field(default=5.0, ge=0)
    only_when_connected: bool = True
    append_source_backlink: bool = True
    watch_local_store: bool = True
    watch_poll_sec: float = Field(default=2.0, gt=0)


class StorageConfig(BaseModel):
    local_store_root: str = str(PROJECT_ROOT / "cards")
    mapping_file: str = str(RUNTIME_DIR / "mappings.json")
    backup_dir: str = str(RUNTIME_DIR / "backups")
    backup_retention: int = Field(default=3, ge=1, le=100)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")


class AppConfig(BaseModel):
    ankiconnect: AnkiConnectConfig = Field(default_factory=AnkiConnectConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Control API; AnkiConnect itself owns 8765.
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766
    # CIDRs allowed to call it; CARDSYNC_ALLOWED_NETS overrides
    web_allowed_nets: list[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])


def expand_paths(cfg: AppConfig) -> AppConfig:
    cfg.media.media_root = str(Path(cfg.media.media_root).expanduser())
    cfg.storage.local_store_root = str(Path(cfg.storage.local_store_root).expanduser())
    cfg.storage.mapping_file = str(Path(cfg.storage.mapping_file).expanduser())
    cfg.storage.backup_dir = str(Path(cfg.storage.backup_dir).expanduser())
    cfg.logging.file = str(Path(cfg.logging.file).expanduser())
    cfg.database.path = str(Path(cfg.database.path).expanduser())
    return cfg


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.storage.mapping_file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.storage.backup_dir).mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = expand_paths(AppConfig.model_validate(data))
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = expand_paths(AppConfig.model_validate(data))
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
