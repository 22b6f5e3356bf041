from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

from cardsync.core.models import Card, LocalSchema

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalStore(Protocol):
    """CRUD surface of the host application's card storage."""

    def list_scopes(self) -> list[str]: ...

    def get_all_records(self, scope: str) -> list[Card]: ...

    def save_records(self, scope: str, records: list[Card]) -> None: ...

    def get_schema(self, schema_id: str) -> LocalSchema | None: ...

    def save_schema(self, schema: LocalSchema) -> None: ...


def _safe_name(value: str) -> str:
    cleaned = _SAFE_NAME_RE.sub("_", value.strip()).strip("._")
    return cleaned or "_"


def _atomic_write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".json", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            json.dump(payload, fp, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonDirectoryStore:
    """One JSON file per deck under `decks/`, one per schema under `schemas/`."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _deck_path(self, scope: str) -> Path:
        return self.root / "decks" / f"{_safe_name(scope)}.json"

    def _schema_path(self, schema_id: str) -> Path:
        return self.root / "schemas" / f"{_safe_name(schema_id)}.json"

    def list_scopes(self) -> list[str]:
        deck_dir = self.root / "decks"
        if not deck_dir.is_dir():
            return []
        scopes = []
        for p in sorted(deck_dir.glob("*.json")):
            data = json.loads(p.read_text(encoding="utf-8") or "{}")
            scopes.append(str(data.get("scope") or p.stem))
        return scopes

    def get_all_records(self, scope: str) -> list[Card]:
        path = self._deck_path(scope)
        if not path.exists():
            return []
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
        return [Card.model_validate(item) for item in data.get("cards", [])]

    def save_records(self, scope: str, records: list[Card]) -> None:
        _atomic_write_json(self._deck_path(scope), {"scope": scope, "cards": [c.model_dump() for c in records]})

    def get_schema(self, schema_id: str) -> LocalSchema | None:
        path = self._schema_path(schema_id)
        if not path.exists():
            return None
        return LocalSchema.model_validate_json(path.read_text(encoding="utf-8"))

    def save_schema(self, schema: LocalSchema) -> None:
        _atomic_write_json(self._schema_path(schema.id), schema.model_dump())

    def list_schemas(self) -> list[LocalSchema]:
        schema_dir = self.root / "schemas"
        if not schema_dir.is_dir():
            return []
        return [LocalSchema.model_validate_json(p.read_text(encoding="utf-8")) for p in sorted(schema_dir.glob("*.json"))]
