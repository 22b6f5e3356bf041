"""Result shapes for the AnkiConnect actions the engine uses.

Responses are validated at the client boundary so callers never probe
untyped dicts for optional keys.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class NoteField(BaseModel):
    value: str = ""
    order: int = 0


class NoteInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: int = Field(alias="noteId")
    model_name: str = Field(alias="modelName")
    tags: list[str] = Field(default_factory=list)
    fields: dict[str, NoteField] = Field(default_factory=dict)
    mod: int = 0
    cards: list[int] = Field(default_factory=list)

    def field_values(self) -> dict[str, str]:
        ordered = sorted(self.fields.items(), key=lambda kv: kv[1].order)
        return {name: f.value for name, f in ordered}


class CardTemplate(BaseModel):
    name: str
    front: str = ""
    back: str = ""


class ModelInfo(BaseModel):
    id: int | None = None
    name: str
    fields: list[str] = Field(default_factory=list)
    templates: list[CardTemplate] = Field(default_factory=list)
    css: str = ""


class NoteOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allow_duplicate: bool = Field(default=False, alias="allowDuplicate")
    duplicate_scope: Literal["deck", "collection"] = Field(default="deck", alias="duplicateScope")


class NewNote(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deck_name: str = Field(alias="deckName")
    model_name: str = Field(alias="modelName")
    fields: dict[str, str]
    tags: list[str] = Field(default_factory=list)
    options: NoteOptions = Field(default_factory=NoteOptions)

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ConnectionProbe(BaseModel):
    ok: bool
    status: Literal["connected", "not_running", "network", "version_mismatch", "remote_error", "unknown"]
    version: int | None = None
    latency_ms: int | None = None
    error: str | None = None
    hint: str = ""
