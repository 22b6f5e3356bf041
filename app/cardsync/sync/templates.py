from __future__ import annotations

import logging
import re

from cardsync.core.models import Card, FieldRole, LocalSchema, SchemaField, TemplateMapping
from cardsync.providers.ankiconnect.schemas import CardTemplate, ModelInfo, NoteInfo

MODEL_NAME_PREFIX = "[CardSync] "
SCHEMA_ID_FIELD = "cardsync_schema_id"
CARD_ID_FIELD = "cardsync_card_id"
BOOKKEEPING_FIELDS = (SCHEMA_ID_FIELD, CARD_ID_FIELD)

# alias -> role; an alias only matches a whole field name or one of its words
FIELD_ROLE_ALIASES: dict[str, FieldRole] = {
    "front": "front",
    "question": "front",
    "q": "front",
    "prompt": "front",
    "back": "back",
    "answer": "back",
    "a": "back",
    "response": "back",
    "extra": "back",
    "note": "back",
    "notes": "back",
    "remark": "back",
    "additional": "back",
    "tags": "custom",
    "tag": "custom",
}

CLOZE_RE = re.compile(r"\{\{\s*cloze:", re.IGNORECASE)
FRONT_SIDE_RE = re.compile(r"\{\{\s*FrontSide\s*\}\}")
CHOICE_FIELD_RE = re.compile(r"^(?:option|choice)s?\b|^[A-E]$", re.IGNORECASE)
WORD_RE = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|\d+")

DEFAULT_CSS = ".card { font-family: arial; font-size: 20px; text-align: left; color: black; background-color: white; }"

logger = logging.getLogger("templates")


def _tokens(name: str) -> list[str]:
    """Words of a field name, split on separators and camelCase: BackExtra -> back, extra."""
    return [t.lower() for t in WORD_RE.findall(name)]


def role_from_alias(field_name: str) -> FieldRole | None:
    lowered = field_name.strip().lower()
    if lowered in FIELD_ROLE_ALIASES:
        return FIELD_ROLE_ALIASES[lowered]
    tokens = _tokens(field_name)
    for alias, role in FIELD_ROLE_ALIASES.items():
        if alias in tokens:
            return role
    return None


def _references(template: str, field_name: str) -> bool:
    pattern = r"\{\{\s*[#^/]?\s*(?:[\w-]+:)*\s*" + re.escape(field_name) + r"\s*\}\}"
    return re.search(pattern, template) is not None


def infer_field_roles(fields: list[str], templates: list[CardTemplate]) -> dict[str, FieldRole]:
    """Role per field: alias match, then template placement, then "both"."""
    fronts = [t.front for t in templates]
    backs = [FRONT_SIDE_RE.sub("", t.back) for t in templates]
    roles: dict[str, FieldRole] = {}
    for name in fields:
        role = role_from_alias(name)
        if role is None:
            on_front = any(_references(t, name) for t in fronts)
            on_back = any(_references(t, name) for t in backs)
            if on_front and not on_back:
                role = "front"
            elif on_back and not on_front:
                role = "back"
            else:
                role = "both"
        roles[name] = role
    return roles


def detect_card_type(model: ModelInfo) -> str:
    if any(CLOZE_RE.search(t.front) or CLOZE_RE.search(t.back) for t in model.templates):
        return "cloze"
    if sum(1 for f in model.fields if CHOICE_FIELD_RE.match(f.strip())) >= 2:
        return "multiple_choice"
    roles = infer_field_roles([f for f in model.fields if f not in BOOKKEEPING_FIELDS], model.templates)
    if "front" in roles.values() and "back" in roles.values():
        return "basic"
    return "other"


def build_templates(schema: LocalSchema) -> list[CardTemplate]:
    if schema.front_template and schema.back_template:
        return [CardTemplate(name="Card 1", front=schema.front_template, back=schema.back_template)]

    front_fields = [f for f in schema.fields if f.role in ("front", "both")] or schema.fields[:1]
    back_fields = [f for f in schema.fields if f.role in ("back", "custom") and f not in front_fields]
    front = "\n".join(f'<div class="question">{{{{{f.remote_name or f.name}}}}}</div>' for f in front_fields)
    back_parts = ["{{FrontSide}}", '<hr id="answer">']
    back_parts += [f'<div class="answer">{{{{{f.remote_name or f.name}}}}}</div>' for f in back_fields]
    return [CardTemplate(name="Card 1", front=front, back="\n".join(back_parts))]


def default_schema(card: Card) -> LocalSchema:
    """Schema for cards whose template was never saved: every field, front first."""
    names = list(card.fields) or ["front", "back"]
    fields = []
    for i, name in enumerate(names):
        role = role_from_alias(name) or ("front" if i == 0 else "back")
        fields.append(SchemaField(name=name, role=role))
    return LocalSchema(id=card.template_id, name=card.template_id.replace("_", " ").title(), fields=fields)


class TemplateConverter:
    """Maps local schemas to remote note types and back, via the registry."""

    def __init__(self, client, registry, local_store):
        self.client = client
        self.registry = registry
        self.local_store = local_store

    # remote -> local

    def import_model(self, model: ModelInfo) -> LocalSchema:
        if model.id is not None:
            mapping = self.registry.find_template_by_remote_model(model.id)
            if mapping is not None:
                existing = self.local_store.get_schema(mapping.local_schema_id)
                if existing is not None:
                    return existing

        content_fields = [f for f in model.fields if f not in BOOKKEEPING_FIELDS]
        roles = infer_field_roles(content_fields, model.templates)
        first = model.templates[0] if model.templates else CardTemplate(name="Card 1")
        schema = LocalSchema(
            id=f"anki-{model.id}" if model.id is not None else model.name,
            name=model.name,
            fields=[SchemaField(name=f, role=roles[f], remote_name=f) for f in content_fields],
            card_type=detect_card_type(model),
            remote_model_id=model.id,
            remote_model_name=model.name,
            front_template=first.front,
            back_template=first.back,
            css=model.css,
        )
        self.local_store.save_schema(schema)
        if model.id is not None:
            self.registry.record_template(schema.id, model.id, model.name, roles)
        logger.info("schema_imported model=%s schema=%s type=%s fields=%s", model.name, schema.id, schema.card_type, len(schema.fields))
        return schema

    def import_model_by_name(self, model_name: str) -> LocalSchema:
        return self.import_model(self.client.model_info(model_name))

    # local -> remote

    def export_schema(self, schema: LocalSchema) -> TemplateMapping:
        mapping = self.registry.find_template(schema.id)
        if mapping is not None:
            return mapping

        model_name = schema.remote_model_name or f"{MODEL_NAME_PREFIX}{schema.name}"
        existing_ids = self.client.model_names_and_ids()
        roles: dict[str, FieldRole] = {}
        if model_name in existing_ids:
            model_id = existing_ids[model_name]
            remote_fields = self.client.model_field_names(model_name)
            by_remote = {f.remote_name or f.name: f.role for f in schema.fields}
            for name in remote_fields:
                roles[name] = "custom" if name in BOOKKEEPING_FIELDS else by_remote.get(name, "both")
            missing = [n for n in by_remote if n not in remote_fields]
            if missing:
                logger.warning("remote_model_missing_fields model=%s fields=%s", model_name, ",".join(missing))
            logger.info("remote_model_reused model=%s id=%s", model_name, model_id)
        else:
            field_names = [f.remote_name or f.name for f in schema.fields] + list(BOOKKEEPING_FIELDS)
            model_id = self.client.create_model(model_name, field_names, build_templates(schema), schema.css or DEFAULT_CSS)
            roles = {f.remote_name or f.name: f.role for f in schema.fields}
            roles.update({name: "custom" for name in BOOKKEEPING_FIELDS})
            logger.info("remote_model_created model=%s id=%s fields=%s", model_name, model_id, len(field_names))

        mapping = self.registry.record_template(schema.id, model_id, model_name, roles)
        if schema.remote_model_id != model_id or schema.remote_model_name != model_name:
            self.local_store.save_schema(schema.model_copy(update={"remote_model_id": model_id, "remote_model_name": model_name}))
        return mapping

    # field mapping

    @staticmethod
    def to_remote_fields(card: Card, schema: LocalSchema, mapping: TemplateMapping) -> dict[str, str]:
        out: dict[str, str] = {}
        for f in schema.fields:
            remote = f.remote_name or f.name
            if remote in mapping.field_roles:
                out[remote] = card.fields.get(f.name, "")
        if SCHEMA_ID_FIELD in mapping.field_roles:
            out[SCHEMA_ID_FIELD] = schema.id
        if CARD_ID_FIELD in mapping.field_roles:
            out[CARD_ID_FIELD] = card.id
        return out

    @staticmethod
    def to_local_fields(note: NoteInfo, schema: LocalSchema) -> dict[str, str]:
        values = note.field_values()
        return {f.name: values.get(f.remote_name or f.name, "") for f in schema.fields}

    @staticmethod
    def back_field(schema: LocalSchema, mapping: TemplateMapping) -> str | None:
        for f in schema.fields:
            remote = f.remote_name or f.name
            if f.role == "back" and remote in mapping.field_roles:
                return remote
        return None
