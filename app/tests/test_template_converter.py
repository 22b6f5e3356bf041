from pathlib import Path

from cardsync.core.models import Card, LocalSchema, SchemaField
from cardsync.providers.ankiconnect.schemas import CardTemplate, ModelInfo
from cardsync.sync.local_store import JsonDirectoryStore
from cardsync.sync.registry import MappingRegistry
from cardsync.sync.templates import (
    CARD_ID_FIELD,
    SCHEMA_ID_FIELD,
    TemplateConverter,
    detect_card_type,
    infer_field_roles,
)


class _FakeClient:
    def __init__(self, models: dict[str, int] | None = None, fields: dict[str, list[str]] | None = None):
        self.models = dict(models or {})
        self.fields = dict(fields or {})
        self.created: list[dict] = []

    def model_names_and_ids(self):
        return dict(self.models)

    def model_field_names(self, name):
        return list(self.fields[name])

    def create_model(self, name, fields, templates, css=""):
        model_id = 9000 + len(self.created)
        self.created.append({"name": name, "fields": fields, "templates": templates, "css": css})
        self.models[name] = model_id
        self.fields[name] = fields
        return model_id


def _converter(tmp_path: Path, client=None) -> tuple[TemplateConverter, MappingRegistry, JsonDirectoryStore]:
    store = JsonDirectoryStore(tmp_path / "store")
    registry = MappingRegistry(tmp_path / "mappings.json")
    return TemplateConverter(client or _FakeClient(), registry, store), registry, store


def test_alias_matching_wins_over_template_placement():
    templates = [CardTemplate(name="Card 1", front="{{Answer}}", back="{{FrontSide}}<hr>{{Question}}")]
    roles = infer_field_roles(["Question", "Answer", "Tags", "Stage"], templates)

    assert roles == {"Question": "front", "Answer": "back", "Tags": "custom", "Stage": "both"}


def test_aliases_match_whole_words_only():
    templates = [CardTemplate(name="Card 1", front="{{Extract}}", back="{{FrontSide}}<hr>{{Quote}}")]
    roles = infer_field_roles(["Extract", "Quote", "Frontier", "BackExtra", "answer_text"], templates)

    assert roles == {"Extract": "front", "Quote": "back", "Frontier": "both", "BackExtra": "back", "answer_text": "back"}


def test_template_placement_and_fallback():
    templates = [
        CardTemplate(
            name="Card 1",
            front="{{Word}}{{#Hint}}{{hint:Hint}}{{/Hint}}",
            back="{{FrontSide}}<hr id=answer>{{Meaning}}",
        )
    ]
    roles = infer_field_roles(["Word", "Hint", "Meaning", "Unused"], templates)

    assert roles["Word"] == "front"
    assert roles["Hint"] == "front"
    assert roles["Meaning"] == "back"
    assert roles["Unused"] == "both"


def test_card_type_detection():
    cloze = ModelInfo(name="Cloze", fields=["Text", "Back Extra"], templates=[CardTemplate(name="c", front="{{cloze:Text}}", back="{{cloze:Text}}")])
    basic = ModelInfo(name="Basic", fields=["Front", "Back"], templates=[CardTemplate(name="c", front="{{Front}}", back="{{Back}}")])
    choice = ModelInfo(name="MCQ", fields=["Question", "Option A", "Option B", "Answer"])
    other = ModelInfo(name="Misc", fields=["Word"])

    assert detect_card_type(cloze) == "cloze"
    assert detect_card_type(basic) == "basic"
    assert detect_card_type(choice) == "multiple_choice"
    assert detect_card_type(other) == "other"


def test_import_model_is_reused_on_repeat(tmp_path: Path):
    converter, registry, store = _converter(tmp_path)
    model = ModelInfo(
        id=77,
        name="Basic",
        fields=["Front", "Back"],
        templates=[CardTemplate(name="Card 1", front="{{Front}}", back="{{FrontSide}}{{Back}}")],
    )

    first = converter.import_model(model)
    second = converter.import_model(model)

    assert first.id == second.id == "anki-77"
    assert store.get_schema("anki-77").remote_model_id == 77
    assert registry.find_template_by_remote_model(77).field_roles == {"Front": "front", "Back": "back"}
    assert len(store.list_schemas()) == 1


def test_export_synthesizes_model_with_bookkeeping_fields(tmp_path: Path):
    client = _FakeClient()
    converter, registry, store = _converter(tmp_path, client)
    schema = LocalSchema(id="vocab", name="Vocab", fields=[SchemaField(name="word", role="front"), SchemaField(name="meaning", role="back")])

    mapping = converter.export_schema(schema)
    again = converter.export_schema(schema)

    assert len(client.created) == 1
    created = client.created[0]
    assert created["name"] == "[CardSync] Vocab"
    assert created["fields"] == ["word", "meaning", SCHEMA_ID_FIELD, CARD_ID_FIELD]
    assert "{{word}}" in created["templates"][0].front
    assert "{{meaning}}" in created["templates"][0].back
    assert mapping == again
    assert store.get_schema("vocab").remote_model_name == "[CardSync] Vocab"

    card = Card(id="c1", template_id="vocab", fields={"word": "chat", "meaning": "cat"})
    assert converter.to_remote_fields(card, schema, mapping) == {
        "word": "chat",
        "meaning": "cat",
        SCHEMA_ID_FIELD: "vocab",
        CARD_ID_FIELD: "c1",
    }
    assert converter.back_field(schema, mapping) == "meaning"


def test_export_reuses_existing_remote_model_by_name(tmp_path: Path):
    client = _FakeClient(models={"Basic": 5}, fields={"Basic": ["Front", "Back"]})
    converter, _, _ = _converter(tmp_path, client)
    schema = LocalSchema(
        id="basic",
        name="Basic",
        remote_model_name="Basic",
        fields=[SchemaField(name="front", role="front", remote_name="Front"), SchemaField(name="back", role="back", remote_name="Back")],
    )

    mapping = converter.export_schema(schema)

    assert client.created == []
    assert mapping.remote_model_id == 5
    assert mapping.field_roles == {"Front": "front", "Back": "back"}
    card = Card(id="c1", fields={"front": "Q", "back": "A"})
    assert converter.to_remote_fields(card, schema, mapping) == {"Front": "Q", "Back": "A"}
