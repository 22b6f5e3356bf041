import json
from pathlib import Path

import pytest

from cardsync.core.errors import TemplateMappingLocked
from cardsync.core.models import Card, content_hash
from cardsync.sync.registry import REGISTRY_FORMAT_VERSION, MappingRegistry


def _card(card_id: str, front: str = "Q", back: str = "A") -> Card:
    return Card(id=card_id, fields={"front": front, "back": back}, modified_at=100.0)


def test_record_and_find_by_every_key(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "mappings.json")
    rec = reg.record_mapping("card-1", 111, "u-1", "h1", "basic")

    assert rec.sync_version == 1
    assert rec.sync_status == "synced"
    assert reg.find_by_local_id("card-1") == rec
    assert reg.find_by_remote_id(111) == rec
    assert reg.find_by_uuid("u-1") == rec
    assert reg.find_by_local_id("missing") is None


def test_persisted_document_is_versioned_and_reloads(tmp_path: Path):
    path = tmp_path / "mappings.json"
    reg = MappingRegistry(path)
    reg.record_mapping("card-1", 111, "u-1", "h1")
    reg.record_template("basic", 42, "[CardSync] Basic", {"front": "front", "back": "back"})

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["version"] == REGISTRY_FORMAT_VERSION
    assert data["mappings"][0]["local_id"] == "card-1"

    reloaded = MappingRegistry(path)
    assert reloaded.find_by_remote_id(111).stable_uuid == "u-1"
    assert reloaded.find_template("basic").remote_model_id == 42
    assert list(tmp_path.glob(".mappings-*")) == []


def test_re_recording_bumps_version(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    reg.record_mapping("card-1", 111, "u-1", "h1")
    rec = reg.record_mapping("card-1", 111, "u-1", "h2")

    assert rec.sync_version == 2
    assert rec.content_hash == "h2"
    assert len(reg.all()) == 1


def test_ids_are_never_shared_between_mappings(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    reg.record_mapping("card-1", 111, "u-1", "h1")
    reg.record_mapping("card-2", 111, "u-2", "h2")

    assert reg.find_by_uuid("u-1") is None
    assert reg.find_by_remote_id(111).local_id == "card-2"
    assert len(reg.all()) == 1


def test_remove_and_cleanup(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    for i in range(4):
        reg.record_mapping(f"card-{i}", 100 + i, f"u-{i}", "h")

    assert reg.remove_mapping("u-0") is True
    assert reg.remove_mapping("u-0") is False
    assert reg.cleanup(["card-1"]) == 2
    assert [r.local_id for r in reg.all()] == ["card-1"]


def test_cleanup_requires_a_source_of_local_ids(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    with pytest.raises(RuntimeError):
        reg.cleanup()


def test_mark_pending_detects_unsynced_edit(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    card = _card("card-1")
    reg.record_mapping(card.id, 111, card.uuid, content_hash(card))

    assert reg.mark_pending_if_changed(card) is False
    edited = card.model_copy(update={"fields": {"front": "Q2", "back": "A"}})
    assert reg.mark_pending_if_changed(edited) is True
    assert reg.find_by_local_id("card-1").sync_status == "pending"


def test_read_only_operations_do_not_rewrite_file(tmp_path: Path):
    path = tmp_path / "m.json"
    reg = MappingRegistry(path)
    card = _card("card-1")
    reg.record_mapping(card.id, 111, card.uuid, content_hash(card))
    before = path.read_bytes()

    reg.find_by_local_id(card.id)
    reg.mark_pending_if_changed(card)
    reg.cleanup([card.id])
    reg.restore(reg.snapshot())

    assert path.read_bytes() == before


def test_snapshot_restore_rolls_back_new_entries(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    reg.record_mapping("card-1", 111, "u-1", "h1")
    snap = reg.snapshot()
    reg.record_mapping("card-2", 222, "u-2", "h2")
    reg.record_mapping("card-1", 111, "u-1", "h1b")

    reg.restore(snap)

    assert reg.find_by_local_id("card-2") is None
    assert reg.find_by_uuid("u-1").content_hash == "h1"
    assert MappingRegistry(tmp_path / "m.json").find_by_remote_id(222) is None


def test_sync_capable_template_mapping_is_immutable(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    reg.record_template("basic", 42, "Basic", {"Front": "front"})
    reg.record_template("basic", 42, "Basic", {"Front": "both"})
    reg.lock_template("basic")

    assert reg.find_template("basic").sync_capable is True
    assert reg.record_template("basic", 42, "Basic", {"Front": "both"}).field_roles == {"Front": "both"}
    with pytest.raises(TemplateMappingLocked):
        reg.record_template("basic", 42, "Basic", {"Front": "back"})
    assert reg.find_template_by_remote_model(42).local_schema_id == "basic"


def test_stats_counts_by_status_and_direction(tmp_path: Path):
    reg = MappingRegistry(tmp_path / "m.json")
    reg.record_mapping("a", 1, "u-a", "h", direction="import")
    reg.record_mapping("b", 2, "u-b", "h", direction="export")
    reg.update_status("u-b", "error")

    stats = reg.stats()
    assert stats["total"] == 2
    assert stats["by_status"] == {"synced": 1, "error": 1}
    assert stats["by_direction"] == {"import": 1, "export": 1}
