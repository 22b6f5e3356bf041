from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from cardsync.core.config import DeckMapping
from cardsync.core.errors import TRANSPORT_ERRORS, SyncOrchestrationError
from cardsync.core.models import BatchResult, Card, ItemError, LocalSchema, content_hash, new_uuid
from cardsync.providers.ankiconnect.schemas import NoteInfo
from cardsync.sync.templates import CARD_ID_FIELD
from cardsync.transcode.reverse import html_to_markdown, referenced_media

logger = logging.getLogger("importer")


def fetch_settled(fn, keys: list, max_workers: int) -> dict:
    """Run `fn` per key on a small pool; each key maps to a result or the exception it raised."""
    out: dict = {}
    if not keys:
        return out
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(keys)))) as pool:
        futures = {key: pool.submit(fn, key) for key in keys}
        for key, fut in futures.items():
            try:
                out[key] = fut.result()
            except Exception as e:
                out[key] = e
    return out


class CardImporter:
    """Pulls notes from a remote deck into a local scope.

    Destructive: the scope is backed up first and restored, together with
    the mapping table and sync timestamps, if the run fails as a whole.
    """

    def __init__(self, client, registry, tracker, converter, backups, local_store, media=None, concurrency: int = 3):
        self.client = client
        self.registry = registry
        self.tracker = tracker
        self.converter = converter
        self.backups = backups
        self.local_store = local_store
        self.media = media
        self.concurrency = concurrency

    def _local_id_for(self, note: NoteInfo) -> str:
        mapped = self.registry.find_by_remote_id(note.note_id)
        if mapped is not None:
            return mapped.local_id
        # Notes we exported earlier carry the local card id.
        field = note.fields.get(CARD_ID_FIELD)
        if field is not None and field.value.strip():
            return field.value.strip()
        return f"anki-{note.note_id}"

    def _changed_notes(self, notes: list[NoteInfo], existing: dict[str, Card], full_resync: bool) -> list[tuple[str, NoteInfo]]:
        ids = [(self._local_id_for(n), n) for n in notes]
        if full_resync:
            return ids
        candidates = [existing.get(local_id) or Card(id=local_id, modified_at=0.0) for local_id, _ in ids]
        remote_mod = {local_id: float(n.mod) for local_id, n in ids}
        changed = {c.id for c in self.tracker.get_changed_records(candidates, remote_mod)}
        return [(local_id, n) for local_id, n in ids if local_id in changed]

    def _convert(self, local_id: str, note: NoteInfo, schema: LocalSchema, previous: Card | None, warnings: list[str]) -> Card:
        raw = self.converter.to_local_fields(note, schema)
        fields = {name: html_to_markdown(value) for name, value in raw.items()}
        if self.media is not None:
            for value in raw.values():
                for filename in referenced_media(value):
                    try:
                        if self.media.download(filename) is None:
                            warnings.append(f"media_missing: {filename}")
                    except TRANSPORT_ERRORS:
                        raise
                    except Exception as e:
                        warnings.append(f"media_download_failed: {filename} ({e})")

        mapped = self.registry.find_by_remote_id(note.note_id)
        stable_uuid = mapped.stable_uuid if mapped else (previous.uuid if previous else new_uuid())
        update = {
            "uuid": stable_uuid,
            "template_id": schema.id,
            "fields": fields,
            "tags": list(note.tags),
            "modified_at": float(note.mod),
        }
        if previous is not None:
            return previous.model_copy(update=update)
        return Card(id=local_id, **update)

    def run(self, mapping: DeckMapping, *, full_resync: bool = False, cancel_event: threading.Event | None = None) -> BatchResult:
        scope, deck = mapping.local_scope, mapping.remote_deck
        result = BatchResult(scope=scope, remote_deck=deck, direction="import")

        notes = self.client.notes_info(self.client.find_notes_in_deck(deck))
        existing_records = self.local_store.get_all_records(scope)
        existing = {c.id: c for c in existing_records}
        changed = self._changed_notes(notes, existing, full_resync)
        result.total = len(notes)
        result.changed = len(changed)
        result.skipped = len(notes) - len(changed)
        if not changed:
            logger.info("import_nothing_to_do scope=%s deck=%s notes=%s", scope, deck, len(notes))
            return result

        backup_id = self.backups.create_backup(scope, existing_records, reason="import")
        result.backup_id = backup_id
        registry_snapshot = self.registry.snapshot()
        tracker_snapshot = self.tracker.snapshot([local_id for local_id, _ in changed])

        try:
            self._import(result, changed, existing, existing_records, cancel_event)
        except Exception as e:
            logger.exception("import_failed scope=%s deck=%s backup=%s", scope, deck, backup_id)
            restored = self._rollback(scope, backup_id, registry_snapshot, tracker_snapshot)
            raise SyncOrchestrationError(f"import_failed: {scope}: {e}", backup_id=backup_id, restored=restored) from e

        logger.info(
            "import_done scope=%s deck=%s succeeded=%s failed=%s skipped=%s cancelled=%s",
            scope,
            deck,
            result.succeeded,
            result.failed,
            result.skipped,
            result.cancelled,
        )
        return result

    def _import(
        self,
        result: BatchResult,
        changed: list[tuple[str, NoteInfo]],
        existing: dict[str, Card],
        existing_records: list[Card],
        cancel_event: threading.Event | None,
    ) -> None:
        model_names = sorted({n.model_name for _, n in changed})
        models = fetch_settled(self.client.model_info, model_names, self.concurrency)

        schemas: dict[str, LocalSchema | Exception] = {}
        for name in model_names:
            info = models[name]
            if isinstance(info, TRANSPORT_ERRORS):
                raise info
            if isinstance(info, Exception):
                schemas[name] = info
                continue
            schemas[name] = self.converter.import_model(info)

        converted: list[tuple[Card, NoteInfo]] = []
        for i, (local_id, note) in enumerate(changed):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.skipped += len(changed) - i
                logger.warning("import_cancelled scope=%s remaining=%s", result.scope, len(changed) - i)
                break
            schema = schemas[note.model_name]
            if isinstance(schema, Exception):
                result.failed += 1
                result.errors.append(ItemError(record_id=local_id, stage="model", error=str(schema)))
                continue
            try:
                card = self._convert(local_id, note, schema, existing.get(local_id), result.warnings)
            except TRANSPORT_ERRORS:
                raise
            except Exception as e:
                logger.warning("import_item_failed record=%s note=%s error=%s", local_id, note.note_id, e)
                result.failed += 1
                result.errors.append(ItemError(record_id=local_id, stage="convert", error=str(e)))
                continue
            converted.append((card, note))

        if not converted:
            return

        merged = {c.id: c for c in existing_records}
        merged.update({card.id: card for card, _ in converted})
        self.local_store.save_records(result.scope, list(merged.values()))

        for card, note in converted:
            sync_time = max(self.tracker.clock(), float(note.mod))
            self.registry.record_mapping(
                card.id,
                note.note_id,
                card.uuid,
                content_hash(card),
                card.template_id,
                local_modified_at=card.modified_at,
                remote_modified_at=float(note.mod),
                direction="import",
            )
            self.tracker.update_sync_timestamp(card.id, "import", sync_time=sync_time, remote_id=note.note_id)
            self.registry.lock_template(card.template_id)
            result.succeeded += 1

    def _rollback(self, scope: str, backup_id: str, registry_snapshot, tracker_snapshot) -> bool:
        try:
            self.local_store.save_records(scope, self.backups.restore_backup(backup_id))
            self.registry.restore(registry_snapshot)
            self.tracker.restore(tracker_snapshot)
        except Exception:
            logger.exception("import_rollback_failed scope=%s backup=%s", scope, backup_id)
            return False
        logger.warning("import_rolled_back scope=%s backup=%s", scope, backup_id)
        return True
