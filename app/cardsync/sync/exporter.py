from __future__ import annotations

import html
import logging
import threading

from cardsync.core.config import DeckMapping
from cardsync.core.errors import TRANSPORT_ERRORS, RemoteError, SyncOrchestrationError
from cardsync.core.models import BatchResult, Card, ItemError, LocalSchema, TemplateMapping, content_hash
from cardsync.providers.ankiconnect.schemas import NewNote
from cardsync.sync.templates import default_schema
from cardsync.transcode.base import ConversionContext
from cardsync.transcode.layers import WikiLinkLayer

BACKLINK_STYLE = "font-size:0.8em;color:#667eea;text-decoration:none"

logger = logging.getLogger("exporter")


class CardExporter:
    """Pushes changed cards from a local scope into a remote deck.

    Non-destructive on the local side, so no backup is taken; a failing
    record is reported and the batch moves on.
    """

    def __init__(
        self,
        client,
        registry,
        tracker,
        converter,
        pipeline,
        local_store,
        media=None,
        *,
        append_backlink: bool = True,
        vault_name: str = "",
        deep_link_scheme: str = "obsidian",
    ):
        self.client = client
        self.registry = registry
        self.tracker = tracker
        self.converter = converter
        self.pipeline = pipeline
        self.local_store = local_store
        self.media = media
        self.append_backlink = append_backlink
        self.vault_name = vault_name
        self.deep_link_scheme = deep_link_scheme

    def _context(self, card: Card) -> ConversionContext:
        return ConversionContext(
            source_file=card.source_file,
            source_anchor=card.source_anchor,
            vault_name=self.vault_name,
            deep_link_scheme=self.deep_link_scheme,
        )

    def media_fingerprint(self, card: Card) -> str | None:
        if self.media is None:
            return None
        parts = []
        for name in sorted(card.fields):
            digest = self.media.fingerprint(card.fields[name], card.source_file)
            if digest:
                parts.append(f"{name}:{digest}")
        return ";".join(parts) or None

    def _drifted(self, card: Card, fingerprint: str | None) -> bool:
        if self.registry.mark_pending_if_changed(card):
            return True
        mapped = self.registry.find_by_local_id(card.id)
        if mapped is None or mapped.media_hash == fingerprint:
            return False
        logger.info("media_changed record=%s", card.id)
        self.registry.update_status(mapped.stable_uuid, "pending")
        return True

    def _pending(self, records: list[Card], full_resync: bool) -> tuple[list[Card], list[Card]]:
        """Split tracker-flagged records into (to send, unchanged since last send)."""
        flagged = self.tracker.get_changed_records(records, full_resync=full_resync)
        flagged_ids = {c.id for c in flagged}
        fingerprints = {c.id: self.media_fingerprint(c) for c in records}
        # a hash drift always needs a transfer, even when the timestamp says otherwise
        drifted = [c for c in records if c.id not in flagged_ids and self._drifted(c, fingerprints[c.id])]
        send, touch = [], []
        for card in flagged + drifted:
            mapped = self.registry.find_by_local_id(card.id)
            unchanged = mapped is not None and mapped.content_hash == content_hash(card) and mapped.media_hash == fingerprints[card.id]
            if not full_resync and unchanged:
                touch.append(card)
            else:
                send.append(card)
        return send, touch

    def _schema_for(self, card: Card, cache: dict[str, tuple[LocalSchema, TemplateMapping]]) -> tuple[LocalSchema, TemplateMapping]:
        if card.template_id not in cache:
            schema = self.local_store.get_schema(card.template_id)
            if schema is None:
                schema = default_schema(card)
                self.local_store.save_schema(schema)
            cache[card.template_id] = (schema, self.converter.export_schema(schema))
        return cache[card.template_id]

    def _backlink(self, card: Card) -> str | None:
        if not (self.append_backlink and card.source_file and self.vault_name):
            return None
        url = WikiLinkLayer.build_url(self._context(card), card.source_file, card.source_anchor or "")
        return f'<br><a href="{html.escape(url, quote=True)}" class="source-backlink" style="{BACKLINK_STYLE}">Open source</a>'

    def render_fields(self, card: Card, schema: LocalSchema, mapping: TemplateMapping, warnings: list[str]) -> dict[str, str]:
        fields = self.converter.to_remote_fields(card, schema, mapping)
        context = self._context(card)
        bookkeeping = set(fields) - {f.remote_name or f.name for f in schema.fields}
        for name, value in list(fields.items()):
            if name in bookkeeping or not value:
                continue
            converted = self.pipeline.convert(value, context)
            warnings.extend(f"{card.id}: {w}" for w in converted.warnings)
            value = converted.content
            if self.media is not None:
                transferred = self.media.transfer(value, card.source_file, card.source_anchor)
                warnings.extend(f"{card.id}: {w}" for w in transferred.warnings)
                value = transferred.content
            fields[name] = value

        backlink = self._backlink(card)
        back = self.converter.back_field(schema, mapping)
        if backlink and back:
            fields[back] = fields.get(back, "") + backlink
        return fields

    def _send(self, card: Card, deck: str, mapping: TemplateMapping, fields: dict[str, str]) -> int:
        mapped = self.registry.find_by_local_id(card.id)
        if mapped is not None:
            try:
                self.client.update_note_fields(mapped.remote_id, fields)
                self.client.update_note_tags(mapped.remote_id, card.tags)
                return mapped.remote_id
            except RemoteError as e:
                if "not found" not in str(e).lower():
                    raise
                logger.warning("remote_note_gone record=%s remote_id=%s; re-adding", card.id, mapped.remote_id)
        note = NewNote(deckName=deck, modelName=mapping.remote_model_name, fields=fields, tags=card.tags)
        return self.client.add_note(note)

    def run(self, mapping: DeckMapping, *, full_resync: bool = False, cancel_event: threading.Event | None = None) -> BatchResult:
        scope, deck = mapping.local_scope, mapping.remote_deck
        result = BatchResult(scope=scope, remote_deck=deck, direction="export")

        records = self.local_store.get_all_records(scope)
        send, touch = self._pending(records, full_resync)
        result.total = len(records)
        result.changed = len(send)
        result.skipped = len(records) - len(send)
        if touch:
            self.tracker.update_batch([c.id for c in touch], "export")
        if not send:
            logger.info("export_nothing_to_do scope=%s deck=%s records=%s", scope, deck, len(records))
            return result

        try:
            self.client.create_deck(deck)
            self._export(result, send, deck, cancel_event)
        except TRANSPORT_ERRORS as e:
            logger.error("export_aborted scope=%s deck=%s error=%s", scope, deck, e)
            raise SyncOrchestrationError(f"export_failed: {scope}: {e}") from e

        logger.info(
            "export_done scope=%s deck=%s succeeded=%s failed=%s skipped=%s cancelled=%s",
            scope,
            deck,
            result.succeeded,
            result.failed,
            result.skipped,
            result.cancelled,
        )
        return result

    def _export(self, result: BatchResult, send: list[Card], deck: str, cancel_event: threading.Event | None) -> None:
        schemas: dict[str, tuple[LocalSchema, TemplateMapping]] = {}
        for i, card in enumerate(send):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.skipped += len(send) - i
                logger.warning("export_cancelled scope=%s remaining=%s", result.scope, len(send) - i)
                return

            stage = "schema"
            try:
                schema, tmpl = self._schema_for(card, schemas)
                stage = "convert"
                fields = self.render_fields(card, schema, tmpl, result.warnings)
                media_hash = self.media_fingerprint(card)
                stage = "transmit"
                remote_id = self._send(card, deck, tmpl, fields)
            except TRANSPORT_ERRORS:
                raise
            except RemoteError as e:
                stage = "duplicate" if e.is_duplicate else stage
                self._item_failed(result, card, stage, e)
                continue
            except Exception as e:
                self._item_failed(result, card, stage, e)
                continue

            existing = self.registry.find_by_local_id(card.id)
            self.registry.record_mapping(
                card.id,
                remote_id,
                existing.stable_uuid if existing else card.uuid,
                content_hash(card),
                schema.id,
                media_hash=media_hash,
                local_modified_at=card.modified_at,
                remote_modified_at=self.tracker.clock(),
                direction="export",
            )
            self.tracker.update_sync_timestamp(card.id, "export", remote_id=remote_id)
            self.registry.lock_template(schema.id)
            result.succeeded += 1

    def _item_failed(self, result: BatchResult, card: Card, stage: str, error: Exception) -> None:
        logger.warning("export_item_failed record=%s stage=%s error=%s", card.id, stage, error)
        result.failed += 1
        result.errors.append(ItemError(record_id=card.id, stage=stage, error=str(error)))
        mapped = self.registry.find_by_local_id(card.id)
        if mapped is not None:
            self.registry.update_status(mapped.stable_uuid, "error")
