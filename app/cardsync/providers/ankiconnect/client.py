from __future__ import annotations

import logging
import time
from typing import Any

import requests
from pydantic import TypeAdapter, ValidationError

from cardsync.core.errors import NetworkError, NotRunningError, ProtocolError, RemoteError, RpcError
from cardsync.providers.ankiconnect.schemas import CardTemplate, ConnectionProbe, ModelInfo, NewNote, NoteInfo

API_VERSION = 6
DEFAULT_ENDPOINT = "http://127.0.0.1:8765"

HINT_NOT_RUNNING = "Start Anki and make sure the AnkiConnect add-on (2055492159) is installed and enabled."
HINT_NETWORK = "Check that the endpoint host and port match the AnkiConnect webBindAddress/webBindPort settings."
HINT_PERMISSION = "Add this client's origin to webCorsOriginList in the AnkiConnect add-on config."
HINT_TIMEOUT = "Anki did not answer in time; close any modal dialog in Anki and retry."
HINT_VERSION = "Update the AnkiConnect add-on to a release that speaks protocol version {version}."
HINT_PROTOCOL = "The AnkiConnect response did not have the expected shape; update the add-on."

logger = logging.getLogger("rpc")

_INT_LIST = TypeAdapter(list[int])
_STR_LIST = TypeAdapter(list[str])
_STR_INT_MAP = TypeAdapter(dict[str, int])
_NOTES = TypeAdapter(list[NoteInfo])


def _malformed(detail: str) -> ProtocolError:
    """For result shapes rejected after `invoke` already returned."""
    logger.warning("rpc_failed kind=ProtocolError error=malformed_response: %s", detail)
    return ProtocolError(f"malformed_response: {detail}", hint=HINT_PROTOCOL)


class AnkiConnectClient:
    """Stateless transport for the AnkiConnect JSON protocol.

    Every call is `{action, version, params}` POSTed to the endpoint; the
    reply is `{result, error}`. No retries here: reconnection belongs to the
    connection supervisor and per-record retries to the batch runners.
    """

    def __init__(self, endpoint: str = DEFAULT_ENDPOINT, timeout: float = 5.0, api_version: int = API_VERSION):
        self.endpoint = endpoint.rstrip("/") or DEFAULT_ENDPOINT
        self.timeout = timeout
        self.api_version = api_version

    def invoke(self, action: str, params: dict[str, Any] | None = None) -> Any:
        try:
            return self._post(action, params)
        except RpcError as e:
            logger.warning("rpc_failed action=%s kind=%s error=%s", action, type(e).__name__, e)
            raise

    def _post(self, action: str, params: dict[str, Any] | None) -> Any:
        body: dict[str, Any] = {"action": action, "version": self.api_version}
        if params:
            body["params"] = params

        try:
            res = requests.post(self.endpoint, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            # ConnectTimeout is also a ConnectionError; it must stay a timeout.
            raise NetworkError(f"request_timeout: {action} after {self.timeout}s", hint=HINT_TIMEOUT) from e
        except requests.exceptions.ConnectionError as e:
            raise NotRunningError(f"anki_not_running: {action}: {e}", hint=HINT_NOT_RUNNING) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"network_error: {action}: {e}", hint=HINT_NETWORK) from e

        if res.status_code == 403:
            raise NetworkError(f"permission_denied: {action}", hint=HINT_PERMISSION)
        if res.status_code >= 400:
            raise NetworkError(f"http_status_{res.status_code}: {action}", hint=HINT_NETWORK)

        try:
            payload = res.json()
        except ValueError as e:
            raise ProtocolError(f"malformed_response: {action}: not json", hint=HINT_PROTOCOL) from e

        if not isinstance(payload, dict) or "result" not in payload or "error" not in payload:
            raise ProtocolError(f"malformed_response: {action}: missing result/error", hint=HINT_PROTOCOL)

        error = payload.get("error")
        if error is not None:
            message = str(error)
            if message.lower().startswith("unsupported action"):
                raise ProtocolError(f"unsupported_action: {action}: {message}", hint=HINT_VERSION.format(version=self.api_version))
            raise RemoteError(message)
        return payload["result"]

    def _call(self, action: str, params: dict[str, Any] | None, adapter: TypeAdapter):
        result = self.invoke(action, params)
        try:
            return adapter.validate_python(result)
        except ValidationError as e:
            raise _malformed(f"{action}: {e.error_count()} validation errors") from e

    # connection

    def version(self) -> int:
        result = self.invoke("version")
        if isinstance(result, bool) or not isinstance(result, int):
            raise _malformed(f"version: {result!r}")
        return result

    def check_connection(self) -> ConnectionProbe:
        started = time.monotonic()
        try:
            version = self.version()
        except NotRunningError as e:
            return ConnectionProbe(ok=False, status="not_running", error=str(e), hint=e.hint)
        except NetworkError as e:
            return ConnectionProbe(ok=False, status="network", error=str(e), hint=e.hint)
        except RemoteError as e:
            return ConnectionProbe(ok=False, status="remote_error", error=str(e), hint=e.hint)
        except RpcError as e:
            return ConnectionProbe(ok=False, status="unknown", error=str(e), hint=e.hint)

        latency_ms = int((time.monotonic() - started) * 1000)
        if version < self.api_version:
            return ConnectionProbe(
                ok=False,
                status="version_mismatch",
                version=version,
                latency_ms=latency_ms,
                error=f"version_mismatch: peer={version} required={self.api_version}",
                hint=HINT_VERSION.format(version=self.api_version),
            )
        return ConnectionProbe(ok=True, status="connected", version=version, latency_ms=latency_ms)

    # decks

    def deck_names(self) -> list[str]:
        return self._call("deckNames", None, _STR_LIST)

    def create_deck(self, deck: str) -> int:
        return self._call("createDeck", {"deck": deck}, TypeAdapter(int))

    # models

    def model_names(self) -> list[str]:
        return self._call("modelNames", None, _STR_LIST)

    def model_names_and_ids(self) -> dict[str, int]:
        return self._call("modelNamesAndIds", None, _STR_INT_MAP)

    def model_field_names(self, model_name: str) -> list[str]:
        return self._call("modelFieldNames", {"modelName": model_name}, _STR_LIST)

    def model_templates(self, model_name: str) -> list[CardTemplate]:
        raw = self._call("modelTemplates", {"modelName": model_name}, TypeAdapter(dict[str, dict[str, str]]))
        return [CardTemplate(name=name, front=sides.get("Front", ""), back=sides.get("Back", "")) for name, sides in raw.items()]

    def model_styling(self, model_name: str) -> str:
        raw = self._call("modelStyling", {"modelName": model_name}, TypeAdapter(dict[str, str]))
        return raw.get("css", "")

    def model_info(self, model_name: str) -> ModelInfo:
        ids = self.model_names_and_ids()
        if model_name not in ids:
            raise RemoteError(f"model was not found: {model_name}")
        return ModelInfo(
            id=ids[model_name],
            name=model_name,
            fields=self.model_field_names(model_name),
            templates=self.model_templates(model_name),
            css=self.model_styling(model_name),
        )

    def create_model(self, model_name: str, fields: list[str], templates: list[CardTemplate], css: str = "") -> int:
        params = {
            "modelName": model_name,
            "inOrderFields": fields,
            "css": css,
            "cardTemplates": [{"Name": t.name, "Front": t.front, "Back": t.back} for t in templates],
        }
        result = self.invoke("createModel", params)
        if not isinstance(result, dict) or not isinstance(result.get("id"), int):
            raise _malformed(f"createModel: {result!r}")
        return int(result["id"])

    # notes

    def find_notes(self, query: str) -> list[int]:
        return self._call("findNotes", {"query": query}, _INT_LIST)

    def find_notes_in_deck(self, deck: str) -> list[int]:
        escaped = deck.replace('"', '\\"')
        return self.find_notes(f'deck:"{escaped}"')

    def notes_info(self, note_ids: list[int]) -> list[NoteInfo]:
        if not note_ids:
            return []
        raw = self.invoke("notesInfo", {"notes": note_ids})
        if not isinstance(raw, list):
            raise _malformed(f"notesInfo: {type(raw).__name__}")
        # Deleted notes come back as empty objects.
        present = [item for item in raw if item]
        try:
            return _NOTES.validate_python(present)
        except ValidationError as e:
            raise _malformed(f"notesInfo: {e.error_count()} validation errors") from e

    def add_note(self, note: NewNote) -> int:
        result = self.invoke("addNote", {"note": note.to_params()})
        if result is None:
            raise RemoteError("cannot create note: peer returned no id")
        if isinstance(result, bool) or not isinstance(result, int):
            raise _malformed(f"addNote: {result!r}")
        return result

    def update_note_fields(self, note_id: int, fields: dict[str, str]) -> None:
        self.invoke("updateNoteFields", {"note": {"id": note_id, "fields": fields}})

    def update_note_tags(self, note_id: int, tags: list[str]) -> None:
        self.invoke("updateNoteTags", {"note": note_id, "tags": tags})

    def delete_notes(self, note_ids: list[int]) -> None:
        if note_ids:
            self.invoke("deleteNotes", {"notes": note_ids})

    # media

    def store_media_file(self, filename: str, data_b64: str) -> str:
        result = self.invoke("storeMediaFile", {"filename": filename, "data": data_b64})
        return str(result or filename)

    def retrieve_media_file(self, filename: str) -> str | None:
        result = self.invoke("retrieveMediaFile", {"filename": filename})
        if result is False or result is None:
            return None
        if not isinstance(result, str):
            raise _malformed(f"retrieveMediaFile: {type(result).__name__}")
        return result

    def get_media_file_names(self, pattern: str = "*") -> list[str]:
        return self._call("getMediaFilesNames", {"pattern": pattern}, _STR_LIST)

    def delete_media_file(self, filename: str) -> None:
        self.invoke("deleteMediaFile", {"filename": filename})

    # misc

    def multi(self, actions: list[dict[str, Any]]) -> list[Any]:
        result = self.invoke("multi", {"actions": actions})
        if not isinstance(result, list):
            raise _malformed(f"multi: {type(result).__name__}")
        return result

    def sync(self) -> None:
        self.invoke("sync")
        logger.info("anki_collection_sync_requested")
