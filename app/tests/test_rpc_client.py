import pytest
import requests

from cardsync.core.errors import NetworkError, NotRunningError, ProtocolError, RemoteError
from cardsync.providers.ankiconnect import client as client_module
from cardsync.providers.ankiconnect.client import AnkiConnectClient
from cardsync.providers.ankiconnect.schemas import NewNote


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _patch_post(monkeypatch, responder):
    calls: list[dict] = []

    def _fake_post(url, json=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        return responder(json)

    monkeypatch.setattr(client_module.requests, "post", _fake_post)
    return calls


def test_invoke_sends_versioned_envelope(monkeypatch):
    calls = _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": ["Default"], "error": None}))
    client = AnkiConnectClient("http://127.0.0.1:8765", timeout=3.0)

    assert client.deck_names() == ["Default"]
    assert calls[0]["json"] == {"action": "deckNames", "version": 6}
    assert calls[0]["timeout"] == 3.0


def test_connection_refused_maps_to_not_running(monkeypatch):
    def _refuse(_body):
        raise requests.exceptions.ConnectionError("refused")

    _patch_post(monkeypatch, _refuse)

    with pytest.raises(NotRunningError) as exc:
        AnkiConnectClient().version()
    assert "AnkiConnect" in exc.value.hint


def test_timeout_maps_to_network_error(monkeypatch):
    def _slow(_body):
        raise requests.exceptions.ConnectTimeout("slow")

    _patch_post(monkeypatch, _slow)

    with pytest.raises(NetworkError) as exc:
        AnkiConnectClient(timeout=0.5).version()
    assert str(exc.value).startswith("request_timeout")


def test_peer_error_is_passed_through_verbatim(monkeypatch):
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": None, "error": "deck was not found: Nope"}))

    with pytest.raises(RemoteError) as exc:
        AnkiConnectClient().find_notes('deck:"Nope"')
    assert str(exc.value) == "deck was not found: Nope"


def test_unsupported_action_is_protocol_error(monkeypatch):
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": None, "error": "unsupported action"}))

    with pytest.raises(ProtocolError):
        AnkiConnectClient().model_styling("Basic")


def test_malformed_envelope_is_protocol_error(monkeypatch):
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"unexpected": True}))

    with pytest.raises(ProtocolError):
        AnkiConnectClient().deck_names()


def test_result_shape_is_validated(monkeypatch):
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": "not-a-list", "error": None}))

    with pytest.raises(ProtocolError):
        AnkiConnectClient().find_notes("deck:x")


def test_each_mapped_failure_is_logged(monkeypatch, caplog):
    replies = iter(
        [
            _FakeResponse({"result": None, "error": "deck was not found: Nope"}),
            _FakeResponse({"result": None, "error": "unsupported action"}),
            _FakeResponse({"result": "not-a-list", "error": None}),
        ]
    )
    _patch_post(monkeypatch, lambda _body: next(replies))
    client = AnkiConnectClient()

    with caplog.at_level("WARNING", logger="rpc"):
        with pytest.raises(RemoteError):
            client.find_notes('deck:"Nope"')
        with pytest.raises(ProtocolError):
            client.model_styling("Basic")
        with pytest.raises(ProtocolError):
            client.find_notes("deck:x")

    messages = [r.getMessage() for r in caplog.records if r.name == "rpc"]
    assert len(messages) == 3
    assert "action=findNotes kind=RemoteError" in messages[0]
    assert "action=modelStyling kind=ProtocolError" in messages[1]
    assert "malformed_response: findNotes" in messages[2]


def test_not_running_failure_is_logged(monkeypatch, caplog):
    def _refuse(_body):
        raise requests.exceptions.ConnectionError("refused")

    _patch_post(monkeypatch, _refuse)

    with caplog.at_level("WARNING", logger="rpc"):
        probe = AnkiConnectClient().check_connection()

    assert probe.status == "not_running"
    assert any("kind=NotRunningError" in r.getMessage() for r in caplog.records)


def test_notes_info_skips_deleted_notes(monkeypatch):
    note = {
        "noteId": 11,
        "modelName": "Basic",
        "tags": ["bio"],
        "fields": {"Back": {"value": "B", "order": 1}, "Front": {"value": "F", "order": 0}},
        "mod": 1700000000,
        "cards": [99],
    }
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": [note, {}], "error": None}))

    infos = AnkiConnectClient().notes_info([11, 12])

    assert len(infos) == 1
    assert infos[0].note_id == 11
    assert list(infos[0].field_values()) == ["Front", "Back"]


def test_add_note_uses_deck_duplicate_scope(monkeypatch):
    calls = _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": 1234, "error": None}))

    note_id = AnkiConnectClient().add_note(
        NewNote(deck_name="Bio", model_name="Basic", fields={"Front": "q", "Back": "a"}, tags=["x"])
    )

    assert note_id == 1234
    sent = calls[0]["json"]["params"]["note"]
    assert sent["deckName"] == "Bio"
    assert sent["options"] == {"allowDuplicate": False, "duplicateScope": "deck"}


def test_duplicate_rejection_is_flagged(monkeypatch):
    _patch_post(
        monkeypatch,
        lambda _body: _FakeResponse({"result": None, "error": "cannot create note because it is a duplicate"}),
    )

    with pytest.raises(RemoteError) as exc:
        AnkiConnectClient().add_note(NewNote(deck_name="Bio", model_name="Basic", fields={"Front": "q"}))
    assert exc.value.is_duplicate


def test_check_connection_reports_version_mismatch(monkeypatch):
    _patch_post(monkeypatch, lambda _body: _FakeResponse({"result": 5, "error": None}))

    probe = AnkiConnectClient().check_connection()

    assert probe.ok is False
    assert probe.status == "version_mismatch"
    assert probe.version == 5


def test_check_connection_classifies_not_running(monkeypatch):
    def _refuse(_body):
        raise requests.exceptions.ConnectionError("refused")

    _patch_post(monkeypatch, _refuse)

    probe = AnkiConnectClient().check_connection()

    assert probe.ok is False
    assert probe.status == "not_running"
    assert probe.hint
