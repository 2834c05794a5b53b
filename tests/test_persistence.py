import json
from datetime import date, datetime, timezone

import pytest

from chatdeck.errors import ValidationError
from chatdeck.models import ChatSession, Message
from chatdeck.sessions.persistence import (
    SessionPersistence,
    export_filename,
    export_sessions,
    read_import_file,
)
from chatdeck.sessions.schema import parse_timestamp, validate_records


def test_save_and_load_roundtrip(tmp_path):
    persistence = SessionPersistence(tmp_path)
    sessions = [
        ChatSession(name="One", messages=[Message(role="user", content="hi")], model="llama3"),
        ChatSession(name="Two", tags=["x"], model="llama3"),
    ]

    persistence.save(sessions, sessions[1].id)
    state = persistence.load()

    assert state is not None
    assert state.current_session_id == sessions[1].id
    assert [s.model_dump() for s in state.sessions] == [s.model_dump() for s in sessions]

    raw = json.loads(persistence.path.read_text())
    assert persistence.path.name == "chat-sessions-storage.json"
    assert set(raw) == {"sessions", "currentSessionId"}
    assert "systemPrompt" in raw["sessions"][0]
    assert "isBookmarked" in raw["sessions"][0]


def test_load_missing_file_returns_none(tmp_path):
    assert SessionPersistence(tmp_path).load() is None


def test_load_rejects_bad_documents(tmp_path):
    persistence = SessionPersistence(tmp_path)
    for payload in ["[]", '{"sessions": [{"name": "no id"}]}', "not json"]:
        persistence.path.write_text(payload)
        assert persistence.load() is None


def test_export_writes_dated_backup(tmp_path):
    records = [ChatSession(id="s1", name="One").to_record()]
    path = export_sessions(records, tmp_path, today=date(2024, 3, 9))

    assert path.name == "chat-sessions-backup-2024-03-09.json"
    assert json.loads(path.read_text())[0]["id"] == "s1"
    assert export_filename(date(2024, 12, 1)) == "chat-sessions-backup-2024-12-01.json"


def test_read_import_file_errors(tmp_path):
    with pytest.raises(ValidationError):
        read_import_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{oops")
    with pytest.raises(ValidationError):
        read_import_file(broken)


def test_validate_records_applies_defaults_and_legacy_keys():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    sessions = validate_records(
        [
            {"id": "a", "name": "Minimal"},
            {
                "id": "b",
                "name": "",
                "system_prompt": "Legacy",
                "is_favorite": True,
                "tags": ["t", "t"],
                "created_at": "2023-05-01T10:00:00Z",
                "updatedAt": 1700000000000,
            },
        ],
        default_model="llama3",
        now=now,
    )

    minimal, legacy = sessions
    assert minimal.model == "llama3"
    assert minimal.created_at == now
    assert minimal.options is None
    assert legacy.name == "New Chat"
    assert legacy.system_prompt == "Legacy"
    assert legacy.is_favorite is True
    assert legacy.tags == ["t"]
    assert legacy.created_at == datetime(2023, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert legacy.updated_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_validate_records_reports_every_bad_record():
    with pytest.raises(ValidationError) as exc_info:
        validate_records(
            [
                {"id": "ok", "name": "fine"},
                "not a record",
                {"id": 5, "name": "numeric id"},
                {"id": "m", "name": "bad message", "messages": [{"role": "robot"}]},
            ]
        )

    indexes = {problem.index for problem in exc_info.value.problems}
    assert indexes == {1, 2, 3}


def test_validate_records_rejects_duplicate_ids():
    with pytest.raises(ValidationError, match="duplicate id"):
        validate_records([{"id": "x", "name": "a"}, {"id": "x", "name": "b"}])


def test_validate_records_requires_a_list():
    with pytest.raises(ValidationError):
        validate_records({"id": "x", "name": "a"})


def test_parse_timestamp_falls_back_on_garbage():
    fallback = datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday", fallback) == fallback
    assert parse_timestamp(None, fallback) == fallback
    assert parse_timestamp(True, fallback) == fallback
    naive = parse_timestamp("2024-02-02T12:00:00", fallback)
    assert naive.tzinfo is not None


def test_system_prompt_defaults_only_when_missing():
    missing, empty, null = validate_records(
        [
            {"id": "a", "name": "no prompt"},
            {"id": "b", "name": "empty prompt", "systemPrompt": ""},
            {"id": "c", "name": "null prompt", "systemPrompt": None},
        ]
    )
    assert missing.system_prompt == "You are a helpful AI assistant."
    assert empty.system_prompt == ""
    assert null.system_prompt == "You are a helpful AI assistant."

    with pytest.raises(ValidationError, match="systemPrompt"):
        validate_records([{"id": "d", "name": "bad", "systemPrompt": 7}])
