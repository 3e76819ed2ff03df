from __future__ import annotations

import json

import pytest

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.task_tracker import TaskTracker
from agentweb.shared.models.message import TranscriptEntry, text_block
from agentweb.shared.services.sessions import SessionIndex, SessionService
from agentweb.shared.services.transcript_store import TranscriptStore


def _entry(session_id: str, role: str, text: str) -> TranscriptEntry:
    return TranscriptEntry(role=role, content=[text_block(text)], session_id=session_id)


def test_append_and_read_preserve_order(tmp_path) -> None:
    store = TranscriptStore(tmp_path)
    for i in range(3):
        store.append("alice", _entry("s1", "user" if i % 2 == 0 else "assistant", f"m{i}"))

    entries = store.read("alice", "s1")
    assert [e.text() for e in entries] == ["m0", "m1", "m2"]
    assert (tmp_path / "alice" / "s1.jsonl").exists()
    assert store.read("bob", "s1") == []


def test_corrupt_lines_are_skipped(tmp_path) -> None:
    store = TranscriptStore(tmp_path)
    store.append("alice", _entry("s1", "user", "first"))
    path = store.path_for("alice", "s1")
    with open(path, "a", encoding="utf-8") as f:
        f.write("{not json\n")
        f.write(json.dumps({"role": "system", "content": []}) + "\n")
    store.append("alice", _entry("s1", "assistant", "second"))

    assert [e.text() for e in store.read("alice", "s1")] == ["first", "second"]


def test_unsafe_ids_rejected(tmp_path) -> None:
    store = TranscriptStore(tmp_path)
    with pytest.raises(ValidationError):
        store.path_for("../etc", "s1")
    with pytest.raises(ValidationError):
        store.path_for("alice", "..")


def test_copy_retags_session_and_honours_limit(tmp_path) -> None:
    store = TranscriptStore(tmp_path)
    for i in range(4):
        store.append("alice", _entry("src", "user", f"m{i}"))

    copied = store.copy("alice", "src", "dst", limit=2)

    assert copied == 2
    entries = store.read("alice", "dst")
    assert [e.text() for e in entries] == ["m0", "m1"]
    assert {e.session_id for e in entries} == {"dst"}
    assert store.count("alice", "src") == 4


def test_import_missing_file(tmp_path) -> None:
    store = TranscriptStore(tmp_path / "data")
    with pytest.raises(NotFoundError):
        store.import_file("alice", "s1", tmp_path / "nope.jsonl")


def _service(tmp_path):
    index = SessionIndex(tmp_path / "sessions.json")
    store = TranscriptStore(tmp_path / "transcripts")
    tracker = TaskTracker()
    return SessionService(index, store, tracker), index, store, tracker


def test_fork_copies_prefix_and_links_parent(tmp_path) -> None:
    service, index, store, _ = _service(tmp_path)
    source = index.create("alice", title="Refactor")
    for i in range(5):
        store.append("alice", _entry(source.id, "user", f"m{i}"))

    forked = service.fork("alice", source.id, 2)

    assert forked.title == "Refactor (Fork)"
    assert forked.parent_session_id == source.id
    assert forked.fork_message_index == 2
    assert [e.text() for e in store.read("alice", forked.id)] == ["m0", "m1", "m2"]


def test_fork_index_out_of_range(tmp_path) -> None:
    service, index, store, _ = _service(tmp_path)
    source = index.create("alice")
    store.append("alice", _entry(source.id, "user", "only"))
    with pytest.raises(ValidationError):
        service.fork("alice", source.id, 1)
    with pytest.raises(NotFoundError):
        service.fork("bob", source.id, 0)


def test_index_persists_and_scopes_by_user(tmp_path) -> None:
    index = SessionIndex(tmp_path / "sessions.json")
    mine = index.create("alice", title="Mine", project_id="p1")
    index.create("bob", title="Theirs")

    reloaded = SessionIndex(tmp_path / "sessions.json")
    assert [r.title for r in reloaded.list("alice")] == ["Mine"]
    assert reloaded.list("alice", project_id="other") == []
    with pytest.raises(NotFoundError):
        reloaded.get("bob", mine.id)


def test_import_and_delete(tmp_path) -> None:
    service, index, store, tracker = _service(tmp_path)
    source = tmp_path / "exported.jsonl"
    source.write_text(
        json.dumps({"role": "user", "content": "hi"}) + "\n\n"
        + json.dumps({"role": "assistant", "content": "hello"}) + "\n",
        encoding="utf-8",
    )

    record = service.import_transcript("alice", str(source))
    assert record.title == "exported"
    assert [e.text() for e in store.read("alice", record.id)] == ["hi", "hello"]

    tracker.create(record.id, "follow up")
    service.delete("alice", record.id)
    assert not store.exists("alice", record.id)
    assert tracker.list(record.id) == []
    with pytest.raises(NotFoundError):
        index.get("alice", record.id)
