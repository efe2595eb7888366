from __future__ import annotations

import json
from pathlib import Path

import pytest

from chat_relay.errors import StoreUnavailable
from chat_relay.store.jsonfile import JsonFileBackend


def _backend(run, path: Path) -> JsonFileBackend:
    store = JsonFileBackend(path)
    run(store.initialize())
    return store


def test_initialize_creates_empty_document(run, db_path: Path):
    store = _backend(run, db_path)
    assert json.loads(db_path.read_text(encoding="utf-8")) == {"notes": []}
    # idempotent
    run(store.initialize())
    assert run(store.list_recent()) == []


def test_create_assigns_id_and_timestamp(run, db_path: Path):
    store = _backend(run, db_path)
    msg = run(store.create("hello", "alice"))
    assert msg.id.isdigit()
    assert msg.text == "hello"
    assert msg.user == "alice"
    assert msg.created_at.endswith("Z") and "T" in msg.created_at

    doc = json.loads(db_path.read_text(encoding="utf-8"))
    assert doc["notes"] == [{"id": msg.id, "text": "hello", "user": "alice", "t": msg.created_at}]


def test_create_defaults_user(run, db_path: Path):
    store = _backend(run, db_path)
    assert run(store.create("hi", "")).user == "Anonymous"


def test_ids_unique_for_rapid_creates(run, db_path: Path):
    store = _backend(run, db_path)
    ids = [run(store.create(f"m{i}", "bob")).id for i in range(20)]
    assert len(set(ids)) == 20
    assert [int(i) for i in ids] == sorted(int(i) for i in ids)


def test_list_recent_newest_first_and_bounded(run, db_path: Path):
    store = _backend(run, db_path)
    for i in range(105):
        run(store.create(f"m{i}", "bob"))

    recent = run(store.list_recent())
    assert len(recent) == 100
    assert recent[0].text == "m104"
    assert recent[-1].text == "m5"
    assert [m.text for m in run(store.list_recent(3))] == ["m104", "m103", "m102"]


def test_update_requires_matching_owner(run, db_path: Path):
    store = _backend(run, db_path)
    original = run(store.create("hi", "alice"))

    assert run(store.update(original.id, "hacked", "bob")) is None
    assert run(store.update("999", "nope", "alice")) is None
    assert run(store.list_recent())[0].text == "hi"

    updated = run(store.update(original.id, "hi there", "alice"))
    assert updated is not None
    assert updated.text == "hi there"
    assert (updated.id, updated.user, updated.created_at) == (original.id, original.user, original.created_at)


def test_delete_removes_exactly_one(run, db_path: Path):
    store = _backend(run, db_path)
    keep = run(store.create("keep", "alice"))
    drop = run(store.create("drop", "alice"))

    assert run(store.delete(drop.id, "bob")) is False
    assert run(store.delete(drop.id, "alice")) is True
    assert run(store.delete(drop.id, "alice")) is False
    assert [m.id for m in run(store.list_recent())] == [keep.id]


def test_clear_returns_prior_count(run, db_path: Path):
    store = _backend(run, db_path)
    for i in range(3):
        run(store.create(f"m{i}", "x"))
    assert run(store.clear()) == 3
    assert run(store.list_recent()) == []
    assert run(store.clear()) == 0


def test_corrupt_document_is_moved_aside(run, db_path: Path):
    db_path.parent.mkdir(parents=True)
    db_path.write_text("{not json", encoding="utf-8")

    store = _backend(run, db_path)
    assert run(store.list_recent()) == []
    assert db_path.with_suffix(".corrupt.json").read_text(encoding="utf-8") == "{not json"


def test_undecodable_document_is_moved_aside(run, db_path: Path):
    db_path.parent.mkdir(parents=True)
    db_path.write_bytes(b"\xff\xfe{garbage")

    store = _backend(run, db_path)
    assert run(store.list_recent()) == []
    assert db_path.with_suffix(".corrupt.json").read_bytes() == b"\xff\xfe{garbage"
    assert run(store.create("fresh", "alice")).text == "fresh"


def test_initialize_repairs_missing_ids(run, db_path: Path):
    db_path.parent.mkdir(parents=True)
    db_path.write_text(json.dumps({"notes": [{"text": "old", "user": "u", "t": "2024-01-01T00:00:00.000Z"}]}))

    store = _backend(run, db_path)
    (msg,) = run(store.list_recent())
    assert msg.id and msg.text == "old"


def test_unusable_path_raises_store_unavailable(run, tmp_path: Path):
    # a directory can't be read as a document
    store = JsonFileBackend(tmp_path)
    with pytest.raises(StoreUnavailable):
        run(store.initialize())
    with pytest.raises(StoreUnavailable):
        run(store.create("hi", "alice"))


HAND_EDITED = {
    "notes": [
        {"id": "1", "text": "a", "user": "u", "t": "2024-04-13T09:20:00.000Z"},
        {"id": 1713000000000, "text": "b", "user": "u", "t": "2024-04-13T09:20:00.000Z"},
        "junk",
        {"id": "5", "text": "no timestamp", "user": "u"},
        {"id": "6", "text": "", "user": "u", "t": "2024-04-13T09:20:00.000Z"},
    ]
}


def test_initialize_normalizes_hand_edited_records(run, db_path: Path):
    db_path.parent.mkdir(parents=True)
    db_path.write_text(json.dumps(HAND_EDITED), encoding="utf-8")

    store = _backend(run, db_path)
    recent = run(store.list_recent())
    assert [m.id for m in recent] == ["5", "1713000000000", "1"]
    assert recent[0].created_at.endswith("Z")

    doc = json.loads(db_path.read_text(encoding="utf-8"))
    assert all(isinstance(n, dict) and isinstance(n["id"], str) for n in doc["notes"])
    # fresh ids stay above the largest numeric one already in the file
    assert int(run(store.create("c", "u")).id) > 1713000000000


def test_list_recent_skips_records_edited_after_initialize(run, db_path: Path):
    store = _backend(run, db_path)
    db_path.write_text(json.dumps(HAND_EDITED), encoding="utf-8")

    assert [m.text for m in run(store.list_recent())] == ["no timestamp", "b", "a"]
    assert [m.text for m in run(store.list_recent(2))] == ["no timestamp", "b"]

    updated = run(store.update("1713000000000", "b2", "u"))
    assert updated is not None and updated.id == "1713000000000"
    assert run(store.delete("1713000000000", "u")) is True
