import json

import pytest

from axiom_gateway.chain import EventChain
from axiom_gateway.errors import AXG_E_STORE_CORRUPT, GatewayError
from axiom_gateway.event_store import JsonlEventStore


def _write_chain(store: JsonlEventStore, n: int = 3) -> EventChain:
    chain = EventChain()
    store.append(chain.ensure_genesis({"v": 1}))
    for i in range(1, n):
        store.append(chain.append("NOTE", {"i": i}))
    return chain


def test_missing_file_is_empty(tmp_path):
    store = JsonlEventStore(tmp_path / "missing.jsonl")
    assert store.exists() is False
    assert store.load() == []
    assert store.tail() is None
    assert store.verify() == {"ok": True, "reason": "OK", "index": None, "count": 0}


def test_round_trip_preserves_chain(tmp_path):
    store = JsonlEventStore(tmp_path / "nested" / "events.jsonl")
    chain = _write_chain(store)

    assert store.exists()
    loaded = store.load()
    assert loaded == chain.events
    assert store.tail() == chain.tail
    assert store.load_chain().verify()
    assert store.verify()["ok"] is True
    assert store.verify()["count"] == 3


def test_one_record_per_line_in_external_format(tmp_path):
    path = tmp_path / "events.jsonl"
    store = JsonlEventStore(path)
    _write_chain(store, 2)
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert set(first) == {"seq", "type", "timestamp", "data", "prev_hash", "hash"}
    assert first["prev_hash"] is None


def test_tampered_file_fails_verification(tmp_path):
    path = tmp_path / "events.jsonl"
    store = JsonlEventStore(path)
    _write_chain(store)

    lines = path.read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[1])
    rec["data"] = {"i": 42}
    lines[1] = json.dumps(rec)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    report = store.verify()
    assert report["ok"] is False
    assert report["reason"] == "HASH_MISMATCH"
    assert report["index"] == 1


def test_corrupt_line_is_an_error_not_a_shorter_chain(tmp_path):
    path = tmp_path / "events.jsonl"
    store = JsonlEventStore(path)
    _write_chain(store)
    with path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")

    with pytest.raises(GatewayError) as ei:
        store.load()
    assert ei.value.code == AXG_E_STORE_CORRUPT
    assert ei.value.details["line"] == 4

    report = store.verify()
    assert report["ok"] is False
    assert report["reason"] == "PARSE_ERROR"


def test_write_all_replaces_file(tmp_path):
    store = JsonlEventStore(tmp_path / "events.jsonl")
    chain = _write_chain(store, 4)
    store.write_all(chain.events[:2])
    assert len(store.load()) == 2
    assert store.verify()["ok"] is True


def test_lone_surrogate_record_fails_verification_cleanly(tmp_path):
    path = tmp_path / "events.jsonl"
    store = JsonlEventStore(path)
    _write_chain(store)

    lines = path.read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[2])
    rec["data"] = {"s": "\ud800"}
    # Default json.dumps escapes the surrogate as ASCII "\ud800".
    lines[2] = json.dumps(rec)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    report = store.verify()
    assert report["ok"] is False
    assert report["reason"] == "HASH_MISMATCH"
    assert report["index"] == 2
