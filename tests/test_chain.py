import json
import re
import threading

import pytest

from axiom_gateway.chain import (
    CHAIN_BROKEN,
    CHAIN_GENESIS_PREV_HASH,
    CHAIN_HASH_MISMATCH,
    CHAIN_MALFORMED_EVENT,
    CHAIN_OK,
    GENESIS,
    EventChain,
    canonical_json_dumps,
    hash_event,
    hash_object,
    make_event,
    sha256,
    verify_chain,
    verify_chain_detailed,
    verify_event_hash,
)
from axiom_gateway.errors import (
    AXG_E_SERIALIZATION_CIRCULAR,
    AXG_E_SERIALIZATION_ENCODING,
    AXG_E_SERIALIZATION_KEY_TYPE,
    AXG_E_SERIALIZATION_NONFINITE,
    AXG_E_SERIALIZATION_TYPE,
    SerializationError,
)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _chain(n: int = 3) -> EventChain:
    chain = EventChain()
    chain.ensure_genesis({"note": "start"}, timestamp="2026-01-01T00:00:00+00:00")
    for i in range(1, n):
        chain.append("SESSION_START", {"i": i}, timestamp=f"2026-01-01T00:00:0{i}+00:00")
    return chain


def test_sha256_known_vector_and_shape():
    assert sha256("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert sha256("abc") == sha256(b"abc")
    assert _HEX64.match(sha256("anything"))


def test_hash_object_is_key_order_invariant():
    assert hash_object({"a": 1, "b": 2}) == hash_object({"b": 2, "a": 1})
    assert _HEX64.match(hash_object({"a": 1}))


def test_hash_object_preserves_array_order_and_detects_changes():
    assert hash_object([1, 2]) != hash_object([2, 1])
    assert hash_object({"a": 1}) != hash_object({"a": 2})
    assert hash_object({"a": 1}) != hash_object({"b": 1})


def test_canonical_json_is_compact_sorted_and_utf8():
    assert canonical_json_dumps({"b": 1, "a": [3, 1], "c": {"z": None, "y": True}}) == (
        '{"a":[3,1],"b":1,"c":{"y":true,"z":null}}'
    )
    assert canonical_json_dumps({"s": "é"}) == '{"s":"é"}'
    assert canonical_json_dumps((1, "x")) == '[1,"x"]'


def test_canonical_json_rejects_circular_reference():
    a: dict = {}
    a["self"] = a
    with pytest.raises(SerializationError) as ei:
        hash_object(a)
    assert ei.value.code == AXG_E_SERIALIZATION_CIRCULAR


def test_canonical_json_allows_shared_non_circular_values():
    shared = {"k": 1}
    # Same object twice is not a cycle.
    assert canonical_json_dumps([shared, shared]) == '[{"k":1},{"k":1}]'


@pytest.mark.parametrize(
    "value, code",
    [
        ({"x": float("nan")}, AXG_E_SERIALIZATION_NONFINITE),
        ({"x": float("inf")}, AXG_E_SERIALIZATION_NONFINITE),
        ({1: "int key"}, AXG_E_SERIALIZATION_KEY_TYPE),
        ({"x": {1, 2}}, AXG_E_SERIALIZATION_TYPE),
        ({"x": object()}, AXG_E_SERIALIZATION_TYPE),
        ({"x": "\ud800"}, AXG_E_SERIALIZATION_ENCODING),
        ({"\udfff": 1}, AXG_E_SERIALIZATION_ENCODING),
    ],
)
def test_canonical_json_rejects_non_json_values(value, code):
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps(value)
    assert ei.value.code == code
    assert ei.value.as_dict()["code"] == code


def test_hash_event_excludes_hash_field():
    ev = make_event(1, GENESIS, {"a": 1}, None, timestamp="2026-01-01T00:00:00+00:00")
    body = {k: v for k, v in ev.as_dict().items() if k != "hash"}
    assert ev.hash == hash_object(body)
    assert hash_event(ev) == hash_event({**ev.as_dict(), "hash": "0" * 64})


def test_verify_event_hash_flips_on_any_mutation():
    ev = make_event(1, GENESIS, {"a": 1}, None, timestamp="2026-01-01T00:00:00+00:00").as_dict()
    assert verify_event_hash(ev)

    for field, value in [
        ("seq", 2),
        ("type", "OTHER"),
        ("timestamp", "2026-01-01T00:00:01+00:00"),
        ("data", {"a": 2}),
        ("prev_hash", "f" * 64),
        ("hash", "0" * 64),
    ]:
        mutated = dict(ev, **{field: value})
        assert not verify_event_hash(mutated), field


def test_verify_event_hash_never_raises_on_malformed_events():
    ev = make_event(1, GENESIS, {}, None).as_dict()
    missing_hash = {k: v for k, v in ev.items() if k != "hash"}
    missing_prev = {k: v for k, v in ev.items() if k != "prev_hash"}
    assert verify_event_hash(missing_hash) is False
    assert verify_event_hash(missing_prev) is False
    assert verify_event_hash(dict(ev, data=float("nan"))) is False
    assert verify_event_hash(dict(ev, hash=None)) is False


def test_verify_rejects_lone_surrogate_from_json_without_raising():
    genesis = make_event(1, GENESIS, {}, None).as_dict()
    # json.loads accepts an escaped lone surrogate; it can never be UTF-8 encoded.
    record = json.loads(json.dumps(dict(genesis, data={"s": "\ud800"})))
    assert verify_event_hash(record) is False
    assert verify_chain_detailed([record]) == (False, CHAIN_HASH_MISMATCH, 0)
    assert verify_chain([genesis, dict(record, seq=2, prev_hash=genesis["hash"])]) is False


def test_verify_chain_empty_and_genesis_only():
    assert verify_chain([]) is True
    genesis = make_event(1, GENESIS, {}, None)
    assert verify_chain([genesis]) is True


def test_verify_chain_two_linked_events():
    genesis = make_event(1, GENESIS, {}, None)
    second = make_event(2, "SESSION_START", {"user": "x"}, genesis.hash)
    assert verify_chain([genesis, second]) is True

    corrupted = dict(second.as_dict(), prev_hash="a" * 64)
    assert verify_chain([genesis, corrupted]) is False


def test_verify_chain_genesis_with_prev_hash_fails_alone():
    bad_genesis = make_event(1, GENESIS, {}, "a" * 64)
    assert verify_event_hash(bad_genesis)
    assert verify_chain_detailed([bad_genesis]) == (False, CHAIN_GENESIS_PREV_HASH, 0)


def test_verify_chain_detects_tampered_data():
    records = [e.as_dict() for e in _chain(4).events]
    records[2]["data"] = {"i": 99}
    assert verify_chain_detailed(records) == (False, CHAIN_HASH_MISMATCH, 2)


def test_verify_chain_detects_rehashed_tamper_at_next_link():
    records = [e.as_dict() for e in _chain(4).events]
    records[1]["data"] = {"i": 99}
    records[1]["hash"] = hash_event(records[1])
    assert verify_chain_detailed(records) == (False, CHAIN_BROKEN, 2)


def test_verify_chain_detects_reorder_and_drop():
    events = _chain(4).events
    assert verify_chain_detailed([events[0], events[2], events[1], events[3]]) == (False, CHAIN_BROKEN, 1)
    assert verify_chain_detailed([events[0], events[2], events[3]]) == (False, CHAIN_BROKEN, 1)
    assert verify_chain_detailed(events[1:]) == (False, CHAIN_GENESIS_PREV_HASH, 0)


def test_verify_chain_reports_malformed_event():
    records = [e.as_dict() for e in _chain(3).events]
    del records[1]["hash"]
    assert verify_chain_detailed(records) == (False, CHAIN_MALFORMED_EVENT, 1)
    assert verify_chain_detailed([{"seq": 1}]) == (False, CHAIN_MALFORMED_EVENT, 0)


def test_make_event_rejects_unserializable_data():
    with pytest.raises(SerializationError):
        make_event(1, GENESIS, {"x": float("nan")}, None)
    with pytest.raises(SerializationError):
        make_event(1, GENESIS, {"x": "\ud800"}, None)


def test_sealed_event_is_independent_of_caller_data():
    payload = {"k": 1, "nested": {"items": [1, 2]}}
    chain = EventChain()
    chain.ensure_genesis()
    ev = chain.append("NOTE", payload)

    payload["k"] = 2
    payload["nested"]["items"].append(3)

    assert ev.data == {"k": 1, "nested": {"items": [1, 2]}}
    assert chain.verify_detailed() == (True, CHAIN_OK, None)


def test_append_is_not_committed_when_before_commit_fails():
    chain = EventChain()
    chain.ensure_genesis()
    seen = []

    def failing_write(event):
        seen.append(event.seq)
        raise OSError("disk full")

    with pytest.raises(OSError):
        chain.append("NOTE", {"a": 1}, before_commit=failing_write)
    assert seen == [2]
    assert len(chain) == 1

    ev = chain.append("NOTE", {"a": 1}, before_commit=lambda e: seen.append(e.seq))
    assert ev.seq == 2
    assert seen == [2, 2]
    assert chain.verify()


def test_event_chain_links_sequentially():
    chain = _chain(3)
    events = chain.events
    assert [e.seq for e in events] == [1, 2, 3]
    assert events[0].type == GENESIS
    assert events[0].prev_hash is None
    assert events[1].prev_hash == events[0].hash
    assert events[2].prev_hash == events[1].hash
    assert chain.tail == events[-1]
    assert chain.verify_detailed() == (True, CHAIN_OK, None)


def test_ensure_genesis_only_once():
    chain = EventChain()
    first = chain.ensure_genesis()
    assert first is not None and first.type == GENESIS and first.seq == 1
    assert chain.ensure_genesis() is None
    assert len(chain) == 1


def test_event_chain_append_defaults_data_to_empty_object():
    chain = EventChain()
    ev = chain.append("NOTE")
    assert ev.seq == 1
    assert ev.prev_hash is None
    assert ev.data == {}


def test_event_chain_concurrent_appends_never_fork():
    chain = EventChain()
    chain.ensure_genesis()

    def worker(n: int) -> None:
        for i in range(50):
            chain.append("WORK", {"worker": n, "i": i})

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    events = chain.events
    assert [e.seq for e in events] == list(range(1, 202))
    assert len({e.prev_hash for e in events}) == len(events)
    assert chain.verify()
