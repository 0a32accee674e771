"""Hash chain: canonical hashing and tamper-evident event history.

Every event carries ``hash`` = SHA-256 of the canonical JSON of all its other
fields, and ``prev_hash`` = the ``hash`` of the event before it (``None`` for the
genesis event). Altering, dropping or reordering any event breaks a link
downstream of it.

Canonical JSON rules:
- dict keys sorted; list/tuple order preserved (order is meaningful)
- compact separators, UTF-8 output (ensure_ascii=False)
- strict JSON: NaN/Infinity, non-string keys, strings that are not valid
  UTF-8 (lone surrogates), cycles and unknown types raise
  SerializationError

Verification functions never raise: malformed events simply fail to verify, so
they can be used for bulk audits over untrusted input.
"""

from __future__ import annotations

import hashlib
import json
import math
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import (
    AXG_E_SERIALIZATION_CIRCULAR,
    AXG_E_SERIALIZATION_DEPTH,
    AXG_E_SERIALIZATION_ENCODING,
    AXG_E_SERIALIZATION_KEY_TYPE,
    AXG_E_SERIALIZATION_NONFINITE,
    AXG_E_SERIALIZATION_TYPE,
    SerializationError,
    serialization_error,
)
from .models import EVENT_FIELDS, Event

GENESIS = "GENESIS"

# Verification reasons
CHAIN_OK = "OK"
CHAIN_GENESIS_PREV_HASH = "GENESIS_PREV_HASH"
CHAIN_MALFORMED_EVENT = "MALFORMED_EVENT"
CHAIN_HASH_MISMATCH = "HASH_MISMATCH"
CHAIN_BROKEN = "CHAIN_BROKEN"

_MAX_DEPTH = 256

EventLike = Union[Event, Mapping[str, Any]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256(data: Union[str, bytes]) -> str:
    """SHA-256 of a string (UTF-8) or bytes, as 64 lowercase hex chars."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _check_utf8(s: str, path: str) -> str:
    try:
        s.encode("utf-8")
    except UnicodeEncodeError:
        raise serialization_error(AXG_E_SERIALIZATION_ENCODING, "string is not valid UTF-8", path=path)
    return s


def _canonicalize(obj: Any, *, _path: str, _depth: int, _active: set) -> Any:
    if _depth > _MAX_DEPTH:
        raise serialization_error(AXG_E_SERIALIZATION_DEPTH, "max nesting depth exceeded", path=_path)

    # Scalars
    if isinstance(obj, str):
        return _check_utf8(obj, _path)
    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise serialization_error(AXG_E_SERIALIZATION_NONFINITE, "non-finite float", path=_path)
        return obj

    # Containers
    if isinstance(obj, (dict, list, tuple)):
        marker = id(obj)
        if marker in _active:
            raise serialization_error(AXG_E_SERIALIZATION_CIRCULAR, "circular reference", path=_path)
        _active.add(marker)
        try:
            if isinstance(obj, dict):
                out: Dict[str, Any] = {}
                for k in obj:
                    if not isinstance(k, str):
                        raise serialization_error(
                            AXG_E_SERIALIZATION_KEY_TYPE, "dict key must be str", path=_path, got=type(k).__name__
                        )
                    _check_utf8(k, _path)
                for k in sorted(obj):
                    out[k] = _canonicalize(obj[k], _path=f"{_path}['{k}']", _depth=_depth + 1, _active=_active)
                return out
            return [
                _canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1, _active=_active)
                for i, v in enumerate(obj)
            ]
        finally:
            _active.discard(marker)

    raise serialization_error(
        AXG_E_SERIALIZATION_TYPE, "non-JSON-serializable type", path=_path, got=type(obj).__name__
    )


def canonical_json_dumps(obj: Any) -> str:
    """Deterministic JSON text for hashing; raises SerializationError on bad input."""
    normalized = _canonicalize(obj, _path="$", _depth=0, _active=set())
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def hash_object(obj: Any) -> str:
    """Digest of a structured value, independent of dict key insertion order."""
    return sha256(canonical_json_dumps(obj))


def _as_mapping(event: EventLike) -> Mapping[str, Any]:
    if isinstance(event, Event):
        return event.as_dict()
    return event


def hash_event(event: EventLike) -> str:
    """Hash every field of ``event`` except ``hash`` itself."""
    fields = {k: v for k, v in _as_mapping(event).items() if k != "hash"}
    return hash_object(fields)


def verify_event_hash(event: EventLike) -> bool:
    """True iff the stored ``hash`` matches the recomputed digest. Never raises."""
    try:
        ev = _as_mapping(event)
        if not isinstance(ev, Mapping) or any(f not in ev for f in EVENT_FIELDS):
            return False
        stored = ev["hash"]
        if not isinstance(stored, str):
            return False
        return hash_event(ev) == stored
    except SerializationError:
        return False


def verify_chain_detailed(events: Sequence[EventLike]) -> Tuple[bool, str, Optional[int]]:
    """Verify a chain. Returns (ok, reason, index of the first bad event)."""
    try:
        items = [_as_mapping(e) for e in events]
    except Exception:
        return False, CHAIN_MALFORMED_EVENT, 0
    if not items:
        return True, CHAIN_OK, None

    first = items[0]
    if not isinstance(first, Mapping) or "prev_hash" not in first:
        return False, CHAIN_MALFORMED_EVENT, 0
    if first["prev_hash"] is not None:
        return False, CHAIN_GENESIS_PREV_HASH, 0

    for i, ev in enumerate(items):
        if not isinstance(ev, Mapping) or any(f not in ev for f in EVENT_FIELDS):
            return False, CHAIN_MALFORMED_EVENT, i
        if not verify_event_hash(ev):
            return False, CHAIN_HASH_MISMATCH, i
        if i > 0 and ev["prev_hash"] != items[i - 1]["hash"]:
            return False, CHAIN_BROKEN, i

    return True, CHAIN_OK, None


def verify_chain(events: Sequence[EventLike]) -> bool:
    """True for an empty chain or a fully linked, untampered one."""
    ok, _reason, _index = verify_chain_detailed(events)
    return ok


def make_event(
    seq: int,
    event_type: str,
    data: Any,
    prev_hash: Optional[str],
    timestamp: Optional[str] = None,
) -> Event:
    """Build a sealed event. Raises SerializationError if ``data`` is not JSON.

    The event keeps its own normalized copy of ``data``, so later changes to the
    caller's object cannot alter a sealed event.
    """
    body = {
        "seq": int(seq),
        "type": str(event_type),
        "timestamp": timestamp or _now_iso(),
        "data": _canonicalize(data, _path="$.data", _depth=0, _active=set()),
        "prev_hash": prev_hash,
    }
    return Event(hash=hash_event(body), **body)


class EventChain:
    """Single-writer, append-only chain held in memory.

    ``append`` is serialized with a lock so concurrent producers can never be
    given the same ``seq`` or link to the same ``prev_hash``.
    """

    def __init__(self, events: Optional[Iterable[EventLike]] = None):
        self._lock = threading.Lock()
        self._events: List[Event] = []
        for ev in events or ():
            self._events.append(ev if isinstance(ev, Event) else Event.from_dict(ev))

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    @property
    def tail(self) -> Optional[Event]:
        with self._lock:
            return self._events[-1] if self._events else None

    def append(
        self,
        event_type: str,
        data: Any = None,
        timestamp: Optional[str] = None,
        *,
        before_commit: Optional[Callable[[Event], None]] = None,
    ) -> Event:
        """Seal and append the next event.

        ``before_commit`` (e.g. a durable write) runs under the chain lock with
        the sealed event; if it raises, the event is not appended.
        """
        if data is None:
            data = {}
        with self._lock:
            last = self._events[-1] if self._events else None
            seq = last.seq + 1 if last is not None else 1
            prev_hash = last.hash if last is not None else None
            event = make_event(seq, event_type, data, prev_hash, timestamp=timestamp)
            if before_commit is not None:
                before_commit(event)
            self._events.append(event)
            return event

    def ensure_genesis(
        self,
        data: Any = None,
        timestamp: Optional[str] = None,
        *,
        before_commit: Optional[Callable[[Event], None]] = None,
    ) -> Optional[Event]:
        """Write the GENESIS event if the chain is empty; otherwise do nothing."""
        with self._lock:
            if self._events:
                return None
            event = make_event(1, GENESIS, data if data is not None else {}, None, timestamp=timestamp)
            if before_commit is not None:
                before_commit(event)
            self._events.append(event)
            return event

    def verify(self) -> bool:
        return verify_chain(self.events)

    def verify_detailed(self) -> Tuple[bool, str, Optional[int]]:
        return verify_chain_detailed(self.events)
