"""JSONL persistence for the event chain.

One event record per line, exactly the external record format:
``{"seq", "type", "timestamp", "data", "prev_hash", "hash"}``.

The store only reads and writes; integrity is judged by ``verify_chain``.
Corrupt lines are surfaced as ``AXG_E_STORE_CORRUPT`` rather than skipped, so a
damaged file cannot masquerade as a shorter valid chain.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .chain import EventChain, verify_chain_detailed
from .errors import AXG_E_STORE_CORRUPT, gateway_error
from .models import Event


class JsonlEventStore:
    """Append-only JSONL event file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def load_records(self) -> List[Dict[str, Any]]:
        """Raw records in file order (no model validation)."""
        if not self.path.exists():
            return []
        records: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError as e:
                    raise gateway_error(
                        AXG_E_STORE_CORRUPT, "invalid JSON in event store", path=str(self.path), line=lineno, error=str(e)
                    ) from e
                if not isinstance(rec, dict):
                    raise gateway_error(
                        AXG_E_STORE_CORRUPT, "event record must be an object", path=str(self.path), line=lineno
                    )
                records.append(rec)
        return records

    def load(self) -> List[Event]:
        return [Event.from_dict(rec) for rec in self.load_records()]

    def load_chain(self) -> EventChain:
        return EventChain(self.load())

    def tail(self) -> Optional[Event]:
        events = self.load()
        return events[-1] if events else None

    def append(self, event: Event) -> None:
        line = json.dumps(event.as_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def write_all(self, events: List[Event]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as f:
                for event in events:
                    f.write(json.dumps(event.as_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n")

    def verify(self) -> Dict[str, Any]:
        """Verify the stored chain. Returns {ok, reason, index, count}."""
        try:
            records = self.load_records()
        except Exception as e:
            return {"ok": False, "reason": "PARSE_ERROR", "index": None, "count": 0, "error": str(e)}
        ok, reason, index = verify_chain_detailed(records)
        return {"ok": ok, "reason": reason, "index": index, "count": len(records)}
