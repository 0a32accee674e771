"""Operational statistics for the gateway.

Lightweight in-memory counters behind a snapshot endpoint (``/v1/stats``).

Notes
-----
- Counters reset on process restart.
- Do not treat these as audit evidence. The hash chain is the evidence.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Validations
    validations_total: int = 0
    validations_by_status: Dict[str, int] = field(default_factory=dict)
    blocks_by_axiom: Dict[str, int] = field(default_factory=dict)
    repeated_block_alerts_total: int = 0

    # Presence
    signals_emitted_total: int = 0
    signals_denied_total: int = 0
    signals_denied_by_violation: Dict[str, int] = field(default_factory=dict)
    silenced_total: int = 0

    # Chain
    events_appended_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_validation(self, status: str, axiom: str | None = None) -> None:
        with self._lock:
            self._c.validations_total += 1
            self._inc_map(self._c.validations_by_status, status or "unknown")
            if axiom:
                self._inc_map(self._c.blocks_by_axiom, axiom)

    def record_repeated_block_alert(self) -> None:
        with self._lock:
            self._c.repeated_block_alerts_total += 1

    def record_signal(self, allowed: bool, violation: str | None = None) -> None:
        with self._lock:
            if allowed:
                self._c.signals_emitted_total += 1
            else:
                self._c.signals_denied_total += 1
                self._inc_map(self._c.signals_denied_by_violation, violation or "unknown")

    def record_silenced(self) -> None:
        with self._lock:
            self._c.silenced_total += 1

    def record_event_appended(self) -> None:
        with self._lock:
            self._c.events_appended_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "validations_total": c.validations_total,
                "validations_by_status": dict(c.validations_by_status),
                "blocks_by_axiom": dict(c.blocks_by_axiom),
                "repeated_block_alerts_total": c.repeated_block_alerts_total,
                "signals_emitted_total": c.signals_emitted_total,
                "signals_denied_total": c.signals_denied_total,
                "signals_denied_by_violation": dict(c.signals_denied_by_violation),
                "silenced_total": c.silenced_total,
                "events_appended_total": c.events_appended_total,
            }
        if extra:
            snap.update(extra)
        return snap
