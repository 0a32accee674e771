"""Signal vocabulary and wire format for the presence channel.

Signals use a fixed set of type codes (no free text). The payload shape is
rigid, and frames follow the server-sent-event layout:

    event: <lowercase-type>\\n
    data: <json>\\n
    \\n

Keep-alive frames are comment lines starting with ``:``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .models import StateSnapshot

# Organization hash identifying this deployment/version of the channel.
ORG_HASH = "bd5b24db8bad97efb7749eea83d4ad12744f0521214dd8d04b0a8318f6521e0a"

ENERGY_WARNING_LEVEL = 0.2
SIGNIFICANT_ENERGY_DELTA = 0.1


class SignalType(str, Enum):
    STATUS_CHANGED = "STATUS_CHANGED"
    ENERGY_WARNING = "ENERGY_WARNING"
    COUPLING_REQUESTED = "COUPLING_REQUESTED"
    HEARTBEAT = "HEARTBEAT"


@dataclass(frozen=True)
class SignalPayload:
    type: str
    ts: str
    seq: int
    org_hash: str
    energy: float
    V: float
    integrity: str
    pending: int
    urgent: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "ts": self.ts,
            "seq": self.seq,
            "org_hash": self.org_hash,
            "state": {"energy": self.energy, "V": self.V, "integrity": self.integrity},
            "coupling": {"pending": self.pending, "urgent": self.urgent},
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), separators=(",", ":"))


def determine_signal_type(current: StateSnapshot, previous: Optional[StateSnapshot]) -> Optional[SignalType]:
    """Pick the signal a state transition warrants, or None if nothing notable changed."""
    if previous is None:
        return SignalType.STATUS_CHANGED

    if current.energy < ENERGY_WARNING_LEVEL <= previous.energy:
        return SignalType.ENERGY_WARNING

    if current.status != previous.status or current.invariants_satisfied != previous.invariants_satisfied:
        return SignalType.STATUS_CHANGED

    if current.pending_couplings > previous.pending_couplings:
        return SignalType.COUPLING_REQUESTED

    if abs(current.energy - previous.energy) > SIGNIFICANT_ENERGY_DELTA:
        return SignalType.STATUS_CHANGED

    return None


def build_payload(
    signal_type: str,
    snapshot: StateSnapshot,
    *,
    seq: int,
    pending: int = 0,
    urgent: int = 0,
    org_hash: str = ORG_HASH,
    now: Optional[datetime] = None,
) -> SignalPayload:
    now = now or datetime.now(timezone.utc)
    total = snapshot.invariants_total or snapshot.invariants_satisfied
    return SignalPayload(
        type=SignalType(signal_type).value,
        ts=now.isoformat(),
        seq=int(seq),
        org_hash=org_hash,
        energy=round(snapshot.energy, 2),
        V=round(snapshot.V, 4),
        integrity=f"{snapshot.invariants_satisfied}/{total}",
        pending=int(pending),
        urgent=int(urgent),
    )


def format_sse(payload: SignalPayload) -> str:
    return f"event: {payload.type.lower()}\ndata: {payload.to_json()}\n\n"


def keepalive(comment: str = "keep-alive") -> str:
    return f": {comment}\n\n"
