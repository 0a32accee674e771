"""Global invariants and the Lyapunov function over a state + event history.

Invariants are properties of the whole system, checked by the orchestrator
(axioms, by contrast, govern single operations):

    INV-002  state tail pointer equals the chain tail (event_count, last hash)
    INV-003  events[n].prev_hash == hash(events[n-1])
    INV-004  V(s') <= V(s)             (Lyapunov descent)
    INV-005  energy.current >= energy.min

V(s) = w1 * integrity_distance + w2 * coherence_distance + w3 * energy_distance,
clamped at 0. V == 0 means the system sits at its attractor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .chain import EventLike, verify_chain_detailed
from .models import Event, State, StateSnapshot


@dataclass(frozen=True)
class LyapunovWeights:
    w1: float = 0.4  # integrity
    w2: float = 0.4  # coherence
    w3: float = 0.2  # energy


DEFAULT_WEIGHTS = LyapunovWeights()


@dataclass(frozen=True)
class InvariantCheck:
    id: str
    name: str
    satisfied: bool
    details: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "satisfied": self.satisfied, "details": self.details}


@dataclass(frozen=True)
class VerificationResult:
    timestamp: str
    all_satisfied: bool
    invariants: List[InvariantCheck] = field(default_factory=list)
    lyapunov_V: float = 0.0

    @property
    def satisfied_count(self) -> int:
        return sum(1 for inv in self.invariants if inv.satisfied)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "all_satisfied": self.all_satisfied,
            "invariants": [inv.as_dict() for inv in self.invariants],
            "lyapunov_V": self.lyapunov_V,
        }


def _tail_hash(event: EventLike) -> Optional[str]:
    if isinstance(event, Event):
        return event.hash
    h = event.get("hash")
    return str(h) if h is not None else None


def check_tail_pointer(state: State, events: Sequence[EventLike]) -> InvariantCheck:
    expected_hash = _tail_hash(events[-1]) if events else None
    count_ok = state.memory.event_count == len(events)
    hash_ok = state.memory.last_event_hash == expected_hash
    satisfied = count_ok and hash_ok
    if satisfied:
        details = f"Events: {len(events)}"
    else:
        details = f"State points at {state.memory.event_count} events, chain has {len(events)}"
    return InvariantCheck("INV-002", "State tail pointer", satisfied, details)


def check_chain_integrity(events: Sequence[EventLike]) -> InvariantCheck:
    ok, reason, index = verify_chain_detailed(events)
    details = f"Chain length: {len(events)}" if ok else f"{reason} at index {index}"
    return InvariantCheck("INV-003", "Chain integrity", ok, details)


def check_lyapunov_monotone(v_current: float, v_previous: Optional[float]) -> bool:
    if v_previous is None:
        return True
    return v_current <= v_previous


def check_lyapunov(state: State) -> InvariantCheck:
    satisfied = check_lyapunov_monotone(state.lyapunov.V, state.lyapunov.V_previous)
    if satisfied:
        details = f"V={state.lyapunov.V:.4f}"
    else:
        details = f"V increased: {state.lyapunov.V_previous} -> {state.lyapunov.V}"
    return InvariantCheck("INV-004", "Lyapunov monotone", satisfied, details)


def check_energy_viable(state: State) -> InvariantCheck:
    satisfied = state.energy.current >= state.energy.min
    return InvariantCheck(
        "INV-005",
        "Energy viable",
        satisfied,
        f"E={state.energy.current:.4f} (min={state.energy.min})",
    )


def integrity_distance(invariants: Sequence[InvariantCheck]) -> float:
    if not invariants:
        return 0.0
    return sum(1 for inv in invariants if not inv.satisfied) / len(invariants)


def coherence_distance(invariants: Sequence[InvariantCheck]) -> float:
    if not invariants:
        return 0.0
    return 1.0 - sum(1 for inv in invariants if inv.satisfied) / len(invariants)


def energy_distance(energy: float, threshold: float) -> float:
    if energy >= threshold or threshold <= 0:
        return 0.0
    return max(0.0, threshold - energy) / threshold


def compute_v(
    state: State,
    invariants: Sequence[InvariantCheck],
    weights: LyapunovWeights = DEFAULT_WEIGHTS,
) -> float:
    v = (
        weights.w1 * integrity_distance(invariants)
        + weights.w2 * coherence_distance(invariants)
        + weights.w3 * energy_distance(state.energy.current, state.energy.threshold)
    )
    return max(0.0, v)


def is_at_attractor(v: float, epsilon: float = 0.001) -> bool:
    return v < epsilon


def verify_invariants(
    state: State,
    events: Sequence[EventLike],
    weights: LyapunovWeights = DEFAULT_WEIGHTS,
) -> VerificationResult:
    """Run every invariant against ``state`` and its event history."""
    invariants = [
        check_tail_pointer(state, events),
        check_chain_integrity(events),
        check_lyapunov(state),
        check_energy_viable(state),
    ]
    return VerificationResult(
        timestamp=datetime.now(timezone.utc).isoformat(),
        all_satisfied=all(inv.satisfied for inv in invariants),
        invariants=invariants,
        lyapunov_V=compute_v(state, invariants, weights),
    )


def snapshot_from_state(
    state: State,
    verification: VerificationResult,
    pending_couplings: int = 0,
) -> StateSnapshot:
    return StateSnapshot(
        energy=state.energy.current,
        V=state.lyapunov.V,
        invariants_satisfied=verification.satisfied_count,
        status=state.integrity.status,
        pending_couplings=int(pending_couplings),
        invariants_total=len(verification.invariants),
    )
