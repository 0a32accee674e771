"""Value types shared by the validator, the hash chain and the presence guard.

All types round-trip through plain JSON-like dicts (``from_dict`` / ``as_dict``)
so they can be handed in by an orchestrator, an HTTP layer or a file loader.
Malformed input raises :class:`GatewayError`; nothing here makes decisions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import (
    AXG_E_BAD_EVENT,
    AXG_E_BAD_OPERATION,
    AXG_E_BAD_STATE,
    gateway_error,
)


def _number(value: Any, *, code: str, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise gateway_error(code, "expected a number", path=path, got=type(value).__name__)
    if not math.isfinite(value):
        raise gateway_error(code, "non-finite number", path=path)
    return float(value)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    section = data.get(key)
    if not isinstance(section, Mapping):
        raise gateway_error(AXG_E_BAD_STATE, f"state.{key} must be an object", path=f"$.{key}")
    return section


@dataclass
class Operation:
    """A proposed state-changing operation.

    ``type`` is an opaque tag; ``complexity`` is a non-negative cost estimate
    (None means unspecified). Unrecognised fields are kept in ``extra``.
    """

    type: str
    complexity: Optional[float] = None
    target: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Operation":
        if not isinstance(data, Mapping):
            raise gateway_error(AXG_E_BAD_OPERATION, "operation must be an object")
        op_type = data.get("type")
        if not isinstance(op_type, str) or not op_type:
            raise gateway_error(AXG_E_BAD_OPERATION, "operation.type must be a non-empty string", path="$.type")

        complexity = data.get("complexity")
        if complexity is not None:
            complexity = _number(complexity, code=AXG_E_BAD_OPERATION, path="$.complexity")
            if complexity < 0:
                raise gateway_error(AXG_E_BAD_OPERATION, "operation.complexity must be >= 0", path="$.complexity")

        target = data.get("target")
        if target is not None and not isinstance(target, str):
            raise gateway_error(AXG_E_BAD_OPERATION, "operation.target must be a string", path="$.target")
        params = data.get("params") or {}
        if not isinstance(params, Mapping):
            raise gateway_error(AXG_E_BAD_OPERATION, "operation.params must be an object", path="$.params")

        extra = {k: v for k, v in data.items() if k not in ("type", "complexity", "target", "params")}
        return cls(type=op_type, complexity=complexity, target=target, params=dict(params), extra=extra)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d["type"] = self.type
        if self.complexity is not None:
            d["complexity"] = self.complexity
        if self.target is not None:
            d["target"] = self.target
        if self.params:
            d["params"] = dict(self.params)
        return d


@dataclass
class CouplingState:
    active: bool = False
    partner: Optional[str] = None
    since: Optional[str] = None


@dataclass
class EnergyState:
    current: float = 1.0
    min: float = 0.01
    threshold: float = 0.1


@dataclass
class LyapunovState:
    V: float = 0.0
    V_previous: Optional[float] = None


@dataclass
class IntegrityState:
    invariant_violations: int = 0
    status: str = "nominal"


@dataclass
class MemoryState:
    event_count: int = 0
    last_event_hash: Optional[str] = None


@dataclass
class State:
    """Read-only snapshot of the agent's condition handed to the validator.

    Sections other than the five inspected ones (identity, session, human,
    important, ...) are carried untouched in ``extra``.
    """

    coupling: CouplingState = field(default_factory=CouplingState)
    energy: EnergyState = field(default_factory=EnergyState)
    lyapunov: LyapunovState = field(default_factory=LyapunovState)
    integrity: IntegrityState = field(default_factory=IntegrityState)
    memory: MemoryState = field(default_factory=MemoryState)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "State":
        if not isinstance(data, Mapping):
            raise gateway_error(AXG_E_BAD_STATE, "state must be an object")

        c = _section(data, "coupling")
        partner = c.get("partner")
        since = c.get("since")
        coupling = CouplingState(
            active=bool(c.get("active", False)),
            partner=str(partner) if partner is not None else None,
            since=str(since) if since is not None else None,
        )

        e = _section(data, "energy")
        energy = EnergyState(
            current=_number(e.get("current"), code=AXG_E_BAD_STATE, path="$.energy.current"),
            min=_number(e.get("min", EnergyState.min), code=AXG_E_BAD_STATE, path="$.energy.min"),
            threshold=_number(e.get("threshold", EnergyState.threshold), code=AXG_E_BAD_STATE, path="$.energy.threshold"),
        )

        ly = data.get("lyapunov") or {}
        if not isinstance(ly, Mapping):
            raise gateway_error(AXG_E_BAD_STATE, "state.lyapunov must be an object", path="$.lyapunov")
        v_prev = ly.get("V_previous")
        lyapunov = LyapunovState(
            V=_number(ly.get("V", 0.0), code=AXG_E_BAD_STATE, path="$.lyapunov.V"),
            V_previous=None if v_prev is None else _number(v_prev, code=AXG_E_BAD_STATE, path="$.lyapunov.V_previous"),
        )

        integ = data.get("integrity") or {}
        if not isinstance(integ, Mapping):
            raise gateway_error(AXG_E_BAD_STATE, "state.integrity must be an object", path="$.integrity")
        integrity = IntegrityState(
            invariant_violations=int(integ.get("invariant_violations", 0) or 0),
            status=str(integ.get("status", "nominal")),
        )

        mem = data.get("memory") or {}
        if not isinstance(mem, Mapping):
            raise gateway_error(AXG_E_BAD_STATE, "state.memory must be an object", path="$.memory")
        last_hash = mem.get("last_event_hash")
        memory = MemoryState(
            event_count=int(mem.get("event_count", 0) or 0),
            last_event_hash=str(last_hash) if last_hash is not None else None,
        )

        known = ("coupling", "energy", "lyapunov", "integrity", "memory")
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(
            coupling=coupling,
            energy=energy,
            lyapunov=lyapunov,
            integrity=integrity,
            memory=memory,
            extra=extra,
        )

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d.update(
            {
                "coupling": {
                    "active": self.coupling.active,
                    "partner": self.coupling.partner,
                    "since": self.coupling.since,
                },
                "energy": {
                    "current": self.energy.current,
                    "min": self.energy.min,
                    "threshold": self.energy.threshold,
                },
                "lyapunov": {"V": self.lyapunov.V, "V_previous": self.lyapunov.V_previous},
                "integrity": {
                    "invariant_violations": self.integrity.invariant_violations,
                    "status": self.integrity.status,
                },
                "memory": {
                    "event_count": self.memory.event_count,
                    "last_event_hash": self.memory.last_event_hash,
                },
            }
        )
        return d


EVENT_FIELDS = ("seq", "type", "timestamp", "data", "prev_hash", "hash")


@dataclass(frozen=True)
class Event:
    """One link of the hash chain. ``hash`` covers every other field."""

    seq: int
    type: str
    timestamp: str
    data: Any
    prev_hash: Optional[str]
    hash: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type,
            "timestamp": self.timestamp,
            "data": self.data,
            "prev_hash": self.prev_hash,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Event":
        if not isinstance(data, Mapping):
            raise gateway_error(AXG_E_BAD_EVENT, "event must be an object")
        missing = [f for f in EVENT_FIELDS if f not in data]
        if missing:
            raise gateway_error(AXG_E_BAD_EVENT, "event is missing fields", missing=missing)
        seq = data["seq"]
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            raise gateway_error(AXG_E_BAD_EVENT, "event.seq must be an integer >= 1", path="$.seq")
        prev_hash = data["prev_hash"]
        if prev_hash is not None and not isinstance(prev_hash, str):
            raise gateway_error(AXG_E_BAD_EVENT, "event.prev_hash must be a string or null", path="$.prev_hash")
        return cls(
            seq=seq,
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            data=data["data"],
            prev_hash=prev_hash,
            hash=str(data["hash"]),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Flattened, comparable projection of State used for change detection."""

    energy: float
    V: float
    invariants_satisfied: int
    status: str
    pending_couplings: int
    invariants_total: int = field(default=0, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "energy": self.energy,
            "V": self.V,
            "invariants_satisfied": self.invariants_satisfied,
            "status": self.status,
            "pending_couplings": self.pending_couplings,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateSnapshot":
        return cls(
            energy=float(data["energy"]),
            V=float(data["V"]),
            invariants_satisfied=int(data["invariants_satisfied"]),
            status=str(data["status"]),
            pending_couplings=int(data["pending_couplings"]),
            invariants_total=int(data.get("invariants_total", 0) or 0),
        )
