"""Axiom validator, conservative guard and repeated-block monitor.

``validate`` evaluates one operation against one state snapshot and a config.
The axioms are an explicit ordered rule list; the first rule that fires decides
the result, so priority is exactly list order:

    AXM-006  Conditioned Operation   decoupled -> only internal operations
    AXM-008  Operational Boundedness complexity <= max_complexity
    AXM-009  Possibility Preservation no option-destroying operation types
    AXM-015  Viability               projected energy >= energy.min
    (classification)                 unclassifiable types -> Unknown

``guard`` applies AXM-011 (fail-closed): only ``allow`` maps to allowed=True.

The repeated-block monitor counts recent denials and flags sustained misuse;
it escalates, it never denies anything itself.

Everything here is a pure function of its inputs except ``BlockHistory``, which
is an explicit, lock-guarded context object owned by the caller.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .config import DEFAULT_CONFIG, GovernanceConfig
from .models import Operation, State

STATUS_ALLOW = "allow"
STATUS_BLOCK = "block"
STATUS_UNKNOWN = "unknown"

AXM_006 = "AXM-006"
AXM_008 = "AXM-008"
AXM_009 = "AXM-009"
AXM_011 = "AXM-011"
AXM_015 = "AXM-015"


@dataclass(frozen=True)
class ValidationResult:
    """Exactly one of allow / block(axiom, reason) / unknown(reason)."""

    status: str
    reason: str = ""
    axiom: Optional[str] = None

    @classmethod
    def allow(cls) -> "ValidationResult":
        return cls(status=STATUS_ALLOW)

    @classmethod
    def block(cls, axiom: str, reason: str) -> "ValidationResult":
        return cls(status=STATUS_BLOCK, reason=reason, axiom=axiom)

    @classmethod
    def unknown(cls, reason: str) -> "ValidationResult":
        return cls(status=STATUS_UNKNOWN, reason=reason)

    @property
    def is_allow(self) -> bool:
        return self.status == STATUS_ALLOW

    @property
    def is_block(self) -> bool:
        return self.status == STATUS_BLOCK

    @property
    def is_unknown(self) -> bool:
        return self.status == STATUS_UNKNOWN

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status}
        if self.status == STATUS_BLOCK:
            d["axiom"] = self.axiom
            d["reason"] = self.reason
        elif self.status == STATUS_UNKNOWN:
            d["reason"] = self.reason
        return d


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    result: ValidationResult

    def as_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "result": self.result.as_dict()}


RuleCheck = Callable[[Operation, State, GovernanceConfig], Optional[ValidationResult]]


@dataclass(frozen=True)
class AxiomRule:
    axiom: str
    name: str
    check: RuleCheck


def is_internal(operation: Operation, config: GovernanceConfig) -> bool:
    return operation.type in config.internal_types


def _conditioned_operation(operation: Operation, state: State, config: GovernanceConfig) -> Optional[ValidationResult]:
    if not state.coupling.active and not is_internal(operation, config):
        return ValidationResult.block(AXM_006, "Not coupled - external operations blocked")
    return None


def _operational_boundedness(
    operation: Operation, state: State, config: GovernanceConfig
) -> Optional[ValidationResult]:
    complexity = config.complexity_model(operation)
    if complexity > config.max_complexity:
        return ValidationResult.block(
            AXM_008, f"Complexity {complexity:g} exceeds bound {config.max_complexity:g}"
        )
    return None


def _possibility_preservation(
    operation: Operation, state: State, config: GovernanceConfig
) -> Optional[ValidationResult]:
    for pattern in sorted(config.harmful_patterns):
        if pattern in operation.type:
            return ValidationResult.block(AXM_009, f'Operation pattern "{pattern}" may reduce possibility space')
    return None


def _viability(operation: Operation, state: State, config: GovernanceConfig) -> Optional[ValidationResult]:
    projected = state.energy.current - config.energy_cost(operation)
    if projected < state.energy.min:
        return ValidationResult.block(
            AXM_015, f"Operation would reduce energy below E_min ({state.energy.min:g})"
        )
    return None


def _classification(operation: Operation, state: State, config: GovernanceConfig) -> Optional[ValidationResult]:
    if operation.type in config.unclassified_types:
        return ValidationResult.unknown("Cannot determine if operation preserves possibility")
    return None


AXIOM_RULES: List[AxiomRule] = [
    AxiomRule(AXM_006, "Conditioned Operation", _conditioned_operation),
    AxiomRule(AXM_008, "Operational Boundedness", _operational_boundedness),
    AxiomRule(AXM_009, "Possibility Preservation", _possibility_preservation),
    AxiomRule(AXM_015, "Viability", _viability),
    AxiomRule("CLASSIFY", "Classification", _classification),
]


def _coerce_operation(operation: Union[Operation, Mapping[str, Any]]) -> Operation:
    return operation if isinstance(operation, Operation) else Operation.from_dict(operation)


def _coerce_state(state: Union[State, Mapping[str, Any]]) -> State:
    return state if isinstance(state, State) else State.from_dict(state)


def validate(
    operation: Union[Operation, Mapping[str, Any]],
    state: Union[State, Mapping[str, Any]],
    config: GovernanceConfig = DEFAULT_CONFIG,
) -> ValidationResult:
    """Evaluate ``operation`` against the axioms in priority order."""
    op = _coerce_operation(operation)
    st = _coerce_state(state)
    for rule in AXIOM_RULES:
        result = rule.check(op, st, config)
        if result is not None:
            return result
    return ValidationResult.allow()


def guard(
    operation: Union[Operation, Mapping[str, Any]],
    state: Union[State, Mapping[str, Any]],
    config: GovernanceConfig = DEFAULT_CONFIG,
    *,
    history: Optional["BlockHistory"] = None,
    now_ms: Optional[float] = None,
) -> GuardDecision:
    """Conservative validator (AXM-011): unknown and block both deny.

    If ``history`` is given, denials are recorded into it for the
    repeated-block monitor.
    """
    result = validate(operation, state, config)
    allowed = result.status == STATUS_ALLOW
    if not allowed and history is not None:
        history.record(result, now_ms=now_ms)
    return GuardDecision(allowed=allowed, result=result)


# ---------------------------
# Repeated-block monitor
# ---------------------------


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class BlockRecord:
    timestamp_ms: float
    reason: str
    axiom: Optional[str] = None
    status: str = STATUS_BLOCK

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "reason": self.reason,
            "axiom": self.axiom,
            "status": self.status,
        }


@dataclass(frozen=True)
class RepeatedBlockStatus:
    triggered: bool
    count: int
    threshold: int
    window_ms: int
    axioms: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "count": self.count,
            "threshold": self.threshold,
            "window_ms": self.window_ms,
            "axioms": dict(self.axioms),
        }


def check_repeated_blocks(
    config: GovernanceConfig,
    block_events: Iterable[BlockRecord],
    now_ms: Optional[float] = None,
) -> RepeatedBlockStatus:
    """Count denials inside the window; trigger at ``block_repeat_threshold``."""
    now = _now_ms() if now_ms is None else float(now_ms)
    window_start = now - config.block_repeat_window_ms
    recent = [b for b in block_events if window_start < b.timestamp_ms <= now]

    axioms: Dict[str, int] = {}
    for b in recent:
        key = b.axiom or b.status
        axioms[key] = axioms.get(key, 0) + 1

    return RepeatedBlockStatus(
        triggered=len(recent) >= config.block_repeat_threshold,
        count=len(recent),
        threshold=config.block_repeat_threshold,
        window_ms=config.block_repeat_window_ms,
        axioms=axioms,
    )


class BlockHistory:
    """Rolling record of denials, one per validator context."""

    def __init__(self, max_records: int = 10000):
        self._lock = threading.Lock()
        self._records: List[BlockRecord] = []
        self._max_records = int(max_records) if int(max_records) > 0 else 10000

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def record(self, result: ValidationResult, now_ms: Optional[float] = None) -> Optional[BlockRecord]:
        if result.status == STATUS_ALLOW:
            return None
        rec = BlockRecord(
            timestamp_ms=_now_ms() if now_ms is None else float(now_ms),
            reason=result.reason,
            axiom=result.axiom,
            status=result.status,
        )
        with self._lock:
            self._records.append(rec)
            if len(self._records) > self._max_records:
                del self._records[: len(self._records) - self._max_records]
        return rec

    def records(self) -> List[BlockRecord]:
        with self._lock:
            return list(self._records)

    def check(self, config: GovernanceConfig = DEFAULT_CONFIG, now_ms: Optional[float] = None) -> RepeatedBlockStatus:
        return check_repeated_blocks(config, self.records(), now_ms=now_ms)

    def prune(self, max_age_ms: float = 3_600_000, now_ms: Optional[float] = None) -> int:
        """Drop records older than ``max_age_ms``; returns how many were removed."""
        cutoff = (_now_ms() if now_ms is None else float(now_ms)) - max_age_ms
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp_ms > cutoff]
            return before - len(self._records)
