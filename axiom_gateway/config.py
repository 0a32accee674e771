"""Tunable policy values for the validator, the block monitor and the presence guard.

Both config objects are plain dataclasses supplied by the caller; the core never
mutates them. ``from_env`` builds them from ``AXG_*`` environment variables,
clamping nonsensical values back to the defaults.

Environment variables:
- AXG_MAX_COMPLEXITY: AXM-008 complexity bound.
- AXG_HARMFUL_PATTERNS: comma-separated AXM-009 patterns (replaces the defaults).
- AXG_BLOCK_REPEAT_THRESHOLD: denials per window that trigger escalation.
- AXG_BLOCK_REPEAT_WINDOW_MS: rolling window for the repeated-block monitor.
- AXG_ENERGY_COST_PER_COMPLEXITY: linear energy cost factor (AXM-015).
- AXG_MIN_SIGNAL_INTERVAL_MS / AXG_HEARTBEAT_INTERVAL_MS /
  AXG_SILENCE_DURATION_MS / AXG_EPSILON_MIN: presence guard policy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, FrozenSet

if TYPE_CHECKING:
    from .models import Operation


DEFAULT_HARMFUL_PATTERNS: FrozenSet[str] = frozenset(
    {
        "delete_without_backup",
        "force_overwrite",
        "remove_permissions",
        "block_access",
        "reduce_options",
    }
)

# Operation types that neither a block rule nor an allow rule can classify.
DEFAULT_UNCLASSIFIED_TYPES: FrozenSet[str] = frozenset({"unknown", "complex"})

DEFAULT_INTERNAL_TYPES: FrozenSet[str] = frozenset({"internal"})

# Base complexity by operation family (prefix before the first underscore).
BASE_COMPLEXITY = {
    "read": 1,
    "write": 10,
    "delete": 50,
    "execute": 100,
    "network": 200,
    "unknown": 500,
}
DEFAULT_COMPLEXITY = 100


def estimate_complexity(operation: "Operation") -> float:
    """Complexity of an operation: the declared value, or a per-family estimate."""
    if operation.complexity is not None:
        return float(operation.complexity)
    family = operation.type.split("_")[0]
    return float(BASE_COMPLEXITY.get(family, DEFAULT_COMPLEXITY))


def linear_energy_cost(operation: "Operation", config: "GovernanceConfig") -> float:
    return config.complexity_model(operation) * config.energy_cost_per_complexity


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except Exception:
        return default


@dataclass(frozen=True)
class GovernanceConfig:
    """Validator and repeated-block monitor configuration."""

    max_complexity: float = 1000
    harmful_patterns: FrozenSet[str] = DEFAULT_HARMFUL_PATTERNS
    block_repeat_threshold: int = 5
    block_repeat_window_ms: int = 60_000
    energy_cost_per_complexity: float = 0.0001
    internal_types: FrozenSet[str] = DEFAULT_INTERNAL_TYPES
    unclassified_types: FrozenSet[str] = DEFAULT_UNCLASSIFIED_TYPES
    complexity_model: Callable[["Operation"], float] = field(default=estimate_complexity, compare=False)
    energy_cost_model: Callable[["Operation", "GovernanceConfig"], float] = field(
        default=linear_energy_cost, compare=False
    )

    def energy_cost(self, operation: "Operation") -> float:
        return float(self.energy_cost_model(operation, self))

    @classmethod
    def from_env(cls) -> "GovernanceConfig":
        max_complexity = _get_float("AXG_MAX_COMPLEXITY", cls.max_complexity)
        threshold = _get_int("AXG_BLOCK_REPEAT_THRESHOLD", cls.block_repeat_threshold)
        window_ms = _get_int("AXG_BLOCK_REPEAT_WINDOW_MS", cls.block_repeat_window_ms)
        cost = _get_float("AXG_ENERGY_COST_PER_COMPLEXITY", cls.energy_cost_per_complexity)

        patterns = DEFAULT_HARMFUL_PATTERNS
        raw_patterns = os.getenv("AXG_HARMFUL_PATTERNS", "").strip()
        if raw_patterns:
            parsed = frozenset(p.strip() for p in raw_patterns.split(",") if p.strip())
            if parsed:
                patterns = parsed

        # Clamp
        if max_complexity < 0:
            max_complexity = cls.max_complexity
        if threshold < 1:
            threshold = 1
        if window_ms < 1:
            window_ms = cls.block_repeat_window_ms
        if cost < 0:
            cost = cls.energy_cost_per_complexity

        return cls(
            max_complexity=max_complexity,
            harmful_patterns=patterns,
            block_repeat_threshold=threshold,
            block_repeat_window_ms=window_ms,
            energy_cost_per_complexity=cost,
        )


@dataclass(frozen=True)
class PresencePolicy:
    """Presence guard timing policy (rate limits, quarantine, REST floor)."""

    min_signal_interval_ms: int = 60_000
    heartbeat_interval_ms: int = 300_000
    silence_duration_ms: int = 600_000
    epsilon_min: float = 0.001

    @classmethod
    def from_env(cls) -> "PresencePolicy":
        signal_ms = _get_int("AXG_MIN_SIGNAL_INTERVAL_MS", cls.min_signal_interval_ms)
        heartbeat_ms = _get_int("AXG_HEARTBEAT_INTERVAL_MS", cls.heartbeat_interval_ms)
        silence_ms = _get_int("AXG_SILENCE_DURATION_MS", cls.silence_duration_ms)
        epsilon_min = _get_float("AXG_EPSILON_MIN", cls.epsilon_min)

        if signal_ms < 0:
            signal_ms = cls.min_signal_interval_ms
        if heartbeat_ms < 0:
            heartbeat_ms = cls.heartbeat_interval_ms
        if silence_ms < 0:
            silence_ms = cls.silence_duration_ms
        if epsilon_min < 0:
            epsilon_min = cls.epsilon_min

        return cls(
            min_signal_interval_ms=signal_ms,
            heartbeat_interval_ms=heartbeat_ms,
            silence_duration_ms=silence_ms,
            epsilon_min=epsilon_min,
        )


DEFAULT_CONFIG = GovernanceConfig()
DEFAULT_PRESENCE_POLICY = PresencePolicy()
