"""GovernanceGateway: the orchestrator around the three core subsystems.

The validator, the hash chain and the presence guard never call each other.
This class wires them the way a supervising process does:

1. ``evaluate(operation)``   conservative guard before an operation is applied;
                             denials are recorded (block history + BLOCK event)
                             and the repeated-block monitor is consulted.
2. ``record_operation``      after the agent applied an operation: OPERATION
                             event, state tail pointer advanced.
3. ``publish`` / ``heartbeat``  build a snapshot of the new state and ask the
                             presence guard whether observers may be told.
4. ``silence``               quarantine the channel after an integrity violation.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import metrics
from .chain import GENESIS, EventChain, sha256
from .config import DEFAULT_CONFIG, DEFAULT_PRESENCE_POLICY, GovernanceConfig, PresencePolicy
from .errors import AXG_E_STATE_MISSING, gateway_error
from .event_store import JsonlEventStore
from .invariants import VerificationResult, snapshot_from_state, verify_invariants
from .models import Event, Operation, State, StateSnapshot
from .ops_stats import OpsStats
from .presence import VIOLATION_SILENCED, GuardResult, PresenceChannel
from .signals import SignalPayload, SignalType, determine_signal_type
from .validator import BlockHistory, GuardDecision, RepeatedBlockStatus, guard

logger = logging.getLogger("axiom_gateway")

EVENT_BLOCK = "BLOCK"
EVENT_OPERATION = "OPERATION"
EVENT_SIGNAL_EMITTED = "PRESENCE_SIGNAL_EMITTED"
EVENT_CHANNEL_SILENCED = "CHANNEL_SILENCED"
EVENT_REPEATED_BLOCKS = "REPEATED_BLOCKS"

# Metric label values; caller-supplied types are counted as "other".
_METRIC_EVENT_TYPES = frozenset(
    {GENESIS, EVENT_BLOCK, EVENT_OPERATION, EVENT_SIGNAL_EMITTED, EVENT_CHANNEL_SILENCED, EVENT_REPEATED_BLOCKS}
)


class GovernanceGateway:
    """Owns one chain, one block history and one presence channel."""

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        presence_policy: Optional[PresencePolicy] = None,
        *,
        state: Optional[State] = None,
        chain: Optional[EventChain] = None,
        store: Optional[JsonlEventStore] = None,
    ):
        self.config = config or DEFAULT_CONFIG
        self.presence_policy = presence_policy or DEFAULT_PRESENCE_POLICY
        self.store = store
        if chain is None:
            chain = store.load_chain() if store is not None else EventChain()
        self.chain = chain
        self.block_history = BlockHistory()
        self.channel = PresenceChannel(self.presence_policy)
        self.stats = OpsStats()
        self.pending_couplings = 0
        self.urgent_couplings = 0
        self._state_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._state: Optional[State] = state
        self._escalated = False

        genesis = self.chain.ensure_genesis(
            {"config": {"max_complexity": self.config.max_complexity}}, before_commit=self._persist
        )
        if genesis is not None:
            logger.info("Chain initialised with GENESIS %s", genesis.hash[:16])
            if self._state is not None:
                self._advance_tail(genesis)

    # ---------------------------
    # State
    # ---------------------------

    @property
    def state(self) -> State:
        with self._state_lock:
            if self._state is None:
                raise gateway_error(AXG_E_STATE_MISSING, "no agent state has been provided", http_status=409)
            return self._state

    @property
    def has_state(self) -> bool:
        with self._state_lock:
            return self._state is not None

    def update_state(self, state: Union[State, Mapping[str, Any]], *, sync_tail: bool = True) -> State:
        """Replace the current state.

        The gateway is the single writer of its chain, so by default the state's
        tail pointer is reset to the chain tail.
        """
        st = state if isinstance(state, State) else State.from_dict(state)
        tail = self.chain.tail
        if sync_tail and tail is not None:
            st.memory.event_count = tail.seq
            st.memory.last_event_hash = tail.hash
        with self._state_lock:
            self._state = st
        return st

    def _advance_tail(self, event: Event) -> None:
        with self._state_lock:
            if self._state is not None:
                self._state.memory.event_count = event.seq
                self._state.memory.last_event_hash = event.hash

    # ---------------------------
    # Chain
    # ---------------------------

    def _persist(self, event: Event) -> None:
        if self.store is not None:
            self.store.append(event)

    def record_event(self, event_type: str, data: Any = None, timestamp: Optional[str] = None) -> Event:
        """Append one event: stored first, then committed in memory.

        A failed store write leaves both the chain and the state untouched.
        """
        with self._write_lock:
            event = self.chain.append(event_type, data, timestamp=timestamp, before_commit=self._persist)
            self._advance_tail(event)
        metrics.record_chain_append(event_type if event_type in _METRIC_EVENT_TYPES else "other")
        self.stats.record_event_appended()
        logger.debug("Event appended seq=%d type=%s", event.seq, event.type)
        return event

    def events(self) -> List[Event]:
        return self.chain.events

    def verify_chain(self) -> Tuple[bool, str, Optional[int]]:
        return self.chain.verify_detailed()

    def verify_invariants(self) -> VerificationResult:
        return verify_invariants(self.state, self.chain.events)

    # ---------------------------
    # Operations
    # ---------------------------

    def evaluate(
        self,
        operation: Union[Operation, Mapping[str, Any]],
        *,
        now_ms: Optional[float] = None,
    ) -> Tuple[GuardDecision, RepeatedBlockStatus]:
        """Run the conservative guard for ``operation`` against the current state."""
        op = operation if isinstance(operation, Operation) else Operation.from_dict(operation)
        decision = guard(op, self.state, self.config, history=self.block_history, now_ms=now_ms)
        result = decision.result

        metrics.record_validation(result.status, result.axiom)
        self.stats.record_validation(result.status, result.axiom)

        if not decision.allowed:
            logger.info(
                "Operation %s denied: status=%s axiom=%s reason=%s",
                op.type, result.status, result.axiom, result.reason,
            )
            self.record_event(EVENT_BLOCK, {"operation": op.type, **result.as_dict()})

        repeated = self.block_history.check(self.config, now_ms=now_ms)
        if repeated.triggered and not self._escalated:
            self._escalated = True
            metrics.record_repeated_block_alert()
            self.stats.record_repeated_block_alert()
            logger.warning(
                "Repeated-block protocol triggered: %d denials within %d ms (threshold %d)",
                repeated.count, repeated.window_ms, repeated.threshold,
            )
            self.record_event(EVENT_REPEATED_BLOCKS, repeated.as_dict())
        elif not repeated.triggered:
            self._escalated = False
        return decision, repeated

    def record_operation(self, operation: Union[Operation, Mapping[str, Any]], outcome: Any = None) -> Event:
        op = operation if isinstance(operation, Operation) else Operation.from_dict(operation)
        data: Dict[str, Any] = {"operation": op.as_dict()}
        if outcome is not None:
            data["outcome"] = outcome
        return self.record_event(EVENT_OPERATION, data)

    # ---------------------------
    # Presence
    # ---------------------------

    def snapshot(self) -> StateSnapshot:
        verification = self.verify_invariants()
        return snapshot_from_state(self.state, verification, self.pending_couplings)

    def _emit(
        self,
        signal_type: str,
        snapshot: StateSnapshot,
        epsilon: float,
        now: Optional[datetime],
    ) -> Tuple[GuardResult, Optional[SignalPayload]]:
        result, payload = self.channel.offer(
            signal_type,
            snapshot,
            epsilon,
            pending=self.pending_couplings,
            urgent=self.urgent_couplings,
            now=now,
        )
        metrics.record_signal(signal_type, "emitted" if result.allowed else (result.violation or "denied"))
        metrics.set_channel_silenced(result.violation == VIOLATION_SILENCED)
        self.stats.record_signal(result.allowed, result.violation)
        if payload is None:
            logger.debug("Signal %s blocked: %s", signal_type, result.reason)
            return result, None

        self.record_event(
            EVENT_SIGNAL_EMITTED,
            {
                "signal_type": payload.type,
                "signal_seq": payload.seq,
                "payload_hash": sha256(payload.to_json()),
                "state_energy": payload.energy,
                "state_V": payload.V,
            },
        )
        logger.info("Signal emitted: %s seq=%d clients=%d", payload.type, payload.seq, self.channel.state.connected)
        return result, payload

    def publish(
        self,
        epsilon: float = 0.0,
        *,
        signal_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[GuardResult], Optional[SignalPayload]]:
        """Emit whatever signal the current state warrants, if the guard agrees.

        Returns (None, None) when nothing notable changed.
        """
        snapshot = self.snapshot()
        chosen = signal_type or determine_signal_type(snapshot, self.channel.previous_snapshot)
        if chosen is None:
            return None, None
        return self._emit(SignalType(chosen).value, snapshot, epsilon, now)

    def heartbeat(self, epsilon: float = 0.0, *, now: Optional[datetime] = None) -> Tuple[GuardResult, Optional[SignalPayload]]:
        return self._emit(SignalType.HEARTBEAT.value, self.snapshot(), epsilon, now)

    def silence(self, reason: str = "INV-006", *, now: Optional[datetime] = None) -> str:
        until = self.channel.silence(now=now)
        metrics.set_channel_silenced(True)
        self.stats.record_silenced()
        logger.warning("Presence channel silenced until %s (%s)", until, reason)
        self.record_event(EVENT_CHANNEL_SILENCED, {"until": until, "reason": reason})
        return until

