"""Presence guard: admission control for outward signals.

Hard rules, checked in order, first violation wins:

1. SILENCED        channel quarantined after an integrity violation
2. RATE_LIMIT      >= 1 min between signals, >= 5 min between heartbeats
                   (two independent counters)
3. REST_DOMINANCE  V == 0 and epsilon <= epsilon_min suppresses heartbeats
4. NO_CHANGE       PRESENCE_SILENCE: nothing is emitted unless the snapshot
                   changed (heartbeats, coupling requests and first snapshots
                   are exempt)

``PresenceState`` is the per-channel context; it is passed into every call
rather than living in module globals. ``PresenceChannel`` owns one such state
plus its subscribers and serializes every decision under a lock.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import DEFAULT_PRESENCE_POLICY, PresencePolicy
from .models import StateSnapshot
from .signals import (
    ORG_HASH,
    SignalPayload,
    SignalType,
    build_payload,
    format_sse,
)

VIOLATION_SILENCED = "SILENCED"
VIOLATION_RATE_LIMIT = "RATE_LIMIT"
VIOLATION_REST_DOMINANCE = "REST_DOMINANCE"
VIOLATION_NO_CHANGE = "NO_CHANGE"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime; None if unparseable."""
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None


def _as_utc(now: Optional[datetime]) -> datetime:
    """Caller-supplied ``now`` as an aware UTC datetime; naive values are taken as UTC."""
    if now is None:
        return _now_utc()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _elapsed_ms(now: datetime, then: datetime) -> float:
    return (now - then).total_seconds() * 1000.0


@dataclass
class PresenceState:
    """Mutable per-channel presence context (timestamps are ISO-8601 UTC)."""

    connected: int = 0
    last_signal: Optional[str] = None
    last_heartbeat: Optional[str] = None
    signal_seq: int = 0
    silenced_until: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "lastSignal": self.last_signal,
            "lastHeartbeat": self.last_heartbeat,
            "signalSeq": self.signal_seq,
            "silencedUntil": self.silenced_until,
        }


@dataclass(frozen=True)
class GuardResult:
    allowed: bool
    reason: str
    violation: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"allowed": self.allowed, "reason": self.reason}
        if self.violation:
            d["violation"] = self.violation
        return d


def create_presence_state() -> PresenceState:
    return PresenceState()


def _check_silence(state: PresenceState, now: datetime) -> Optional[GuardResult]:
    if not state.silenced_until:
        return None
    until = _parse_iso_utc(state.silenced_until)
    # Unparseable quarantine marker: stay silenced (fail closed).
    if until is None or now < until:
        return GuardResult(False, f"Channel silenced until {state.silenced_until}", VIOLATION_SILENCED)
    return None


def _check_rate_limit(
    state: PresenceState, signal_type: str, now: datetime, policy: PresencePolicy
) -> Optional[GuardResult]:
    if signal_type == SignalType.HEARTBEAT:
        last_raw, interval_ms = state.last_heartbeat, policy.heartbeat_interval_ms
        label = "Heartbeat rate limit"
    else:
        last_raw, interval_ms = state.last_signal, policy.min_signal_interval_ms
        label = "Rate limit"
    if not last_raw:
        return None
    last = _parse_iso_utc(last_raw)
    if last is None or _elapsed_ms(now, last) < interval_ms:
        return GuardResult(False, f"{label}: min {interval_ms / 1000:g}s between signals", VIOLATION_RATE_LIMIT)
    return None


def _check_rest_dominance(
    v: float, epsilon: float, signal_type: str, policy: PresencePolicy
) -> Optional[GuardResult]:
    if v == 0 and epsilon <= policy.epsilon_min and signal_type == SignalType.HEARTBEAT:
        return GuardResult(
            False,
            f"REST dominance: V=0, epsilon<={policy.epsilon_min:g}. Heartbeat disabled at attractor.",
            VIOLATION_REST_DOMINANCE,
        )
    return None


def snapshot_changed(current: StateSnapshot, previous: StateSnapshot) -> bool:
    return (
        current.energy != previous.energy
        or current.V != previous.V
        or current.invariants_satisfied != previous.invariants_satisfied
        or current.status != previous.status
        or current.pending_couplings != previous.pending_couplings
    )


def _check_state_change(
    current: StateSnapshot, previous: Optional[StateSnapshot], signal_type: str
) -> Optional[GuardResult]:
    if signal_type in (SignalType.HEARTBEAT, SignalType.COUPLING_REQUESTED):
        return None
    if previous is None:
        return None
    if not snapshot_changed(current, previous):
        return GuardResult(False, "PRESENCE_SILENCE: No state change detected", VIOLATION_NO_CHANGE)
    return None


def guard_signal(
    signal_type: str,
    presence_state: PresenceState,
    current: StateSnapshot,
    previous: Optional[StateSnapshot],
    epsilon: float = 0.0,
    *,
    policy: PresencePolicy = DEFAULT_PRESENCE_POLICY,
    now: Optional[datetime] = None,
) -> GuardResult:
    """Decide whether a signal of ``signal_type`` may be emitted right now."""
    now = _as_utc(now)

    result = (
        _check_silence(presence_state, now)
        or _check_rate_limit(presence_state, signal_type, now, policy)
        or _check_rest_dominance(current.V, epsilon, signal_type, policy)
        or _check_state_change(current, previous, signal_type)
    )
    if result is not None:
        return result
    return GuardResult(True, "Signal approved")


def silence_channel(
    state: PresenceState,
    *,
    policy: PresencePolicy = DEFAULT_PRESENCE_POLICY,
    now: Optional[datetime] = None,
) -> PresenceState:
    """Quarantine the channel (INV-006 recovery). Called by the caller, never by the guard."""
    now = _as_utc(now)
    state.silenced_until = (now + timedelta(milliseconds=policy.silence_duration_ms)).isoformat()
    return state


def record_emission(state: PresenceState, signal_type: str, now: Optional[datetime] = None) -> int:
    """Bookkeeping after an approved signal; returns the new sequence number."""
    now = _as_utc(now)
    state.signal_seq += 1
    if signal_type == SignalType.HEARTBEAT:
        state.last_heartbeat = now.isoformat()
    else:
        state.last_signal = now.isoformat()
    return state.signal_seq


class PresenceChannel:
    """One signaling channel: presence state, last emitted snapshot, subscribers.

    Every decision runs under a single lock so the rate-limit checks observe one
    consistent ``now`` and one consistent prior timestamp.
    """

    def __init__(self, policy: PresencePolicy = DEFAULT_PRESENCE_POLICY, org_hash: str = ORG_HASH):
        self.policy = policy
        self.org_hash = org_hash
        self.state = create_presence_state()
        self.previous_snapshot: Optional[StateSnapshot] = None
        self._lock = threading.Lock()
        self._subscribers: Set["asyncio.Queue[str]"] = set()

    def subscribe(self, maxsize: int = 100) -> "asyncio.Queue[str]":
        queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.add(queue)
            self.state.connected = len(self._subscribers)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[str]") -> None:
        with self._lock:
            self._subscribers.discard(queue)
            self.state.connected = len(self._subscribers)

    def _fan_out(self, frame: str) -> None:
        dead: List["asyncio.Queue[str]"] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(frame)
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            self._subscribers.discard(queue)
        self.state.connected = len(self._subscribers)

    def offer(
        self,
        signal_type: str,
        snapshot: StateSnapshot,
        epsilon: float = 0.0,
        *,
        pending: int = 0,
        urgent: int = 0,
        now: Optional[datetime] = None,
    ) -> Tuple[GuardResult, Optional[SignalPayload]]:
        """Guard, and if approved build, record and broadcast one signal."""
        now = _as_utc(now)
        with self._lock:
            result = guard_signal(
                signal_type,
                self.state,
                snapshot,
                self.previous_snapshot,
                epsilon,
                policy=self.policy,
                now=now,
            )
            if not result.allowed:
                return result, None

            seq = record_emission(self.state, signal_type, now)
            payload = build_payload(
                signal_type,
                snapshot,
                seq=seq,
                pending=pending,
                urgent=urgent,
                org_hash=self.org_hash,
                now=now,
            )
            if signal_type != SignalType.HEARTBEAT:
                self.previous_snapshot = snapshot
            self._fan_out(format_sse(payload))
            return result, payload

    def silence(self, now: Optional[datetime] = None) -> str:
        with self._lock:
            silence_channel(self.state, policy=self.policy, now=now)
            return str(self.state.silenced_until)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            d = self.state.as_dict()
        d["org_hash"] = self.org_hash
        return d
