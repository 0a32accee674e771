import json
from datetime import datetime, timedelta, timezone

import pytest

from axiom_gateway.config import PresencePolicy
from axiom_gateway.models import StateSnapshot
from axiom_gateway.presence import (
    VIOLATION_NO_CHANGE,
    VIOLATION_RATE_LIMIT,
    VIOLATION_REST_DOMINANCE,
    VIOLATION_SILENCED,
    PresenceChannel,
    create_presence_state,
    guard_signal,
    record_emission,
    silence_channel,
)
from axiom_gateway.signals import SignalType

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _snap(energy: float = 0.9, V: float = 0.1, sat: int = 4, status: str = "nominal", pending: int = 0):
    return StateSnapshot(
        energy=energy,
        V=V,
        invariants_satisfied=sat,
        status=status,
        pending_couplings=pending,
        invariants_total=4,
    )


def test_first_snapshot_always_passes():
    state = create_presence_state()
    result = guard_signal(SignalType.STATUS_CHANGED, state, _snap(), None, now=T0)
    assert result.allowed is True
    assert result.violation is None


def test_identical_snapshots_are_silenced_regardless_of_time():
    state = create_presence_state()
    prev = _snap()
    # Far outside the rate-limit window.
    state.last_signal = (T0 - timedelta(days=1)).isoformat()
    result = guard_signal(SignalType.STATUS_CHANGED, state, _snap(), prev, now=T0)
    assert result.allowed is False
    assert result.violation == VIOLATION_NO_CHANGE


def test_any_field_change_passes_change_detection():
    state = create_presence_state()
    prev = _snap()
    for changed in (_snap(energy=0.8), _snap(V=0.2), _snap(sat=3), _snap(status="degraded"), _snap(pending=1)):
        assert guard_signal(SignalType.STATUS_CHANGED, state, changed, prev, now=T0).allowed


def test_invariants_total_is_not_compared():
    prev = _snap()
    cur = StateSnapshot(0.9, 0.1, 4, "nominal", 0, invariants_total=7)
    assert guard_signal("STATUS_CHANGED", create_presence_state(), cur, prev, now=T0).violation == VIOLATION_NO_CHANGE


def test_coupling_requested_bypasses_change_detection():
    prev = _snap()
    result = guard_signal(SignalType.COUPLING_REQUESTED, create_presence_state(), _snap(), prev, now=T0)
    assert result.allowed is True


def test_heartbeat_rate_limit():
    state = create_presence_state()
    assert guard_signal(SignalType.HEARTBEAT, state, _snap(), None, epsilon=0.5, now=T0).allowed
    record_emission(state, SignalType.HEARTBEAT, T0)

    second = guard_signal(SignalType.HEARTBEAT, state, _snap(), None, epsilon=0.5, now=T0 + timedelta(seconds=299))
    assert second.allowed is False
    assert second.violation == VIOLATION_RATE_LIMIT

    later = guard_signal(SignalType.HEARTBEAT, state, _snap(), None, epsilon=0.5, now=T0 + timedelta(seconds=300))
    assert later.allowed is True


def test_signal_rate_limit():
    state = create_presence_state()
    record_emission(state, SignalType.STATUS_CHANGED, T0)
    early = guard_signal(SignalType.ENERGY_WARNING, state, _snap(energy=0.1), _snap(), now=T0 + timedelta(seconds=59))
    assert early.violation == VIOLATION_RATE_LIMIT
    ok = guard_signal(SignalType.ENERGY_WARNING, state, _snap(energy=0.1), _snap(), now=T0 + timedelta(seconds=60))
    assert ok.allowed is True


def test_rate_limit_counters_are_independent():
    state = create_presence_state()
    record_emission(state, SignalType.HEARTBEAT, T0)
    # A heartbeat does not count against the general rate limit.
    assert guard_signal(SignalType.STATUS_CHANGED, state, _snap(), None, now=T0 + timedelta(seconds=1)).allowed

    record_emission(state, SignalType.STATUS_CHANGED, T0 + timedelta(seconds=1))
    assert state.last_heartbeat == T0.isoformat()
    # ...and a general signal does not reset the heartbeat clock.
    hb = guard_signal(
        SignalType.HEARTBEAT, state, _snap(), None, epsilon=0.5, now=T0 + timedelta(seconds=301)
    )
    assert hb.allowed is True


def test_rest_dominance_suppresses_heartbeat_only():
    state = create_presence_state()
    result = guard_signal(SignalType.HEARTBEAT, state, _snap(V=0.0), None, epsilon=0.0005, now=T0)
    assert result.allowed is False
    assert result.violation == VIOLATION_REST_DOMINANCE

    # epsilon floor is inclusive
    at_floor = guard_signal(SignalType.HEARTBEAT, state, _snap(V=0.0), None, epsilon=0.001, now=T0)
    assert at_floor.violation == VIOLATION_REST_DOMINANCE

    assert guard_signal(SignalType.HEARTBEAT, state, _snap(V=0.0), None, epsilon=0.01, now=T0).allowed
    assert guard_signal(SignalType.HEARTBEAT, state, _snap(V=0.2), None, epsilon=0.0, now=T0).allowed
    assert guard_signal(SignalType.STATUS_CHANGED, state, _snap(V=0.0), None, epsilon=0.0, now=T0).allowed


def test_silenced_channel_denies_everything_until_expiry():
    state = create_presence_state()
    policy = PresencePolicy()
    silence_channel(state, policy=policy, now=T0)
    assert state.silenced_until == (T0 + timedelta(milliseconds=600_000)).isoformat()

    for signal_type in SignalType:
        result = guard_signal(signal_type, state, _snap(), None, epsilon=1.0, now=T0 + timedelta(minutes=5))
        assert result.violation == VIOLATION_SILENCED

    after = guard_signal(SignalType.STATUS_CHANGED, state, _snap(), None, now=T0 + timedelta(minutes=10))
    assert after.allowed is True


def test_silence_is_checked_before_rate_limit():
    state = create_presence_state()
    record_emission(state, SignalType.STATUS_CHANGED, T0)
    silence_channel(state, now=T0)
    result = guard_signal(SignalType.STATUS_CHANGED, state, _snap(energy=0.5), _snap(), now=T0 + timedelta(seconds=1))
    assert result.violation == VIOLATION_SILENCED


def test_naive_now_is_read_as_utc():
    naive = T0.replace(tzinfo=None)
    state = create_presence_state()
    record_emission(state, SignalType.STATUS_CHANGED, naive)
    assert state.last_signal == T0.isoformat()

    limited = guard_signal(SignalType.STATUS_CHANGED, state, _snap(energy=0.5), _snap(), now=naive + timedelta(seconds=1))
    assert limited.violation == VIOLATION_RATE_LIMIT

    silence_channel(state, now=naive)
    assert state.silenced_until == (T0 + timedelta(minutes=10)).isoformat()
    assert guard_signal(SignalType.HEARTBEAT, state, _snap(), None, now=naive).violation == VIOLATION_SILENCED


def test_unparseable_silence_marker_fails_closed():
    state = create_presence_state()
    state.silenced_until = "not-a-timestamp"
    assert guard_signal(SignalType.STATUS_CHANGED, state, _snap(), None, now=T0).violation == VIOLATION_SILENCED


def test_policy_intervals_are_configurable():
    policy = PresencePolicy(min_signal_interval_ms=1000, heartbeat_interval_ms=2000, epsilon_min=0.0)
    state = create_presence_state()
    record_emission(state, SignalType.STATUS_CHANGED, T0)
    record_emission(state, SignalType.HEARTBEAT, T0)
    later = T0 + timedelta(seconds=2)
    assert guard_signal(SignalType.STATUS_CHANGED, state, _snap(energy=0.1), _snap(), policy=policy, now=later).allowed
    assert guard_signal(SignalType.HEARTBEAT, state, _snap(V=0.0), None, epsilon=0.0005, policy=policy, now=later).allowed


def test_record_emission_updates_sequence_and_timestamps():
    state = create_presence_state()
    assert record_emission(state, SignalType.STATUS_CHANGED, T0) == 1
    assert record_emission(state, SignalType.HEARTBEAT, T0) == 2
    assert state.signal_seq == 2
    assert state.last_signal == T0.isoformat()
    assert state.last_heartbeat == T0.isoformat()
    assert state.as_dict()["signalSeq"] == 2


def test_channel_offer_records_and_fans_out():
    channel = PresenceChannel()
    queue = channel.subscribe()
    assert channel.state.connected == 1

    result, payload = channel.offer(SignalType.STATUS_CHANGED.value, _snap(), pending=2, urgent=1, now=T0)
    assert result.allowed
    assert payload is not None and payload.seq == 1
    assert channel.previous_snapshot == _snap()

    frame = queue.get_nowait()
    assert frame.startswith("event: status_changed\ndata: ")
    assert frame.endswith("\n\n")
    body = json.loads(frame.split("data: ", 1)[1])
    assert body["coupling"] == {"pending": 2, "urgent": 1}
    assert body["state"]["integrity"] == "4/4"

    # Same snapshot a minute later: nothing new to say.
    denied, none = channel.offer(SignalType.STATUS_CHANGED.value, _snap(), now=T0 + timedelta(minutes=2))
    assert denied.violation == VIOLATION_NO_CHANGE
    assert none is None
    assert queue.empty()

    channel.unsubscribe(queue)
    assert channel.state.connected == 0


def test_channel_heartbeat_does_not_replace_previous_snapshot():
    channel = PresenceChannel()
    channel.offer(SignalType.STATUS_CHANGED.value, _snap(), now=T0)
    channel.offer(SignalType.HEARTBEAT.value, _snap(energy=0.5), epsilon=1.0, now=T0)
    assert channel.previous_snapshot == _snap()


def test_channel_silence_and_status():
    channel = PresenceChannel()
    until = channel.silence(now=T0)
    status = channel.status()
    assert status["silencedUntil"] == until
    assert status["org_hash"] == channel.org_hash
    result, payload = channel.offer(SignalType.STATUS_CHANGED.value, _snap(), now=T0 + timedelta(minutes=1))
    assert result.violation == VIOLATION_SILENCED
    assert payload is None


def test_slow_subscriber_is_dropped():
    channel = PresenceChannel(PresencePolicy(min_signal_interval_ms=0))
    queue = channel.subscribe(maxsize=1)
    channel.offer(SignalType.STATUS_CHANGED.value, _snap(energy=0.9), now=T0)
    channel.offer(SignalType.STATUS_CHANGED.value, _snap(energy=0.8), now=T0 + timedelta(seconds=1))
    assert channel.state.connected == 0
    assert queue.qsize() == 1


@pytest.mark.asyncio
async def test_subscriber_receives_frame_asynchronously():
    channel = PresenceChannel()
    queue = channel.subscribe()
    channel.offer(SignalType.COUPLING_REQUESTED.value, _snap(pending=1), pending=1, now=T0)
    frame = await queue.get()
    assert frame.startswith("event: coupling_requested\n")
