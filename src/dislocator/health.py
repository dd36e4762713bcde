"""
Health / Readiness State Machine
================================

Turns feed freshness and latency into a coarse trader state.

Health snapshot:
    latency_ms = max(0, ingest_ts - exchange_ts)
    spot_fresh = spot_age_ms is None or spot_age_ms <= max_stale_ms
    pm_fresh   = pm_age_ms is None or pm_age_ms <= max_stale_ms
    latency_ok = latency_ms <= max_latency_ms
    data_fresh = spot_fresh and pm_fresh and latency_ok

Transitions (health_ok = data_fresh and features_ready):

    from      | ok       | not ok
    ----------+----------+---------
    STARTING  | WARMING  | STARTING
    WARMING   | RUNNING  | STARTING
    RUNNING   | RUNNING  | DEGRADED
    DEGRADED  | RUNNING  | DEGRADED

The state machine is shared by live and replay; there is no other gating
path. The zero-beta interlock lives in the consumer.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from dislocator.config import HealthConfig


class TraderState(str, Enum):
    """Coarse operational state."""
    STARTING = "STARTING"
    WARMING = "WARMING"
    RUNNING = "RUNNING"
    DEGRADED = "DEGRADED"


INITIAL_STATE = TraderState.STARTING


@dataclass(slots=True, frozen=True)
class HealthSnapshot:
    """Freshness / latency assessment for one event."""
    exchange_ts: int
    ingest_ts: int
    latency_ms: int
    features_ready: bool
    spot_fresh: bool
    pm_fresh: bool
    latency_ok: bool
    data_fresh: bool
    spot_age_ms: Optional[int] = None
    pm_age_ms: Optional[int] = None

    @property
    def health_ok(self) -> bool:
        return self.data_fresh and self.features_ready

    def causes(self) -> list[str]:
        """Reasons the snapshot is not healthy (empty when healthy)."""
        causes: list[str] = []
        if not self.spot_fresh:
            causes.append("spotStale")
        if not self.pm_fresh:
            causes.append("pmStale")
        if not self.features_ready:
            causes.append("featuresInvalid")
        if not self.latency_ok:
            causes.append("clockSkewBad")
        return causes

    def to_dict(self) -> dict:
        return asdict(self)


def make_health_snapshot(
    config: HealthConfig,
    exchange_ts: int,
    ingest_ts: int,
    features_ready: bool,
    spot_age_ms: Optional[int] = None,
    pm_age_ms: Optional[int] = None,
) -> HealthSnapshot:
    """
    Build a health snapshot for one event.

    Args:
        config: Staleness / latency limits
        exchange_ts: Event exchange timestamp (ms)
        ingest_ts: Event ingest timestamp (ms)
        features_ready: Whether the feature vector is complete
        spot_age_ms: Age of spot state, None if not applicable
        pm_age_ms: Age of book state, None if not applicable
    """
    latency_ms = max(0, ingest_ts - exchange_ts)
    spot_fresh = spot_age_ms is None or spot_age_ms <= config.max_stale_ms
    pm_fresh = pm_age_ms is None or pm_age_ms <= config.max_stale_ms
    latency_ok = latency_ms <= config.max_latency_ms

    return HealthSnapshot(
        exchange_ts=exchange_ts,
        ingest_ts=ingest_ts,
        latency_ms=latency_ms,
        spot_age_ms=spot_age_ms,
        pm_age_ms=pm_age_ms,
        features_ready=features_ready,
        spot_fresh=spot_fresh,
        pm_fresh=pm_fresh,
        latency_ok=latency_ok,
        data_fresh=spot_fresh and pm_fresh and latency_ok,
    )


_TRANSITIONS: dict[TraderState, tuple[TraderState, TraderState]] = {
    # state: (next if ok, next if not ok)
    TraderState.STARTING: (TraderState.WARMING, TraderState.STARTING),
    TraderState.WARMING: (TraderState.RUNNING, TraderState.STARTING),
    TraderState.RUNNING: (TraderState.RUNNING, TraderState.DEGRADED),
    TraderState.DEGRADED: (TraderState.RUNNING, TraderState.DEGRADED),
}


def next_state(prev: TraderState, health: HealthSnapshot) -> TraderState:
    """Advance the state machine by one health observation."""
    ok_state, bad_state = _TRANSITIONS.get(prev, (TraderState.STARTING, TraderState.STARTING))
    return ok_state if health.health_ok else bad_state
