"""
Run fingerprints.

event_fingerprint()  - md5 over the canonical event order; equal hashes
                       mean two runs saw the same input.
output_fingerprint() - md5 over the persisted-signal view of a run's
                       outputs; equal hashes mean two runs decided the same.
"""

import hashlib
from typing import Iterable, Optional

from dislocator.consumer import PipelineOutput
from dislocator.replay.sorter import assign_ordinals, sort_events
from dislocator.types import PmBook, ReplayEvent, SpotTick


def _opt(value: Optional[object]) -> str:
    return "" if value is None else str(value)


def event_line(event: ReplayEvent) -> str:
    ev = event.event
    condition_id = ev.condition_id if isinstance(ev, PmBook) else None
    asset_id = ev.asset_id if isinstance(ev, PmBook) else None
    product_id = ev.product_id if isinstance(ev, SpotTick) else None
    return ":".join([
        str(ev.exchange_ts),
        ev.kind,
        _opt(condition_id),
        _opt(asset_id),
        _opt(ev.ingest_ts),
        _opt(product_id),
    ])


def event_fingerprint(events: Iterable[ReplayEvent]) -> str:
    ordered = sort_events(assign_ordinals(events))
    return hashlib.md5(",".join(event_line(e) for e in ordered).encode("utf-8")).hexdigest()


def output_line(output: PipelineOutput) -> str:
    delta = output.dislocation.delta_spd if output.dislocation else None
    return "|".join([
        str(output.exchange_ts),
        _opt(output.condition_id),
        _opt(output.asset_id),
        output.state.value,
        f"{delta:.10f}" if delta is not None else "",
        _opt(output.dt_ms),
        "1" if output.ordering_collision else "0",
        output.intent.intent_id if output.intent else "",
    ])


def output_fingerprint(outputs: Iterable[PipelineOutput], signals_only: bool = True) -> str:
    """
    Hash a run's outputs in processing order.

    Args:
        outputs: PipelineOutput sequence
        signals_only: Hash only outputs carrying a dislocation signal
    """
    lines = [
        output_line(o)
        for o in outputs
        if not signals_only or o.dislocation is not None
    ]
    return hashlib.md5(",".join(lines).encode("utf-8")).hexdigest()


class RunFingerprint:
    """
    Incremental fingerprints for chunked replays.

    Fed in processing order, so the result equals event_fingerprint() /
    output_fingerprint() over the whole run when chunks are monotonic.
    """

    def __init__(self, signals_only: bool = True) -> None:
        self.signals_only = signals_only
        self._events = hashlib.md5()
        self._outputs = hashlib.md5()
        self._event_count = 0
        self._output_count = 0

    def observe(self, event: ReplayEvent, output: PipelineOutput) -> None:
        if self._event_count:
            self._events.update(b",")
        self._events.update(event_line(event).encode("utf-8"))
        self._event_count += 1

        if self.signals_only and output.dislocation is None:
            return
        if self._output_count:
            self._outputs.update(b",")
        self._outputs.update(output_line(output).encode("utf-8"))
        self._output_count += 1

    @property
    def events(self) -> str:
        return self._events.hexdigest()

    @property
    def outputs(self) -> str:
        return self._outputs.hexdigest()
