"""
Replay Harness
==============

Drives the unified consumer over historical events in canonical order.

Per chunk:
    1. assign arrival ordinals to events that lack one (continuing the
       harness-wide counter)
    2. sort canonically
    3. for each event:
         - fail hard if exchange_ts went backwards (OrderingViolation),
           checked across chunks of the same harness
         - apply execution feedback that is due at this exchange_ts
         - call consumer.handle_event() (the same entry point live uses)

finish() applies any feedback still outstanding and returns a summary.

Usage:
    harness = ReplayHarness(consumer, sink, ctx, feedback=sim_sink)
    for chunk in iter_chunks(paths):
        harness.replay(chunk)
    summary = harness.finish()
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional, Protocol

from dislocator.consumer import Feedback, PipelineContext, PipelineOutput, UnifiedEventConsumer
from dislocator.errors import OrderingViolation
from dislocator.replay.fingerprint import RunFingerprint
from dislocator.replay.sorter import assign_ordinals, sort_events
from dislocator.types import ReplayEvent

logger = logging.getLogger(__name__)


class FeedbackSource(Protocol):
    def due_feedback(self, now_ts: int) -> list[Feedback]: ...

    def drain_feedback(self) -> list[Feedback]: ...


@dataclass(slots=True)
class ReplaySummary:
    """Counters for one harness run."""
    events: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    first_exchange_ts: Optional[int] = None
    last_exchange_ts: Optional[int] = None
    intents: int = 0
    signals: int = 0
    collisions: int = 0
    feedback_applied: int = 0
    final_state: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ReplayHarness:
    """
    Replay driver bound to one consumer for one run.

    Args:
        consumer: The unified consumer (fresh per run)
        sink: Sink receiving every output
        ctx: Run context (mode is normally "backtest")
        feedback: Optional source of simulated fills / failures
        fingerprint: Optional incremental run fingerprint
    """

    def __init__(
        self,
        consumer: UnifiedEventConsumer,
        sink=None,
        ctx: Optional[PipelineContext] = None,
        feedback: Optional[FeedbackSource] = None,
        fingerprint: Optional[RunFingerprint] = None,
    ) -> None:
        self.consumer = consumer
        self.sink = sink
        self.ctx = ctx or PipelineContext(mode="backtest")
        self.feedback = feedback
        self.fingerprint = fingerprint

        self._next_ordinal = 0
        self._last_ts: Optional[int] = None
        self._counts: Counter[str] = Counter()
        self._summary = ReplaySummary()

    def replay(self, events: Iterable[ReplayEvent]) -> list[PipelineOutput]:
        """
        Replay one chunk.

        Returns:
            Outputs in processing order.

        Raises:
            OrderingViolation: exchange_ts decreased (fatal)
            InvariantViolation: position cap breached (fatal)
        """
        with_ordinals = assign_ordinals(events, start=self._next_ordinal)
        for ev in with_ordinals:
            if ev.arrival_ordinal is not None and ev.arrival_ordinal >= self._next_ordinal:
                self._next_ordinal = ev.arrival_ordinal + 1

        ordered = sort_events(with_ordinals)
        outputs: list[PipelineOutput] = []
        summary = self._summary

        for ev in ordered:
            ts = ev.exchange_ts
            if self._last_ts is not None and ts < self._last_ts:
                logger.critical(
                    "replay_ordering_violation",
                    extra={"exchange_ts": ts, "previous_ts": self._last_ts},
                )
                raise OrderingViolation(
                    f"non-monotonic exchange_ts: {ts} after {self._last_ts}",
                    exchange_ts=ts,
                    previous_ts=self._last_ts,
                )
            self._last_ts = ts

            if self.feedback is not None:
                summary.feedback_applied += self.consumer.apply_feedback(self.feedback.due_feedback(ts))

            output = self.consumer.handle_event(ev.event, self.sink, self.ctx)
            outputs.append(output)
            if self.fingerprint is not None:
                self.fingerprint.observe(ev, output)

            self._counts[ev.kind] += 1
            summary.events += 1
            if summary.first_exchange_ts is None:
                summary.first_exchange_ts = ts
            summary.last_exchange_ts = ts
            if output.intent is not None:
                summary.intents += 1
            if output.dislocation is not None:
                summary.signals += 1

        return outputs

    def finish(self) -> ReplaySummary:
        """Apply outstanding feedback and return the run summary."""
        summary = self._summary
        if self.feedback is not None:
            summary.feedback_applied += self.consumer.apply_feedback(self.feedback.drain_feedback())
        summary.counts = dict(self._counts)
        summary.collisions = self.consumer.collision_count
        summary.final_state = self.consumer.state.value

        logger.info("replay_finished", extra={"run_id": self.ctx.run_id, **summary.to_dict()})
        return summary


def replay_events(
    events: Iterable[ReplayEvent],
    consumer: UnifiedEventConsumer,
    sink=None,
    ctx: Optional[PipelineContext] = None,
    feedback: Optional[FeedbackSource] = None,
) -> list[PipelineOutput]:
    """Replay a single batch of events through a fresh harness."""
    harness = ReplayHarness(consumer, sink, ctx, feedback)
    outputs = harness.replay(events)
    harness.finish()
    return outputs
