"""
Intent Sinks
============

Pluggable consumers of PipelineOutput. Sinks never alter pipeline state.

Variants:
    LiveIntentSink          - log only
    BacktestIntentSink      - keeps every signal / state / intent of the run
                              and buffers signal rows for persistence
    CollectIntentSink       - buffers signal rows for persistence only
    SimulatedExecutionSink  - turns intents into seeded simulated fills /
                              failures that become due later in event time
    FanoutSink              - forwards to several sinks

handle() is synchronous. flush_to_db() is async and best effort: a failed
flush is logged, the batch goes back into the buffer and the next flush
retries it (rows are idempotent by key).
"""

import heapq
import logging
import random
from dataclasses import dataclass
from typing import Optional, Protocol

from dislocator.config import SimConfig
from dislocator.consumer import Feedback, PipelineContext, PipelineOutput
from dislocator.dislocation import DislocationSignal
from dislocator.health import TraderState
from dislocator.persistence import SignalStore
from dislocator.positions import FailEvent, FillEvent, OrderIntent, Side

logger = logging.getLogger(__name__)


class IntentSink(Protocol):
    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None: ...


@dataclass(slots=True, frozen=True)
class SignalEntry:
    """One buffered signal with the context it was produced in."""
    signal: DislocationSignal
    state: TraderState
    ctx: PipelineContext
    ordering_collision: bool = False
    dt_ms: Optional[int] = None
    condition_id: Optional[str] = None
    asset_id: Optional[str] = None
    intent_id: Optional[str] = None

    def to_row(self) -> dict:
        return {
            "condition_id": self.condition_id or self.ctx.condition_id or "unknown",
            "asset_id": self.asset_id or self.ctx.asset_id or "unknown",
            "exchange_ts": self.signal.exchange_ts,
            "ingest_ts": self.signal.ingest_ts,
            "dt_ms": self.dt_ms,
            "pm_mid": self.signal.pm_mid,
            "expected_prob": self.signal.expected_prob,
            "delta_spd": self.signal.delta_spd,
            "state": self.state.value,
            "features_version": self.ctx.features_version,
            "beta_version": self.ctx.beta_version,
            "ordering_collision": self.ordering_collision,
            "intent_id": self.intent_id,
        }


class LiveIntentSink:
    """Log-only sink for live mode. Order routing is not wired."""

    def __init__(self) -> None:
        self.handled = 0

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        self.handled += 1
        if output.dislocation is not None:
            logger.debug(
                "live_dislocation",
                extra={
                    "asset_id": output.asset_id,
                    "state": output.state.value,
                    "dislocation": output.dislocation.to_dict(),
                },
            )
        if output.intent is not None:
            logger.info(
                "live_intent",
                extra={"run_id": ctx.run_id, "intent": output.intent.to_dict()},
            )


class _SignalBuffer:
    """Shared buffering and flush logic for the persisting sinks."""

    def __init__(self, run_id: str, store: Optional[SignalStore] = None) -> None:
        self.run_id = run_id
        self.store = store
        self._entries: list[SignalEntry] = []
        self.flushed = 0
        self.flush_failures = 0

    def _buffer(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        if output.dislocation is None:
            return
        self._entries.append(
            SignalEntry(
                signal=output.dislocation,
                state=output.state,
                ctx=ctx,
                ordering_collision=output.ordering_collision,
                dt_ms=output.dt_ms,
                condition_id=output.condition_id,
                asset_id=output.asset_id,
                intent_id=output.intent.intent_id if output.intent else None,
            )
        )

    @property
    def pending(self) -> int:
        return len(self._entries)

    async def flush_to_db(self) -> int:
        """
        Hand buffered rows to the store and clear the buffer.

        Returns:
            Number of rows handed over (0 on failure or empty buffer).
        """
        if not self._entries:
            return 0

        batch = self._entries
        self._entries = []
        if self.store is None:
            return len(batch)

        try:
            await self.store.insert_signals(self.run_id, [e.to_row() for e in batch])
        except Exception as e:
            self.flush_failures += 1
            # Rows appended during the await stay after the failed batch
            self._entries = batch + self._entries
            logger.exception(
                "sink_flush_failed",
                extra={"run_id": self.run_id, "rows": len(batch), "error": str(e)},
            )
            return 0

        self.flushed += len(batch)
        return len(batch)


class CollectIntentSink(_SignalBuffer):
    """Collects signal rows for persistence."""

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        self._buffer(output, ctx)


class BacktestIntentSink(_SignalBuffer):
    """
    Backtest accumulator.

    Keeps the full run history in memory (signals, states seen, intents)
    in addition to the persistence buffer.
    """

    def __init__(self, run_id: str, store: Optional[SignalStore] = None) -> None:
        super().__init__(run_id, store)
        self.entries: list[SignalEntry] = []
        self.states: set[TraderState] = set()
        self.intents: list[OrderIntent] = []
        self.collisions = 0

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        self.states.add(output.state)
        if output.ordering_collision:
            self.collisions += 1
        if output.intent is not None:
            self.intents.append(output.intent)
        before = len(self._entries)
        self._buffer(output, ctx)
        if len(self._entries) > before:
            self.entries.append(self._entries[-1])

    @property
    def signals(self) -> list[DislocationSignal]:
        return [e.signal for e in self.entries]


class SimulatedExecutionSink:
    """
    Simulated execution for backtests.

    Every intent becomes a FillEvent or a FailEvent due at
    created_ts + latency, latency drawn uniformly from
    [latency_min_ms, latency_max_ms]. Failure happens with fail_prob. Fill
    prices include fee_bps (buys pay more, sells receive less).

    Draws come from random.Random(seed), so a run is reproducible.

    Args:
        run_id: Run identifier for trade rows
        params: Simulation parameters
        store: Optional persistence collaborator for trade rows
    """

    def __init__(
        self,
        run_id: str,
        params: Optional[SimConfig] = None,
        store: Optional[SignalStore] = None,
    ) -> None:
        self.run_id = run_id
        self.params = params or SimConfig()
        self.store = store
        self._rng = random.Random(self.params.seed)
        self._queue: list[tuple[int, int, Feedback]] = []
        self._seq = 0
        self._trades: list[dict] = []

        self.fills = 0
        self.fails = 0

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        intent = output.intent
        if intent is None:
            return

        p = self.params
        latency_ms = int(round(self._rng.uniform(p.latency_min_ms, p.latency_max_ms)))
        failed = self._rng.random() < p.fail_prob
        due_ts = intent.created_ts + latency_ms

        feedback: Feedback
        if failed:
            feedback = FailEvent(
                intent_id=intent.intent_id,
                condition_id=intent.condition_id,
                asset_id=intent.asset_id,
                side=intent.side,
                size=intent.size,
                timestamp=due_ts,
                reason="simulated_reject",
            )
            fill_price = None
            fees = 0.0
            self.fails += 1
        else:
            fee = intent.price * p.fee_bps / 10_000
            fill_price = intent.price + fee if intent.side == Side.BUY else intent.price - fee
            fees = fee * intent.size
            feedback = FillEvent(
                intent_id=intent.intent_id,
                condition_id=intent.condition_id,
                asset_id=intent.asset_id,
                side=intent.side,
                filled_size=intent.size,
                price=fill_price,
                timestamp=due_ts,
            )
            self.fills += 1

        heapq.heappush(self._queue, (due_ts, self._seq, feedback))
        self._seq += 1

        self._trades.append({
            "intent_id": intent.intent_id,
            "condition_id": intent.condition_id,
            "asset_id": intent.asset_id,
            "side": intent.side.value,
            "reason": intent.reason.value,
            "intent_price": intent.price,
            "price": fill_price,
            "size": intent.size,
            "fees": fees,
            "timestamp": due_ts,
            "created_ts": intent.created_ts,
            "latency_ms": latency_ms,
            "failed": failed,
        })

    def due_feedback(self, now_ts: int) -> list[Feedback]:
        """Pop feedback due at or before now_ts, in due order."""
        due: list[Feedback] = []
        while self._queue and self._queue[0][0] <= now_ts:
            due.append(heapq.heappop(self._queue)[2])
        return due

    def drain_feedback(self) -> list[Feedback]:
        """Pop all remaining feedback, in due order."""
        remaining: list[Feedback] = []
        while self._queue:
            remaining.append(heapq.heappop(self._queue)[2])
        return remaining

    @property
    def outstanding(self) -> int:
        return len(self._queue)

    @property
    def trades(self) -> list[dict]:
        return list(self._trades)

    async def flush_to_db(self) -> int:
        if not self._trades:
            return 0

        batch = self._trades
        self._trades = []
        if self.store is None:
            return len(batch)

        try:
            await self.store.insert_simulated_trades(self.run_id, batch)
        except Exception as e:
            self._trades = batch + self._trades
            logger.exception(
                "sim_trades_flush_failed",
                extra={"run_id": self.run_id, "rows": len(batch), "error": str(e)},
            )
            return 0
        return len(batch)


class FanoutSink:
    """Forwards every output to each sink in order."""

    def __init__(self, *sinks: IntentSink) -> None:
        self.sinks = list(sinks)

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        for sink in self.sinks:
            sink.handle(output, ctx)

    async def flush_to_db(self) -> int:
        total = 0
        for sink in self.sinks:
            flush = getattr(sink, "flush_to_db", None)
            if flush is not None:
                total += await flush()
        return total
