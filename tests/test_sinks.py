"""Tests for the intent sinks."""

import asyncio

import pytest

from dislocator.config import SimConfig
from dislocator.consumer import PipelineContext, PipelineOutput
from dislocator.dislocation import DislocationSignal
from dislocator.health import TraderState
from dislocator.persistence import InMemorySignalStore
from dislocator.positions import FailEvent, FillEvent, IntentReason, OrderIntent, Side
from dislocator.sinks import (
    BacktestIntentSink,
    CollectIntentSink,
    FanoutSink,
    LiveIntentSink,
    SimulatedExecutionSink,
)
from dislocator.types import KIND_PM_BOOK, KIND_SPOT

CTX = PipelineContext(mode="backtest", run_id="r1", features_version="f1", beta_version="b1")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _intent(side: Side = Side.SELL, price: float = 0.52, ts: int = 1_000, intent_id: str = "i1") -> OrderIntent:
    return OrderIntent(
        intent_id=intent_id,
        condition_id="0xcond",
        asset_id="asset-up",
        side=side,
        price=price,
        size=5.0,
        reason=IntentReason.DELTA_SPD,
        created_ts=ts,
    )


def _output(ts: int = 1_000, intent: OrderIntent = None, with_signal: bool = True) -> PipelineOutput:
    signal = DislocationSignal(expected_prob=0.5, pm_mid=0.53, delta_spd=-0.03, exchange_ts=ts, ingest_ts=ts + 2)
    return PipelineOutput(
        event_kind=KIND_PM_BOOK,
        exchange_ts=ts,
        state=TraderState.RUNNING,
        dislocation=signal if with_signal else None,
        intent=intent,
        dt_ms=1,
        condition_id="0xcond",
        asset_id="asset-up",
    )


class FailingStore:
    def __init__(self) -> None:
        self.calls = 0

    async def insert_signals(self, run_id: str, rows: list[dict]) -> int:
        self.calls += 1
        raise RuntimeError("store down")

    async def insert_simulated_trades(self, run_id: str, rows: list[dict]) -> int:
        self.calls += 1
        raise RuntimeError("store down")


# ---------------------------------------------------------------------------
# Buffering sinks
# ---------------------------------------------------------------------------


class TestCollectIntentSink:
    def test_buffers_only_signals(self) -> None:
        sink = CollectIntentSink("r1")
        sink.handle(_output(1_000), CTX)
        sink.handle(_output(1_001, with_signal=False), CTX)
        assert sink.pending == 1

    def test_flush_writes_rows(self) -> None:
        store = InMemorySignalStore()
        sink = CollectIntentSink("r1", store)
        sink.handle(_output(1_000), CTX)
        sink.handle(_output(1_001, intent=_intent()), CTX)

        assert asyncio.run(sink.flush_to_db()) == 2
        assert sink.pending == 0
        assert len(store.signals) == 2
        row = store.signals[1]
        assert row["key"] == "r1|0xcond|asset-up|1001"
        assert row["delta_spd"] == -0.03
        assert row["state"] == "RUNNING"
        assert row["features_version"] == "f1"
        assert row["intent_id"] == "i1"

    def test_flush_empty(self) -> None:
        assert asyncio.run(CollectIntentSink("r1", InMemorySignalStore()).flush_to_db()) == 0

    def test_failed_flush_keeps_rows(self) -> None:
        sink = CollectIntentSink("r1", FailingStore())
        sink.handle(_output(1_000), CTX)
        sink.handle(_output(1_001), CTX)

        assert asyncio.run(sink.flush_to_db()) == 0
        assert sink.pending == 2
        assert sink.flush_failures == 1

        sink.store = InMemorySignalStore()
        assert asyncio.run(sink.flush_to_db()) == 2
        assert sink.pending == 0
        assert sink.flushed == 2

    def test_without_store_drops_batch(self) -> None:
        sink = CollectIntentSink("r1")
        sink.handle(_output(1_000), CTX)
        assert asyncio.run(sink.flush_to_db()) == 1
        assert sink.pending == 0


class TestBacktestIntentSink:
    def test_accumulates_run(self) -> None:
        sink = BacktestIntentSink("r1")
        sink.handle(_output(1_000), CTX)
        sink.handle(_output(1_001, intent=_intent()), CTX)
        spot = PipelineOutput(event_kind=KIND_SPOT, exchange_ts=1_002, state=TraderState.DEGRADED)
        sink.handle(spot, CTX)

        assert len(sink.signals) == 2
        assert [i.intent_id for i in sink.intents] == ["i1"]
        assert sink.states == {TraderState.RUNNING, TraderState.DEGRADED}
        assert sink.entries[1].intent_id == "i1"

    def test_entries_survive_flush(self) -> None:
        sink = BacktestIntentSink("r1", InMemorySignalStore())
        sink.handle(_output(1_000), CTX)
        asyncio.run(sink.flush_to_db())
        assert sink.pending == 0
        assert len(sink.entries) == 1


class TestLiveIntentSink:
    def test_counts_outputs(self) -> None:
        sink = LiveIntentSink()
        sink.handle(_output(1_000, intent=_intent()), CTX)
        sink.handle(_output(1_001), CTX)
        assert sink.handled == 2


# ---------------------------------------------------------------------------
# Simulated execution
# ---------------------------------------------------------------------------


class TestSimulatedExecutionSink:
    def test_ignores_outputs_without_intent(self) -> None:
        sim = SimulatedExecutionSink("r1")
        sim.handle(_output(1_000), CTX)
        assert sim.outstanding == 0
        assert sim.trades == []

    def test_fill_due_after_latency(self) -> None:
        sim = SimulatedExecutionSink("r1", SimConfig(latency_min_ms=100, latency_max_ms=100, fail_prob=0.0))
        sim.handle(_output(1_000, intent=_intent(ts=1_000)), CTX)

        assert sim.due_feedback(1_099) == []
        due = sim.due_feedback(1_100)
        assert len(due) == 1
        assert isinstance(due[0], FillEvent)
        assert due[0].timestamp == 1_100
        assert sim.fills == 1

    def test_fee_is_side_aware(self) -> None:
        params = SimConfig(latency_min_ms=0, latency_max_ms=0, fail_prob=0.0, fee_bps=100)
        sim = SimulatedExecutionSink("r1", params)
        sim.handle(_output(1_000, intent=_intent(Side.BUY, 0.5, intent_id="b")), CTX)
        sim.handle(_output(1_001, intent=_intent(Side.SELL, 0.5, intent_id="s")), CTX)

        buy, sell = sim.drain_feedback()
        assert buy.price == pytest.approx(0.505)
        assert sell.price == pytest.approx(0.495)
        assert sim.trades[0]["fees"] == pytest.approx(0.025)

    def test_failure(self) -> None:
        sim = SimulatedExecutionSink("r1", SimConfig(fail_prob=1.0))
        sim.handle(_output(1_000, intent=_intent()), CTX)
        (fail,) = sim.drain_feedback()
        assert isinstance(fail, FailEvent)
        assert fail.size == 5.0
        assert sim.trades[0]["failed"] is True
        assert sim.trades[0]["price"] is None

    def test_seeded_runs_match(self) -> None:
        def run(seed: int) -> list[dict]:
            sim = SimulatedExecutionSink("r1", SimConfig(fail_prob=0.5, seed=seed))
            for i in range(20):
                sim.handle(_output(1_000 + i, intent=_intent(ts=1_000 + i, intent_id=f"i{i}")), CTX)
            return sim.trades

        assert run(7) == run(7)
        assert run(7) != run(8)

    def test_due_order(self) -> None:
        sim = SimulatedExecutionSink("r1", SimConfig(latency_min_ms=50, latency_max_ms=50, fail_prob=0.0))
        sim.handle(_output(2_000, intent=_intent(ts=2_000, intent_id="late")), CTX)
        sim.handle(_output(1_000, intent=_intent(ts=1_000, intent_id="early")), CTX)
        assert [f.intent_id for f in sim.drain_feedback()] == ["early", "late"]

    def test_trades_flushed(self) -> None:
        store = InMemorySignalStore()
        sim = SimulatedExecutionSink("r1", SimConfig(latency_min_ms=10, latency_max_ms=10, fail_prob=0.0), store)
        sim.handle(_output(1_000, intent=_intent(ts=1_000)), CTX)
        assert asyncio.run(sim.flush_to_db()) == 1
        assert store.trades[0]["key"] == "r1|i1|1010"

    def test_failed_trade_flush_keeps_rows(self) -> None:
        sim = SimulatedExecutionSink("r1", store=FailingStore())
        sim.handle(_output(1_000, intent=_intent()), CTX)
        assert asyncio.run(sim.flush_to_db()) == 0
        assert len(sim.trades) == 1


class TestFanoutSink:
    def test_forwards_and_flushes(self) -> None:
        store = InMemorySignalStore()
        collect = CollectIntentSink("r1", store)
        live = LiveIntentSink()
        fanout = FanoutSink(live, collect)

        fanout.handle(_output(1_000), CTX)
        assert live.handled == 1
        assert collect.pending == 1
        assert asyncio.run(fanout.flush_to_db()) == 1
