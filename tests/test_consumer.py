"""Tests for the unified event consumer."""

import pytest

from dislocator.config import IntentConfig
from dislocator.consumer import PipelineContext, PipelineOutput
from dislocator.health import TraderState
from dislocator.positions import FillEvent, OrderIntent, Side
from dislocator.types import KIND_PM_BOOK, KIND_SPOT

from conftest import make_book, make_spot


class ListSink:
    def __init__(self) -> None:
        self.outputs: list[PipelineOutput] = []
        self.contexts: list[PipelineContext] = []

    def handle(self, output: PipelineOutput, ctx: PipelineContext) -> None:
        self.outputs.append(output)
        self.contexts.append(ctx)


class TestScenario:
    def test_spot_then_book_emits_sell_at_bid(self, make_consumer) -> None:
        consumer = make_consumer()

        out_spot = consumer.handle_event(make_spot(1_000, 100.0, ingest=1_005))
        assert out_spot.event_kind == KIND_SPOT
        assert out_spot.state == TraderState.WARMING
        assert out_spot.features.ready
        assert out_spot.intent is None

        out_book = consumer.handle_event(make_book(1_001, 0.52, 0.54, ingest=1_003))
        assert out_book.event_kind == KIND_PM_BOOK
        assert out_book.state == TraderState.RUNNING
        assert out_book.dislocation.expected_prob == 0.5
        assert out_book.dislocation.delta_spd == pytest.approx(-0.03)
        assert out_book.dt_ms == 1
        assert out_book.intent is not None
        assert out_book.intent.side == Side.SELL
        assert out_book.intent.price == 0.52
        assert out_book.intent.created_ts == 1_001

    def test_repeated_book_is_idempotent(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        first = consumer.handle_event(make_book(1_001))
        second = consumer.handle_event(make_book(1_002))
        assert first.intent is not None
        assert second.intent is None
        assert consumer.positions.get("0xcond", "asset-up").pending == -first.intent.size

    def test_spot_never_emits_intent(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        consumer.handle_event(make_book(1_001))
        out = consumer.handle_event(make_spot(1_002, 120.0))
        assert out.intent is None
        assert out.dislocation is None


class TestMissingData:
    def test_book_without_spot(self, make_consumer) -> None:
        consumer = make_consumer()
        out = consumer.handle_event(make_book(1_000))
        assert out.state == TraderState.STARTING
        assert out.dislocation is None
        assert out.features is None
        assert out.health is not None and not out.health.health_ok
        assert out.health.pm_age_ms == 0
        assert consumer.hot_state.get_book("asset-up") is not None

    def test_spot_without_mid(self, make_consumer) -> None:
        consumer = make_consumer()
        out = consumer.handle_event(make_spot(1_000, mid=None))
        assert out.state == TraderState.STARTING
        assert out.features is None
        assert consumer.hot_state.get_spot("BTC-USD") is None

    def test_one_sided_book(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        out = consumer.handle_event(make_book(1_001, bid=0.52, ask=None))
        assert out.dislocation is None
        assert out.intent is None


class TestHealthGating:
    def test_stale_spot_degrades(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        consumer.handle_event(make_book(1_001))
        out = consumer.handle_event(make_book(7_001))
        assert out.state == TraderState.DEGRADED
        assert "spotStale" in out.health.causes()
        assert out.intent is None

    def test_latency_blocks_running(self, make_consumer) -> None:
        consumer = make_consumer()
        out = consumer.handle_event(make_spot(1_000, ingest=3_000))
        assert out.state == TraderState.STARTING
        assert "clockSkewBad" in out.health.causes()

    def test_recovery_from_degraded(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        consumer.handle_event(make_book(1_001))
        consumer.handle_event(make_book(7_001))
        out = consumer.handle_event(make_spot(7_002))
        assert out.state == TraderState.RUNNING


class TestZeroBetaInterlock:
    def test_zero_beta_stays_warming(self, make_consumer) -> None:
        consumer = make_consumer(beta=())
        assert consumer.beta_blocked
        consumer.handle_event(make_spot(1_000))
        out = consumer.handle_event(make_book(1_001))
        assert out.state == TraderState.WARMING
        assert out.intent is None
        assert out.dislocation is not None

    def test_all_zero_coefficients_blocked(self, make_consumer) -> None:
        assert make_consumer(beta=(0.0, 0.0, 0.0, 0.0)).beta_blocked

    def test_override_allows_running(self, make_consumer) -> None:
        consumer = make_consumer(beta=(), allow_zero_beta=True)
        assert not consumer.beta_blocked
        consumer.handle_event(make_spot(1_000))
        out = consumer.handle_event(make_book(1_001))
        assert out.state == TraderState.RUNNING
        assert out.intent is not None


class TestCollisions:
    def test_equal_ts_different_kind(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_book(1_000))
        out = consumer.handle_event(make_spot(1_000))
        assert out.ordering_collision
        assert out.collision_count == 1
        assert consumer.collision_count == 1

    def test_equal_ts_same_kind_is_not_collision(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        out = consumer.handle_event(make_spot(1_000, 101.0))
        assert not out.ordering_collision
        assert consumer.collision_count == 0


class TestWiring:
    def test_sink_receives_every_output(self, make_consumer) -> None:
        consumer = make_consumer()
        sink = ListSink()
        ctx = PipelineContext(mode="backtest", run_id="r1")
        consumer.handle_event(make_spot(1_000), sink, ctx)
        consumer.handle_event(make_book(1_001), sink, ctx)
        assert [o.event_kind for o in sink.outputs] == [KIND_SPOT, KIND_PM_BOOK]
        assert sink.contexts[0] is ctx

    def test_asset_product_override(self, make_consumer) -> None:
        consumer = make_consumer(asset_products={"eth-up": "ETH-USD"})
        consumer.handle_event(make_spot(1_000, 100.0))
        out = consumer.handle_event(make_book(1_001, asset_id="eth-up"))
        assert out.product_id == "ETH-USD"
        assert out.dislocation is None

        consumer.handle_event(make_spot(1_002, 2_000.0, product_id="ETH-USD"))
        out = consumer.handle_event(make_book(1_003, asset_id="eth-up"))
        assert out.dislocation is not None
        assert out.features.spot == 2_000.0

    def test_context_condition_fallback(self, make_consumer) -> None:
        consumer = make_consumer()
        ctx = PipelineContext(mode="backtest", condition_id="0xctx")
        consumer.handle_event(make_spot(1_000), ctx=ctx)
        out = consumer.handle_event(make_book(1_001, condition_id=None), ctx=ctx)
        assert out.condition_id == "0xctx"
        assert out.intent.condition_id == "0xctx"

    def test_unwind_follows_fills(self, make_consumer) -> None:
        config = IntentConfig(delta_threshold=0.01, inventory_cap=10.0, order_size=5.0, unwind_cooldown_ms=0)
        consumer = make_consumer(intent_config=config)
        consumer.handle_event(make_spot(1_000))
        entry = consumer.handle_event(make_book(1_001)).intent

        consumer.apply_feedback([_fill_for(entry)])
        out = consumer.handle_event(make_book(1_002))
        assert out.intent.reason.value == "DELTA_SPD"
        consumer.apply_feedback([_fill_for(out.intent)])

        out = consumer.handle_event(make_book(1_003))
        assert out.intent.reason.value == "MM_REBALANCE"
        assert out.intent.side == Side.BUY
        assert out.intent.size == 10.0

    def test_reset(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        consumer.handle_event(make_book(1_001))
        consumer.reset()
        assert consumer.state == TraderState.STARTING
        assert consumer.hot_state.get_spot("BTC-USD") is None
        assert consumer.positions.positions == {}
        assert consumer.stats()["events"] == 0


def _fill_for(intent: OrderIntent) -> FillEvent:
    return FillEvent(
        intent_id=intent.intent_id,
        condition_id=intent.condition_id,
        asset_id=intent.asset_id,
        side=intent.side,
        filled_size=intent.size,
        price=intent.price,
        timestamp=intent.created_ts,
    )
