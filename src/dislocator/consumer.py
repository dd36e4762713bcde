"""
Unified Event Consumer
======================

The single decision path for live and replay processing.

For every normalized event handle_event():
    1. runs ordering-collision detection (observability only)
    2. updates the hot state cache
    3. updates / reads features for the paired spot product
    4. computes the dislocation signal (book events)
    5. builds a health snapshot and advances the state machine
       (zero-beta interlock: RUNNING is forced back to WARMING)
    6. asks the position manager for an entry, else an unwind intent
       (book events, RUNNING only)
    7. hands the PipelineOutput to the sink

handle_event() is synchronous and runs to completion; nothing in it awaits.
All mutable state lives on the consumer instance, one instance per run.

Spot ticks never produce intents; they only refresh features and health.

Usage:
    consumer = UnifiedEventConsumer.from_settings(settings)
    out = consumer.handle_event(event, sink, PipelineContext(mode="live"))
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional, Union

from dislocator.config import FeatureConfig, HealthConfig, IntentConfig, Settings, beta_is_zero
from dislocator.dislocation import BetaParams, DislocationSignal, compute_dislocation
from dislocator.feature_engine import FeatureEngine, FeatureVector
from dislocator.health import (
    INITIAL_STATE,
    HealthSnapshot,
    TraderState,
    make_health_snapshot,
    next_state,
)
from dislocator.hot_state import BookState, HotState, SpotState
from dislocator.positions import FailEvent, FillEvent, OrderIntent, PositionManager
from dislocator.types import KIND_PM_BOOK, KIND_SPOT, PmBook, SpotTick, UnifiedEvent

logger = logging.getLogger(__name__)

PipelineMode = Literal["live", "backtest", "collect"]
Feedback = Union[FillEvent, FailEvent]


@dataclass(slots=True, frozen=True)
class PipelineContext:
    """Per-run metadata passed through to sinks."""
    mode: PipelineMode = "live"
    run_id: Optional[str] = None
    features_version: Optional[str] = None
    beta_version: Optional[str] = None
    condition_id: Optional[str] = None
    asset_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PipelineOutput:
    """
    Result of one handle_event() call.

    Attributes:
        state: Trader state after this event
        features: Feature vector used (None when no spot data)
        dislocation: Signal for book events with a usable mid
        intent: Order intent accepted on this event, if any
        ordering_collision: Same exchange_ts as the previous event, different kind
        collision_count: Running number of ordering collisions in this run
        dt_ms: Book exchange_ts minus paired spot update time (book events)
        health: Health snapshot that drove the transition
    """
    event_kind: str
    exchange_ts: int
    state: TraderState
    features: Optional[FeatureVector] = None
    dislocation: Optional[DislocationSignal] = None
    intent: Optional[OrderIntent] = None
    ordering_collision: bool = False
    collision_count: int = 0
    dt_ms: Optional[int] = None
    health: Optional[HealthSnapshot] = None
    condition_id: Optional[str] = None
    asset_id: Optional[str] = None
    product_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_kind": self.event_kind,
            "exchange_ts": self.exchange_ts,
            "state": self.state.value,
            "features": self.features.to_dict() if self.features else None,
            "dislocation": self.dislocation.to_dict() if self.dislocation else None,
            "intent": self.intent.to_dict() if self.intent else None,
            "ordering_collision": self.ordering_collision,
            "collision_count": self.collision_count,
            "dt_ms": self.dt_ms,
            "condition_id": self.condition_id,
            "asset_id": self.asset_id,
            "product_id": self.product_id,
        }


@dataclass(slots=True)
class _CollisionTracker:
    last_ts: Optional[int] = None
    last_kind: Optional[str] = None
    count: int = 0

    def observe(self, exchange_ts: int, kind: str) -> bool:
        collision = (
            self.last_ts is not None
            and self.last_ts == exchange_ts
            and self.last_kind is not None
            and self.last_kind != kind
        )
        if collision:
            self.count += 1
        self.last_ts = exchange_ts
        self.last_kind = kind
        return collision


class UnifiedEventConsumer:
    """
    Per-run pipeline state and the handle_event() entry point.

    Args:
        feature_config: Rolling feature windows
        health_config: Freshness / latency limits
        intent_config: Position manager parameters
        beta: Model coefficients
        allow_zero_beta: Disable the zero-beta RUNNING interlock
        spot_product_id: Spot product paired with every book by default
        asset_products: Optional asset_id -> product_id pairing overrides
    """

    def __init__(
        self,
        feature_config: FeatureConfig,
        health_config: HealthConfig,
        intent_config: IntentConfig,
        beta: BetaParams,
        allow_zero_beta: bool = False,
        spot_product_id: str = "BTC-USD",
        asset_products: Optional[dict[str, str]] = None,
    ) -> None:
        self.feature_config = feature_config
        self.health_config = health_config
        self.intent_config = intent_config
        self.beta: list[float] = list(beta)
        self.allow_zero_beta = allow_zero_beta
        self.spot_product_id = spot_product_id
        self.asset_products: dict[str, str] = dict(asset_products or {})

        self._engines: dict[str, FeatureEngine] = {}
        self._hot = HotState()
        self._positions = PositionManager(intent_config)
        self._collisions = _CollisionTracker()
        self._state: TraderState = INITIAL_STATE
        self._beta_warned = False
        self._events = 0
        self._intents = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        asset_products: Optional[dict[str, str]] = None,
    ) -> "UnifiedEventConsumer":
        return cls(
            feature_config=settings.feature_config(),
            health_config=settings.health_config(),
            intent_config=settings.intent_config(),
            beta=settings.beta_params,
            allow_zero_beta=settings.ALLOW_ZERO_BETA,
            spot_product_id=settings.SPOT_PRODUCT_ID,
            asset_products=asset_products,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> TraderState:
        return self._state

    @property
    def positions(self) -> PositionManager:
        return self._positions

    @property
    def hot_state(self) -> HotState:
        return self._hot

    @property
    def collision_count(self) -> int:
        return self._collisions.count

    @property
    def beta_blocked(self) -> bool:
        """True when the zero-beta interlock is active."""
        return beta_is_zero(self.beta) and not self.allow_zero_beta

    def engine_for(self, product_id: str) -> FeatureEngine:
        engine = self._engines.get(product_id)
        if engine is None:
            engine = FeatureEngine(self.feature_config)
            self._engines[product_id] = engine
        return engine

    def paired_product(self, asset_id: str) -> str:
        return self.asset_products.get(asset_id, self.spot_product_id)

    def reset(self) -> None:
        """Drop all run state (features, caches, positions, state machine)."""
        self._engines.clear()
        self._hot.clear()
        self._positions = PositionManager(self.intent_config)
        self._collisions = _CollisionTracker()
        self._state = INITIAL_STATE
        self._beta_warned = False
        self._events = 0
        self._intents = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle_event(
        self,
        event: UnifiedEvent,
        sink: Optional[Any] = None,
        ctx: Optional[PipelineContext] = None,
    ) -> PipelineOutput:
        """
        Process one normalized event to completion.

        Args:
            event: SpotTick or PmBook
            sink: Optional IntentSink receiving the output
            ctx: Run context forwarded to the sink

        Returns:
            PipelineOutput for this event.

        Raises:
            InvariantViolation: Position cap breached (fatal)
        """
        ctx = ctx or PipelineContext()
        if self.beta_blocked and not self._beta_warned:
            self._beta_warned = True
            logger.warning(
                "beta_zero_interlock",
                extra={"beta": self.beta, "mode": ctx.mode},
            )

        self._events += 1
        collision = self._collisions.observe(event.exchange_ts, event.kind)

        if event.kind == KIND_SPOT:
            output = self._handle_spot(event, collision)
        elif event.kind == KIND_PM_BOOK:
            output = self._handle_book(event, collision, ctx)
        else:
            raise TypeError(f"unsupported event type: {type(event).__name__}")

        if output.intent is not None:
            self._intents += 1

        if sink is not None:
            sink.handle(output, ctx)
        return output

    def apply_fill_event(self, fill: FillEvent) -> None:
        self._positions.apply_fill_event(fill)

    def apply_fail_event(self, fail: FailEvent) -> None:
        self._positions.apply_fail_event(fail)

    def apply_feedback(self, feedback: Iterable[Feedback]) -> int:
        """Apply execution feedback in order. Returns the number applied."""
        applied = 0
        for item in feedback:
            if isinstance(item, FillEvent):
                self._positions.apply_fill_event(item)
            else:
                self._positions.apply_fail_event(item)
            applied += 1
        return applied

    # ------------------------------------------------------------------
    # Spot path
    # ------------------------------------------------------------------

    def _handle_spot(self, event: SpotTick, collision: bool) -> PipelineOutput:
        if event.mid is None or event.mid <= 0:
            health = make_health_snapshot(
                self.health_config,
                exchange_ts=event.exchange_ts,
                ingest_ts=event.ingest_ts,
                features_ready=False,
            )
            self._advance(health)
            return PipelineOutput(
                event_kind=KIND_SPOT,
                exchange_ts=event.exchange_ts,
                state=self._state,
                ordering_collision=collision,
                collision_count=self._collisions.count,
                health=health,
                product_id=event.product_id,
            )

        self._hot.set_spot(
            SpotState(
                product_id=event.product_id,
                base_asset=event.base_asset,
                quote_asset=event.quote_asset,
                mid=event.mid,
                updated_at=event.exchange_ts,
            )
        )
        features = self.engine_for(event.product_id).update(event.mid, event.exchange_ts)

        health = make_health_snapshot(
            self.health_config,
            exchange_ts=event.exchange_ts,
            ingest_ts=event.ingest_ts,
            features_ready=features.ready,
            spot_age_ms=0,
        )
        self._advance(health)

        logger.debug(
            "features_updated",
            extra={
                "product_id": event.product_id,
                "state": self._state.value,
                "features": features.to_dict(),
            },
        )
        return PipelineOutput(
            event_kind=KIND_SPOT,
            exchange_ts=event.exchange_ts,
            state=self._state,
            features=features,
            ordering_collision=collision,
            collision_count=self._collisions.count,
            health=health,
            product_id=event.product_id,
        )

    # ------------------------------------------------------------------
    # Book path
    # ------------------------------------------------------------------

    def _handle_book(
        self,
        event: PmBook,
        collision: bool,
        ctx: PipelineContext,
    ) -> PipelineOutput:
        condition_id = event.condition_id or ctx.condition_id
        self._hot.set_book(
            event.asset_id,
            BookState(
                best_bid=event.best_bid,
                best_ask=event.best_ask,
                mid=event.mid,
                condition_id=condition_id,
                updated_at=event.exchange_ts,
            ),
        )

        product_id = self.paired_product(event.asset_id)
        spot = self._hot.get_spot(product_id)
        if spot is None or not spot.mid:
            health = make_health_snapshot(
                self.health_config,
                exchange_ts=event.exchange_ts,
                ingest_ts=event.ingest_ts,
                features_ready=False,
                pm_age_ms=0,
            )
            self._advance(health)
            return PipelineOutput(
                event_kind=KIND_PM_BOOK,
                exchange_ts=event.exchange_ts,
                state=self._state,
                ordering_collision=collision,
                collision_count=self._collisions.count,
                health=health,
                condition_id=condition_id,
                asset_id=event.asset_id,
                product_id=product_id,
            )

        engine = self.engine_for(product_id)
        features = engine.get_latest() or engine.update(spot.mid, event.exchange_ts)

        dislocation = None
        if event.mid is not None:
            dislocation = compute_dislocation(
                features,
                event.mid,
                self.beta,
                exchange_ts=event.exchange_ts,
                ingest_ts=event.ingest_ts,
            )

        book = self._hot.get_book(event.asset_id)
        spot_age_ms = max(0, event.exchange_ts - spot.updated_at)
        pm_age_ms = max(0, event.exchange_ts - book.updated_at) if book is not None else 0
        dt_ms = max(-1, event.exchange_ts - spot.updated_at)

        health = make_health_snapshot(
            self.health_config,
            exchange_ts=event.exchange_ts,
            ingest_ts=event.ingest_ts,
            features_ready=features.ready,
            spot_age_ms=spot_age_ms,
            pm_age_ms=pm_age_ms,
        )
        self._advance(health)

        intent = self._decide(event, condition_id, dislocation)

        logger.debug(
            "pm_event",
            extra={
                "asset_id": event.asset_id,
                "mid": event.mid,
                "best_bid": event.best_bid,
                "best_ask": event.best_ask,
                "exchange_ts": event.exchange_ts,
                "dislocation": dislocation.to_dict() if dislocation else None,
                "state": self._state.value,
            },
        )
        return PipelineOutput(
            event_kind=KIND_PM_BOOK,
            exchange_ts=event.exchange_ts,
            state=self._state,
            features=features,
            dislocation=dislocation,
            intent=intent,
            ordering_collision=collision,
            collision_count=self._collisions.count,
            dt_ms=dt_ms,
            health=health,
            condition_id=condition_id,
            asset_id=event.asset_id,
            product_id=product_id,
        )

    def _decide(
        self,
        event: PmBook,
        condition_id: Optional[str],
        dislocation: Optional[DislocationSignal],
    ) -> Optional[OrderIntent]:
        if self._state != TraderState.RUNNING:
            return None
        if event.best_bid is None or event.best_ask is None:
            return None

        intent = None
        if dislocation is not None:
            intent = self._positions.evaluate_entry(
                condition_id,
                event.asset_id,
                dislocation,
                best_bid=event.best_bid,
                best_ask=event.best_ask,
                now_ts=event.exchange_ts,
            )
        if intent is None:
            intent = self._positions.evaluate_unwind(
                condition_id,
                event.asset_id,
                best_bid=event.best_bid,
                best_ask=event.best_ask,
                now_ts=event.exchange_ts,
            )
        return intent

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _advance(self, health: HealthSnapshot) -> None:
        prev = self._state
        state = next_state(prev, health)
        if state == TraderState.RUNNING and self.beta_blocked:
            state = TraderState.WARMING
        self._state = state

        if prev != state:
            causes = health.causes()
            if self.beta_blocked:
                causes.append("betaBlocked")
            logger.info(
                "state_transition",
                extra={
                    "from": prev.value,
                    "to": state.value,
                    "causes": causes,
                    "exchange_ts": health.exchange_ts,
                    "ingest_ts": health.ingest_ts,
                    "latency_ms": health.latency_ms,
                    "collision_count": self._collisions.count,
                },
            )

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "events": self._events,
            "intents": self._intents,
            "collision_count": self._collisions.count,
            "engines": sorted(self._engines),
            "positions": self._positions.snapshot(),
        }
