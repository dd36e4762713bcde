"""Shared fixtures and event builders."""

from typing import Callable, Optional

import pytest

from dislocator.config import FeatureConfig, HealthConfig, IntentConfig
from dislocator.consumer import UnifiedEventConsumer
from dislocator.types import PmBook, SpotTick


def make_spot(ts: int, mid: Optional[float] = 100.0, ingest: Optional[int] = None, product_id: str = "BTC-USD") -> SpotTick:
    return SpotTick(
        product_id=product_id,
        base_asset="BTC",
        quote_asset="USD",
        mid=mid,
        exchange_ts=ts,
        ingest_ts=ingest if ingest is not None else ts + 2,
    )


def make_book(
    ts: int,
    bid: Optional[float] = 0.52,
    ask: Optional[float] = 0.54,
    asset_id: str = "asset-up",
    condition_id: Optional[str] = "0xcond",
    ingest: Optional[int] = None,
) -> PmBook:
    mid = (bid + ask) / 2 if bid is not None and ask is not None else None
    return PmBook(
        asset_id=asset_id,
        condition_id=condition_id,
        best_bid=bid,
        best_ask=ask,
        mid=mid,
        exchange_ts=ts,
        ingest_ts=ingest if ingest is not None else ts + 2,
    )


@pytest.fixture
def spot() -> Callable[..., SpotTick]:
    return make_spot


@pytest.fixture
def book() -> Callable[..., PmBook]:
    return make_book


@pytest.fixture
def intent_config() -> IntentConfig:
    return IntentConfig(
        delta_threshold=0.01,
        inventory_cap=10.0,
        order_size=5.0,
        unwind_start_frac=0.5,
        unwind_aggressive_frac=0.8,
        unwind_min_edge_ticks=1,
        unwind_cooldown_ms=1_000,
        tick_size=0.01,
    )


@pytest.fixture
def make_consumer() -> Callable[..., UnifiedEventConsumer]:
    def _make(
        beta=(0.0, 1.0, 0.0, 0.0),
        allow_zero_beta: bool = False,
        intent_config: Optional[IntentConfig] = None,
        asset_products: Optional[dict[str, str]] = None,
    ) -> UnifiedEventConsumer:
        return UnifiedEventConsumer(
            feature_config=FeatureConfig(),
            health_config=HealthConfig(),
            intent_config=intent_config or IntentConfig(delta_threshold=0.01),
            beta=list(beta),
            allow_zero_beta=allow_zero_beta,
            asset_products=asset_products,
        )

    return _make
