"""
Feature Engine
==============

Per-instrument rolling features computed from spot prices.

On each spot price:
    anchor   = oldest spot inside FEATURE_ANCHOR_MS
    ema_fast = EMA(spot), half-life FEATURE_EMA_FAST_MS
    ema_slow = EMA(spot), half-life FEATURE_EMA_SLOW_MS
    vol      = population std of ln(spot) inside FEATURE_VOL_MS
    x1       = ln(spot / anchor)

Only the unified consumer drives FeatureEngine, for live and replay alike,
so both paths see the same feature history.

Usage:
    engine = FeatureEngine(FeatureConfig())
    fv = engine.update(spot=100.0, exchange_ts=1000)
    fv.ready   # True once x1, ema_fast, ema_slow and vol are all present
"""

import math
from dataclasses import asdict, dataclass
from typing import Optional

from dislocator.config import FeatureConfig
from dislocator.rolling import RollingEMA, RollingWindowAnchor, RollingWindowStd


@dataclass(slots=True, frozen=True)
class FeatureVector:
    """
    Feature snapshot after a spot update.

    Attributes:
        x1: Log return from the anchor, ln(spot / anchor)
        ema_fast: Fast EMA of spot
        ema_slow: Slow EMA of spot
        vol: Rolling std of ln(spot)
        spot: Spot price that produced this vector
        ts: Exchange timestamp of that spot price
    """
    ts: int
    x1: Optional[float] = None
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    vol: Optional[float] = None
    spot: Optional[float] = None

    @property
    def ready(self) -> bool:
        return (
            self.x1 is not None
            and self.ema_fast is not None
            and self.ema_slow is not None
            and self.vol is not None
        )

    def to_dict(self) -> dict:
        return asdict(self)


class FeatureEngine:
    """
    Rolling feature state for one spot product.

    Args:
        config: Window / half-life configuration
    """

    def __init__(self, config: FeatureConfig) -> None:
        self.config = config
        self._anchor = RollingWindowAnchor(config.anchor_window_ms)
        self._ema_fast = RollingEMA(config.ema_fast_half_life_ms, config.expected_interval_ms)
        self._ema_slow = RollingEMA(config.ema_slow_half_life_ms, config.expected_interval_ms)
        self._vol = RollingWindowStd(config.vol_window_ms)
        self._latest: Optional[FeatureVector] = None
        self._updates = 0

    def update(self, spot: float, exchange_ts: int) -> FeatureVector:
        """
        Feed a spot price and return the new feature vector.

        Args:
            spot: Positive spot price
            exchange_ts: Exchange timestamp (ms)

        Returns:
            Latest FeatureVector (also cached for get_latest()).
        """
        anchor = self._anchor.update(spot, exchange_ts)
        ema_fast = self._ema_fast.update(spot)
        ema_slow = self._ema_slow.update(spot)
        vol = self._vol.update(math.log(spot), exchange_ts)

        x1 = math.log(spot / anchor) if anchor else None

        self._latest = FeatureVector(
            x1=x1,
            ema_fast=ema_fast,
            ema_slow=ema_slow,
            vol=vol,
            spot=spot,
            ts=exchange_ts,
        )
        self._updates += 1
        return self._latest

    def get_latest(self) -> Optional[FeatureVector]:
        """Cached vector from the last update, without updating."""
        return self._latest

    @property
    def updates(self) -> int:
        return self._updates
