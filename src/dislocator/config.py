"""
Configuration Module
====================

Application configuration using pydantic-settings.
All settings can be overridden via environment variables (or a .env file).

Model / decision settings:
    FEATURE_ANCHOR_MS       - Anchor window for the log-return feature
    FEATURE_EMA_FAST_MS     - Fast EMA half-life
    FEATURE_EMA_SLOW_MS     - Slow EMA half-life
    FEATURE_VOL_MS          - Rolling std window (on ln(spot))
    FEATURE_INTERVAL_MS     - Expected spacing between spot ticks (EMA alpha)
    HEALTH_MAX_LATENCY_MS   - Max ingest - exchange latency
    HEALTH_MAX_STALE_MS     - Max age of spot / book state
    BETA_PARAMS             - Comma separated coefficients b0,b1,b2,b3
    ALLOW_ZERO_BETA         - Allow RUNNING with an all-zero beta vector
    INTENT_DELTA_THRESHOLD  - Min |expected - market| to enter
    INTENT_INVENTORY_CAP    - Max |inventory| and |pending| per instrument
    INTENT_ORDER_SIZE       - Entry order size
    UNWIND_START_FRAC       - Exposure fraction of cap that starts unwinding
    UNWIND_AGGRESSIVE_FRAC  - Exposure fraction of cap that doubles unwind size
    UNWIND_MIN_EDGE_TICKS   - Min edge (ticks) of unwind price vs the touch
    UNWIND_COOLDOWN_MS      - Min time between unwind intents per instrument
    UNWIND_TICK_SIZE        - Price tick

Production notes:
    - Leaving BETA_PARAMS empty keeps the trader out of RUNNING unless
      ALLOW_ZERO_BETA=true.
    - Ensure NTP is synchronized on the host; latency gating compares
      exchange time with local receipt time.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True, slots=True)
class FeatureConfig:
    """Rolling feature windows (milliseconds)."""
    anchor_window_ms: int = 60_000
    ema_fast_half_life_ms: int = 10_000
    ema_slow_half_life_ms: int = 60_000
    vol_window_ms: int = 120_000
    expected_interval_ms: int = 1_000


@dataclass(frozen=True, slots=True)
class HealthConfig:
    """Freshness / latency limits for the health gate."""
    max_latency_ms: int = 1_500
    max_stale_ms: int = 5_000


@dataclass(frozen=True, slots=True)
class IntentConfig:
    """Position manager parameters."""
    delta_threshold: float = 0.02
    inventory_cap: float = 100.0
    order_size: float = 5.0
    unwind_start_frac: float = 0.5
    unwind_aggressive_frac: float = 0.8
    unwind_min_edge_ticks: int = 1
    unwind_cooldown_ms: int = 2_000
    tick_size: float = 0.01


@dataclass(frozen=True, slots=True)
class SimConfig:
    """Simulated execution parameters for backtests."""
    latency_min_ms: int = 200
    latency_max_ms: int = 1_200
    fail_prob: float = 0.01
    fee_bps: float = 0.0
    seed: int = 0


def parse_beta_params(raw: str) -> list[float]:
    """
    Parse a comma separated coefficient list.

    Entries that are empty or not finite numbers are dropped.

    Example:
        >>> parse_beta_params("0, 1.5,abc,")
        [0.0, 1.5]
    """
    values: list[float] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            value = float(part)
        except ValueError:
            continue
        if not math.isfinite(value):
            continue
        values.append(value)
    return values


def beta_is_zero(beta: list[float]) -> bool:
    """True when the beta vector is empty or all coefficients are zero."""
    return len(beta) == 0 or all(b == 0 for b in beta)


class Settings(BaseSettings):
    """
    Application settings.

    All fields can be configured via environment variables.
    Example: BETA_PARAMS=0,4.2,0,0 python -m dislocator
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Feature engine
    FEATURE_ANCHOR_MS: int = Field(default=60_000, ge=1, description="Anchor window (ms)")
    FEATURE_EMA_FAST_MS: int = Field(default=10_000, ge=1, description="Fast EMA half-life (ms)")
    FEATURE_EMA_SLOW_MS: int = Field(default=60_000, ge=1, description="Slow EMA half-life (ms)")
    FEATURE_VOL_MS: int = Field(default=120_000, ge=1, description="Rolling std window (ms)")
    FEATURE_INTERVAL_MS: int = Field(default=1_000, ge=1, description="Expected tick spacing (ms)")

    # Health gate
    HEALTH_MAX_LATENCY_MS: int = Field(default=1_500, ge=0, description="Max ingest latency (ms)")
    HEALTH_MAX_STALE_MS: int = Field(default=5_000, ge=0, description="Max state age (ms)")

    # Model
    BETA_PARAMS: str = Field(
        default="",
        description="Comma separated coefficients applied to [1, x1, emaFast-emaSlow, vol]",
    )
    ALLOW_ZERO_BETA: bool = Field(
        default=False,
        description="Allow RUNNING state with an all-zero beta vector",
    )

    # Position / intent manager
    INTENT_DELTA_THRESHOLD: float = Field(default=0.02, ge=0.0, le=1.0)
    INTENT_INVENTORY_CAP: float = Field(default=100.0, gt=0.0)
    INTENT_ORDER_SIZE: float = Field(default=5.0, gt=0.0)
    UNWIND_START_FRAC: float = Field(default=0.5, ge=0.0, le=1.0)
    UNWIND_AGGRESSIVE_FRAC: float = Field(default=0.8, ge=0.0, le=1.0)
    UNWIND_MIN_EDGE_TICKS: int = Field(default=1, ge=0)
    UNWIND_COOLDOWN_MS: int = Field(default=2_000, ge=0)
    UNWIND_TICK_SIZE: float = Field(default=0.01, gt=0.0, le=0.5)

    # Feed pairing and endpoints
    SPOT_PRODUCT_ID: str = Field(
        default="BTC-USD",
        description="Spot product paired with prediction-market books",
    )
    COINBASE_WS_URL: str = Field(
        default="wss://ws-feed.exchange.coinbase.com",
        description="Coinbase Exchange WebSocket URL",
    )
    POLYMARKET_WS_URL: str = Field(
        default="wss://ws-subscriptions-clob.polymarket.com/ws/market",
        description="Polymarket CLOB market WebSocket URL",
    )
    POLYMARKET_GAMMA_API: str = Field(
        default="https://gamma-api.polymarket.com",
        description="Polymarket Gamma API URL for market discovery",
    )
    CATALOG_ASSET: str = Field(default="btc", description="Asset prefix of the up/down market slugs")
    CATALOG_REFRESH_SEC: float = Field(default=60.0, ge=5.0)
    CATALOG_WINDOWS_AHEAD: int = Field(default=2, ge=1, le=8)

    # Persistence / recording
    SIGNALS_DIR: str = Field(default="data/signals", description="JSONL signal store directory")
    FLUSH_INTERVAL_SEC: float = Field(default=5.0, ge=0.5)
    RECORD_ENABLED: bool = Field(default=False, description="Record live events for replay")
    RECORD_DIR: str = Field(default="data/recordings")
    FEATURES_VERSION: str = Field(default="v0")
    BETA_VERSION: str = Field(default="v0")

    # Simulated execution (backtest)
    SIM_LATENCY_MIN_MS: int = Field(default=200, ge=0)
    SIM_LATENCY_MAX_MS: int = Field(default=1_200, ge=0)
    SIM_FAIL_PROB: float = Field(default=0.01, ge=0.0, le=1.0)
    SIM_FEE_BPS: float = Field(default=0.0, ge=0.0)
    SIM_SEED: int = Field(default=0)

    @model_validator(mode="after")
    def validate_and_warn(self) -> "Settings":
        """Validate cross-field constraints and warn about risky setups."""
        logger = logging.getLogger(__name__)

        if self.SIM_LATENCY_MAX_MS < self.SIM_LATENCY_MIN_MS:
            raise ValueError("SIM_LATENCY_MAX_MS must be >= SIM_LATENCY_MIN_MS")

        if self.UNWIND_AGGRESSIVE_FRAC < self.UNWIND_START_FRAC:
            logger.warning(
                "config_unwind_fracs_inverted: UNWIND_AGGRESSIVE_FRAC < UNWIND_START_FRAC, "
                "every unwind will use the doubled size"
            )

        if beta_is_zero(self.beta_params) and not self.ALLOW_ZERO_BETA:
            logger.warning(
                "config_beta_zero: BETA_PARAMS not set or zero; trader will stay out of RUNNING. "
                "Set ALLOW_ZERO_BETA=true to override."
            )

        return self

    @property
    def beta_params(self) -> list[float]:
        """Parsed BETA_PARAMS."""
        return parse_beta_params(self.BETA_PARAMS)

    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            anchor_window_ms=self.FEATURE_ANCHOR_MS,
            ema_fast_half_life_ms=self.FEATURE_EMA_FAST_MS,
            ema_slow_half_life_ms=self.FEATURE_EMA_SLOW_MS,
            vol_window_ms=self.FEATURE_VOL_MS,
            expected_interval_ms=self.FEATURE_INTERVAL_MS,
        )

    def health_config(self) -> HealthConfig:
        return HealthConfig(
            max_latency_ms=self.HEALTH_MAX_LATENCY_MS,
            max_stale_ms=self.HEALTH_MAX_STALE_MS,
        )

    def intent_config(self) -> IntentConfig:
        return IntentConfig(
            delta_threshold=self.INTENT_DELTA_THRESHOLD,
            inventory_cap=self.INTENT_INVENTORY_CAP,
            order_size=self.INTENT_ORDER_SIZE,
            unwind_start_frac=self.UNWIND_START_FRAC,
            unwind_aggressive_frac=self.UNWIND_AGGRESSIVE_FRAC,
            unwind_min_edge_ticks=self.UNWIND_MIN_EDGE_TICKS,
            unwind_cooldown_ms=self.UNWIND_COOLDOWN_MS,
            tick_size=self.UNWIND_TICK_SIZE,
        )

    def sim_config(self) -> SimConfig:
        return SimConfig(
            latency_min_ms=self.SIM_LATENCY_MIN_MS,
            latency_max_ms=self.SIM_LATENCY_MAX_MS,
            fail_prob=self.SIM_FAIL_PROB,
            fee_bps=self.SIM_FEE_BPS,
            seed=self.SIM_SEED,
        )

    def dump(self) -> dict:
        """
        Dump current configuration as dictionary.
        Useful for logging configuration at startup.

        Returns:
            Dictionary with all configuration values.
        """
        return {
            "log_level": self.LOG_LEVEL,
            "feature_anchor_ms": self.FEATURE_ANCHOR_MS,
            "feature_ema_fast_ms": self.FEATURE_EMA_FAST_MS,
            "feature_ema_slow_ms": self.FEATURE_EMA_SLOW_MS,
            "feature_vol_ms": self.FEATURE_VOL_MS,
            "feature_interval_ms": self.FEATURE_INTERVAL_MS,
            "health_max_latency_ms": self.HEALTH_MAX_LATENCY_MS,
            "health_max_stale_ms": self.HEALTH_MAX_STALE_MS,
            "beta_params": self.beta_params,
            "allow_zero_beta": self.ALLOW_ZERO_BETA,
            "intent_delta_threshold": self.INTENT_DELTA_THRESHOLD,
            "intent_inventory_cap": self.INTENT_INVENTORY_CAP,
            "intent_order_size": self.INTENT_ORDER_SIZE,
            "unwind_start_frac": self.UNWIND_START_FRAC,
            "unwind_aggressive_frac": self.UNWIND_AGGRESSIVE_FRAC,
            "unwind_min_edge_ticks": self.UNWIND_MIN_EDGE_TICKS,
            "unwind_cooldown_ms": self.UNWIND_COOLDOWN_MS,
            "unwind_tick_size": self.UNWIND_TICK_SIZE,
            "spot_product_id": self.SPOT_PRODUCT_ID,
            "signals_dir": self.SIGNALS_DIR,
            "record_enabled": self.RECORD_ENABLED,
            "record_dir": self.RECORD_DIR,
            "features_version": self.FEATURES_VERSION,
            "beta_version": self.BETA_VERSION,
        }


def load_settings(**overrides) -> Settings:
    """Build a Settings instance (environment + explicit overrides)."""
    return Settings(**overrides)
