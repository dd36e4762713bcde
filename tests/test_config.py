"""Tests for configuration parsing."""

import pytest

from dislocator.config import IntentConfig, Settings, beta_is_zero, parse_beta_params


class TestBetaParams:
    def test_parse(self) -> None:
        assert parse_beta_params("0, 1.5,abc,") == [0.0, 1.5]
        assert parse_beta_params("") == []
        assert parse_beta_params("1,inf,nan,2") == [1.0, 2.0]
        assert parse_beta_params("-inf, -0.5, +inf, NaN") == [-0.5]

    def test_zero_detection(self) -> None:
        assert beta_is_zero([])
        assert beta_is_zero([0.0, 0.0])
        assert not beta_is_zero([0.0, 1.0])


class TestSettings:
    def test_defaults(self, monkeypatch) -> None:
        monkeypatch.delenv("BETA_PARAMS", raising=False)
        settings = Settings(_env_file=None)
        assert settings.beta_params == []
        assert settings.SPOT_PRODUCT_ID == "BTC-USD"
        assert settings.intent_config() == IntentConfig()

    def test_environment_override(self, monkeypatch) -> None:
        monkeypatch.setenv("BETA_PARAMS", "0,4.2,0,0")
        monkeypatch.setenv("INTENT_INVENTORY_CAP", "25")
        settings = Settings(_env_file=None)
        assert settings.beta_params == [0.0, 4.2, 0.0, 0.0]
        assert settings.intent_config().inventory_cap == 25.0

    def test_derived_configs(self) -> None:
        settings = Settings(
            _env_file=None,
            FEATURE_ANCHOR_MS=30_000,
            HEALTH_MAX_STALE_MS=2_000,
            SIM_SEED=9,
            SIM_FEE_BPS=5,
        )
        assert settings.feature_config().anchor_window_ms == 30_000
        assert settings.health_config().max_stale_ms == 2_000
        sim = settings.sim_config()
        assert sim.seed == 9
        assert sim.fee_bps == 5

    def test_latency_bounds_validated(self) -> None:
        with pytest.raises(ValueError):
            Settings(_env_file=None, SIM_LATENCY_MIN_MS=500, SIM_LATENCY_MAX_MS=100)

    def test_dump(self) -> None:
        dump = Settings(_env_file=None, BETA_PARAMS="1,2").dump()
        assert dump["beta_params"] == [1.0, 2.0]
        assert "spot_product_id" in dump
