"""Tests for the dislocation model."""

import math

import pytest

from dislocator.dislocation import build_design_vector, compute_dislocation, sigmoid
from dislocator.feature_engine import FeatureVector


def _flat_features(ts: int = 1_000) -> FeatureVector:
    return FeatureVector(ts=ts, x1=0.0, ema_fast=100.0, ema_slow=100.0, vol=0.0, spot=100.0)


class TestSigmoid:
    def test_midpoint(self) -> None:
        assert sigmoid(0.0) == 0.5

    def test_extremes_are_stable(self) -> None:
        assert sigmoid(1_000.0) == pytest.approx(1.0)
        assert sigmoid(-1_000.0) == pytest.approx(0.0)

    def test_symmetry(self) -> None:
        assert sigmoid(2.0) + sigmoid(-2.0) == pytest.approx(1.0)


class TestComputeDislocation:
    def test_flat_market_with_unit_beta(self) -> None:
        sig = compute_dislocation(_flat_features(), 0.53, [0.0, 1.0, 0.0, 0.0], exchange_ts=1_001, ingest_ts=1_003)
        assert sig is not None
        assert sig.expected_prob == 0.5
        assert sig.pm_mid == 0.53
        assert sig.delta_spd == pytest.approx(-0.03)
        assert sig.exchange_ts == 1_001
        assert sig.ingest_ts == 1_003

    def test_short_beta_pads_with_zero(self) -> None:
        sig = compute_dislocation(_flat_features(), 0.5, [1.0], exchange_ts=0, ingest_ts=0)
        assert sig.expected_prob == pytest.approx(sigmoid(1.0))

    def test_design_vector(self) -> None:
        fv = FeatureVector(ts=0, x1=0.01, ema_fast=101.0, ema_slow=100.0, vol=0.002)
        assert build_design_vector(fv) == [1.0, 0.01, 1.0, 0.002]

    def test_positive_momentum_raises_expected_prob(self) -> None:
        fv = FeatureVector(ts=0, x1=0.5, ema_fast=100.0, ema_slow=100.0, vol=0.0)
        sig = compute_dislocation(fv, 0.5, [0.0, 1.0, 0.0, 0.0], exchange_ts=0, ingest_ts=0)
        assert sig.delta_spd > 0

    @pytest.mark.parametrize("mid", [None, math.nan, math.inf])
    def test_unusable_mid(self, mid) -> None:
        assert compute_dislocation(_flat_features(), mid, [0.0, 1.0], exchange_ts=0, ingest_ts=0) is None

    def test_features_not_ready(self) -> None:
        assert compute_dislocation(FeatureVector(ts=0), 0.5, [0.0, 1.0], exchange_ts=0, ingest_ts=0) is None
