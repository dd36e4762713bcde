"""
Dislocation Model
=================

Turns a feature vector into an expected probability for the outcome and
compares it with the market-implied probability (book mid).

Model:
    x = [1, x1, ema_fast - ema_slow, vol]
    z = sum(beta[i] * x[i])            # missing coefficients count as 0
    expected_prob = sigmoid(z) = 1 / (1 + exp(-z))
    delta_spd = expected_prob - pm_mid

Positive delta_spd means the market underprices the outcome relative to
the model; negative means it is overpriced.

Usage:
    from dislocator.dislocation import compute_dislocation

    sig = compute_dislocation(features, pm_mid=0.53, beta=[0, 1, 0, 0],
                              exchange_ts=1001, ingest_ts=1003)
    sig.delta_spd   # ~ -0.03 when x1 ~ 0
"""

import math
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

from dislocator.feature_engine import FeatureVector

BetaParams = Sequence[float]


@dataclass(slots=True, frozen=True)
class DislocationSignal:
    """Model vs market probability for one book update."""
    expected_prob: float
    pm_mid: float
    delta_spd: float
    exchange_ts: int
    ingest_ts: int

    def to_dict(self) -> dict:
        return asdict(self)


def sigmoid(z: float) -> float:
    """
    Logistic function, stable for large |z|.

    Example:
        >>> sigmoid(0.0)
        0.5
    """
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def build_design_vector(features: FeatureVector) -> Optional[list[float]]:
    """[1, x1, ema_fast - ema_slow, vol], or None if any input is missing."""
    if not features.ready:
        return None
    return [1.0, features.x1, features.ema_fast - features.ema_slow, features.vol]


def compute_dislocation(
    features: FeatureVector,
    pm_mid: Optional[float],
    beta: BetaParams,
    exchange_ts: int,
    ingest_ts: int,
) -> Optional[DislocationSignal]:
    """
    Compute the dislocation signal.

    Args:
        features: Latest feature vector for the paired spot product
        pm_mid: Book mid (market-implied probability)
        beta: Coefficients for [1, x1, ema_fast - ema_slow, vol]
        exchange_ts: Exchange timestamp of the book event
        ingest_ts: Ingest timestamp of the book event

    Returns:
        DislocationSignal, or None if pm_mid is not finite or the feature
        vector is not ready.
    """
    if pm_mid is None or not math.isfinite(pm_mid):
        return None

    x = build_design_vector(features)
    if x is None:
        return None

    z = 0.0
    for i, xi in enumerate(x):
        coef = beta[i] if i < len(beta) else 0.0
        z += coef * xi

    expected_prob = sigmoid(z)
    return DislocationSignal(
        expected_prob=expected_prob,
        pm_mid=pm_mid,
        delta_spd=expected_prob - pm_mid,
        exchange_ts=exchange_ts,
        ingest_ts=ingest_ts,
    )
