"""
Rolling Statistics
==================

Streaming primitives used by the feature engine.

    RollingEMA          - half-life EMA with a fixed alpha
    RollingWindowAnchor - oldest sample still inside a time window
    RollingWindowStd    - population std of samples inside a time window

The EMA alpha is derived from the half-life assuming a roughly regular
update interval:

    alpha = 1 - exp(-ln(2) / half_life_ms * expected_interval_ms)

No timestamp-aware re-weighting is done, so identical inputs always give
identical outputs regardless of wall-clock timing.

Window eviction: a sample (ts, v) is dropped once ts < now - window_ms,
where now is the timestamp of the latest update.
"""

import math
from collections import deque
from typing import Optional


class RollingEMA:
    """
    Exponential moving average with half-life parameterisation.

    Args:
        half_life_ms: Half-life in milliseconds
        expected_interval_ms: Expected spacing between updates
    """

    def __init__(self, half_life_ms: float, expected_interval_ms: float) -> None:
        if half_life_ms <= 0:
            raise ValueError("half_life_ms must be positive")
        lam = math.log(2.0) / half_life_ms
        self.alpha = 1.0 - math.exp(-lam * expected_interval_ms)
        self._current: Optional[float] = None

    def update(self, value: float) -> float:
        # First update seeds the average
        if self._current is None:
            self._current = float(value)
        else:
            self._current = self.alpha * float(value) + (1.0 - self.alpha) * self._current
        return self._current

    def get(self) -> Optional[float]:
        return self._current


class _TimeWindow:
    """FIFO of (ts, value) samples with time-based eviction."""

    def __init__(self, window_ms: int) -> None:
        self.window_ms = window_ms
        self._samples: deque[tuple[int, float]] = deque()

    def _push(self, value: float, ts: int) -> None:
        self._samples.append((ts, float(value)))
        cutoff = ts - self.window_ms
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def __len__(self) -> int:
        return len(self._samples)


class RollingWindowAnchor(_TimeWindow):
    """
    Oldest sample still inside the window.

    The anchor is the reference price for the log-return feature.
    """

    def update(self, value: float, ts: int) -> Optional[float]:
        """
        Append a sample, evict expired ones and return the anchor.

        Returns:
            Oldest in-window value, or None if the window is empty.
        """
        self._push(value, ts)
        return self.get()

    def get(self) -> Optional[float]:
        if not self._samples:
            return None
        return self._samples[0][1]

    def expire(self, now_ts: int) -> Optional[float]:
        """Evict samples older than now_ts - window without adding one."""
        cutoff = now_ts - self.window_ms
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()
        return self.get()


class RollingWindowStd(_TimeWindow):
    """Population standard deviation over a sliding time window."""

    def update(self, value: float, ts: int) -> float:
        self._push(value, ts)
        return self.get()

    def get(self) -> float:
        n = len(self._samples)
        if n == 0:
            return 0.0
        mean = sum(v for _, v in self._samples) / n
        variance = sum((v - mean) ** 2 for _, v in self._samples) / n
        return math.sqrt(variance)
