"""
Metrics Collection Module
=========================

Feed quality metrics for the live runner:
- WebSocket connection status per feed
- Reconnect counts per feed
- Event counts per (feed, kind)
- Dropped (malformed) payloads per feed
- Lag percentiles (p50, p95) over a rolling window

Thread-safe for use across async tasks.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Optional

from dislocator.utils_time import now_ms

logger = logging.getLogger(__name__)

LAG_WINDOW_SECONDS = 60

# Lag sanity bounds (ms)
LAG_MIN_MS = -1000
LAG_MAX_MS = 60000


def _percentile(values_sorted: list[int], q: float) -> Optional[int]:
    if not values_sorted:
        return None
    n = len(values_sorted)
    return values_sorted[min(int(n * q), n - 1)]


class Metrics:
    """
    Central metrics for the live pipeline.

    Usage:
        metrics = Metrics()
        metrics.mark_connected("coinbase", True)
        metrics.observe_event("coinbase", "spot", lag_ms=150)
        snapshot = metrics.snapshot()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self._connected: dict[str, bool] = {}
        self._reconnects: dict[str, int] = defaultdict(int)
        self._events: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._dropped: dict[str, int] = defaultdict(int)

        # {feed: deque[(ts_sec, lag_ms)]}
        self._lag_window: dict[str, deque] = defaultdict(lambda: deque(maxlen=10000))

        self._start_time_ms = now_ms()

    def mark_connected(self, feed: str, connected: bool) -> None:
        with self._lock:
            self._connected[feed] = connected

    def inc_reconnect(self, feed: str) -> None:
        with self._lock:
            self._reconnects[feed] += 1

    def inc_dropped(self, feed: str) -> None:
        with self._lock:
            self._dropped[feed] += 1

    def observe_event(self, feed: str, kind: str, lag_ms: int) -> None:
        """
        Record an accepted event.

        Args:
            feed: Feed name ("coinbase", "polymarket")
            kind: Event kind ("spot", "pmBook")
            lag_ms: ingest_ts - exchange_ts
        """
        if lag_ms < LAG_MIN_MS or lag_ms > LAG_MAX_MS:
            logger.debug(
                "metrics_invalid_lag",
                extra={"feed": feed, "kind": kind, "lag_ms": lag_ms},
            )
            lag = None
        else:
            lag = lag_ms

        ts_sec = time.time()
        with self._lock:
            self._events[feed][kind] += 1
            if lag is not None:
                self._lag_window[feed].append((ts_sec, lag))

    def snapshot(self) -> dict:
        """Snapshot of all metrics."""
        current_time = time.time()
        current_time_ms = now_ms()
        cutoff = current_time - LAG_WINDOW_SECONDS

        with self._lock:
            lag_p50: dict[str, Optional[int]] = {}
            lag_p95: dict[str, Optional[int]] = {}
            for feed, window in self._lag_window.items():
                while window and window[0][0] < cutoff:
                    window.popleft()
                lags = sorted(entry[1] for entry in window)
                lag_p50[feed] = _percentile(lags, 0.50)
                lag_p95[feed] = _percentile(lags, 0.95)

            return {
                "server_time_ms": current_time_ms,
                "uptime_ms": current_time_ms - self._start_time_ms,
                "ws_connected": dict(self._connected),
                "reconnects_total": dict(self._reconnects),
                "events_total": {feed: dict(counts) for feed, counts in self._events.items()},
                "dropped_total": dict(self._dropped),
                "lag_p50_ms": lag_p50,
                "lag_p95_ms": lag_p95,
            }

    def get_short_summary(self) -> dict:
        """Minimal metrics for periodic logging."""
        snap = self.snapshot()
        return {
            "ws_connected": snap["ws_connected"],
            "reconnects": snap["reconnects_total"],
            "events": snap["events_total"],
            "dropped": snap["dropped_total"],
            "lag_p95_ms": snap["lag_p95_ms"],
        }
