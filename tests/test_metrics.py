"""Tests for feed metrics."""

from dislocator.metrics import Metrics


class TestMetrics:
    def test_counts(self) -> None:
        metrics = Metrics()
        metrics.mark_connected("coinbase", True)
        metrics.mark_connected("polymarket", False)
        metrics.inc_reconnect("polymarket")
        metrics.inc_dropped("coinbase")
        metrics.observe_event("coinbase", "spot", lag_ms=20)
        metrics.observe_event("coinbase", "spot", lag_ms=30)
        metrics.observe_event("polymarket", "pmBook", lag_ms=40)

        snap = metrics.snapshot()
        assert snap["ws_connected"] == {"coinbase": True, "polymarket": False}
        assert snap["reconnects_total"] == {"polymarket": 1}
        assert snap["dropped_total"] == {"coinbase": 1}
        assert snap["events_total"] == {"coinbase": {"spot": 2}, "polymarket": {"pmBook": 1}}
        assert snap["uptime_ms"] >= 0

    def test_out_of_range_lag_counted_but_not_sampled(self) -> None:
        metrics = Metrics()
        metrics.observe_event("coinbase", "spot", lag_ms=120_000)
        metrics.observe_event("coinbase", "spot", lag_ms=-5_000)

        snap = metrics.snapshot()
        assert snap["events_total"]["coinbase"]["spot"] == 2
        assert snap["lag_p50_ms"] == {}

    def test_percentiles(self) -> None:
        metrics = Metrics()
        for lag in range(1, 101):
            metrics.observe_event("coinbase", "spot", lag_ms=lag)

        snap = metrics.snapshot()
        assert snap["lag_p50_ms"]["coinbase"] == 51
        assert snap["lag_p95_ms"]["coinbase"] == 96

    def test_short_summary(self) -> None:
        metrics = Metrics()
        metrics.observe_event("coinbase", "spot", lag_ms=5)
        summary = metrics.get_short_summary()
        assert set(summary) == {"ws_connected", "reconnects", "events", "dropped", "lag_p95_ms"}
        assert summary["lag_p95_ms"] == {"coinbase": 5}
