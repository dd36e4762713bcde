"""Tests for run fingerprints."""

from dislocator.replay.fingerprint import (
    RunFingerprint,
    event_fingerprint,
    event_line,
    output_fingerprint,
    output_line,
)
from dislocator.replay.harness import ReplayHarness
from dislocator.replay.sorter import assign_ordinals, sort_events
from dislocator.types import ReplayEvent

from conftest import make_book, make_spot


def _events() -> list[ReplayEvent]:
    return [
        ReplayEvent(make_spot(1_000)),
        ReplayEvent(make_book(1_001)),
        ReplayEvent(make_spot(1_500, 100.2)),
        ReplayEvent(make_book(1_500, 0.50, 0.52)),
    ]


class TestLines:
    def test_event_line(self) -> None:
        assert event_line(ReplayEvent(make_book(5, ingest=7))) == "5:pmBook:0xcond:asset-up:7:"
        assert event_line(ReplayEvent(make_spot(5, ingest=6))) == "5:spot:::6:BTC-USD"

    def test_output_line(self, make_consumer) -> None:
        consumer = make_consumer()
        consumer.handle_event(make_spot(1_000))
        out = consumer.handle_event(make_book(1_001))
        line = output_line(out)
        parts = line.split("|")
        assert parts[:4] == ["1001", "0xcond", "asset-up", "RUNNING"]
        assert parts[4].startswith("-0.03")
        assert parts[5:7] == ["1", "0"]
        assert parts[7] == out.intent.intent_id


class TestFingerprints:
    def test_event_fingerprint_ignores_input_order(self) -> None:
        events = _events()
        assert event_fingerprint(events) == event_fingerprint(list(reversed(events)))
        ordered = sort_events(assign_ordinals(events))
        assert event_fingerprint(ordered) == event_fingerprint(events)

    def test_output_fingerprint_signals_only(self, make_consumer) -> None:
        consumer = make_consumer()
        outputs = [consumer.handle_event(e.event) for e in _events()]
        with_spots = output_fingerprint(outputs, signals_only=False)
        assert output_fingerprint(outputs) != with_spots
        assert output_fingerprint(outputs) == output_fingerprint([o for o in outputs if o.dislocation])

    def test_incremental_matches_batch(self, make_consumer) -> None:
        fingerprint = RunFingerprint()
        harness = ReplayHarness(make_consumer(), fingerprint=fingerprint)
        events = _events()
        outputs = harness.replay(events[:2]) + harness.replay(events[2:])

        assert fingerprint.events == event_fingerprint(events)
        assert fingerprint.outputs == output_fingerprint(outputs)
