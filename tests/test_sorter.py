"""Tests for canonical replay ordering."""

from dislocator.replay.sorter import KIND_PRIORITY, assign_ordinals, sort_events, sort_key
from dislocator.types import KIND_PM_BOOK, KIND_SPOT, ReplayEvent

from conftest import make_book, make_spot


class TestSortEvents:
    def test_exchange_ts_first(self) -> None:
        events = [ReplayEvent(make_spot(3_000), 0), ReplayEvent(make_spot(1_000), 1)]
        ordered = sort_events(events)
        assert [e.exchange_ts for e in ordered] == [1_000, 3_000]

    def test_book_before_spot_on_equal_ts(self) -> None:
        assert KIND_PRIORITY[KIND_PM_BOOK] < KIND_PRIORITY[KIND_SPOT]
        events = [ReplayEvent(make_spot(1_000), 0), ReplayEvent(make_book(1_000), 1)]
        ordered = sort_events(events)
        assert [e.kind for e in ordered] == [KIND_PM_BOOK, KIND_SPOT]

    def test_ordinal_breaks_ties(self) -> None:
        a = ReplayEvent(make_spot(1_000, 100.0), 7)
        b = ReplayEvent(make_spot(1_000, 101.0), 3)
        assert sort_events([a, b]) == [b, a]

    def test_input_not_modified(self) -> None:
        events = [ReplayEvent(make_spot(2_000), 0), ReplayEvent(make_spot(1_000), 1)]
        snapshot = list(events)
        sort_events(events)
        assert events == snapshot

    def test_sort_key(self) -> None:
        assert sort_key(ReplayEvent(make_book(5), 2)) == (5, 0, 2)


class TestAssignOrdinals:
    def test_missing_ordinals_follow_position(self) -> None:
        events = [ReplayEvent(make_spot(1_000)), ReplayEvent(make_spot(1_000))]
        assigned = assign_ordinals(events, start=10)
        assert [e.arrival_ordinal for e in assigned] == [10, 11]

    def test_existing_ordinals_kept(self) -> None:
        events = [ReplayEvent(make_spot(1_000), 42), ReplayEvent(make_spot(1_000))]
        assigned = assign_ordinals(events)
        assert [e.arrival_ordinal for e in assigned] == [42, 1]

    def test_stable_for_equal_keys(self) -> None:
        first = ReplayEvent(make_spot(1_000, 100.0))
        second = ReplayEvent(make_spot(1_000, 200.0))
        ordered = sort_events(assign_ordinals([first, second]))
        assert [e.event.mid for e in ordered] == [100.0, 200.0]
