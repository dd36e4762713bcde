"""
Canonical replay order.

    1. exchange_ts ascending
    2. kind priority: pmBook before spot
    3. arrival_ordinal ascending

Ordinals are assigned from ingestion order when missing, so chunked loads
of the same data always sort the same way.
"""

from typing import Iterable

from dislocator.types import KIND_PM_BOOK, KIND_SPOT, ReplayEvent

KIND_PRIORITY: dict[str, int] = {
    KIND_PM_BOOK: 0,
    KIND_SPOT: 1,
}

# Unknown kinds sort last
_UNKNOWN_PRIORITY = 99


def sort_key(event: ReplayEvent) -> tuple[int, int, int]:
    return (
        event.exchange_ts,
        KIND_PRIORITY.get(event.kind, _UNKNOWN_PRIORITY),
        event.arrival_ordinal if event.arrival_ordinal is not None else 0,
    )


def assign_ordinals(events: Iterable[ReplayEvent], start: int = 0) -> list[ReplayEvent]:
    """Fill in missing arrival ordinals as start + position."""
    result: list[ReplayEvent] = []
    for idx, ev in enumerate(events):
        if ev.arrival_ordinal is None:
            ev = ReplayEvent(event=ev.event, arrival_ordinal=start + idx)
        result.append(ev)
    return result


def sort_events(events: Iterable[ReplayEvent]) -> list[ReplayEvent]:
    """Return a new list in canonical order. The input is not modified."""
    return sorted(events, key=sort_key)
