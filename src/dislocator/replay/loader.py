"""
Replay Loader
=============

Reads recorded events for replay.

Supported inputs:
    *.jsonl  - one serialized event per line (EventRecorder output)
    *.json   - a JSON array of serialized events
    directory - every *.jsonl / *.json file inside, in name order

Malformed lines and events are DataErrors: logged, counted and skipped.
Arrival ordinals follow the order events are read, across files, unless
a line already carries arrivalOrdinal.

Recordings are only in best-effort arrival order (the spot and market
feeds skew against each other), so iter_chunks() puts the whole input in
canonical order before splitting it. Chunks are therefore monotonic in
exchange_ts across chunk boundaries, whatever the chunk size.

Usage:
    stats = LoadStats()
    for chunk in iter_chunks(["data/recordings"], chunk_size=50_000, stats=stats):
        harness.replay(chunk)
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

import orjson

from dislocator.errors import DataError
from dislocator.replay.sorter import sort_events
from dislocator.types import ReplayEvent, replay_event_from_dict

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_CHUNK_SIZE = 50_000


@dataclass(slots=True)
class LoadStats:
    files: int = 0
    lines: int = 0
    events: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def expand_paths(paths: Iterable[PathLike]) -> list[Path]:
    """Resolve files and directories into an ordered list of event files."""
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                sorted(p for p in path.iterdir() if p.suffix in (".jsonl", ".json") and p.is_file())
            )
        elif path.is_file():
            files.append(path)
        else:
            raise FileNotFoundError(f"replay input not found: {path}")
    return files


def _decode(payload, source: str, stats: LoadStats) -> Optional[ReplayEvent]:
    try:
        event = replay_event_from_dict(payload)
    except DataError as e:
        stats.dropped += 1
        logger.warning(
            "data_error_dropped",
            extra={"source": source, "error": str(e)},
        )
        return None
    stats.events += 1
    return event


def _iter_file(path: Path, stats: LoadStats) -> Iterator[ReplayEvent]:
    stats.files += 1
    source = str(path)

    if path.suffix == ".json":
        try:
            payload = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise DataError(f"{path} is not valid JSON: {e}") from e
        if not isinstance(payload, list):
            raise DataError(f"{path} is not a JSON array of events")
        for item in payload:
            stats.lines += 1
            event = _decode(item, source, stats)
            if event is not None:
                yield event
        return

    with open(path, "rb") as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            stats.lines += 1
            try:
                payload = orjson.loads(line)
            except orjson.JSONDecodeError as e:
                stats.dropped += 1
                logger.warning(
                    "data_error_dropped",
                    extra={"source": source, "line": line_no, "error": str(e)},
                )
                continue
            event = _decode(payload, source, stats)
            if event is not None:
                yield event


def iter_events(paths: Iterable[PathLike], stats: Optional[LoadStats] = None) -> Iterator[ReplayEvent]:
    """Yield events from every input file, assigning arrival ordinals as read."""
    stats = stats if stats is not None else LoadStats()
    ordinal = 0
    for path in expand_paths(paths):
        for event in _iter_file(path, stats):
            if event.arrival_ordinal is None:
                event = ReplayEvent(event=event.event, arrival_ordinal=ordinal)
            ordinal = max(ordinal, event.arrival_ordinal) + 1
            yield event


def iter_chunks(
    paths: Iterable[PathLike],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    stats: Optional[LoadStats] = None,
) -> Iterator[list[ReplayEvent]]:
    """
    Yield canonically ordered lists of at most chunk_size events.

    The full input is loaded and sorted first; chunking only bounds how
    much work the harness does between sink flushes.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    ordered = sort_events(iter_events(paths, stats))
    for start in range(0, len(ordered), chunk_size):
        yield ordered[start:start + chunk_size]


def load_events(paths: Iterable[PathLike], stats: Optional[LoadStats] = None) -> list[ReplayEvent]:
    """Load every event into memory."""
    return list(iter_events(paths, stats))
