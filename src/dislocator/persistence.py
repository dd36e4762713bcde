"""
Signal Persistence
==================

Best-effort, idempotent batch storage for dislocation signals and
simulated trades.

Stores implement the SignalStore protocol:
    await store.insert_signals(run_id, rows)
    await store.insert_simulated_trades(run_id, rows)

Both return the number of rows actually inserted. Rows whose key has been
seen before are skipped, so retrying a batch after a partial failure is
safe.

Row keys:
    signal: run_id|condition_id|asset_id|exchange_ts
    trade:  run_id|intent_id|timestamp

JsonlSignalStore writes two JSONL streams (signals_*.jsonl and
trades_*.jsonl) under one directory, rotated by date and size. File I/O is
blocking and runs in a worker thread; callers never await it on the
decision path.

Usage:
    store = JsonlSignalStore("data/signals")
    await store.insert_signals(run_id, rows)
    store.close()
"""

import asyncio
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

import orjson

logger = logging.getLogger(__name__)


def signal_key(run_id: str, row: dict) -> str:
    return f"{run_id}|{row.get('condition_id') or 'unknown'}|{row.get('asset_id') or 'unknown'}|{row.get('exchange_ts')}"


def trade_key(run_id: str, row: dict) -> str:
    return f"{run_id}|{row.get('intent_id')}|{row.get('timestamp')}"


class SignalStore(Protocol):
    async def insert_signals(self, run_id: str, rows: list[dict]) -> int: ...

    async def insert_simulated_trades(self, run_id: str, rows: list[dict]) -> int: ...


class InMemorySignalStore:
    """Idempotent in-process store (tests, dry runs)."""

    def __init__(self) -> None:
        self.signals: list[dict] = []
        self.trades: list[dict] = []
        self._keys: set[str] = set()

    def _insert(self, target: list[dict], keyed: Iterable[tuple[str, dict]]) -> int:
        inserted = 0
        for key, row in keyed:
            if key in self._keys:
                continue
            self._keys.add(key)
            target.append({"key": key, **row})
            inserted += 1
        return inserted

    async def insert_signals(self, run_id: str, rows: list[dict]) -> int:
        return self._insert(self.signals, ((signal_key(run_id, r), r) for r in rows))

    async def insert_simulated_trades(self, run_id: str, rows: list[dict]) -> int:
        return self._insert(self.trades, ((trade_key(run_id, r), r) for r in rows))


class _JsonlStream:
    """
    One rotating JSONL stream.

    Thread Safety:
        All methods are thread-safe via internal lock.
    """

    def __init__(self, output_dir: Path, prefix: str, max_file_size_bytes: int) -> None:
        self.output_dir = output_dir
        self.prefix = prefix
        self.max_file_size_bytes = max_file_size_bytes

        self._lock = threading.Lock()
        self._handle: Optional[Any] = None
        self._current_file: Optional[Path] = None
        self._current_date: Optional[str] = None
        self._current_size = 0
        self._part = 1
        self._keys: set[str] = self._load_keys()

        self.total_written = 0
        self.total_skipped = 0

    def _load_keys(self) -> set[str]:
        keys: set[str] = set()
        for path in sorted(self.output_dir.glob(f"{self.prefix}_*.jsonl")):
            with open(path, "rb") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        key = orjson.loads(line).get("key")
                    except orjson.JSONDecodeError:
                        continue
                    if key:
                        keys.add(key)
        return keys

    def write_rows(self, keyed_rows: list[tuple[str, dict]]) -> int:
        with self._lock:
            date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            if self._handle is None or self._current_date != date_str:
                self._part = 1
                self._open_locked(date_str)

            written = 0
            for key, row in keyed_rows:
                if key in self._keys:
                    self.total_skipped += 1
                    continue
                line = orjson.dumps({"key": key, **row}) + b"\n"
                if self._current_size + len(line) > self.max_file_size_bytes and self._current_size > 0:
                    self._part += 1
                    self._open_locked(date_str)
                self._handle.write(line)
                self._current_size += len(line)
                self._keys.add(key)
                written += 1

            self._handle.flush()
            os.fsync(self._handle.fileno())
            self.total_written += written
            return written

    def _open_locked(self, date_str: str) -> None:
        if self._handle is not None:
            self._handle.close()
            logger.info(
                "store_file_rotated",
                extra={"file": str(self._current_file), "size_kb": round(self._current_size / 1024, 1)},
            )

        suffix = f"_part{self._part}" if self._part > 1 else ""
        self._current_file = self.output_dir / f"{self.prefix}_{date_str}{suffix}.jsonl"
        self._current_date = date_str
        self._handle = open(self._current_file, "ab")
        self._current_size = self._current_file.stat().st_size

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None


class JsonlSignalStore:
    """
    JSONL-backed SignalStore.

    Args:
        output_dir: Directory for signals_*.jsonl and trades_*.jsonl
        max_file_size_mb: Rotate a stream after this size
    """

    def __init__(self, output_dir: str = "data/signals", max_file_size_mb: float = 100.0) -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        max_bytes = int(max_file_size_mb * 1024 * 1024)

        self._signals = _JsonlStream(self.output_dir, "signals", max_bytes)
        self._trades = _JsonlStream(self.output_dir, "trades", max_bytes)

        logger.info(
            "signal_store_initialized",
            extra={"output_dir": str(self.output_dir), "max_file_size_mb": max_file_size_mb},
        )

    async def insert_signals(self, run_id: str, rows: list[dict]) -> int:
        keyed = [(signal_key(run_id, r), r) for r in rows]
        return await asyncio.to_thread(self._signals.write_rows, keyed)

    async def insert_simulated_trades(self, run_id: str, rows: list[dict]) -> int:
        keyed = [(trade_key(run_id, r), r) for r in rows]
        return await asyncio.to_thread(self._trades.write_rows, keyed)

    def close(self) -> None:
        self._signals.close()
        self._trades.close()
        logger.info(
            "signal_store_closed",
            extra={
                "signals_written": self._signals.total_written,
                "trades_written": self._trades.total_written,
                "skipped": self._signals.total_skipped + self._trades.total_skipped,
            },
        )

    def get_stats(self) -> dict:
        return {
            "signals_written": self._signals.total_written,
            "signals_skipped": self._signals.total_skipped,
            "trades_written": self._trades.total_written,
            "trades_skipped": self._trades.total_skipped,
        }
