"""
Event Recorder
==============

Records every accepted live event to JSONL in the replay wire format, so a
live session can be replayed later through the same consumer.

Architecture:
    consumer loop -> EventRecorder.record() -> async queue -> buffered writer

File naming:
    {output_dir}/events_{YYYYmmdd_HHMMSS}.jsonl   (one file per session)

Usage:
    recorder = EventRecorder(output_dir="data/recordings")
    await recorder.start()
    recorder.record(event)
    await recorder.stop()
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import orjson

from dislocator.types import UnifiedEvent
from dislocator.utils_time import now_ms

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100
DEFAULT_FLUSH_INTERVAL_MS = 1000

_STOP = object()


class EventRecorder:
    """
    Async buffered JSONL recorder.

    Args:
        output_dir: Directory for recording files
        buffer_size: Events to buffer before a write
        flush_interval_ms: Max time between writes
        enabled: Recording on / off
    """

    def __init__(
        self,
        output_dir: str = "data/recordings",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
        enabled: bool = True,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.buffer_size = buffer_size
        self.flush_interval_ms = flush_interval_ms
        self.enabled = enabled

        self._queue: asyncio.Queue = asyncio.Queue()
        self._buffer: list[bytes] = []
        self._file_path: Optional[Path] = None
        self._handle: Optional[Any] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._running = False
        self._last_flush_ms = 0

        self._total_events = 0
        self._total_written = 0

    @property
    def file_path(self) -> Optional[Path]:
        return self._file_path

    async def start(self) -> None:
        """Open the session file and start the background writer."""
        if not self.enabled:
            logger.info("event_recorder_disabled")
            return

        self.output_dir.mkdir(parents=True, exist_ok=True)
        ts_str = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        self._file_path = self.output_dir / f"events_{ts_str}.jsonl"
        self._last_flush_ms = now_ms()
        self._running = True
        self._writer_task = asyncio.create_task(self._writer_loop())

        logger.info("event_recorder_started", extra={"file_path": str(self._file_path)})

    async def stop(self) -> None:
        """Stop the writer, flush and close the file."""
        if not self._running:
            return
        self._running = False
        await self._queue.put(_STOP)

        if self._writer_task:
            try:
                await asyncio.wait_for(self._writer_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("event_recorder_stop_timeout")
                self._writer_task.cancel()

        # Anything queued after the stop marker
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _STOP:
                self._buffer.append(item)

        self._flush()
        if self._handle is not None:
            self._handle.close()
            self._handle = None

        logger.info(
            "event_recorder_stopped",
            extra={
                "total_events": self._total_events,
                "total_written": self._total_written,
                "file_path": str(self._file_path),
            },
        )

    def record(self, event: UnifiedEvent) -> None:
        """Queue an event for writing (non-blocking)."""
        if not self.enabled or not self._running:
            return
        self._queue.put_nowait(orjson.dumps(event.to_dict()) + b"\n")
        self._total_events += 1

    async def _writer_loop(self) -> None:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                if self._buffer and now_ms() - self._last_flush_ms >= self.flush_interval_ms:
                    self._flush()
                continue

            if item is _STOP:
                break

            self._buffer.append(item)
            if len(self._buffer) >= self.buffer_size or now_ms() - self._last_flush_ms >= self.flush_interval_ms:
                self._flush()

    def _flush(self) -> None:
        if not self._buffer or self._file_path is None:
            return
        try:
            if self._handle is None:
                self._handle = open(self._file_path, "ab")
            self._handle.writelines(self._buffer)
            self._handle.flush()
        except OSError as e:
            logger.error(
                "event_recorder_flush_error",
                extra={"file_path": str(self._file_path), "error": str(e)},
            )
            return

        self._total_written += len(self._buffer)
        self._buffer.clear()
        self._last_flush_ms = now_ms()

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "running": self._running,
            "total_events": self._total_events,
            "total_written": self._total_written,
            "buffered": len(self._buffer),
            "queue_size": self._queue.qsize(),
            "file_path": str(self._file_path) if self._file_path else None,
        }
