"""
Logging Setup
=============

Structured JSON logs on stdout, one orjson line per record.

Record layout:
    {
        "timestamp": "2025-01-27T12:00:00.000+00:00",
        "level": "INFO",
        "module": "consumer",
        "message": "state_transition",
        "run_id": "bt-1a2b3c",
        "mode": "backtest",
        "from": "WARMING",
        "to": "RUNNING"
    }

message is a short snake_case event name; everything else comes from
extra={...}. Once a run is bound with bind_run(), run_id and mode are
stamped on every record that does not set them itself, so live and
backtest output can be told apart in one log stream.

Pipeline objects (enums, slots dataclasses, anything with to_dict()) can
be passed in extra as-is.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import orjson

# LogRecord attributes that are never copied into the JSON payload
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}

_NOISY_LOGGERS = ("websockets", "asyncio", "aiohttp")


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


class RunContextFilter(logging.Filter):
    """Adds the bound run_id / mode to records that lack them."""

    def __init__(self) -> None:
        super().__init__()
        self.run_id: Optional[str] = None
        self.mode: Optional[str] = None

    def filter(self, record: logging.LogRecord) -> bool:
        if self.run_id is not None and not hasattr(record, "run_id"):
            record.run_id = self.run_id
        if self.mode is not None and not hasattr(record, "mode"):
            record.mode = self.mode
        return True


class JsonFormatter(logging.Formatter):
    """Render a record and its extra fields as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(
            entry,
            default=_json_default,
            option=orjson.OPT_NON_STR_KEYS,
        ).decode("utf-8")


_run_context = RunContextFilter()


def bind_run(run_id: Optional[str], mode: Optional[str]) -> None:
    """Stamp subsequent records with this run's id and mode."""
    _run_context.run_id = run_id
    _run_context.mode = mode


def setup_logging(log_level: str = "INFO") -> None:
    """
    Route the root logger to stdout as JSON.

    Existing root handlers are replaced, so calling this twice is safe.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(_run_context)
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
