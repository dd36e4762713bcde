"""
Error Types
===========

Exception hierarchy for the pipeline.

Recoverable:
    DataError          - malformed or incomplete payload; dropped at the
                         feed / loader boundary and logged.

Fatal (abort the run, never caught inside the package):
    InvariantViolation - position cap breached; a logic defect.
    OrderingViolation  - replay stream not monotonic in exchange time.

Staleness and latency breaches are not exceptions; they are folded into
the health snapshot and the trader state machine.
"""

from typing import Any, Optional


class DislocatorError(Exception):
    """Base pipeline error."""


class DataError(DislocatorError):
    """Malformed or incomplete feed payload."""
    def __init__(self, message: str, payload: Optional[Any] = None):
        super().__init__(message)
        self.payload = payload


class InvariantViolation(DislocatorError):
    """Position inventory or pending exposure exceeded the cap."""
    def __init__(self, message: str, key: str = "", inventory: float = 0.0, pending: float = 0.0):
        super().__init__(message)
        self.key = key
        self.inventory = inventory
        self.pending = pending


class OrderingViolation(DislocatorError):
    """Non-monotonic exchange timestamp in a replay stream."""
    def __init__(self, message: str, exchange_ts: int = 0, previous_ts: int = 0):
        super().__init__(message)
        self.exchange_ts = exchange_ts
        self.previous_ts = previous_ts
