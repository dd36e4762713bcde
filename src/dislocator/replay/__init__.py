"""
Replay: deterministic ordering, the replay harness, JSONL loading and
recording, and run fingerprints.
"""

from dislocator.replay.fingerprint import RunFingerprint, event_fingerprint, output_fingerprint
from dislocator.replay.harness import ReplayHarness, ReplaySummary, replay_events
from dislocator.replay.sorter import KIND_PRIORITY, assign_ordinals, sort_events

__all__ = [
    "KIND_PRIORITY",
    "ReplayHarness",
    "ReplaySummary",
    "RunFingerprint",
    "assign_ordinals",
    "event_fingerprint",
    "output_fingerprint",
    "replay_events",
    "sort_events",
]
