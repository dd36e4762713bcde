"""
Dislocator
==========

Correlates a spot crypto price feed with a prediction-market orderbook feed,
derives a model-based expected probability from rolling price features and
emits inventory-bounded trading intents when the health gate allows it.

Live operation and historical replay share one decision path
(UnifiedEventConsumer.handle_event).

Usage:
    python -m dislocator            # live
    python -m dislocator.backtest   # replay a JSONL recording
"""

__version__ = "0.1.0"
__schema_version__ = "1.0"
