"""
Type Definitions Module
=======================

Normalized event schema shared by live feeds, recordings and replay.

UnifiedEvent is a tagged union:
    SpotTick  (kind="spot")   - spot price update for a product
    PmBook    (kind="pmBook") - prediction-market best bid/ask for an asset

exchange_ts is the authoritative ordering key; ingest_ts is observability
only (latency gating).

Serialized form (JSONL recordings, replay input) uses camelCase keys:
    {"kind": "spot", "productId": "BTC-USD", "mid": 100.0,
     "exchangeTs": 1000, "ingestTs": 1005}
    {"kind": "pmBook", "assetId": "123", "conditionId": "0xabc",
     "bestBid": 0.52, "bestAsk": 0.54, "mid": 0.53,
     "exchangeTs": 1001, "ingestTs": 1003}

Schema version: 1.0
"""

import math
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from dislocator.errors import DataError


SCHEMA_VERSION = "1.0"

KIND_SPOT = "spot"
KIND_PM_BOOK = "pmBook"

EventKind = Literal["spot", "pmBook"]


@dataclass(slots=True, frozen=True)
class SpotTick:
    """
    Spot price update.

    Attributes:
        product_id: Spot product (e.g. "BTC-USD")
        base_asset: Base asset (e.g. "BTC")
        quote_asset: Quote asset (e.g. "USD")
        mid: Mid price, None when the feed had no usable price
        exchange_ts: Venue timestamp (ms)
        ingest_ts: Local receipt timestamp (ms)
    """
    product_id: str
    exchange_ts: int
    ingest_ts: int
    mid: Optional[float] = None
    base_asset: Optional[str] = None
    quote_asset: Optional[str] = None

    @property
    def kind(self) -> str:
        return KIND_SPOT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": KIND_SPOT,
            "productId": self.product_id,
            "baseAsset": self.base_asset,
            "quoteAsset": self.quote_asset,
            "mid": self.mid,
            "exchangeTs": self.exchange_ts,
            "ingestTs": self.ingest_ts,
        }


@dataclass(slots=True, frozen=True)
class PmBook:
    """
    Prediction-market top of book for one outcome token.

    Attributes:
        asset_id: Outcome token id
        condition_id: Market (condition) id
        best_bid: Best bid price (0..1)
        best_ask: Best ask price (0..1)
        mid: Market-implied probability, None when the book is one-sided
        exchange_ts: Venue timestamp (ms)
        ingest_ts: Local receipt timestamp (ms)
    """
    asset_id: str
    exchange_ts: int
    ingest_ts: int
    condition_id: Optional[str] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    mid: Optional[float] = None

    @property
    def kind(self) -> str:
        return KIND_PM_BOOK

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": KIND_PM_BOOK,
            "assetId": self.asset_id,
            "conditionId": self.condition_id,
            "bestBid": self.best_bid,
            "bestAsk": self.best_ask,
            "mid": self.mid,
            "exchangeTs": self.exchange_ts,
            "ingestTs": self.ingest_ts,
        }


UnifiedEvent = Union[SpotTick, PmBook]


@dataclass(slots=True, frozen=True)
class ReplayEvent:
    """
    Replay envelope: a UnifiedEvent plus its arrival ordinal.

    arrival_ordinal is the tie-break stabilizer for events with equal
    exchange_ts and kind. None means "assign from ingestion order".
    """
    event: UnifiedEvent
    arrival_ordinal: Optional[int] = None

    @property
    def kind(self) -> str:
        return self.event.kind

    @property
    def exchange_ts(self) -> int:
        return self.event.exchange_ts

    def to_dict(self) -> dict[str, Any]:
        data = self.event.to_dict()
        if self.arrival_ordinal is not None:
            data["arrivalOrdinal"] = self.arrival_ordinal
        return data


def _optional_float(payload: dict, key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise DataError(f"field {key} is not numeric: {value!r}", payload)
    if not math.isfinite(result):
        return None
    return result


def _required_ts(payload: dict, key: str) -> int:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        raise DataError(f"missing {key}", payload)
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise DataError(f"field {key} is not numeric: {value!r}", payload)
    if not math.isfinite(result):
        raise DataError(f"field {key} is not finite", payload)
    return int(result)


def _optional_str(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


def event_from_dict(payload: Any) -> UnifiedEvent:
    """
    Decode a serialized event into a strict UnifiedEvent.

    Args:
        payload: Dict in the camelCase wire format.

    Returns:
        SpotTick or PmBook.

    Raises:
        DataError: Unknown kind, missing identifiers or timestamps,
            non-numeric prices.
    """
    if not isinstance(payload, dict):
        raise DataError("event payload is not an object", payload)

    kind = payload.get("kind")
    exchange_ts = _required_ts(payload, "exchangeTs")
    ingest_ts = _required_ts(payload, "ingestTs") if payload.get("ingestTs") is not None else exchange_ts

    if kind == KIND_SPOT:
        product_id = _optional_str(payload, "productId")
        if not product_id:
            raise DataError("spot event without productId", payload)
        return SpotTick(
            product_id=product_id,
            base_asset=_optional_str(payload, "baseAsset"),
            quote_asset=_optional_str(payload, "quoteAsset"),
            mid=_optional_float(payload, "mid"),
            exchange_ts=exchange_ts,
            ingest_ts=ingest_ts,
        )

    if kind == KIND_PM_BOOK:
        asset_id = _optional_str(payload, "assetId")
        if not asset_id:
            raise DataError("pmBook event without assetId", payload)
        return PmBook(
            asset_id=asset_id,
            condition_id=_optional_str(payload, "conditionId"),
            best_bid=_optional_float(payload, "bestBid"),
            best_ask=_optional_float(payload, "bestAsk"),
            mid=_optional_float(payload, "mid"),
            exchange_ts=exchange_ts,
            ingest_ts=ingest_ts,
        )

    raise DataError(f"unknown event kind: {kind!r}", payload)


def replay_event_from_dict(payload: Any) -> ReplayEvent:
    """Decode a serialized event, keeping its arrivalOrdinal if present."""
    event = event_from_dict(payload)
    ordinal = payload.get("arrivalOrdinal")
    if ordinal is not None:
        try:
            ordinal = int(ordinal)
        except (TypeError, ValueError):
            raise DataError(f"arrivalOrdinal is not an integer: {ordinal!r}", payload)
    return ReplayEvent(event=event, arrival_ordinal=ordinal)
