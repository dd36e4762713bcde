"""
Feed Normalizers
================

Decode raw venue payloads into strict UnifiedEvents.

Coinbase Exchange "ticker" channel -> SpotTick
    mid = (best_bid + best_ask) / 2 when both are present, else trade price
    exchange_ts = "time" (ISO8601), falling back to receive time

Polymarket CLOB market channel -> PmBook (one per asset update)
    "book"          full snapshot; best bid = highest bid, best ask = lowest ask
    "price_change"  incremental; carries best_bid / best_ask per asset
                    (older payloads use "changes" with a / bb / ba keys)
    mid = (best_bid + best_ask) / 2 when both sides are present, else None
    exchange_ts = "timestamp" (ms), falling back to receive time

Control messages (subscriptions, heartbeats, tick_size_change, ...) are
ignored. Payloads of a known type that cannot be decoded raise DataError;
EventNormalizer catches it, logs and counts the drop.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from dislocator.errors import DataError
from dislocator.types import PmBook, SpotTick, UnifiedEvent
from dislocator.utils_time import parse_iso_ms

logger = logging.getLogger(__name__)

FEED_COINBASE = "coinbase"
FEED_POLYMARKET = "polymarket"


def _to_float(value: Any, field_name: str, payload: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise DataError(f"{field_name} is not numeric: {value!r}", payload)
    if not math.isfinite(result):
        raise DataError(f"{field_name} is not finite", payload)
    return result


def _to_ts(value: Any, fallback: int, payload: Any) -> int:
    if value is None or value == "":
        return fallback
    try:
        return int(float(value))
    except (TypeError, ValueError):
        raise DataError(f"timestamp is not numeric: {value!r}", payload)


def book_mid(best_bid: Optional[float], best_ask: Optional[float]) -> Optional[float]:
    if not best_bid or not best_ask:
        return None
    return (best_bid + best_ask) / 2


# =============================================================================
# COINBASE
# =============================================================================

def normalize_coinbase_ticker(
    msg: dict,
    recv_ts_ms: int,
    product_ids: Optional[Iterable[str]] = None,
) -> Optional[SpotTick]:
    """
    Normalize a Coinbase ticker message.

    Args:
        msg: Parsed WS message
        recv_ts_ms: Local receive timestamp
        product_ids: Accepted products (None accepts all)

    Returns:
        SpotTick, or None for non-ticker / unsubscribed messages.

    Raises:
        DataError: Ticker without product_id, or with bad numbers / time.
    """
    if not isinstance(msg, dict) or msg.get("type") != "ticker":
        return None

    product_id = msg.get("product_id")
    if not product_id:
        raise DataError("ticker without product_id", msg)
    if product_ids is not None and product_id not in product_ids:
        return None

    raw_time = msg.get("time")
    exchange_ts = parse_iso_ms(raw_time) if raw_time else recv_ts_ms
    if exchange_ts is None:
        raise DataError(f"ticker time not parseable: {raw_time!r}", msg)

    best_bid = _to_float(msg.get("best_bid"), "best_bid", msg)
    best_ask = _to_float(msg.get("best_ask"), "best_ask", msg)
    price = _to_float(msg.get("price"), "price", msg)
    mid = (best_bid + best_ask) / 2 if best_bid and best_ask else price

    base_asset, _, quote_asset = product_id.partition("-")
    return SpotTick(
        product_id=product_id,
        base_asset=base_asset or None,
        quote_asset=quote_asset or None,
        mid=mid,
        exchange_ts=exchange_ts,
        ingest_ts=recv_ts_ms,
    )


# =============================================================================
# POLYMARKET
# =============================================================================

@dataclass(slots=True)
class _TopOfBook:
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None


class BookTracker:
    """
    Last known best bid / ask per asset.

    price_change payloads can carry only one side; the other side is taken
    from the previous update of the same asset.
    """

    def __init__(self) -> None:
        self._books: dict[str, _TopOfBook] = defaultdict(_TopOfBook)

    def update(self, asset_id: str, best_bid: Optional[float], best_ask: Optional[float]) -> tuple[Optional[float], Optional[float]]:
        book = self._books[asset_id]
        if best_bid is not None:
            book.best_bid = best_bid
        if best_ask is not None:
            book.best_ask = best_ask
        return book.best_bid, book.best_ask

    def replace(self, asset_id: str, best_bid: Optional[float], best_ask: Optional[float]) -> None:
        self._books[asset_id] = _TopOfBook(best_bid, best_ask)

    def get(self, asset_id: str) -> tuple[Optional[float], Optional[float]]:
        book = self._books.get(asset_id)
        if book is None:
            return None, None
        return book.best_bid, book.best_ask


def _best_level(levels: Any, highest: bool, payload: Any) -> Optional[float]:
    prices: list[float] = []
    for level in levels or []:
        if isinstance(level, dict):
            price = _to_float(level.get("price"), "price", payload)
            size = _to_float(level.get("size"), "size", payload)
        elif isinstance(level, (list, tuple)) and level:
            price = _to_float(level[0], "price", payload)
            size = _to_float(level[1], "size", payload) if len(level) > 1 else None
        else:
            raise DataError("unexpected book level shape", payload)
        if price is None or price <= 0:
            continue
        if size is not None and size <= 0:
            continue
        prices.append(price)
    if not prices:
        return None
    return max(prices) if highest else min(prices)


def _normalize_book(
    msg: dict,
    recv_ts_ms: int,
    tracker: BookTracker,
) -> list[PmBook]:
    asset_id = msg.get("asset_id")
    if not asset_id:
        raise DataError("book without asset_id", msg)

    best_bid = _best_level(msg.get("bids") or msg.get("buys"), True, msg)
    best_ask = _best_level(msg.get("asks") or msg.get("sells"), False, msg)
    tracker.replace(asset_id, best_bid, best_ask)

    return [
        PmBook(
            asset_id=str(asset_id),
            condition_id=msg.get("market") or None,
            best_bid=best_bid,
            best_ask=best_ask,
            mid=book_mid(best_bid, best_ask),
            exchange_ts=_to_ts(msg.get("timestamp"), recv_ts_ms, msg),
            ingest_ts=recv_ts_ms,
        )
    ]


def _normalize_price_change(
    msg: dict,
    recv_ts_ms: int,
    tracker: BookTracker,
) -> list[PmBook]:
    exchange_ts = _to_ts(msg.get("timestamp"), recv_ts_ms, msg)
    condition_id = msg.get("market") or None

    changes = msg.get("price_changes")
    legacy = False
    if changes is None:
        changes = msg.get("changes")
        legacy = True
    if not isinstance(changes, list):
        raise DataError("price_change without changes", msg)

    events: list[PmBook] = []
    for change in changes:
        if not isinstance(change, dict):
            raise DataError("price change entry is not an object", msg)
        if legacy:
            asset_id = change.get("a") or msg.get("asset_id")
            bid = _to_float(change.get("bb"), "bb", msg)
            ask = _to_float(change.get("ba"), "ba", msg)
        else:
            asset_id = change.get("asset_id")
            bid = _to_float(change.get("best_bid"), "best_bid", msg)
            ask = _to_float(change.get("best_ask"), "best_ask", msg)
        if not asset_id:
            raise DataError("price change without asset_id", msg)

        best_bid, best_ask = tracker.update(str(asset_id), bid, ask)
        events.append(
            PmBook(
                asset_id=str(asset_id),
                condition_id=condition_id,
                best_bid=best_bid,
                best_ask=best_ask,
                mid=book_mid(best_bid, best_ask),
                exchange_ts=exchange_ts,
                ingest_ts=recv_ts_ms,
            )
        )
    return events


def normalize_polymarket_message(
    msg: Any,
    recv_ts_ms: int,
    tracker: BookTracker,
    asset_ids: Optional[Iterable[str]] = None,
) -> list[PmBook]:
    """
    Normalize a Polymarket market-channel message.

    Args:
        msg: Parsed WS message (object or array of objects)
        recv_ts_ms: Local receive timestamp
        tracker: Per-asset top of book carried between messages
        asset_ids: Accepted assets (None accepts all)

    Returns:
        PmBook events (possibly empty).

    Raises:
        DataError: Book / price_change payloads that cannot be decoded.
    """
    items = msg if isinstance(msg, list) else [msg]
    allowed = set(asset_ids) if asset_ids is not None else None

    events: list[PmBook] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        event_type = item.get("event_type")
        if event_type == "book":
            events.extend(_normalize_book(item, recv_ts_ms, tracker))
        elif event_type == "price_change":
            events.extend(_normalize_price_change(item, recv_ts_ms, tracker))

    if allowed is not None:
        events = [e for e in events if e.asset_id in allowed]
    return events


# =============================================================================
# ENVELOPE ROUTING
# =============================================================================

class EventNormalizer:
    """
    Routes feed envelopes to the venue normalizers.

    Envelope format (from FeedClient):
        {"feed": "coinbase" | "polymarket", "recv_ts_ms": int, "msg": ...}

    Usage:
        normalizer = EventNormalizer(product_ids=["BTC-USD"])
        for event in normalizer.handle_envelope(envelope):
            consumer.handle_event(event, sink, ctx)
    """

    def __init__(
        self,
        product_ids: Optional[Iterable[str]] = None,
        asset_ids: Optional[Iterable[str]] = None,
        condition_ids: Optional[dict[str, str]] = None,
    ) -> None:
        self.product_ids = set(product_ids) if product_ids is not None else None
        self.asset_ids = set(asset_ids) if asset_ids is not None else None
        self.condition_ids: dict[str, str] = dict(condition_ids or {})
        self.tracker = BookTracker()

        self._processed: dict[str, int] = defaultdict(int)
        self._dropped: dict[str, int] = defaultdict(int)

    def set_assets(self, asset_ids: Iterable[str], condition_ids: Optional[dict[str, str]] = None) -> None:
        """Replace the accepted asset set (market catalog refresh)."""
        self.asset_ids = set(asset_ids)
        if condition_ids is not None:
            self.condition_ids = dict(condition_ids)

    def handle_envelope(self, envelope: dict) -> list[UnifiedEvent]:
        """
        Decode one envelope.

        Returns:
            Zero or more events. Malformed payloads are dropped and logged.
        """
        feed = envelope.get("feed", "unknown")
        recv_ts_ms = envelope.get("recv_ts_ms")
        msg = envelope.get("msg")

        try:
            if recv_ts_ms is None:
                raise DataError("envelope without recv_ts_ms", envelope)
            if feed == FEED_COINBASE:
                tick = normalize_coinbase_ticker(msg, recv_ts_ms, self.product_ids)
                events: list[UnifiedEvent] = [tick] if tick is not None else []
            elif feed == FEED_POLYMARKET:
                events = list(self._with_conditions(
                    normalize_polymarket_message(msg, recv_ts_ms, self.tracker, self.asset_ids)
                ))
            else:
                logger.warning("normalizer_unknown_feed", extra={"feed": feed})
                return []
        except DataError as e:
            self._dropped[feed] += 1
            logger.warning(
                "data_error_dropped",
                extra={"feed": feed, "error": str(e)},
            )
            return []

        self._processed[feed] += len(events)
        return events

    def _with_conditions(self, events: list[PmBook]) -> Iterable[PmBook]:
        for event in events:
            if event.condition_id is None and event.asset_id in self.condition_ids:
                event = PmBook(
                    asset_id=event.asset_id,
                    condition_id=self.condition_ids[event.asset_id],
                    best_bid=event.best_bid,
                    best_ask=event.best_ask,
                    mid=event.mid,
                    exchange_ts=event.exchange_ts,
                    ingest_ts=event.ingest_ts,
                )
            yield event

    def dropped_count(self, feed: str) -> int:
        return self._dropped.get(feed, 0)

    def get_stats(self) -> dict:
        return {
            "processed": dict(self._processed),
            "dropped": dict(self._dropped),
        }
