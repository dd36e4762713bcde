"""
Hot state cache: latest spot price per product and best book per asset.

Timestamps are event (exchange) time. Freshness is judged by the health
snapshot, never by wall clock, so replay sees the same cache as live.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True, frozen=True)
class SpotState:
    product_id: str
    updated_at: int
    mid: Optional[float] = None
    base_asset: Optional[str] = None
    quote_asset: Optional[str] = None


@dataclass(slots=True, frozen=True)
class BookState:
    updated_at: int
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    mid: Optional[float] = None
    condition_id: Optional[str] = None


class HotState:
    """Per-run cache owned by the unified consumer."""

    def __init__(self) -> None:
        self._spot: dict[str, SpotState] = {}
        self._books: dict[str, BookState] = {}

    def set_spot(self, state: SpotState) -> None:
        self._spot[state.product_id] = state

    def get_spot(self, product_id: str) -> Optional[SpotState]:
        return self._spot.get(product_id)

    def set_book(self, asset_id: str, state: BookState) -> None:
        self._books[asset_id] = state

    def get_book(self, asset_id: str) -> Optional[BookState]:
        return self._books.get(asset_id)

    def clear(self) -> None:
        self._spot.clear()
        self._books.clear()

    def snapshot(self) -> dict:
        return {
            "spot": {k: v.mid for k, v in self._spot.items()},
            "books": {k: (v.best_bid, v.best_ask) for k, v in self._books.items()},
        }
