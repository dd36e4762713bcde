"""
Market Catalog
==============

Discovers the active Polymarket up/down markets via the Gamma API and
exposes the instrument set the Polymarket feed subscribes to.

Markets rotate every 15 minutes:
    slug = {asset}-updown-15m-{slot}, slot = unix_seconds // 900 * 900

Each refresh looks up the current slot and the next windows_ahead - 1
slots. Listeners are called with the new descriptor list after every
successful refresh.

Usage:
    catalog = MarketCatalog(gamma_api=settings.POLYMARKET_GAMMA_API)
    catalog.on_update(lambda markets: ...)
    await catalog.refresh()
    catalog.active_asset_ids()
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import aiohttp

from dislocator.utils_time import now_ms

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 15 * 60


@dataclass(slots=True, frozen=True)
class MarketDescriptor:
    """One binary up/down market."""
    condition_id: str
    asset_ids: tuple[str, ...]
    slug: str
    tick_size: float = 0.01
    min_order_size: float = 1.0
    neg_risk: bool = False
    outcomes: tuple[str, ...] = field(default_factory=tuple)


def window_slugs(asset: str, windows_ahead: int, now_sec: Optional[int] = None) -> list[str]:
    """Slugs for the current 15-minute slot and the following ones."""
    ts = now_sec if now_sec is not None else now_ms() // 1000
    slot = (ts // WINDOW_SECONDS) * WINDOW_SECONDS
    return [f"{asset}-updown-15m-{slot + i * WINDOW_SECONDS}" for i in range(windows_ahead)]


def _json_list(value: Any) -> list:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return value if isinstance(value, list) else []


def parse_market(slug: str, market: dict) -> Optional[MarketDescriptor]:
    """
    Build a descriptor from a Gamma market object.

    Returns:
        MarketDescriptor, or None when the condition id or the two outcome
        token ids are missing.
    """
    condition_id = market.get("conditionId") or market.get("condition_id")
    token_ids = [t for t in _json_list(market.get("clobTokenIds")) if isinstance(t, str)]
    if not condition_id or len(token_ids) < 2:
        logger.warning(
            "catalog_market_skipped",
            extra={"slug": slug, "reason": "missing condition or token ids"},
        )
        return None

    outcomes = [str(o) for o in _json_list(market.get("outcomes"))]
    tick_size = market.get("orderPriceMinTickSize") or market.get("tickSize") or 0.01
    min_order_size = market.get("orderMinSize") or market.get("minOrderSize") or 1

    return MarketDescriptor(
        condition_id=str(condition_id),
        asset_ids=tuple(token_ids[:2]),
        slug=slug,
        tick_size=float(tick_size),
        min_order_size=float(min_order_size),
        neg_risk=bool(market.get("negRisk", False)),
        outcomes=tuple(outcomes),
    )


class MarketCatalog:
    """
    Active market set, refreshed from the Gamma API.

    Args:
        gamma_api: Gamma API base URL
        asset: Slug prefix ("btc")
        windows_ahead: Number of 15-minute windows to track
        refresh_sec: Refresh period for run_forever()
        session: Optional aiohttp session (created if not provided)
    """

    def __init__(
        self,
        gamma_api: str = "https://gamma-api.polymarket.com",
        asset: str = "btc",
        windows_ahead: int = 2,
        refresh_sec: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.gamma_api = gamma_api.rstrip("/")
        self.asset = asset
        self.windows_ahead = windows_ahead
        self.refresh_sec = refresh_sec
        self._session = session
        self._owns_session = session is None

        self._markets: dict[str, MarketDescriptor] = {}
        self._listeners: list[Callable[[list[MarketDescriptor]], Any]] = []

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def on_update(self, listener: Callable[[list[MarketDescriptor]], Any]) -> None:
        self._listeners.append(listener)

    def active_markets(self) -> list[MarketDescriptor]:
        return list(self._markets.values())

    def active_asset_ids(self) -> list[str]:
        ids: list[str] = []
        for market in self._markets.values():
            for asset_id in market.asset_ids:
                if asset_id not in ids:
                    ids.append(asset_id)
        return ids

    def condition_by_asset(self) -> dict[str, str]:
        return {
            asset_id: market.condition_id
            for market in self._markets.values()
            for asset_id in market.asset_ids
        }

    async def fetch_slug(self, slug: str) -> Optional[MarketDescriptor]:
        """Look up one slug. Returns None when unknown or on API errors."""
        session = await self._ensure_session()
        url = f"{self.gamma_api}/events"
        try:
            async with session.get(url, params={"slug": slug}) as resp:
                if resp.status != 200:
                    logger.warning("catalog_api_error", extra={"status": resp.status, "slug": slug})
                    return None
                events = await resp.json()
        except aiohttp.ClientError as e:
            logger.error("catalog_api_client_error", extra={"error": str(e), "slug": slug})
            return None
        except asyncio.TimeoutError:
            logger.error("catalog_api_timeout", extra={"slug": slug})
            return None

        if not events:
            return None
        markets = events[0].get("markets") or []
        if not markets:
            return None
        return parse_market(slug, markets[0])

    async def refresh(self) -> list[MarketDescriptor]:
        """Rebuild the active set and notify listeners if anything was found."""
        found: dict[str, MarketDescriptor] = {}
        for slug in window_slugs(self.asset, self.windows_ahead):
            descriptor = await self.fetch_slug(slug)
            if descriptor is not None:
                found[descriptor.condition_id] = descriptor

        if not found:
            logger.warning("catalog_no_active_markets", extra={"asset": self.asset})
            return self.active_markets()

        changed = set(found) != set(self._markets)
        self._markets = found
        markets = self.active_markets()

        if changed:
            logger.info(
                "catalog_updated",
                extra={
                    "conditions": [m.condition_id for m in markets],
                    "slugs": [m.slug for m in markets],
                },
            )
            for listener in self._listeners:
                result = listener(markets)
                if asyncio.iscoroutine(result):
                    await result
        return markets

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Refresh periodically until shutdown."""
        while not shutdown_event.is_set():
            try:
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("catalog_refresh_failed", extra={"error": str(e)})
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.refresh_sec)
            except asyncio.TimeoutError:
                continue
