"""Tests for Polymarket market discovery."""

import asyncio
from typing import Optional

from dislocator.feeds.market_catalog import MarketCatalog, MarketDescriptor, parse_market, window_slugs


def _descriptor(condition_id: str, slug: str = "btc-updown-15m-0") -> MarketDescriptor:
    return MarketDescriptor(condition_id=condition_id, asset_ids=(f"{condition_id}-up", f"{condition_id}-down"), slug=slug)


class StaticCatalog(MarketCatalog):
    """Catalog answering slug lookups from a dict instead of the Gamma API."""

    def __init__(self, markets: dict[str, MarketDescriptor]) -> None:
        super().__init__(windows_ahead=2)
        self.by_slug = markets
        self.lookups: list[str] = []

    async def fetch_slug(self, slug: str) -> Optional[MarketDescriptor]:
        self.lookups.append(slug)
        return self.by_slug.get(slug)


class TestWindowSlugs:
    def test_aligned_to_fifteen_minutes(self) -> None:
        assert window_slugs("btc", 2, now_sec=1_000) == ["btc-updown-15m-900", "btc-updown-15m-1800"]

    def test_slot_boundary(self) -> None:
        assert window_slugs("eth", 1, now_sec=1_800) == ["eth-updown-15m-1800"]


class TestParseMarket:
    def test_json_encoded_fields(self) -> None:
        market = {
            "conditionId": "0xabc",
            "clobTokenIds": '["111", "222"]',
            "outcomes": '["Up", "Down"]',
            "orderPriceMinTickSize": 0.001,
            "orderMinSize": 5,
            "negRisk": True,
        }
        descriptor = parse_market("btc-updown-15m-900", market)
        assert descriptor.condition_id == "0xabc"
        assert descriptor.asset_ids == ("111", "222")
        assert descriptor.outcomes == ("Up", "Down")
        assert descriptor.tick_size == 0.001
        assert descriptor.min_order_size == 5.0
        assert descriptor.neg_risk is True

    def test_defaults(self) -> None:
        descriptor = parse_market("s", {"conditionId": "0xabc", "clobTokenIds": ["1", "2"]})
        assert descriptor.tick_size == 0.01
        assert descriptor.min_order_size == 1.0
        assert descriptor.outcomes == ()

    def test_missing_ids(self) -> None:
        assert parse_market("s", {"clobTokenIds": ["1", "2"]}) is None
        assert parse_market("s", {"conditionId": "0xabc", "clobTokenIds": '["1"]'}) is None
        assert parse_market("s", {"conditionId": "0xabc", "clobTokenIds": "not json"}) is None


class TestRefresh:
    def test_listeners_called_on_change_only(self, monkeypatch) -> None:
        monkeypatch.setattr("dislocator.feeds.market_catalog.now_ms", lambda: 1_000_000)
        catalog = StaticCatalog({
            "btc-updown-15m-900": _descriptor("0xa", "btc-updown-15m-900"),
            "btc-updown-15m-1800": _descriptor("0xb", "btc-updown-15m-1800"),
        })
        sync_calls: list[list[MarketDescriptor]] = []
        async_calls: list[int] = []

        async def on_async(markets: list[MarketDescriptor]) -> None:
            async_calls.append(len(markets))

        catalog.on_update(sync_calls.append)
        catalog.on_update(on_async)

        asyncio.run(catalog.refresh())
        asyncio.run(catalog.refresh())

        assert catalog.lookups == ["btc-updown-15m-900", "btc-updown-15m-1800"] * 2
        assert len(sync_calls) == 1
        assert async_calls == [2]
        assert catalog.active_asset_ids() == ["0xa-up", "0xa-down", "0xb-up", "0xb-down"]
        assert catalog.condition_by_asset()["0xb-down"] == "0xb"

    def test_empty_lookup_keeps_previous_set(self, monkeypatch) -> None:
        monkeypatch.setattr("dislocator.feeds.market_catalog.now_ms", lambda: 1_000_000)
        catalog = StaticCatalog({"btc-updown-15m-900": _descriptor("0xa", "btc-updown-15m-900")})
        asyncio.run(catalog.refresh())

        catalog.by_slug = {}
        markets = asyncio.run(catalog.refresh())
        assert [m.condition_id for m in markets] == ["0xa"]
