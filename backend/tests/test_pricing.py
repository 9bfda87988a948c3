from decimal import Decimal

import httpx
import pytest

from fakes import failing_feed, price_feed
from settlement.errors import ValidationError
from settlement.pricing.amounts import Amount, RarityTier, quantize
from settlement.pricing.cache import CacheEntry, TtlCache, is_stale
from settlement.pricing.oracle import FALLBACK_USD_PRICES, PriceOracle


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# --- amounts and rarity -------------------------------------------------------------


def test_quantize_rounds_half_up_to_eight_places():
    assert quantize(Decimal("0.123456785")) == Decimal("0.12345679")
    assert quantize(Decimal("1")) == Decimal("1.00000000")


def test_amount_base_unit_conversion():
    amount = Amount.from_base_units(1_500_000, "usdc", 6)
    assert amount.value == Decimal("1.5")
    assert amount.symbol == "USDC"
    assert amount.to_base_units() == 1_500_000


def test_amount_tolerance_band():
    expected = Amount(Decimal("1.0"), "ETH")
    assert Amount(Decimal("0.985"), "ETH").within_tolerance(expected, Decimal("0.02"))
    assert Amount(Decimal("1.02"), "ETH").within_tolerance(expected, Decimal("0.02"))
    assert not Amount(Decimal("0.970"), "ETH").within_tolerance(expected, Decimal("0.02"))
    assert not Amount(Decimal("1.0"), "POL").within_tolerance(expected, Decimal("0.02"))


@pytest.mark.parametrize(
    "name, tier",
    [
        ("legendary", RarityTier.LEGENDARY),
        ("ultraRare", RarityTier.ULTRA_RARE),
        ("ultra_rare", RarityTier.ULTRA_RARE),
        ("Ultra Rare", RarityTier.ULTRA_RARE),
        ("RARE", RarityTier.RARE),
        ("common", RarityTier.COMMON),
    ],
)
def test_rarity_parse(name, tier):
    assert RarityTier.parse(name) is tier


def test_rarity_parse_rejects_unknown():
    with pytest.raises(ValidationError):
        RarityTier.parse("mythic")


def test_rarity_from_collectible_name():
    assert RarityTier.from_collectible_name("MarsPioneer #UR12") is RarityTier.ULTRA_RARE
    assert RarityTier.from_collectible_name("MarsPioneer #L3") is RarityTier.LEGENDARY
    assert RarityTier.from_collectible_name("MarsPioneer #R40") is RarityTier.RARE
    assert RarityTier.from_collectible_name("MarsPioneer #1021") is RarityTier.COMMON


def test_base_prices():
    assert [t.base_price for t in RarityTier] == [
        Decimal("0.08"), Decimal("0.024"), Decimal("0.016"), Decimal("0.008")
    ]


# --- cache --------------------------------------------------------------------------


def test_is_stale_boundary():
    entry = CacheEntry(value=1, inserted_at=100.0)
    assert not is_stale(entry, 399.9, 300)
    assert is_stale(entry, 400.0, 300)


def test_ttl_cache_expires_with_clock():
    clock = FakeClock()
    cache = TtlCache(300, clock=clock)
    cache.put("ETH", Decimal("2300"))
    clock.now += 299
    assert cache.get("ETH") == Decimal("2300")
    clock.now += 1
    assert cache.get("ETH") is None
    assert len(cache) == 0


# --- oracle -------------------------------------------------------------------------


async def test_end_to_end_common_quote_in_polygon_native():
    feed = price_feed({"weth": 2300, "pol-polygon": 0.13})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client)
        snapshot = await oracle.price_in(RarityTier.COMMON.base_amount, "POL")
    assert snapshot.converted.value == Decimal("141.53846154")
    assert snapshot.converted.symbol == "POL"
    assert snapshot.price_usd == Decimal("18.40")
    assert snapshot.base_usd_rate == Decimal("2300")
    assert snapshot.target_usd_rate == Decimal("0.13")


async def test_convert_same_currency_skips_upstream():
    feed = price_feed({})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client)
        assert await oracle.convert(Decimal("0.016"), "WETH", "weth") == Decimal("0.01600000")
    assert feed.requests == []


async def test_prices_are_cached_per_symbol():
    clock = FakeClock()
    feed = price_feed({"weth": 2300, "usd-coin": 1})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client, cache=TtlCache(300, clock=clock))
        await oracle.convert(Decimal("0.08"), "WETH", "USDC")
        await oracle.convert(Decimal("0.024"), "WETH", "USDC")
        assert len(feed.requests) == 2
        clock.now += 300
        await oracle.get_usd_price("WETH")
        assert len(feed.requests) == 3


async def test_feed_failure_uses_fallback_without_caching():
    async with httpx.AsyncClient(transport=failing_feed()) as client:
        oracle = PriceOracle(http_client=client)
        price = await oracle.get_usd_price("BNB")
        assert price == FALLBACK_USD_PRICES["BNB"]
        assert len(oracle.cache) == 0


async def test_missing_price_in_response_falls_back():
    async with httpx.AsyncClient(transport=price_feed({})) as client:
        oracle = PriceOracle(http_client=client)
        assert await oracle.get_usd_price("ETH") == Decimal("2300")
        assert await oracle.get_usd_price("XYZ") == Decimal("1")


async def test_quote_monotonic_in_base_price():
    feed = price_feed({"weth": 2300, "ethereum": 2300, "pol-polygon": 0.13, "usd-coin": 1})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client)
        for symbol in ("POL", "USDC", "ETH"):
            amounts = []
            for tier in RarityTier:
                snapshot = await oracle.price_in(tier.base_amount, symbol)
                amounts.append(snapshot.converted.value)
            assert amounts == sorted(amounts, reverse=True)
            assert len(set(amounts)) == len(amounts)


async def test_price_in_reads_each_rate_once_during_outage():
    feed = price_feed({})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client)
        snapshot = await oracle.price_in(RarityTier.COMMON.base_amount, "POL")
    assert len(feed.requests) == 2
    # converted amount comes from the same rates the snapshot reports
    expected = RarityTier.COMMON.base_amount.value * snapshot.base_usd_rate / snapshot.target_usd_rate
    assert snapshot.converted.value == quantize(expected)


async def test_price_in_same_currency_reads_one_rate():
    feed = price_feed({"weth": 2300})
    async with httpx.AsyncClient(transport=feed) as client:
        oracle = PriceOracle(http_client=client)
        snapshot = await oracle.price_in(RarityTier.COMMON.base_amount, "WETH")
    assert len(feed.requests) == 1
    assert snapshot.converted.value == Decimal("0.00800000")
    assert snapshot.target_usd_rate == Decimal("2300")
