"""
Price oracle: converts base-currency prices into any supported currency.

Spot USD prices come from the CoinGecko simple-price endpoint and are cached
per symbol. Upstream failures degrade to a last-known-good table; a quote is
advisory and payment verification re-checks the amount with tolerance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import httpx

from .amounts import Amount, quantize
from .cache import TtlCache

logger = logging.getLogger(__name__)

DEFAULT_PRICE_FEED_URL = "https://api.coingecko.com/api/v3/simple/price"
DEFAULT_CACHE_TTL = 300.0  # seconds
DEFAULT_FEED_TIMEOUT = 5.0  # seconds

COINGECKO_IDS: Dict[str, str] = {
    "ETH": "ethereum",
    "WETH": "weth",
    "POL": "pol-polygon",
    "MATIC": "matic-network",
    "BNB": "binancecoin",
    "AVAX": "avalanche-2",
    "USDT": "tether",
    "USDC": "usd-coin",
    "BUSD": "binance-usd",
    "DAI": "dai",
}

# Last-known-good USD prices, used when the feed is unavailable
FALLBACK_USD_PRICES: Dict[str, Decimal] = {
    "ETH": Decimal("2300"),
    "WETH": Decimal("2300"),
    "POL": Decimal("0.1281"),
    "MATIC": Decimal("0.1281"),
    "BNB": Decimal("310"),
    "AVAX": Decimal("35"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
    "BUSD": Decimal("1"),
    "DAI": Decimal("1"),
}


class OracleUnavailable(Exception):
    """Upstream price feed failed. Never escapes PriceOracle."""


@dataclass(frozen=True)
class PriceSnapshot:
    """A converted price with the rates used to compute it."""

    base: Amount
    converted: Amount
    price_usd: Decimal
    base_usd_rate: Decimal
    target_usd_rate: Decimal


class PriceOracle:
    """USD spot prices with TTL cache and fallback table."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        feed_url: str = DEFAULT_PRICE_FEED_URL,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = DEFAULT_FEED_TIMEOUT,
        cache: Optional[TtlCache[Decimal]] = None,
    ) -> None:
        self._http = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self.feed_url = feed_url
        self.timeout = timeout
        self.cache: TtlCache[Decimal] = cache if cache is not None else TtlCache(cache_ttl)

    async def _fetch_usd_price(self, symbol: str) -> Decimal:
        coin_id = COINGECKO_IDS.get(symbol, symbol.lower())
        logger.info(f"Fetching price for {symbol} (CoinGecko ID: {coin_id})")
        try:
            response = await self._http.get(
                self.feed_url,
                params={"ids": coin_id, "vs_currencies": "usd"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            price = response.json().get(coin_id, {}).get("usd")
        except (httpx.HTTPError, ValueError) as e:
            raise OracleUnavailable(f"Price feed request failed for {symbol}: {e}") from e

        if price is None:
            raise OracleUnavailable(f"Price not found for {symbol} (ID: {coin_id})")
        try:
            value = Decimal(str(price))
        except InvalidOperation as e:
            raise OracleUnavailable(f"Unparseable price for {symbol}: {price!r}") from e
        if value <= 0:
            raise OracleUnavailable(f"Non-positive price for {symbol}: {value}")
        return value

    async def get_usd_price(self, symbol: str) -> Decimal:
        """USD price of one unit of `symbol`; falls back instead of failing."""
        symbol = symbol.upper()
        cached = self.cache.get(symbol)
        if cached is not None:
            return cached

        try:
            price = await self._fetch_usd_price(symbol)
        except OracleUnavailable as e:
            fallback = FALLBACK_USD_PRICES.get(symbol)
            if fallback is None:
                fallback = Decimal("1")
                logger.warning(f"{e}; no fallback price for {symbol}, using $1")
            else:
                logger.warning(f"{e}; using fallback price for {symbol}: ${fallback}")
            return fallback

        self.cache.put(symbol, price)
        logger.info(f"{symbol} price: ${price} (from CoinGecko)")
        return price

    async def convert(self, amount: Decimal, from_symbol: str, to_symbol: str) -> Decimal:
        """amount * usd(from) / usd(to), rounded to 8 decimal places."""
        amount = Decimal(str(amount))
        if from_symbol.upper() == to_symbol.upper():
            return quantize(amount)
        from_usd = await self.get_usd_price(from_symbol)
        to_usd = await self.get_usd_price(to_symbol)
        converted = quantize(amount * from_usd / to_usd)
        logger.info(f"Converting {amount} {from_symbol} -> {converted} {to_symbol} (${from_usd} / ${to_usd})")
        return converted

    async def price_in(self, base: Amount, target_symbol: str, target_decimals: int = 18) -> PriceSnapshot:
        """Convert a base-currency amount and capture the rate snapshot."""
        base_rate = await self.get_usd_price(base.symbol)
        if base.symbol.upper() == target_symbol.upper():
            target_rate = base_rate
            converted = quantize(base.value)
        else:
            target_rate = await self.get_usd_price(target_symbol)
            converted = quantize(base.value * base_rate / target_rate)
        logger.info(f"Converting {base} -> {converted} {target_symbol} (${base_rate} / ${target_rate})")
        return PriceSnapshot(
            base=base,
            converted=Amount(converted, target_symbol, target_decimals),
            price_usd=quantize(base.value * base_rate, 2),
            base_usd_rate=base_rate,
            target_usd_rate=target_rate,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
