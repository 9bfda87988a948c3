"""
Pricing: rarity base prices, currency amounts and the USD price oracle.
"""

from .amounts import BASE_CURRENCY, QUOTE_DECIMAL_PLACES, Amount, RarityTier, quantize
from .cache import CacheEntry, TtlCache, is_stale
from .oracle import FALLBACK_USD_PRICES, OracleUnavailable, PriceOracle, PriceSnapshot

__all__ = [
    "Amount",
    "BASE_CURRENCY",
    "CacheEntry",
    "FALLBACK_USD_PRICES",
    "OracleUnavailable",
    "PriceOracle",
    "PriceSnapshot",
    "QUOTE_DECIMAL_PLACES",
    "RarityTier",
    "TtlCache",
    "is_stale",
    "quantize",
]
