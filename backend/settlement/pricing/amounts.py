"""
Currency amounts and rarity pricing.

Amount is the single value type for money in the pipeline: a Decimal in
display units plus the currency symbol and its on-chain decimal precision.
Conversion to and from base units (wei, token units) only happens here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Union

from settlement.errors import ValidationError

# Quotes are expressed with this many decimal places
QUOTE_DECIMAL_PLACES = 8

# Canonical pricing currency for rarity base prices
BASE_CURRENCY = "WETH"

NumberLike = Union[Decimal, int, str]


def quantize(value: Decimal, places: int = QUOTE_DECIMAL_PLACES) -> Decimal:
    """Round half-up to a fixed number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Amount:
    """An amount of one currency in display units."""

    value: Decimal
    symbol: str
    decimals: int = 18

    def __post_init__(self) -> None:
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, "value", Decimal(str(self.value)))
        object.__setattr__(self, "symbol", self.symbol.upper())

    @classmethod
    def from_base_units(cls, raw: int, symbol: str, decimals: int) -> "Amount":
        """Build from an integer on-chain value (e.g. wei)."""
        return cls(Decimal(int(raw)).scaleb(-decimals), symbol, decimals)

    def to_base_units(self) -> int:
        """Integer on-chain value; sub-unit dust is truncated."""
        return int(self.value.scaleb(self.decimals).to_integral_value(rounding=ROUND_DOWN))

    def quantize(self, places: int = QUOTE_DECIMAL_PLACES) -> "Amount":
        return Amount(quantize(self.value, places), self.symbol, self.decimals)

    def within_tolerance(self, expected: "Amount", tolerance: Decimal) -> bool:
        """|self - expected| <= expected * tolerance, same currency only."""
        if self.symbol != expected.symbol:
            return False
        return abs(self.value - expected.value) <= expected.value * tolerance

    def __str__(self) -> str:
        return f"{self.value} {self.symbol}"


class RarityTier(Enum):
    """Collectible rarity tier and its base price in BASE_CURRENCY."""

    LEGENDARY = ("legendary", Decimal("0.08"))
    ULTRA_RARE = ("ultraRare", Decimal("0.024"))
    RARE = ("rare", Decimal("0.016"))
    COMMON = ("common", Decimal("0.008"))

    def __init__(self, label: str, base_price: Decimal) -> None:
        self.label = label
        self.base_price = base_price

    @property
    def base_amount(self) -> Amount:
        return Amount(self.base_price, BASE_CURRENCY, 18)

    @classmethod
    def parse(cls, name: str) -> "RarityTier":
        """Parse a tier name: 'legendary', 'ultraRare', 'ultra_rare', 'Ultra Rare', ...

        Raises:
            ValidationError: If the name is not a known tier
        """
        key = "".join(ch for ch in (name or "").lower() if ch.isalnum())
        for tier in cls:
            if key in (tier.label.lower(), tier.name.replace("_", "").lower()):
                return tier
        raise ValidationError(f"Unknown rarity tier: {name}", details={"rarity": name})

    @classmethod
    def from_collectible_name(cls, name: str) -> "RarityTier":
        """Derive the tier from a collectible's display name.

        Names carry the tier either as a word ("Legendary Pioneer") or as the
        serial prefix ("MarsPioneer #UR12"). Anything else is Common.
        """
        lowered = (name or "").lower()
        if "legendary" in lowered or lowered.startswith("marspioneer #l"):
            return cls.LEGENDARY
        if "ultra" in lowered or lowered.startswith("marspioneer #ur"):
            return cls.ULTRA_RARE
        if "rare" in lowered or lowered.startswith("marspioneer #r"):
            return cls.RARE
        return cls.COMMON
