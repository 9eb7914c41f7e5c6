from __future__ import annotations
import enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional


class Plan(str):
    FREE = "free"
    PRO = "pro"
    PROPLUS = "proplus"


class Tier(str, enum.Enum):
    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "proplus"
    COMMUNITY = "community"


PRO_MONTHLY_CREDITS = 10
PRO_PLUS_MONTHLY_CREDITS = 100
COMMUNITY_MONTHLY_CREDITS = 999_999 # "unlimited"


@dataclass(frozen=True)
class TierSpec:
    tier: Tier
    plan: str
    monthly_credits: int
    precedence: int


# Higher precedence wins when a subscription carries prices from several tiers.
DEFAULT_TIER_SPECS: Dict[Tier, TierSpec] = {
    Tier.PRO_PLUS: TierSpec(Tier.PRO_PLUS, Plan.PROPLUS, PRO_PLUS_MONTHLY_CREDITS, 30),
    Tier.COMMUNITY: TierSpec(Tier.COMMUNITY, Plan.PROPLUS, COMMUNITY_MONTHLY_CREDITS, 20),
    Tier.PRO: TierSpec(Tier.PRO, Plan.PRO, PRO_MONTHLY_CREDITS, 10),
}


DEFAULT_PRICE_TIERS: Dict[str, List[str]] = {
    "pro": [
        "price_1SxssfLkjsnhi7NmA6lozKWE", # monthly
        "price_1SxssfLkjsnhi7NmVsXsSLum", # yearly
        "price_1T0NjwLkjsnhi7Nm5tPY8H6G", # monthly (2025)
    ],
    "proplus": [
        "price_1SrPvRLkjsnhi7Nmg2hHUfzp",
        "price_1SrPl9Lkjsnhi7NmnkppGUrV",
        "price_1SrdgbLkjsnhi7Nm3KkX5EVz",
        "price_1SrdgpLkjsnhi7NmVbUPjIPj",
    ],
    "community": [
        "price_1SrPOpLkjsnhi7Nmn6nCZYeW",
        "price_1SrPtuLkjsnhi7NmaKqqGaCP",
    ],
}


@dataclass(frozen=True)
class CreditPack:
    code: str
    credits: int
    price_brl_cents: int
    stripe_price_id: Optional[str] = None


CREDIT_PACKS: Dict[str, CreditPack] = {
    "pack_10": CreditPack("pack_10", 10, 3900, "price_1Sxs1HLkjsnhi7Nm9ISzvNnw"),
    "pack_30": CreditPack("pack_30", 30, 9900, "price_1Sxs1ULkjsnhi7Nm80s9ZVV1"),
    "pack_50": CreditPack("pack_50", 50, 14900, "price_1Sxs1gLkjsnhi7Nmex8TTV57"),
    "pack_100": CreditPack("pack_100", 100, 24900, "price_1Sxs1rLkjsnhi7NmmYQm8L9z"),
}


@dataclass(frozen=True)
class PriceCatalog:
    """
    Price id -> tier table plus the per-tier grant/plan specs.

    Built once per app from config and handed to the TierResolver, so tests
    can run against synthetic price ids.
    """
    price_tiers: Mapping[str, Tier]
    specs: Mapping[Tier, TierSpec] = field(default_factory=lambda: dict(DEFAULT_TIER_SPECS))

    @classmethod
    def from_config(
        cls,
        price_tiers: Optional[Mapping[str, Iterable[str]]] = None,
        tier_credits: Optional[Mapping[str, int]] = None,
    ) -> "PriceCatalog":
        if price_tiers is None:
            price_tiers = DEFAULT_PRICE_TIERS

        table: Dict[str, Tier] = {}
        for tier_name, price_ids in price_tiers.items():
            tier = Tier(tier_name)
            if tier is Tier.FREE:
                raise ValueError("free tier cannot carry price ids")
            for price_id in price_ids:
                if price_id in table and table[price_id] is not tier:
                    raise ValueError(f"Price {price_id} mapped to both {table[price_id].value} and {tier.value}")
                table[price_id] = tier

        specs = dict(DEFAULT_TIER_SPECS)
        for tier_name, credits in (tier_credits or {}).items():
            tier = Tier(tier_name)
            base = specs[tier]
            specs[tier] = TierSpec(tier, base.plan, int(credits), base.precedence)

        return cls(price_tiers=table, specs=specs)

    def tier_of(self, price_id: str) -> Optional[Tier]:
        return self.price_tiers.get(price_id)

    def spec_for(self, tier: Tier) -> TierSpec:
        return self.specs[tier]
