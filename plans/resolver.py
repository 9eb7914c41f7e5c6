from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from flask import current_app
from plans.catalog import Plan, PriceCatalog, Tier

# subscription statuses that mean "on the way out"
NEGATIVE_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})
ACTIVE_STATUSES = frozenset({"active", "trialing"})
# statuses that still keep an email on the authorized-users whitelist
AUTHORIZED_STATUSES = frozenset({"active", "trialing", "incomplete"})


def entitlement_status_for(stripe_status: Optional[str]) -> str:
    """Narrow a Stripe subscription status to active | trialing | inactive."""
    if stripe_status == "trialing":
        return "trialing"
    if stripe_status == "active":
        return "active"
    return "inactive"


def price_ids_of(subscription: Dict[str, Any]) -> List[str]:
    items = (subscription.get("items") or {}).get("data") or []
    out = []
    for item in items:
        price = item.get("price") or {}
        pid = price.get("id") if isinstance(price, dict) else price
        if pid:
            out.append(pid)
    return out


def period_end_of(subscription: Dict[str, Any]) -> Optional[datetime]:
    # newer API versions moved current_period_end onto the subscription items
    ts = subscription.get("current_period_end")
    if not ts:
        items = (subscription.get("items") or {}).get("data") or []
        ends = [i.get("current_period_end") for i in items if i.get("current_period_end")]
        ts = max(ends) if ends else None
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


@dataclass(frozen=True)
class SubscriptionResolution:
    plan: str
    tier: Optional[Tier]
    status: str
    price_ids: Tuple[str, ...]
    is_downgrading: bool
    credit_grant: int
    current_period_end: Optional[datetime] = None
    unmapped_price_ids: Tuple[str, ...] = ()

    @property
    def is_paid(self) -> bool:
        return self.tier is not None

    @property
    def is_active_paid(self) -> bool:
        return self.plan != Plan.FREE

    @property
    def entitlement_status(self) -> str:
        return entitlement_status_for(self.status)

    @property
    def storage_tier(self) -> str:
        return self.tier.value if self.tier else Tier.FREE.value

    @property
    def authorized_status(self) -> str:
        return "active" if self.status in AUTHORIZED_STATUSES and not self.is_downgrading else "inactive"


class TierResolver:
    def __init__(self, catalog: PriceCatalog):
        self.catalog = catalog

    def tier_for_prices(self, price_ids) -> Optional[Tier]:
        best = None
        for pid in price_ids:
            tier = self.catalog.tier_of(pid)
            if tier is None:
                continue
            if best is None or self.catalog.spec_for(tier).precedence > self.catalog.spec_for(best).precedence:
                best = tier
        return best

    def grant_for(self, tier: Optional[Tier]) -> int:
        if tier is None or tier is Tier.FREE:
            return 0
        return self.catalog.spec_for(tier).monthly_credits

    def plan_for(self, tier: Optional[Tier]) -> str:
        if tier is None or tier is Tier.FREE:
            return Plan.FREE
        return self.catalog.spec_for(tier).plan

    def stored_grant(self, tier: Optional[str], plan: Optional[str]) -> int:
        """
        Grant for an entitlement row: the stored tier tag first, then the
        cheapest tier that narrows to the stored plan.
        """
        try:
            parsed = Tier(tier) if tier else None
        except ValueError:
            parsed = None
        if parsed is not None and parsed is not Tier.FREE:
            return self.grant_for(parsed)
        candidates = [s for s in self.catalog.specs.values() if s.plan == plan]
        if not candidates:
            return 0
        return min(s.monthly_credits for s in candidates)

    @staticmethod
    def is_downgrading(subscription: Dict[str, Any]) -> bool:
        return subscription.get("status") in NEGATIVE_STATUSES or bool(subscription.get("cancel_at_period_end"))

    def resolve(self, subscription: Dict[str, Any]) -> SubscriptionResolution:
        price_ids = tuple(price_ids_of(subscription))
        tier = self.tier_for_prices(price_ids)
        status = subscription.get("status") or "incomplete"
        downgrading = self.is_downgrading(subscription)

        plan = Plan.FREE
        if tier is not None and status in ACTIVE_STATUSES and not downgrading:
            plan = self.plan_for(tier)

        return SubscriptionResolution(
            plan=plan,
            tier=tier,
            status=status,
            price_ids=price_ids,
            is_downgrading=downgrading,
            credit_grant=self.grant_for(tier),
            current_period_end=period_end_of(subscription),
            unmapped_price_ids=tuple(p for p in price_ids if self.catalog.tier_of(p) is None),
        )


def init_tier_resolver(app) -> TierResolver:
    catalog = PriceCatalog.from_config(
        app.config.get("BILLING_PRICE_TIERS"),
        app.config.get("BILLING_TIER_CREDITS"),
    )
    resolver = TierResolver(catalog)
    app.extensions["tier_resolver"] = resolver
    return resolver


def get_tier_resolver() -> TierResolver:
    return current_app.extensions["tier_resolver"]
