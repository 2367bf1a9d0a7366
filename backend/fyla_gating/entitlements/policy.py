"""
Tier policy: default capability/quota table per subscription tier.

Pure: no state, no I/O. Every field is defined for every tier, and every
capability is monotonically non-decreasing in tier (a capability enabled at
PRO is enabled at BUSINESS; a BUSINESS quota covers the PRO quota).
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from fyla_gating.entitlements.models import (
    Bounded,
    Quota,
    SubscriptionLimits,
    SubscriptionTier,
    UNLIMITED,
)

logger = logging.getLogger(__name__)


_TIER_LIMITS: Dict[SubscriptionTier, SubscriptionLimits] = {
    SubscriptionTier.FREE: SubscriptionLimits(
        max_services=Bounded(3),
        max_photos_per_service=Bounded(5),
        max_team_members=Bounded(1),
        can_use_advanced_analytics=False,
        can_use_custom_branding=False,
        can_use_automated_marketing=False,
        can_accept_online_payments=False,
        has_priority_support=False,
        can_manage_multiple_locations=False,
        can_use_crm=False,
        can_use_promotions=False,
        can_use_loyalty_programs=False,
        can_use_marketing_campaigns=False,
    ),
    # Pro: promotions + loyalty programs
    SubscriptionTier.PRO: SubscriptionLimits(
        max_services=Bounded(25),
        max_photos_per_service=Bounded(30),
        max_team_members=Bounded(5),
        can_use_advanced_analytics=True,
        can_use_custom_branding=False,
        can_use_automated_marketing=False,
        can_accept_online_payments=True,
        has_priority_support=True,
        can_manage_multiple_locations=False,
        can_use_crm=False,
        can_use_promotions=True,
        can_use_loyalty_programs=True,
        can_use_marketing_campaigns=False,
    ),
    # Business: everything, no quotas
    SubscriptionTier.BUSINESS: SubscriptionLimits(
        max_services=UNLIMITED,
        max_photos_per_service=UNLIMITED,
        max_team_members=UNLIMITED,
        can_use_advanced_analytics=True,
        can_use_custom_branding=True,
        can_use_automated_marketing=True,
        can_accept_online_payments=True,
        has_priority_support=True,
        can_manage_multiple_locations=True,
        can_use_crm=True,
        can_use_promotions=True,
        can_use_loyalty_programs=True,
        can_use_marketing_campaigns=True,
    ),
}

_DISPLAY_NAMES: Dict[SubscriptionTier, str] = {
    SubscriptionTier.FREE: "Free",
    SubscriptionTier.PRO: "Pro",
    SubscriptionTier.BUSINESS: "Business",
}

_MONTHLY_PRICES_USD: Dict[SubscriptionTier, Decimal] = {
    SubscriptionTier.FREE: Decimal("0.00"),
    SubscriptionTier.PRO: Decimal("19.99"),
    SubscriptionTier.BUSINESS: Decimal("49.99"),
}


class TierPolicy:
    """
    Maps a subscription tier to its default limits and display metadata.

    Stateless; a single instance can be shared by every session.
    """

    def limits_for(self, tier: SubscriptionTier) -> SubscriptionLimits:
        return _TIER_LIMITS[SubscriptionTier(tier)]

    def display_name(self, tier: SubscriptionTier) -> str:
        return _DISPLAY_NAMES[SubscriptionTier(tier)]

    def monthly_price(self, tier: SubscriptionTier) -> Decimal:
        return _MONTHLY_PRICES_USD[SubscriptionTier(tier)]

    def tiers(self) -> List[SubscriptionTier]:
        return sorted(SubscriptionTier)

    def tiers_enabling(self, field_name: str) -> List[SubscriptionTier]:
        """Tiers whose default grants a boolean capability (ascending)."""
        return [t for t in self.tiers() if self.limits_for(t).get(field_name) is True]

    def upgrade_tiers(
        self,
        field_name: str,
        current: SubscriptionTier,
        current_quota: Optional[Quota] = None,
    ) -> List[SubscriptionTier]:
        """
        Tiers above `current` that would improve `field_name`.

        Boolean capabilities: higher tiers that enable it.
        Quotas: higher tiers whose quota strictly exceeds `current_quota`
        (defaults to the current tier's quota).
        """
        higher = [t for t in self.tiers() if t > current]

        if not SubscriptionLimits.is_quota_field(field_name):
            return [t for t in higher if self.limits_for(t).get(field_name) is True]

        baseline = current_quota or self.limits_for(current).get(field_name)
        return [
            t for t in higher
            if not baseline.covers(self.limits_for(t).get(field_name))
        ]

    def minimum_tier_for(self, field_name: str) -> Optional[SubscriptionTier]:
        enabling = self.tiers_enabling(field_name)
        return enabling[0] if enabling else None

    def format_tiers(self, tiers: Sequence[SubscriptionTier]) -> str:
        """
        Human-readable list of plans.

        [BUSINESS]       -> "the Business plan"
        [PRO, BUSINESS]  -> "Pro and Business plans"
        """
        names = [self.display_name(t) for t in tiers]
        if not names:
            return "a higher plan"
        if len(names) == 1:
            return f"the {names[0]} plan"
        return f"{', '.join(names[:-1])} and {names[-1]} plans"


def is_monotonic(policy: TierPolicy, field_names: Optional[Iterable[str]] = None) -> bool:
    """
    Check that every capability is non-decreasing in tier.

    Used at import time as a guard on the table above and by tests.
    """
    names = list(field_names or SubscriptionLimits.field_names())
    ordered = policy.tiers()
    for lower, higher in zip(ordered, ordered[1:]):
        low_limits = policy.limits_for(lower)
        high_limits = policy.limits_for(higher)
        for name in names:
            low, high = low_limits.get(name), high_limits.get(name)
            if isinstance(low, bool):
                if low and not high:
                    return False
            elif not high.covers(low):
                return False
    return True


DEFAULT_TIER_POLICY = TierPolicy()

if not is_monotonic(DEFAULT_TIER_POLICY):
    raise RuntimeError("Tier policy table is not monotonic in tier")
