"""
Entitlement Service — single entry point for feature gating decisions.

Provides:
- EntitlementEvaluator.check(feature)                → EntitlementResult
- EntitlementEvaluator.check_quota(field, key, name) → EntitlementResult
- Per-feature convenience checks used by provider screens
- can_access_screen(), upgrade_prompt(), debug_snapshot()

Architecture:
- Fail-OPEN on infrastructure errors: the store and usage counter recover
  locally, so checks always resolve to a result
- Fail-CLOSED only on a genuine tier/quota mismatch: allowed=False plus a
  human-readable message
- Unlimited quotas short-circuit before any usage fetch
- Tier-gated features compare tier ordinals (tier >= minimum_tier)

Unknown features and a closed session are an explicit deny, never an
exception. After close() the plan helpers answer for a Free subscription.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from fyla_gating.entitlements.cache import UsageCounter
from fyla_gating.entitlements.errors import FetchCancelledError, SessionClosedError
from fyla_gating.entitlements.models import (
    EntitlementResult,
    ResourceKey,
    SubscriptionLimits,
    SubscriptionTier,
    Unlimited,
    UpgradePrompt,
    UserSubscription,
)
from fyla_gating.entitlements.policy import DEFAULT_TIER_POLICY, TierPolicy
from fyla_gating.entitlements.store import SubscriptionStore, free_fallback_subscription
from fyla_gating.entitlements.telemetry import (
    ENTITLEMENT_DENIED,
    ENTITLEMENT_SESSION_CLOSED,
    ENTITLEMENT_UNKNOWN_FEATURE,
    GatingTelemetry,
)

logger = logging.getLogger(__name__)

SESSION_ENDED_MESSAGE = "Your session has ended. Sign in again to continue."


# ---------------------------------------------------------------------------
# Feature registry
# ---------------------------------------------------------------------------

class Feature(str, Enum):
    """Gated capabilities."""
    ADVANCED_ANALYTICS = "advanced_analytics"
    CUSTOM_BRANDING = "custom_branding"
    AUTOMATED_MARKETING = "automated_marketing"
    ONLINE_PAYMENTS = "online_payments"
    PRIORITY_SUPPORT = "priority_support"
    MULTI_LOCATION = "multi_location"
    CRM = "crm"
    ADVANCED_BOOKING = "advanced_booking"
    PROMOTIONS = "promotions"
    LOYALTY_PROGRAMS = "loyalty_programs"
    MARKETING_CAMPAIGNS = "marketing_campaigns"

    @classmethod
    def lookup(cls, name: Union["Feature", str]) -> Optional["Feature"]:
        """Resolve a Feature from an enum, its value, or its name (any case)."""
        if isinstance(name, Feature):
            return name
        normalized = str(name).strip().lower().replace("-", "_").replace(" ", "_")
        for feature in cls:
            if normalized in (feature.value, feature.name.lower()):
                return feature
        return None


@dataclass(frozen=True)
class FeatureRule:
    """
    How a feature is gated.

    limit_field:  boolean field in SubscriptionLimits (None for purely
                  tier-gated features)
    minimum_tier: when set, access requires tier >= minimum_tier and the
                  boolean field is not consulted
    """
    display_name: str
    limit_field: Optional[str] = None
    minimum_tier: Optional[SubscriptionTier] = None


FEATURE_RULES: Dict[Feature, FeatureRule] = {
    Feature.ADVANCED_ANALYTICS: FeatureRule("Advanced analytics", "can_use_advanced_analytics"),
    Feature.CUSTOM_BRANDING: FeatureRule("Custom branding", "can_use_custom_branding"),
    Feature.AUTOMATED_MARKETING: FeatureRule("Automated marketing tools", "can_use_automated_marketing"),
    Feature.ONLINE_PAYMENTS: FeatureRule("Online payment processing", "can_accept_online_payments"),
    Feature.PRIORITY_SUPPORT: FeatureRule("Priority support", "has_priority_support"),
    Feature.MULTI_LOCATION: FeatureRule(
        "Multi-location management", "can_manage_multiple_locations", SubscriptionTier.BUSINESS,
    ),
    Feature.CRM: FeatureRule(
        "Advanced CRM and revenue tracking", "can_use_crm", SubscriptionTier.BUSINESS,
    ),
    Feature.ADVANCED_BOOKING: FeatureRule(
        "Advanced booking features", None, SubscriptionTier.PRO,
    ),
    Feature.PROMOTIONS: FeatureRule("Promotions", "can_use_promotions"),
    Feature.LOYALTY_PROGRAMS: FeatureRule("Loyalty programs", "can_use_loyalty_programs"),
    Feature.MARKETING_CAMPAIGNS: FeatureRule("Marketing campaigns", "can_use_marketing_campaigns"),
}

# Screen name -> gating feature. Screens not listed are ungated.
SCREEN_FEATURES: Dict[str, Feature] = {
    "Analytics": Feature.ADVANCED_ANALYTICS,
    "AdvancedAnalytics": Feature.ADVANCED_ANALYTICS,
    "CustomBranding": Feature.CUSTOM_BRANDING,
    "AutomatedMarketing": Feature.AUTOMATED_MARKETING,
    "MultiLocation": Feature.MULTI_LOCATION,
    "RevenueCRM": Feature.CRM,
    "PrioritySupport": Feature.PRIORITY_SUPPORT,
}


# ---------------------------------------------------------------------------
# EntitlementEvaluator
# ---------------------------------------------------------------------------

class EntitlementEvaluator:
    """
    Answers "is capability/quota X allowed for the current user".

    Stateless between calls; reads through the injected store and counter.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        usage: UsageCounter,
        policy: Optional[TierPolicy] = None,
        telemetry: Optional[GatingTelemetry] = None,
    ):
        self._store = store
        self._usage = usage
        self._policy = policy or DEFAULT_TIER_POLICY
        self._telemetry = telemetry or GatingTelemetry()

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def check(self, feature: Union[Feature, str]) -> EntitlementResult:
        """
        Check a boolean or tier-gated capability.

        Denied results carry a message naming the qualifying plans and the
        user's current plan.
        """
        resolved = Feature.lookup(feature)
        if resolved is None:
            self._telemetry.warning(ENTITLEMENT_UNKNOWN_FEATURE, feature=str(feature))
            return EntitlementResult(
                allowed=False,
                message=f"{feature} is not a recognised feature.",
                feature=str(feature),
            )

        rule = FEATURE_RULES[resolved]
        try:
            subscription = await self._store.get()
        except SessionClosedError as exc:
            return self._session_ended(rule.display_name, exc)

        if rule.minimum_tier is not None:
            allowed = subscription.tier >= rule.minimum_tier
            qualifying = [t for t in self._policy.tiers() if t >= rule.minimum_tier]
        else:
            allowed = subscription.limits.get(rule.limit_field) is True
            qualifying = self._policy.tiers_enabling(rule.limit_field)

        if allowed:
            return EntitlementResult(allowed=True, feature=rule.display_name)

        message = (
            f"{rule.display_name} is available with "
            f"{self._policy.format_tiers(qualifying)}. "
            f"You're currently on the {self._policy.display_name(subscription.tier)} plan."
        )
        self._record_denial(rule.display_name, subscription)
        return EntitlementResult(allowed=False, message=message, feature=rule.display_name)

    async def check_quota(
        self,
        limit_field: str,
        resource_key: ResourceKey,
        feature_name: Optional[str] = None,
    ) -> EntitlementResult:
        """
        Check a countable resource against its quota.

        Unlimited quotas return allowed=True without consulting the usage
        counter. Bounded quotas allow while current_count < limit.

        Args:
            limit_field: Quota field of SubscriptionLimits (e.g. "max_services")
            resource_key: Resource whose live count is compared
            feature_name: Human name used in messages (e.g. "service")
        """
        name = feature_name or limit_field
        if not SubscriptionLimits.is_quota_field(limit_field):
            self._telemetry.warning(
                ENTITLEMENT_UNKNOWN_FEATURE,
                feature=name,
                limit_field=limit_field,
            )
            return EntitlementResult(
                allowed=False,
                message=f"{limit_field} is not a recognised quota.",
                feature=name,
            )

        try:
            subscription = await self._store.get()
        except SessionClosedError as exc:
            return self._session_ended(name, exc)
        quota = subscription.limits.get(limit_field)

        if isinstance(quota, Unlimited):
            return EntitlementResult(allowed=True, feature=name)

        try:
            current_count = await self._usage.get(resource_key)
        except SessionClosedError as exc:
            return self._session_ended(name, exc)
        if quota.allows(current_count):
            return EntitlementResult(
                allowed=True,
                current_count=current_count,
                limit=quota.value,
                feature=name,
            )

        tier_name = self._policy.display_name(subscription.tier)
        upgrade_tiers = self._policy.upgrade_tiers(limit_field, subscription.tier, quota)
        if upgrade_tiers:
            names = " or ".join(self._policy.display_name(t) for t in upgrade_tiers)
            upgrade = f"Upgrade to {names} for a higher limit."
        else:
            upgrade = "Contact support to raise this limit."

        message = (
            f"You've reached your {name} limit ({quota.value}) on the {tier_name} plan. "
            f"{upgrade}"
        )
        self._record_denial(
            name,
            subscription,
            current_count=current_count,
            limit=quota.value,
            resource=str(resource_key),
        )
        return EntitlementResult(
            allowed=False,
            current_count=current_count,
            limit=quota.value,
            message=message,
            feature=name,
        )

    # ------------------------------------------------------------------
    # Quota conveniences
    # ------------------------------------------------------------------

    async def can_create_service(self) -> EntitlementResult:
        return await self.check_quota("max_services", ResourceKey.services(), "service")

    async def can_add_photo(self, service_id: Union[str, int]) -> EntitlementResult:
        return await self.check_quota(
            "max_photos_per_service",
            ResourceKey.service_photos(service_id),
            "photo",
        )

    # ------------------------------------------------------------------
    # Capability conveniences
    # ------------------------------------------------------------------

    async def can_access_advanced_analytics(self) -> EntitlementResult:
        return await self.check(Feature.ADVANCED_ANALYTICS)

    async def can_use_custom_branding(self) -> EntitlementResult:
        return await self.check(Feature.CUSTOM_BRANDING)

    async def can_use_automated_marketing(self) -> EntitlementResult:
        return await self.check(Feature.AUTOMATED_MARKETING)

    async def can_accept_online_payments(self) -> EntitlementResult:
        return await self.check(Feature.ONLINE_PAYMENTS)

    async def can_access_priority_support(self) -> EntitlementResult:
        return await self.check(Feature.PRIORITY_SUPPORT)

    async def can_use_multi_location(self) -> EntitlementResult:
        return await self.check(Feature.MULTI_LOCATION)

    async def can_use_crm(self) -> EntitlementResult:
        return await self.check(Feature.CRM)

    async def can_use_advanced_booking_features(self) -> EntitlementResult:
        return await self.check(Feature.ADVANCED_BOOKING)

    async def can_use_promotions(self) -> EntitlementResult:
        return await self.check(Feature.PROMOTIONS)

    async def can_use_loyalty_programs(self) -> EntitlementResult:
        return await self.check(Feature.LOYALTY_PROGRAMS)

    async def can_use_marketing_campaigns(self) -> EntitlementResult:
        return await self.check(Feature.MARKETING_CAMPAIGNS)

    async def can_access_screen(self, screen_name: str) -> EntitlementResult:
        """Gate a navigation target; screens without a rule are allowed."""
        feature = SCREEN_FEATURES.get(screen_name)
        if feature is None:
            return EntitlementResult(allowed=True)
        return await self.check(feature)

    # ------------------------------------------------------------------
    # Plan helpers
    # ------------------------------------------------------------------

    async def has_pro_plan(self) -> bool:
        subscription = await self._plan_subscription("has_pro_plan")
        return subscription.tier >= SubscriptionTier.PRO

    async def has_business_plan(self) -> bool:
        subscription = await self._plan_subscription("has_business_plan")
        return subscription.tier >= SubscriptionTier.BUSINESS

    async def tier_name(self) -> str:
        subscription = await self._plan_subscription("tier_name")
        return self._policy.display_name(subscription.tier)

    async def upgrade_prompt(self, feature_name: str) -> UpgradePrompt:
        """
        Build the upgrade suggestion for a gated feature.

        FREE suggests Pro (listing Pro and Business prices), PRO suggests
        Business, BUSINESS has nothing left to suggest.
        """
        subscription = await self._plan_subscription(feature_name)
        pro = SubscriptionTier.PRO
        business = SubscriptionTier.BUSINESS

        if subscription.tier == SubscriptionTier.FREE:
            return UpgradePrompt(
                title="Upgrade Required",
                message=(
                    f"{feature_name} is available with "
                    f"{self._policy.display_name(pro)} ({self._price(pro)}/month) and "
                    f"{self._policy.display_name(business)} ({self._price(business)}/month) plans."
                ),
                suggested_tier=self._policy.display_name(pro),
            )

        if subscription.tier == SubscriptionTier.PRO:
            return UpgradePrompt(
                title="Upgrade to Business",
                message=(
                    f"{feature_name} is available with the "
                    f"{self._policy.display_name(business)} plan ({self._price(business)}/month)."
                ),
                suggested_tier=self._policy.display_name(business),
            )

        return UpgradePrompt(
            title="Feature Not Available",
            message=f"{feature_name} is not available on your current plan.",
        )

    async def debug_snapshot(self) -> Dict[str, Any]:
        """Current subscription plus the outcome of every check."""
        subscription = await self._plan_subscription("debug_snapshot")
        results: Dict[str, Any] = {
            "can_create_service": (await self.can_create_service()).to_dict(),
        }
        for feature in Feature:
            results[feature.value] = (await self.check(feature)).to_dict()

        logger.info("Entitlement debug snapshot", extra={
            "tier": self._policy.display_name(subscription.tier),
            "is_active": subscription.is_active,
        })
        return {
            "subscription": subscription.to_dict(),
            "feature_tests": results,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _plan_subscription(self, caller: str) -> UserSubscription:
        try:
            return await self._store.get()
        except SessionClosedError as exc:
            self._emit_session_closed(caller, exc)
            return free_fallback_subscription(self._policy)

    def _session_ended(self, feature_name: str, exc: SessionClosedError) -> EntitlementResult:
        self._emit_session_closed(feature_name, exc)
        return EntitlementResult(
            allowed=False,
            message=SESSION_ENDED_MESSAGE,
            feature=feature_name,
        )

    def _emit_session_closed(self, feature_name: str, exc: SessionClosedError) -> None:
        self._telemetry.warning(
            ENTITLEMENT_SESSION_CLOSED,
            feature=feature_name,
            component=exc.component,
            in_flight=isinstance(exc, FetchCancelledError),
        )

    def _price(self, tier: SubscriptionTier) -> str:
        return f"${self._policy.monthly_price(tier)}"

    def _record_denial(self, feature_name: str, subscription: UserSubscription, **fields: Any) -> None:
        self._telemetry.info(
            ENTITLEMENT_DENIED,
            feature=feature_name,
            tier=self._policy.display_name(subscription.tier),
            **fields,
        )
