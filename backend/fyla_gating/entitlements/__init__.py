"""
Entitlements engine for tier-based feature gating.

This module provides:
- EntitlementEvaluator: Answers "is feature/quota X allowed" for the current user
- SubscriptionStore: Session-scoped, single-flight cache of the subscription
- UsageCounter: Per-resource usage counts with a 5 minute TTL
- ActivationFlow: Post-payment activate → wait → refresh
- TierPolicy: Default capabilities and quotas per tier
- EntitlementSession: Owns all of the above for one logged-in user
- GatingTelemetry: Structured events for every fail-open path

Resolution order: provider limits → tier defaults → FREE fallback
Failure mode: fail OPEN on infrastructure errors, fail CLOSED on tier/quota
"""

from fyla_gating.entitlements.models import (
    SubscriptionTier,
    Unlimited,
    Bounded,
    Quota,
    UNLIMITED,
    quota_from_wire,
    quota_to_wire,
    SubscriptionLimits,
    UserSubscription,
    ResourceKey,
    EntitlementResult,
    UpgradePrompt,
)
from fyla_gating.entitlements.errors import (
    EntitlementError,
    SessionClosedError,
    FetchCancelledError,
    SubscriptionProviderError,
)
from fyla_gating.entitlements.policy import TierPolicy, DEFAULT_TIER_POLICY, is_monotonic
from fyla_gating.entitlements.provider import SubscriptionProvider
from fyla_gating.entitlements.cache import CachedValue, SingleFlight, UsageCounter
from fyla_gating.entitlements.store import SubscriptionStore, parse_subscription_payload
from fyla_gating.entitlements.service import EntitlementEvaluator, Feature, FeatureRule
from fyla_gating.entitlements.activation import ActivationFlow
from fyla_gating.entitlements.telemetry import GatingEvent, GatingTelemetry, RecordingSink
from fyla_gating.entitlements.session import EntitlementSession, create_entitlement_session

__all__ = [
    # Models
    "SubscriptionTier",
    "Unlimited",
    "Bounded",
    "Quota",
    "UNLIMITED",
    "quota_from_wire",
    "quota_to_wire",
    "SubscriptionLimits",
    "UserSubscription",
    "ResourceKey",
    "EntitlementResult",
    "UpgradePrompt",
    # Errors
    "EntitlementError",
    "SessionClosedError",
    "FetchCancelledError",
    "SubscriptionProviderError",
    # Components
    "TierPolicy",
    "DEFAULT_TIER_POLICY",
    "is_monotonic",
    "SubscriptionProvider",
    "CachedValue",
    "SingleFlight",
    "UsageCounter",
    "SubscriptionStore",
    "parse_subscription_payload",
    "EntitlementEvaluator",
    "Feature",
    "FeatureRule",
    "ActivationFlow",
    "GatingEvent",
    "GatingTelemetry",
    "RecordingSink",
    "EntitlementSession",
    "create_entitlement_session",
]
