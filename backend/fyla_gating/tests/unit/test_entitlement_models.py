"""
Unit tests for entitlement models.

Tests cover:
- SubscriptionTier parsing and ordering
- Quota variant (Unlimited / Bounded) and wire conversion
- SubscriptionLimits field-by-field overrides
- ResourceKey and result serialisation
"""

import json
from datetime import datetime, timezone

import pytest

from fyla_gating.entitlements.models import (
    Bounded,
    EntitlementResult,
    ResourceKey,
    SubscriptionLimits,
    SubscriptionTier,
    UNLIMITED,
    UNLIMITED_SENTINEL,
    UpgradePrompt,
    UserSubscription,
    quota_from_wire,
    quota_to_wire,
)
from fyla_gating.entitlements.policy import DEFAULT_TIER_POLICY


class TestSubscriptionTier:
    """Tests for SubscriptionTier ordering and parsing."""

    def test_total_order(self):
        """Tiers should be totally ordered Free < Pro < Business."""
        assert SubscriptionTier.FREE < SubscriptionTier.PRO < SubscriptionTier.BUSINESS

    @pytest.mark.parametrize("raw,expected", [
        (0, SubscriptionTier.FREE),
        (2, SubscriptionTier.BUSINESS),
        ("1", SubscriptionTier.PRO),
        ("pro", SubscriptionTier.PRO),
        (" Business ", SubscriptionTier.BUSINESS),
        (SubscriptionTier.PRO, SubscriptionTier.PRO),
    ])
    def test_parse_valid(self, raw, expected):
        """Valid ordinals and names should parse to a tier."""
        assert SubscriptionTier.parse(raw) == expected

    @pytest.mark.parametrize("raw", [3, -1, "enterprise", "", True, None, 1.5, "7"])
    def test_parse_invalid(self, raw):
        """Invalid tier values should raise ValueError."""
        with pytest.raises(ValueError):
            SubscriptionTier.parse(raw)


class TestQuota:
    """Tests for the Unlimited / Bounded quota variants."""

    def test_unlimited_allows_everything(self):
        """Unlimited should allow any count."""
        assert UNLIMITED.allows(0)
        assert UNLIMITED.allows(10 ** 9)

    def test_bounded_allows_strictly_below(self):
        """Bounded(n) should allow counts below n only."""
        quota = Bounded(3)
        assert quota.allows(2)
        assert not quota.allows(3)
        assert not quota.allows(4)

    def test_zero_quota_allows_nothing(self):
        """Bounded(0) should allow nothing."""
        assert not Bounded(0).allows(0)

    def test_bounded_rejects_negative(self):
        """Negative bounds should be rejected."""
        with pytest.raises(ValueError):
            Bounded(-1)

    def test_bounded_rejects_bool(self):
        """Booleans should not be accepted as bounds."""
        with pytest.raises(TypeError):
            Bounded(True)

    def test_covers(self):
        """A quota should cover any quota it is at least as large as."""
        assert UNLIMITED.covers(Bounded(100))
        assert Bounded(30).covers(Bounded(5))
        assert not Bounded(5).covers(Bounded(30))
        assert not Bounded(10 ** 6).covers(UNLIMITED)

    def test_wire_sentinel_maps_to_unlimited(self):
        """The -1 wire sentinel should decode to Unlimited."""
        assert quota_from_wire(UNLIMITED_SENTINEL) is UNLIMITED
        assert quota_to_wire(UNLIMITED) == -1

    def test_wire_bounded(self):
        """Non-negative wire integers should decode to Bounded."""
        assert quota_from_wire(25) == Bounded(25)
        assert quota_to_wire(Bounded(25)) == 25

    @pytest.mark.parametrize("raw", [-2, "5", 2.5, True, None])
    def test_wire_invalid(self, raw):
        """Malformed wire values should raise ValueError."""
        with pytest.raises((ValueError, TypeError)):
            quota_from_wire(raw)


class TestSubscriptionLimits:
    """Tests for SubscriptionLimits overrides and field access."""

    def test_with_overrides_layers_valid_fields(self):
        """Valid provider fields should replace tier defaults."""
        base = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.FREE)
        limits = base.with_overrides({"maxServices": 10, "canUseCRM": True})

        assert limits.max_services == Bounded(10)
        assert limits.can_use_crm is True
        # untouched fields keep the tier default
        assert limits.max_photos_per_service == Bounded(5)
        assert limits.can_use_advanced_analytics is False

    def test_with_overrides_does_not_mutate(self):
        """with_overrides should return a new instance."""
        base = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.FREE)
        base.with_overrides({"maxServices": 10})
        assert base.max_services == Bounded(3)

    def test_invalid_field_falls_back_independently(self):
        """One invalid field should not affect the others."""
        base = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.PRO)
        rejected = []

        limits = base.with_overrides(
            {"maxServices": "lots", "canUseAdvancedAnalytics": "yes", "maxPhotosPerService": -1},
            on_invalid=lambda name, value, exc: rejected.append(name),
        )

        assert limits.max_services == Bounded(25)
        assert limits.can_use_advanced_analytics is True
        assert limits.max_photos_per_service == UNLIMITED
        assert sorted(rejected) == ["canUseAdvancedAnalytics", "maxServices"]

    def test_none_values_are_ignored(self):
        """None provider values should keep the defaults."""
        base = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.FREE)
        assert base.with_overrides({"maxServices": None}) is base

    def test_unknown_wire_fields_are_ignored(self):
        """Unknown wire names should be ignored."""
        base = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.FREE)
        assert base.with_overrides({"maxWidgets": 4}) is base

    def test_get_unknown_field_raises(self):
        """get() on an unknown field should raise."""
        with pytest.raises(KeyError):
            DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.FREE).get("max_widgets")

    def test_to_dict_uses_wire_names(self):
        """to_dict should emit backend wire names."""
        data = DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.BUSINESS).to_dict()
        assert data["maxServices"] == -1
        assert data["canUseCRM"] is True
        assert set(data) == {
            "maxServices", "maxPhotosPerService", "maxTeamMembers",
            "canUseAdvancedAnalytics", "canUseCustomBranding", "canUseAutomatedMarketing",
            "canAcceptOnlinePayments", "hasPrioritySupport", "canManageMultipleLocations",
            "canUseCRM", "canUsePromotions", "canUseLoyaltyPrograms", "canUseMarketingCampaigns",
        }

    def test_quota_fields(self):
        """Only max_* fields should count as quota fields."""
        assert SubscriptionLimits.is_quota_field("max_services")
        assert not SubscriptionLimits.is_quota_field("can_use_crm")


class TestSerialisation:
    """Tests for to_dict / to_json output."""

    def test_user_subscription_to_json(self):
        """UserSubscription should serialise to JSON."""
        subscription = UserSubscription(
            tier=SubscriptionTier.PRO,
            limits=DEFAULT_TIER_POLICY.limits_for(SubscriptionTier.PRO),
            is_active=True,
            expires_at=datetime(2026, 1, 31, tzinfo=timezone.utc),
        )
        data = json.loads(subscription.to_json())
        assert data["tier"] == 1
        assert data["tier_name"] == "Pro"
        assert data["expires_at"] == "2026-01-31T00:00:00+00:00"
        assert data["renewal_date"] is None
        assert data["limits"]["maxServices"] == 25

    def test_resource_key_str(self):
        """ResourceKey should stringify to its cache key."""
        assert str(ResourceKey.services()) == "services"
        assert str(ResourceKey.service_photos(42)) == "service_photos:42"
        assert ResourceKey.service_photos(42) == ResourceKey.service_photos("42")

    def test_result_to_dict_drops_none(self):
        """EntitlementResult.to_dict should omit None fields."""
        result = EntitlementResult(allowed=True, current_count=2, limit=3)
        assert result.to_dict() == {"allowed": True, "current_count": 2, "limit": 3}

    def test_upgrade_prompt_to_dict(self):
        """UpgradePrompt should serialise its fields."""
        prompt = UpgradePrompt(title="Upgrade Required", message="m", suggested_tier="Pro")
        assert prompt.to_dict()["suggested_tier"] == "Pro"
