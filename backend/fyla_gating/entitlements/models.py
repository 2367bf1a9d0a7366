"""
Entitlement models — canonical types for the tier-based feature gating engine.

Provides:
- SubscriptionTier: Ordered tier enumeration (FREE < PRO < BUSINESS)
- Unlimited / Bounded: Tagged quota variant (replaces the -1 wire sentinel)
- SubscriptionLimits: Immutable capability/quota table for one subscription
- UserSubscription: Immutable snapshot of the current user's subscription
- ResourceKey: Identifies a counted resource (services, photos per service)
- EntitlementResult: Outcome of a single entitlement check
- UpgradePrompt: Structured upgrade suggestion for the UI

Tier ordering is load-bearing: gating compares tiers with >=, so the numeric
ordinal of SubscriptionTier is a documented total order.

CRITICAL: Quota sentinels (-1) exist only on the wire. Convert with
quota_from_wire() / quota_to_wire() at the provider boundary.
"""

import json
import logging
from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Wire value meaning "no limit"
UNLIMITED_SENTINEL = -1


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

class SubscriptionTier(IntEnum):
    """
    Subscription tiers, totally ordered by ordinal.

    FREE (0) < PRO (1) < BUSINESS (2). A capability enabled at one tier is
    enabled at every higher tier.
    """
    FREE = 0
    PRO = 1
    BUSINESS = 2

    @classmethod
    def parse(cls, raw: Any) -> "SubscriptionTier":
        """
        Parse a tier from a provider payload value.

        Accepts the ordinal (int or numeric string) or the case-insensitive
        tier name.

        Raises:
            ValueError: If the value does not name a known tier
        """
        if isinstance(raw, bool):
            raise ValueError(f"Invalid subscription tier: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        if isinstance(raw, str):
            value = raw.strip()
            if value.lstrip("-").isdigit():
                return cls(int(value))
            try:
                return cls[value.upper()]
            except KeyError:
                pass
        raise ValueError(f"Invalid subscription tier: {raw!r}")


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unlimited:
    """Quota with no upper bound."""

    def allows(self, current_count: int) -> bool:
        return True

    def covers(self, other: "Quota") -> bool:
        return True

    def __str__(self) -> str:
        return "unlimited"


@dataclass(frozen=True)
class Bounded:
    """Quota allowing strictly fewer than `value` resources."""
    value: int

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"Bounded quota must be int, got {type(self.value)}")
        if self.value < 0:
            raise ValueError(f"Bounded quota must be >= 0, got {self.value}")

    def allows(self, current_count: int) -> bool:
        return current_count < self.value

    def covers(self, other: "Quota") -> bool:
        if isinstance(other, Unlimited):
            return False
        return self.value >= other.value

    def __str__(self) -> str:
        return str(self.value)


Quota = Union[Unlimited, Bounded]

UNLIMITED = Unlimited()


def quota_from_wire(raw: Any) -> Quota:
    """
    Convert a wire quota (int, -1 = unlimited) to the tagged variant.

    Raises:
        ValueError: On negative values other than the sentinel or non-int input
    """
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"Quota must be an integer, got {raw!r}")
    if raw == UNLIMITED_SENTINEL:
        return UNLIMITED
    return Bounded(raw)


def quota_to_wire(quota: Quota) -> int:
    if isinstance(quota, Unlimited):
        return UNLIMITED_SENTINEL
    return quota.value


# ---------------------------------------------------------------------------
# Limits and subscription snapshot (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SubscriptionLimits:
    """
    Capability and quota table for a subscription.

    Every field is explicit: a disabled capability is False, never missing.
    """
    max_services: Quota
    max_photos_per_service: Quota
    max_team_members: Quota
    can_use_advanced_analytics: bool
    can_use_custom_branding: bool
    can_use_automated_marketing: bool
    can_accept_online_payments: bool
    has_priority_support: bool
    can_manage_multiple_locations: bool
    can_use_crm: bool
    can_use_promotions: bool
    can_use_loyalty_programs: bool
    can_use_marketing_campaigns: bool

    @classmethod
    def field_names(cls) -> tuple:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def quota_fields(cls) -> tuple:
        return ("max_services", "max_photos_per_service", "max_team_members")

    @classmethod
    def is_quota_field(cls, name: str) -> bool:
        return name in cls.quota_fields()

    def get(self, name: str) -> Union[bool, Quota]:
        if name not in self.field_names():
            raise KeyError(name)
        return getattr(self, name)

    def with_overrides(
        self,
        raw_limits: Optional[Mapping[str, Any]],
        on_invalid: Optional[Callable[[str, Any, Exception], None]] = None,
    ) -> "SubscriptionLimits":
        """
        Layer provider-supplied values over these (tier default) limits.

        Each field is resolved independently: absent or invalid wire values
        keep the default. Returns a new instance; self is never mutated.

        Args:
            raw_limits: Partial limits keyed by wire name
            on_invalid: Called with (wire_name, value, error) per rejected field
        """
        if not raw_limits:
            return self

        updates: Dict[str, Any] = {}
        for name, wire_name in LIMIT_WIRE_NAMES.items():
            if wire_name not in raw_limits or raw_limits[wire_name] is None:
                continue
            raw = raw_limits[wire_name]
            try:
                if self.is_quota_field(name):
                    updates[name] = quota_from_wire(raw)
                elif isinstance(raw, bool):
                    updates[name] = raw
                else:
                    raise ValueError(f"Expected boolean, got {raw!r}")
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring invalid limit override", extra={
                    "field": wire_name,
                    "value": repr(raw),
                    "error": str(exc),
                })
                if on_invalid is not None:
                    on_invalid(wire_name, raw, exc)
        return replace(self, **updates) if updates else self

    def to_dict(self) -> Dict[str, Any]:
        """Serialise using wire names (quotas as ints, -1 = unlimited)."""
        result: Dict[str, Any] = {}
        for name, wire_name in LIMIT_WIRE_NAMES.items():
            value = getattr(self, name)
            result[wire_name] = value if isinstance(value, bool) else quota_to_wire(value)
        return result


# Python field name -> provider payload field name
LIMIT_WIRE_NAMES: Dict[str, str] = {
    "max_services": "maxServices",
    "max_photos_per_service": "maxPhotosPerService",
    "max_team_members": "maxTeamMembers",
    "can_use_advanced_analytics": "canUseAdvancedAnalytics",
    "can_use_custom_branding": "canUseCustomBranding",
    "can_use_automated_marketing": "canUseAutomatedMarketing",
    "can_accept_online_payments": "canAcceptOnlinePayments",
    "has_priority_support": "hasPrioritySupport",
    "can_manage_multiple_locations": "canManageMultipleLocations",
    "can_use_crm": "canUseCRM",
    "can_use_promotions": "canUsePromotions",
    "can_use_loyalty_programs": "canUseLoyaltyPrograms",
    "can_use_marketing_campaigns": "canUseMarketingCampaigns",
}


@dataclass(frozen=True)
class UserSubscription:
    """
    Snapshot of the current user's subscription.

    Immutable; replaced wholesale on refetch, never patched in place.
    """
    tier: SubscriptionTier
    limits: SubscriptionLimits
    is_active: bool
    expires_at: Optional[datetime] = None
    renewal_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": int(self.tier),
            "tier_name": self.tier.name.title(),
            "limits": self.limits.to_dict(),
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "renewal_date": self.renewal_date.isoformat() if self.renewal_date else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# Resource keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceKey:
    """
    Identifies a counted resource for quota checks.

    kind:  resource family ("services", "service_photos")
    scope: optional owner id (the service for per-service photo counts)
    """
    kind: str
    scope: Optional[str] = None

    SERVICES = "services"
    SERVICE_PHOTOS = "service_photos"

    @classmethod
    def services(cls) -> "ResourceKey":
        return cls(cls.SERVICES)

    @classmethod
    def service_photos(cls, service_id: Union[str, int]) -> "ResourceKey":
        return cls(cls.SERVICE_PHOTOS, str(service_id))

    def __str__(self) -> str:
        if self.scope is None:
            return self.kind
        return f"{self.kind}:{self.scope}"


# ---------------------------------------------------------------------------
# Check results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntitlementResult:
    """
    Result of an entitlement check. Produced fresh per call, never persisted.

    limit is only set for bounded quotas.
    """
    allowed: bool
    current_count: Optional[int] = None
    limit: Optional[int] = None
    message: Optional[str] = None
    feature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class UpgradePrompt:
    """Upgrade suggestion shown when a gated feature is requested."""
    title: str
    message: str
    suggested_tier: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
