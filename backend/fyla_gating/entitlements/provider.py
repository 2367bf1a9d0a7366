"""
Collaborator contract consumed by the gating engine.

The engine never talks HTTP directly; it depends on any object satisfying
SubscriptionProvider. FylaApiClient (integrations/fyla_api) is the production
implementation; tests use in-memory fakes.
"""

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from fyla_gating.entitlements.models import ResourceKey


@runtime_checkable
class SubscriptionProvider(Protocol):
    """
    Remote source of truth for subscriptions and resource usage.

    fetch_current_subscription() returns the raw payload:
        {"tier": 0|1|2, "isActive": bool, "endDate": iso?, "renewalDate": iso?,
         "limits": {<partial SubscriptionLimits, wire names>}?}
    optionally nested under a "subscription" key.

    Any method may raise; the engine recovers locally.
    """

    async def fetch_current_subscription(self) -> Optional[Mapping[str, Any]]:
        ...

    async def fetch_resource_count(self, resource_key: ResourceKey) -> int:
        ...

    async def activate_subscription(self, session_id: Optional[str] = None) -> Any:
        ...
