"""
Entitlement session: owns all gating state for one logged-in user.

Construct at login, close at logout. Nothing is cached at module level, so
two sessions (or two tests) never share a subscription or usage count.

Usage:
    async with create_entitlement_session(api_token=token) as session:
        result = await session.evaluator.can_create_service()
        if not result.allowed:
            prompt = await session.evaluator.upgrade_prompt("Unlimited services")
"""

import logging
from typing import Any, Dict, Optional

from fyla_gating.config.gating_settings import GatingSettings, load_gating_settings
from fyla_gating.entitlements.activation import ActivationFlow, Sleeper
from fyla_gating.entitlements.cache import Clock, UsageCounter
from fyla_gating.entitlements.models import EntitlementResult, ResourceKey, UserSubscription
from fyla_gating.entitlements.policy import DEFAULT_TIER_POLICY, TierPolicy
from fyla_gating.entitlements.service import EntitlementEvaluator
from fyla_gating.entitlements.store import SubscriptionStore
from fyla_gating.entitlements.telemetry import GatingTelemetry

logger = logging.getLogger(__name__)


class EntitlementSession:
    """
    Wires store, usage counter, evaluator and activation flow around one
    provider.

    If owns_provider is True, close() also closes the provider (when it has
    an async close()).
    """

    def __init__(
        self,
        provider,
        settings: Optional[GatingSettings] = None,
        policy: Optional[TierPolicy] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        telemetry: Optional[GatingTelemetry] = None,
        owns_provider: bool = False,
    ):
        self.settings = settings or GatingSettings()
        self.policy = policy or DEFAULT_TIER_POLICY
        self.telemetry = telemetry or GatingTelemetry()
        self._provider = provider
        self._owns_provider = owns_provider
        self._closed = False

        self.store = SubscriptionStore(
            provider,
            policy=self.policy,
            ttl_seconds=self.settings.subscription_ttl_seconds,
            failure_retry_seconds=self.settings.failure_retry_seconds,
            clock=clock,
            telemetry=self.telemetry,
        )
        self.usage = UsageCounter(
            provider,
            ttl_seconds=self.settings.usage_ttl_seconds,
            failure_retry_seconds=self.settings.failure_retry_seconds,
            clock=clock,
            telemetry=self.telemetry,
        )
        self.evaluator = EntitlementEvaluator(
            self.store,
            self.usage,
            policy=self.policy,
            telemetry=self.telemetry,
        )
        self.activation = ActivationFlow(
            provider,
            self.store,
            grace_seconds=self.settings.activation_grace_seconds,
            sleep=sleep,
            telemetry=self.telemetry,
        )

    @property
    def provider(self):
        return self._provider

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------

    async def subscription(self) -> UserSubscription:
        return await self.store.get()

    async def check(self, feature) -> EntitlementResult:
        return await self.evaluator.check(feature)

    async def check_quota(
        self,
        limit_field: str,
        resource_key: ResourceKey,
        feature_name: Optional[str] = None,
    ) -> EntitlementResult:
        return await self.evaluator.check_quota(limit_field, resource_key, feature_name)

    async def activate_after_payment(self, session_id: Optional[str] = None) -> bool:
        return await self.activation.activate_after_payment(session_id)

    def reset_usage(self, resource_key: Optional[ResourceKey] = None) -> None:
        """Drop cached usage counts, e.g. after a service or photo is created."""
        self.usage.invalidate(resource_key)

    def invalidate_subscription(self, reason: Optional[str] = None) -> None:
        """Drop the cached subscription, e.g. on a payment webhook push."""
        self.store.invalidate(reason)

    async def diagnostics(self) -> Dict[str, Any]:
        """
        Local entitlement snapshot plus the backend's view, when the provider
        exposes one.
        """
        snapshot = await self.evaluator.debug_snapshot()
        debug = getattr(self._provider, "debug_subscription", None)
        if debug is not None:
            try:
                snapshot["server"] = await debug()
            except Exception as exc:
                logger.warning("Subscription diagnostics unavailable", extra={
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                })
                snapshot["server"] = None
        return snapshot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """End the session: cancel in-flight fetches and drop all cached state."""
        if self._closed:
            return
        self._closed = True

        await self.store.close()
        self.usage.close()

        if self._owns_provider:
            close = getattr(self._provider, "close", None)
            if close is not None:
                await close()

        logger.info("Entitlement session closed")

    async def __aenter__(self) -> "EntitlementSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def create_entitlement_session(
    api_token: Optional[str] = None,
    settings: Optional[GatingSettings] = None,
    telemetry: Optional[GatingTelemetry] = None,
) -> EntitlementSession:
    """
    Factory function to create an EntitlementSession backed by the Fyla API.

    Args:
        api_token: Session bearer token (default: from FYLA_API_TOKEN env)
        settings: Override settings (default: load_gating_settings())

    Returns:
        Session that owns (and will close) its FylaApiClient
    """
    from fyla_gating.integrations.fyla_api.client import FylaApiClient

    settings = settings or load_gating_settings()
    client = FylaApiClient(
        api_token=api_token,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        connect_timeout=settings.connect_timeout_seconds,
    )
    return EntitlementSession(
        client,
        settings=settings,
        telemetry=telemetry,
        owns_provider=True,
    )
