"""
Subscription Store: session-scoped cache of the current user's subscription.

Provides:
- SubscriptionStore.get()      → UserSubscription (lazy fetch, TTL-based)
- SubscriptionStore.refresh()  → UserSubscription (invalidate, then fetch)
- SubscriptionStore.invalidate(reason)
- SubscriptionStore.close()    → session teardown, cancels in-flight fetch
- parse_subscription_payload() → provider payload → UserSubscription

Architecture:
- Fail-OPEN: a provider error serves the previous value, or a synthetic
  FREE/active subscription when nothing was ever loaded
- Single-flight: concurrent get() calls during a fetch share one task
- Generations: a fetch started before refresh()/invalidate() never writes
  the cache, so get() after a completed refresh() never sees older data

State machine:
    UNLOADED --get()--> LOADED --(ttl elapsed, next get())--> LOADED
    any --refresh()--> UNLOADED --fetch--> LOADED
    any --close()--> CLOSED
"""

import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Any, Mapping, Optional

from fyla_gating.entitlements.cache import (
    CachedValue,
    Clock,
    SingleFlight,
    DEFAULT_FAILURE_RETRY_SECONDS,
    DEFAULT_SUBSCRIPTION_TTL_SECONDS,
)
from fyla_gating.entitlements.errors import SessionClosedError
from fyla_gating.entitlements.models import SubscriptionTier, UserSubscription
from fyla_gating.entitlements.policy import DEFAULT_TIER_POLICY, TierPolicy
from fyla_gating.entitlements.telemetry import (
    GatingTelemetry,
    SUBSCRIPTION_FALLBACK_FREE,
    SUBSCRIPTION_FETCH_CANCELLED,
    SUBSCRIPTION_FETCH_FAILED,
    SUBSCRIPTION_FIELD_INVALID,
    SUBSCRIPTION_INVALIDATED,
    SUBSCRIPTION_LOADED,
    SUBSCRIPTION_PAYLOAD_MISSING,
    SUBSCRIPTION_SERVED_STALE,
)

logger = logging.getLogger(__name__)

_SUBSCRIPTION_KEY = "current_subscription"

# Fractional seconds of any length (.NET DateTime writes up to 7 digits)
_FRACTION_RE = re.compile(r"\.(\d+)")


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def free_fallback_subscription(policy: TierPolicy = DEFAULT_TIER_POLICY) -> UserSubscription:
    """Synthetic subscription served when nothing better is known."""
    return UserSubscription(
        tier=SubscriptionTier.FREE,
        limits=policy.limits_for(SubscriptionTier.FREE),
        is_active=True,
    )


def _parse_datetime(raw: Any, field_name: str, telemetry: GatingTelemetry) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        text = str(raw).strip().replace("Z", "+00:00")
        # fromisoformat before 3.11 accepts exactly 3 or 6 fractional digits
        text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
        return datetime.fromisoformat(text)
    except ValueError as exc:
        telemetry.warning(
            SUBSCRIPTION_FIELD_INVALID,
            field=field_name,
            value=repr(raw),
            error=str(exc),
        )
        return None


def _parse_tier(raw: Any, telemetry: GatingTelemetry) -> SubscriptionTier:
    if raw is None:
        return SubscriptionTier.FREE
    try:
        return SubscriptionTier.parse(raw)
    except ValueError as exc:
        telemetry.warning(
            SUBSCRIPTION_FIELD_INVALID,
            field="tier",
            value=repr(raw),
            error=str(exc),
        )
        return SubscriptionTier.FREE


def parse_subscription_payload(
    payload: Any,
    policy: TierPolicy = DEFAULT_TIER_POLICY,
    telemetry: Optional[GatingTelemetry] = None,
) -> UserSubscription:
    """
    Convert a provider payload into a UserSubscription.

    Never raises. The payload may be flat or nested under "subscription".
    A payload carrying neither is "no subscription data" and maps to the
    FREE/active fallback. Every limit the provider omits (or sends in an
    invalid shape) falls back to the tier default.
    """
    telemetry = telemetry or GatingTelemetry()

    data = None
    if isinstance(payload, Mapping):
        nested = payload.get("subscription")
        if isinstance(nested, Mapping) and nested:
            data = nested
        elif "tier" in payload:
            data = payload

    if data is None:
        telemetry.warning(
            SUBSCRIPTION_PAYLOAD_MISSING,
            payload_type=type(payload).__name__,
        )
        return free_fallback_subscription(policy)

    tier = _parse_tier(data.get("tier"), telemetry)

    raw_limits = data.get("limits")
    if raw_limits is not None and not isinstance(raw_limits, Mapping):
        telemetry.warning(
            SUBSCRIPTION_FIELD_INVALID,
            field="limits",
            value=repr(raw_limits)[:200],
            error="limits must be an object",
        )
        raw_limits = None

    limits = policy.limits_for(tier).with_overrides(
        raw_limits,
        on_invalid=lambda name, value, exc: telemetry.warning(
            SUBSCRIPTION_FIELD_INVALID,
            field=f"limits.{name}",
            value=repr(value),
            error=str(exc),
        ),
    )

    return UserSubscription(
        tier=tier,
        limits=limits,
        is_active=data.get("isActive") is True,
        expires_at=_parse_datetime(data.get("endDate"), "endDate", telemetry),
        renewal_date=_parse_datetime(data.get("renewalDate"), "renewalDate", telemetry),
    )


# ---------------------------------------------------------------------------
# SubscriptionStore
# ---------------------------------------------------------------------------

class SubscriptionStore:
    """
    Session-scoped subscription cache.

    One instance per logged-in session (see EntitlementSession). Only this
    class mutates the cached subscription; everything else reads via get().
    """

    def __init__(
        self,
        provider,
        policy: Optional[TierPolicy] = None,
        ttl_seconds: float = DEFAULT_SUBSCRIPTION_TTL_SECONDS,
        failure_retry_seconds: float = DEFAULT_FAILURE_RETRY_SECONDS,
        clock: Optional[Clock] = None,
        telemetry: Optional[GatingTelemetry] = None,
    ):
        """
        Initialize subscription store.

        Args:
            provider: SubscriptionProvider used for fetches
            policy: Tier policy for default limits
            ttl_seconds: Lifetime of a successfully fetched subscription
            failure_retry_seconds: Lifetime of a value served after a failed fetch
            clock: Monotonic clock in seconds (injectable for tests)
            telemetry: Event emitter
        """
        self._provider = provider
        self._policy = policy or DEFAULT_TIER_POLICY
        self._ttl_seconds = ttl_seconds
        self._failure_retry_seconds = failure_retry_seconds
        self._clock = clock or time.monotonic
        self._telemetry = telemetry or GatingTelemetry()

        self._cached: Optional[CachedValue[UserSubscription]] = None
        self._single_flight = SingleFlight()
        self._generation = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def get(self) -> UserSubscription:
        """
        Return the current subscription.

        1. Fresh cache → return it
        2. Fetch in flight → await the same task
        3. Otherwise start a fetch

        Raises:
            SessionClosedError: If the store was closed, or closed while
                this fetch was in flight (FetchCancelledError)
        """
        if self._closed:
            raise SessionClosedError("subscription_store")

        cached = self._cached
        if cached is not None and cached.is_fresh(self._clock()):
            return cached.value

        generation = self._generation
        return await self._single_flight.run(
            _SUBSCRIPTION_KEY, lambda: self._load(generation)
        )

    async def refresh(self) -> UserSubscription:
        """Discard the cached subscription (regardless of TTL) and refetch."""
        self.invalidate("refresh")
        return await self.get()

    def invalidate(self, reason: Optional[str] = None) -> None:
        """
        Drop the cached subscription without fetching.

        Call this on logout/login and after payment events.
        """
        self._generation += 1
        self._cached = None
        self._single_flight.detach(_SUBSCRIPTION_KEY)
        self._telemetry.info(
            SUBSCRIPTION_INVALIDATED,
            reason=reason,
            generation=self._generation,
        )

    async def close(self) -> None:
        """
        End the session.

        Cancels an in-flight fetch (its result is discarded), clears the
        cache, and rejects further get() calls.
        """
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._cached = None
        cancelled = self._single_flight.cancel_all()
        # Let cancelled tasks unwind before the loop moves on
        await asyncio.sleep(0)
        logger.info("Subscription store closed", extra={
            "cancelled_fetches": cancelled,
        })

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_loaded(self) -> bool:
        return self._cached is not None

    def peek(self) -> Optional[UserSubscription]:
        """Cached subscription (fresh or not) without fetching."""
        return self._cached.value if self._cached is not None else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load(self, generation: int) -> UserSubscription:
        previous = self._cached.value if self._cached is not None else None

        try:
            payload = await self._provider.fetch_current_subscription()
        except asyncio.CancelledError:
            self._telemetry.info(SUBSCRIPTION_FETCH_CANCELLED, generation=generation)
            raise
        except Exception as exc:
            subscription = self._recover(previous, exc)
            ttl = self._failure_retry_seconds
        else:
            subscription = parse_subscription_payload(
                payload, self._policy, self._telemetry
            )
            ttl = self._ttl_seconds
            self._telemetry.info(
                SUBSCRIPTION_LOADED,
                tier=self._policy.display_name(subscription.tier),
                is_active=subscription.is_active,
            )

        if generation == self._generation and not self._closed:
            self._cached = CachedValue(
                value=subscription,
                fetched_at=self._clock(),
                ttl=ttl,
            )
        else:
            logger.debug("Discarding subscription from superseded fetch", extra={
                "fetch_generation": generation,
                "current_generation": self._generation,
            })

        return subscription

    def _recover(self, previous: Optional[UserSubscription], exc: Exception) -> UserSubscription:
        self._telemetry.warning(
            SUBSCRIPTION_FETCH_FAILED,
            error_type=type(exc).__name__,
            error=str(exc),
            status_code=getattr(exc, "status_code", None),
            had_cached_value=previous is not None,
        )

        if previous is not None:
            self._telemetry.info(
                SUBSCRIPTION_SERVED_STALE,
                tier=self._policy.display_name(previous.tier),
            )
            return previous

        # TODO: confirm with product whether 401/403 should also land here;
        # today an auth failure shows a paying user FREE limits.
        self._telemetry.warning(
            SUBSCRIPTION_FALLBACK_FREE,
            error_type=type(exc).__name__,
        )
        return free_fallback_subscription(self._policy)
