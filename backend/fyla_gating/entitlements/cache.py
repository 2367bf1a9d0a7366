"""
Entitlement caching primitives.

Provides:
- CachedValue: Value + fetch timestamp + TTL
- SingleFlight: Shares one in-flight asyncio task between concurrent callers
- UsageCounter: Per-resource cached usage counts with fail-open fallback

Usage counts fail OPEN: a provider error returns the last known count (even
if stale) or 0, so a transient outage never blocks a quota-gated action. The
fallback is cached for DEFAULT_FAILURE_RETRY_SECONDS before the next attempt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from fyla_gating.entitlements.errors import FetchCancelledError, SessionClosedError
from fyla_gating.entitlements.models import ResourceKey
from fyla_gating.entitlements.telemetry import (
    GatingTelemetry,
    USAGE_FETCH_FAILED,
    USAGE_SERVED_STALE,
)

logger = logging.getLogger(__name__)

# Cache configuration
DEFAULT_USAGE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_SUBSCRIPTION_TTL_SECONDS = 600  # 10 minutes
DEFAULT_FAILURE_RETRY_SECONDS = 30  # serve fallback this long before retrying

T = TypeVar("T")

Clock = Callable[[], float]


def _caller_cancelling() -> bool:
    """True if the running task has a pending cancel() of its own (3.11+)."""
    current = asyncio.current_task()
    cancelling = getattr(current, "cancelling", None)
    return bool(cancelling is not None and cancelling())


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    """
    A cached value with its fetch time (clock seconds) and TTL.

    fresh <=> now - fetched_at < ttl
    """
    value: T
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl

    def age(self, now: float) -> float:
        return now - self.fetched_at


class SingleFlight:
    """
    Prevents N concurrent cache misses for the same key from issuing N
    fetches. The first caller starts a task; later callers await the same
    task. The task itself is the guard, so there is no check-then-set window
    across an await.

    Callers await through asyncio.shield(): a cancelled caller does not
    cancel the shared fetch for everyone else.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, "asyncio.Task"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Await the shared fetch for key, starting it if none is in flight.

        Raises:
            FetchCancelledError: If the shared fetch was cancelled (e.g. by
                cancel_all() at session close) while this caller waited.
                A caller whose own task is being cancelled still receives
                asyncio.CancelledError.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and not _caller_cancelling():
                raise FetchCancelledError(key) from None
            raise

    def detach(self, key: Hashable) -> None:
        """Forget the in-flight task for key; later callers start a new one."""
        self._inflight.pop(key, None)

    def detach_all(self) -> None:
        self._inflight.clear()

    def cancel(self, key: Hashable) -> bool:
        task = self._inflight.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for key in list(self._inflight):
            if self.cancel(key):
                cancelled += 1
        return cancelled

    def _forget(self, key: Hashable, task: "asyncio.Task") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved; awaiters already received it.
        if not task.cancelled():
            task.exception()


class UsageCounter:
    """
    Cached resource counts ("services owned", "photos for service S").

    Each ResourceKey has its own CachedValue and TTL timer. A failed fetch
    caches its fallback for failure_retry_seconds so an outage does not turn
    every check into a provider call.

    Usage:
        counter = UsageCounter(provider)
        count = await counter.get(ResourceKey.services())
    """

    def __init__(
        self,
        provider,
        ttl_seconds: float = DEFAULT_USAGE_TTL_SECONDS,
        failure_retry_seconds: float = DEFAULT_FAILURE_RETRY_SECONDS,
        clock: Optional[Clock] = None,
        telemetry: Optional[GatingTelemetry] = None,
    ):
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._failure_retry_seconds = failure_retry_seconds
        self._clock = clock or time.monotonic
        self._telemetry = telemetry or GatingTelemetry()
        self._entries: Dict[ResourceKey, CachedValue[int]] = {}
        self._single_flight = SingleFlight()
        self._generation = 0
        self._closed = False

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    @property
    def failure_retry_seconds(self) -> float:
        return self._failure_retry_seconds

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self, resource_key: ResourceKey) -> int:
        """
        Return the usage count for resource_key.

        1. Fresh cache entry → return it, no provider call
        2. Otherwise fetch (shared with concurrent callers for the same key)
        3. Fetch failure → last cached value (even stale) or 0, retried after
           failure_retry_seconds

        Raises:
            SessionClosedError: If the counter was closed, or closed while
                this fetch was in flight
        """
        if self._closed:
            raise SessionClosedError("usage_counter")

        entry = self._entries.get(resource_key)
        if entry is not None and entry.is_fresh(self._clock()):
            logger.debug("Usage cache hit", extra={"resource": str(resource_key)})
            return entry.value

        generation = self._generation
        return await self._single_flight.run(
            resource_key, lambda: self._fetch(resource_key, generation)
        )

    def peek(self, resource_key: ResourceKey) -> Optional[int]:
        """Cached value regardless of freshness, without fetching."""
        entry = self._entries.get(resource_key)
        return entry.value if entry is not None else None

    def invalidate(self, resource_key: Optional[ResourceKey] = None) -> None:
        """
        Drop one cached count, or all of them when resource_key is None.

        Fetches already in flight finish for their callers but are not cached.
        """
        self._generation += 1
        if resource_key is None:
            self._entries.clear()
            self._single_flight.detach_all()
            return
        self._entries.pop(resource_key, None)
        self._single_flight.detach(resource_key)

    def close(self) -> None:
        """Cancel in-flight fetches and drop every entry (session teardown)."""
        self._closed = True
        self._generation += 1
        self._single_flight.cancel_all()
        self._entries.clear()

    async def _fetch(self, resource_key: ResourceKey, generation: int) -> int:
        try:
            raw = await self._provider.fetch_resource_count(resource_key)
            count = _validate_count(raw)
        except Exception as exc:
            fallback = self._fallback(resource_key, exc)
            self._store(resource_key, fallback, self._failure_retry_seconds, generation)
            return fallback

        self._store(resource_key, count, self._ttl_seconds, generation)
        return count

    def _store(self, resource_key: ResourceKey, count: int, ttl: float, generation: int) -> None:
        # Superseded by invalidate()/close() while in flight
        if generation != self._generation:
            return
        self._entries[resource_key] = CachedValue(
            value=count,
            fetched_at=self._clock(),
            ttl=ttl,
        )

    def _fallback(self, resource_key: ResourceKey, exc: Exception) -> int:
        previous = self._entries.get(resource_key)
        fallback = previous.value if previous is not None else 0

        self._telemetry.warning(
            USAGE_FETCH_FAILED,
            resource=str(resource_key),
            error_type=type(exc).__name__,
            error=str(exc),
            fallback_count=fallback,
            had_cached_value=previous is not None,
        )
        if previous is not None and not previous.is_fresh(self._clock()):
            self._telemetry.info(
                USAGE_SERVED_STALE,
                resource=str(resource_key),
                age_seconds=round(previous.age(self._clock()), 3),
            )
        return fallback


def _validate_count(raw) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"Resource count must be an integer, got {raw!r}")
    if raw < 0:
        raise ValueError(f"Resource count must be >= 0, got {raw}")
    return raw
