"""
Post-payment activation.

After the external payment flow returns, the backend is asked to activate the
paid subscription. The backend applies the change asynchronously, so the flow
waits a short grace period and then forces a subscription refresh. The refresh
runs whether or not activation succeeded: the backend may have applied the
change even when the call itself failed (e.g. via webhook).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from fyla_gating.entitlements.store import SubscriptionStore
from fyla_gating.entitlements.telemetry import (
    ACTIVATION_FAILED,
    ACTIVATION_RECONCILED,
    ACTIVATION_SUCCEEDED,
    GatingTelemetry,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTIVATION_GRACE_SECONDS = 2.0

Sleeper = Callable[[float], Awaitable[Any]]


class ActivationFlow:
    """
    Drives activate → wait → refresh.

    Usage:
        flow = ActivationFlow(provider, store)
        activated = await flow.activate_after_payment(session_id)
    """

    def __init__(
        self,
        provider,
        store: SubscriptionStore,
        grace_seconds: float = DEFAULT_ACTIVATION_GRACE_SECONDS,
        sleep: Optional[Sleeper] = None,
        telemetry: Optional[GatingTelemetry] = None,
    ):
        self._provider = provider
        self._store = store
        self._grace_seconds = grace_seconds
        self._sleep = sleep or asyncio.sleep
        self._telemetry = telemetry or GatingTelemetry()

    @property
    def grace_seconds(self) -> float:
        return self._grace_seconds

    async def activate_after_payment(self, session_id: Optional[str] = None) -> bool:
        """
        Activate the paid subscription and reconcile local state.

        Returns True only if the activation call succeeded. The store is
        refreshed in every case; cancellation of the caller propagates.
        """
        activated = await self._activate(session_id)

        await self._sleep(self._grace_seconds)
        subscription = await self._store.refresh()

        self._telemetry.info(
            ACTIVATION_RECONCILED,
            activated=activated,
            tier=subscription.tier.name.title(),
            is_active=subscription.is_active,
        )
        return activated

    async def _activate(self, session_id: Optional[str]) -> bool:
        try:
            result = await self._provider.activate_subscription(session_id)
        except Exception as exc:
            self._telemetry.warning(
                ACTIVATION_FAILED,
                has_session_id=session_id is not None,
                error_type=type(exc).__name__,
                error=str(exc),
                status_code=getattr(exc, "status_code", None),
            )
            return False

        if isinstance(result, Mapping) and result.get("success") is False:
            self._telemetry.warning(
                ACTIVATION_FAILED,
                has_session_id=session_id is not None,
                error_type="ActivationRejected",
                error=str(result.get("message") or "activation rejected"),
            )
            return False

        self._telemetry.info(
            ACTIVATION_SUCCEEDED,
            has_session_id=session_id is not None,
        )
        return True
