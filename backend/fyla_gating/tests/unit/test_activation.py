"""
Unit tests for ActivationFlow.

Tests cover:
- Successful activation followed by a forced refresh
- Refresh still runs when activation raises or is rejected
- Grace period applied on every path
- Caller cancellation propagates
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fyla_gating.entitlements.activation import ActivationFlow
from fyla_gating.entitlements.models import SubscriptionTier
from fyla_gating.entitlements.store import SubscriptionStore
from fyla_gating.entitlements.telemetry import (
    ACTIVATION_FAILED,
    ACTIVATION_RECONCILED,
    ACTIVATION_SUCCEEDED,
)
from fyla_gating.tests.fakes import FakeProvider, subscription_payload


@pytest.fixture
def paid_provider():
    """Provider serving Free until a test switches the payload."""
    return FakeProvider(subscription=subscription_payload(0))


@pytest.fixture
def store(paid_provider, clock, telemetry):
    """Store over the paid provider."""
    return SubscriptionStore(paid_provider, clock=clock, telemetry=telemetry)


@pytest.fixture
def sleep():
    """Recording replacement for asyncio.sleep."""
    return AsyncMock()


@pytest.fixture
def flow(paid_provider, store, sleep, telemetry):
    """Activation flow with the default grace period."""
    return ActivationFlow(paid_provider, store, sleep=sleep, telemetry=telemetry)


class TestActivationSuccess:
    """Tests for successful activation."""

    @pytest.mark.asyncio
    async def test_activation_refreshes_subscription(self, flow, store, paid_provider, sleep, sink):
        """Activation should wait the grace period then refresh."""
        await store.get()
        paid_provider.subscription = subscription_payload(1)

        activated = await flow.activate_after_payment("cs_test_123")

        assert activated is True
        assert paid_provider.activation_calls == ["cs_test_123"]
        sleep.assert_awaited_once_with(2.0)
        assert paid_provider.subscription_calls == 2
        assert (await store.get()).tier == SubscriptionTier.PRO
        assert ACTIVATION_SUCCEEDED in sink.names()
        assert sink.names()[-1] == ACTIVATION_RECONCILED

    @pytest.mark.asyncio
    async def test_activation_without_session_id(self, flow, paid_provider):
        """Activation should work without a session id."""
        assert await flow.activate_after_payment() is True
        assert paid_provider.activation_calls == [None]

    @pytest.mark.asyncio
    async def test_custom_grace_period(self, paid_provider, store, sleep):
        """A custom grace period should be used."""
        flow = ActivationFlow(paid_provider, store, grace_seconds=0.5, sleep=sleep)
        await flow.activate_after_payment()
        sleep.assert_awaited_once_with(0.5)


class TestActivationFailure:
    """Tests for failed activation."""

    @pytest.mark.asyncio
    async def test_activation_error_still_refreshes(self, flow, store, paid_provider, sleep, sink):
        """A failed activation call should still refresh."""
        await store.get()
        paid_provider.activation_result = ConnectionError("payment api down")
        # Webhook already applied the upgrade server-side
        paid_provider.subscription = subscription_payload(2)

        activated = await flow.activate_after_payment("cs_test_123")

        assert activated is False
        sleep.assert_awaited_once_with(2.0)
        assert paid_provider.subscription_calls == 2
        assert (await store.get()).tier == SubscriptionTier.BUSINESS
        failed = sink.of(ACTIVATION_FAILED)[0]
        assert failed.fields["error_type"] == "ConnectionError"
        assert sink.of(ACTIVATION_RECONCILED)[0].fields["activated"] is False

    @pytest.mark.asyncio
    async def test_rejected_activation_counts_as_failure(self, flow, paid_provider, sink):
        """success=False should count as a failure."""
        paid_provider.activation_result = {"success": False, "message": "session expired"}

        activated = await flow.activate_after_payment("cs_old")

        assert activated is False
        assert paid_provider.subscription_calls == 1
        assert sink.of(ACTIVATION_FAILED)[0].fields["error"] == "session expired"

    @pytest.mark.asyncio
    async def test_refresh_failure_after_activation_is_fail_open(self, flow, paid_provider):
        """A refresh failure after activation should not raise."""
        paid_provider.subscription = ConnectionError("offline")

        assert await flow.activate_after_payment() is True
        assert paid_provider.subscription_calls == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, paid_provider, store):
        """Cancelling the caller during the grace wait should propagate."""
        gate = asyncio.Event()

        async def blocking_sleep(seconds):
            await gate.wait()

        flow = ActivationFlow(paid_provider, store, sleep=blocking_sleep)
        task = asyncio.ensure_future(flow.activate_after_payment())
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert paid_provider.subscription_calls == 0
