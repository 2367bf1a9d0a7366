"""
Root test configuration and fixtures.

Shared fixtures for the gating engine tests; the collaborators themselves
live in fyla_gating.tests.fakes.
"""

import pytest

from fyla_gating.config.gating_settings import GatingSettings
from fyla_gating.entitlements.telemetry import GatingTelemetry, RecordingSink
from fyla_gating.tests.fakes import FakeProvider, ManualClock, subscription_payload


@pytest.fixture
def clock():
    """Manual clock starting at t=1000s."""
    return ManualClock()


@pytest.fixture
def sink():
    """Captures emitted gating events."""
    return RecordingSink()


@pytest.fixture
def telemetry(sink):
    """Telemetry wired to the recording sink."""
    return GatingTelemetry(sinks=[sink])


@pytest.fixture
def provider():
    """Provider serving an active FREE subscription with no usage."""
    return FakeProvider(subscription=subscription_payload(0))


@pytest.fixture
def settings():
    """Default gating settings."""
    return GatingSettings()
