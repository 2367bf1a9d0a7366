"""
Fyla backend integration.

Provides the HTTP SubscriptionProvider used by the feature gating engine.
"""

from fyla_gating.integrations.fyla_api.client import (
    FylaApiClient,
    get_fyla_api_client,
)
from fyla_gating.integrations.fyla_api.exceptions import (
    FylaApiError,
    FylaAuthenticationError,
    FylaNotFoundError,
    FylaRateLimitError,
    FylaConnectionError,
    FylaTimeoutError,
)

__all__ = [
    # Client
    "FylaApiClient",
    "get_fyla_api_client",
    # Exceptions
    "FylaApiError",
    "FylaAuthenticationError",
    "FylaNotFoundError",
    "FylaRateLimitError",
    "FylaConnectionError",
    "FylaTimeoutError",
]
