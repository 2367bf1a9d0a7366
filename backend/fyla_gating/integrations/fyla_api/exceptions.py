"""
Fyla API exceptions.

Every exception here is a SubscriptionProviderError, so the gating engine
treats them uniformly as provider failures and recovers locally.
"""

from typing import Optional

from fyla_gating.entitlements.errors import SubscriptionProviderError


class FylaApiError(SubscriptionProviderError):
    """Base exception for Fyla backend API errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "fyla_api_error")
        super().__init__(message, **kwargs)


class FylaAuthenticationError(FylaApiError):
    """Raised when the session token is rejected (401/403)."""

    def __init__(
        self,
        message: str = "Authentication failed - session token may be expired",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, code="authentication_failed", **kwargs)


class FylaNotFoundError(FylaApiError):
    """Raised when the requested resource does not exist (404)."""

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, code="not_found", **kwargs)


class FylaRateLimitError(FylaApiError):
    """Raised when the API rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=429, code="rate_limited", **kwargs)
        self.retry_after = retry_after


class FylaConnectionError(FylaApiError):
    """Raised when the backend cannot be reached."""

    def __init__(self, message: str = "Connection error - unable to reach Fyla API", **kwargs):
        super().__init__(message, code="connection_error", **kwargs)


class FylaTimeoutError(FylaApiError):
    """Raised when a request times out."""

    def __init__(self, message: str = "Request timed out", **kwargs):
        super().__init__(message, code="timeout", **kwargs)
