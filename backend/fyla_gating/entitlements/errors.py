"""
Structured error classes for the feature gating engine.

Infrastructure failures (provider down, malformed payload) are recovered
inside the engine and never reach callers of the entitlement checks. The
classes here describe failures at the collaborator boundary and lifecycle
misuse.
"""

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class SessionClosedError(EntitlementError):
    """
    Raised when a closed entitlement session is used.

    The session is torn down at logout. EntitlementEvaluator turns this into
    a denial; direct store and usage reads raise it to the caller.
    """

    def __init__(self, component: str = "subscription_store"):
        self.component = component
        super().__init__(f"Entitlement session is closed ({component})")


class FetchCancelledError(SessionClosedError):
    """
    Raised to callers awaiting a shared fetch that was cancelled underneath
    them, typically because the session closed while the fetch was in flight.
    """

    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"fetch:{key}")


class SubscriptionProviderError(EntitlementError):
    """
    Base exception for failures of the remote subscription/usage provider.

    Carries an optional HTTP status and response body for diagnostics.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"

    def to_dict(self) -> dict:
        return {
            "error": self.code or "subscription_provider_error",
            "message": self.message,
            "status_code": self.status_code,
        }
