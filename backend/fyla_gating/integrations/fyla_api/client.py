"""
Fyla backend API client for subscription and usage data.

This client handles:
- Current subscription lookup
- Resource usage counts (services, photos per service)
- Post-payment subscription activation
- Subscription diagnostics

Implements the SubscriptionProvider protocol consumed by the gating engine.

SECURITY:
- Session token must never be logged
- Payment session ids are logged only as present/absent
"""

import logging
import os
from typing import Any, Dict, Optional

import httpx

from fyla_gating.entitlements.models import ResourceKey
from fyla_gating.integrations.fyla_api.exceptions import (
    FylaApiError,
    FylaAuthenticationError,
    FylaConnectionError,
    FylaNotFoundError,
    FylaRateLimitError,
    FylaTimeoutError,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BASE_URL = "https://api.fyla.app/api"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0


class FylaApiClient:
    """
    Async client for the Fyla backend.

    One instance per logged-in session; the bearer token is fixed at
    construction. All methods are async.

    SECURITY: Session token must be stored securely and never logged.
    """

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        """
        Initialize Fyla API client.

        Args:
            api_token: Session bearer token (default: from FYLA_API_TOKEN env)
            base_url: API base URL (default: from FYLA_API_BASE_URL env)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
        """
        self.base_url = (
            base_url or os.getenv("FYLA_API_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.api_token = api_token or os.getenv("FYLA_API_TOKEN")

        if not self.api_token:
            raise ValueError(
                "Fyla API token is required. Set FYLA_API_TOKEN environment variable "
                "or pass api_token parameter."
            )

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers=headers,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "FylaApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make an HTTP request to the Fyla API.

        Returns:
            Decoded JSON body ({} for 204)

        Raises:
            FylaApiError: On API errors
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            response = await self._client.request(
                method=method,
                url=url,
                json=json,
                params=params,
            )
        except httpx.TimeoutException as e:
            logger.error(
                "Fyla API timeout",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise FylaTimeoutError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error(
                "Fyla API connection error",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise FylaConnectionError(f"Connection error: {e}")

        if response.status_code in (401, 403):
            logger.error(
                "Fyla API authentication failed",
                extra={"status_code": response.status_code, "endpoint": endpoint},
            )
            raise FylaAuthenticationError(status_code=response.status_code)

        if response.status_code == 404:
            raise FylaNotFoundError(message=f"Resource not found: {endpoint}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                "Fyla API rate limit exceeded",
                extra={"endpoint": endpoint, "retry_after": retry_after},
            )
            raise FylaRateLimitError(
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 400:
            error_body: Dict[str, Any] = {}
            try:
                decoded = response.json()
                if isinstance(decoded, dict):
                    error_body = decoded
            except ValueError:
                pass

            error_message = str(error_body.get("message") or error_body.get("error") or "")
            logger.error(
                "Fyla API error",
                extra={
                    "status_code": response.status_code,
                    "endpoint": endpoint,
                    "response": str(error_body)[:500],
                },
            )
            raise FylaApiError(
                message=f"Fyla API error: {response.status_code} - {error_message}",
                status_code=response.status_code,
                response=error_body,
            )

        if response.status_code == 204:
            return {}

        return response.json()

    # ------------------------------------------------------------------
    # SubscriptionProvider
    # ------------------------------------------------------------------

    async def fetch_current_subscription(self) -> Dict[str, Any]:
        """
        Fetch the current user's subscription.

        Returns:
            Raw payload; the gating engine parses and validates it
        """
        data = await self._request("GET", "/payment/subscription")
        logger.debug("Fetched subscription", extra={
            "has_subscription": isinstance(data, dict) and bool(data.get("subscription")),
        })
        return data

    async def fetch_resource_count(self, resource_key: ResourceKey) -> int:
        """
        Fetch the live count for a resource.

        A response without a usable integer "count" is treated as 0.

        Raises:
            ValueError: If resource_key names an unsupported resource
            FylaApiError: On API errors
        """
        if resource_key.kind == ResourceKey.SERVICES:
            endpoint = "/services/count"
        elif resource_key.kind == ResourceKey.SERVICE_PHOTOS and resource_key.scope:
            endpoint = f"/services/{resource_key.scope}/photos/count"
        else:
            raise ValueError(f"Unsupported resource: {resource_key}")

        data = await self._request("GET", endpoint)
        count = data.get("count") if isinstance(data, dict) else None
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            logger.warning("Resource count missing from response, using 0", extra={
                "resource": str(resource_key),
                "count": repr(count),
            })
            return 0
        return count

    async def activate_subscription(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Ask the backend to activate the subscription paid in checkout.

        Args:
            session_id: Payment checkout session id, when the payment flow returned one
        """
        body: Dict[str, Any] = {}
        if session_id is not None:
            body["sessionId"] = session_id

        data = await self._request("POST", "/payment/activate-subscription", json=body)
        logger.info("Subscription activation requested", extra={
            "has_session_id": session_id is not None,
        })
        return data

    async def debug_subscription(self) -> Dict[str, Any]:
        """Server-side subscription diagnostics (support screens)."""
        return await self._request("GET", "/payment/debug-subscription")


def get_fyla_api_client(
    api_token: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
) -> FylaApiClient:
    """
    Factory function to create a FylaApiClient.

    Args:
        api_token: Override session token
        base_url: Override API base URL

    Returns:
        Configured FylaApiClient instance
    """
    return FylaApiClient(
        api_token=api_token,
        base_url=base_url,
        timeout=timeout,
        connect_timeout=connect_timeout,
    )
