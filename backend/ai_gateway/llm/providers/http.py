"""HTTP status mapping shared by every provider adapter.

SDK-based adapters (openai, anthropic) and raw httpx adapters map upstream
failures through the same table so 429 and 402 are always distinguished
from other 4xx/5xx responses.
"""

from __future__ import annotations

import httpx

from ..errors import (
    AuthenticationError,
    GatewayError,
    InvalidRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    QuotaExceededError,
    RateLimitError,
)

# Upstream error bodies are truncated before they reach logs or messages
MAX_ERROR_BODY = 200


def parse_retry_after(headers: httpx.Headers | dict | None) -> float | None:
    """Read a numeric Retry-After header, ignoring HTTP-date forms."""
    if not headers:
        return None
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def error_for_status(
    status_code: int,
    message: str,
    provider: str,
    retry_after: float | None = None,
    request_id: str | None = None,
) -> GatewayError:
    """Build the gateway error matching an upstream HTTP status."""
    message = message[:MAX_ERROR_BODY]
    kwargs = {
        "provider": provider,
        "status_code": status_code,
        "request_id": request_id,
    }

    if status_code in (401, 403):
        return AuthenticationError(f"{provider} rejected credentials ({status_code}): {message}", **kwargs)

    if status_code == 402:
        return QuotaExceededError(f"{provider} quota exhausted: {message}", retry_after=retry_after, **kwargs)

    if status_code == 429:
        return RateLimitError(f"{provider} rate limit exceeded: {message}", retry_after=retry_after, **kwargs)

    if 400 <= status_code < 500:
        return InvalidRequestError(f"Invalid request to {provider} ({status_code}): {message}", **kwargs)

    return ProviderUnavailableError(f"{provider} error ({status_code}): {message}", **kwargs)


def raise_for_status(response: httpx.Response, provider: str) -> None:
    """Raise the mapped gateway error for a non-2xx httpx response.

    The body must already be read (not a pending stream).
    """
    if response.is_success:
        return
    raise error_for_status(
        response.status_code,
        response.text,
        provider,
        retry_after=parse_retry_after(response.headers),
    )


async def araise_for_status(response: httpx.Response, provider: str) -> None:
    """Same as raise_for_status for a streamed response whose body is unread."""
    if response.is_success:
        return
    await response.aread()
    raise_for_status(response, provider)


def transport_error(error: httpx.TransportError, provider: str, timeout: float) -> GatewayError:
    """Map an httpx transport failure (no response received)."""
    if isinstance(error, httpx.TimeoutException):
        return ProviderTimeoutError(f"{provider} request timed out after {timeout}s", provider=provider)
    return ProviderUnavailableError(f"Failed to connect to {provider}: {error}", provider=provider)
