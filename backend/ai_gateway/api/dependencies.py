"""Request-scoped dependencies: caller identity and rate limiting.

Authentication and rate-limit bookkeeping belong to the host application.
This module only reads the caller id it forwards and consults a
RateLimiter for a yes/no answer plus a retry-after hint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Optional, Protocol

from fastapi import Depends, Header, Request

from ai_gateway.api.exceptions import RateLimitExceededError
from ai_gateway.gateway import AIGateway, get_gateway

logger = logging.getLogger(__name__)

ANONYMOUS_CALLER = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    """Answer from the host's rate limiter."""

    allowed: bool
    retry_after: int | None = None


class RateLimiter(Protocol):
    """Atomic check-and-increment keyed by caller and endpoint."""

    async def check(self, caller_id: str, endpoint: str) -> RateLimitDecision: ...


class AllowAllRateLimiter:
    """Default limiter for deployments where the host limits upstream."""

    async def check(self, caller_id: str, endpoint: str) -> RateLimitDecision:
        return RateLimitDecision(allowed=True)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = AllowAllRateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    """Set the rate limiter instance (for testing or host integration)."""
    global _rate_limiter
    _rate_limiter = limiter


def caller_id_header(
    x_caller_id: Annotated[str | None, Header(alias="X-Caller-Id")] = None,
) -> str:
    return x_caller_id or ANONYMOUS_CALLER


async def rate_limited_caller(
    request: Request,
    caller_id: Annotated[str, Depends(caller_id_header)],
) -> str:
    """Resolve the caller and enforce the host rate limit for this endpoint."""
    endpoint = request.url.path
    decision = await get_rate_limiter().check(caller_id, endpoint)
    if not decision.allowed:
        logger.warning(
            f"Rate limit hit for {caller_id} on {endpoint}",
            extra={"caller_id": caller_id},
        )
        raise RateLimitExceededError(caller_id, endpoint, decision.retry_after)
    return caller_id


def gateway_dependency() -> AIGateway:
    return get_gateway()


CallerId = Annotated[str, Depends(rate_limited_caller)]
Gateway = Annotated[AIGateway, Depends(gateway_dependency)]
