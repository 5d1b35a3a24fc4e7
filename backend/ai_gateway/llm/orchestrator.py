"""Priority-ordered provider orchestration.

Tries each eligible provider once, in ascending priority, until one returns
a usable completion. A pass never retries the same provider; repetition is
RetryPolicy's job.
"""

from __future__ import annotations

import logging
import uuid

from .errors import AllProvidersFailedError
from .models import CanonicalRequest, CanonicalResponse
from .providers.base import CompletionProvider

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONTENT_LENGTH = 10
EXHAUSTED_PROVIDER = "none"


class ProviderOrchestrator:
    """Sequential fallback across enabled, capability-matching providers.

    Providers are sorted once at construction; the list is never mutated
    afterwards so concurrent passes share a consistent view.
    """

    def __init__(
        self,
        providers: list[CompletionProvider],
        min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH,
    ):
        self._providers = tuple(sorted(providers, key=lambda p: p.descriptor.priority))
        self._min_content_length = min_content_length

    @property
    def providers(self) -> tuple[CompletionProvider, ...]:
        return self._providers

    def eligible(self, request: CanonicalRequest) -> list[CompletionProvider]:
        """Providers allowed to serve this request, in the order they are tried."""
        result = []
        for provider in self._providers:
            descriptor = provider.descriptor
            if not descriptor.enabled:
                continue
            if request.vision is not None and not descriptor.supports_vision:
                continue
            if request.wants_json and not descriptor.supports_json:
                continue
            result.append(provider)
        return result

    def is_acceptable(self, response: CanonicalResponse) -> bool:
        """Success flag plus content over the minimum length.

        Tool-call responses legitimately carry no text and are accepted.
        """
        if not response.success:
            return False
        if response.tool_calls:
            return True
        return len(response.content.strip()) > self._min_content_length

    async def orchestrate(
        self,
        request: CanonicalRequest,
        correlation_id: str | None = None,
    ) -> CanonicalResponse:
        """Return the first acceptable response, or a failure naming every provider tried."""
        correlation_id = correlation_id or str(uuid.uuid4())
        candidates = self.eligible(request)
        attempted: list[str] = []
        last_failure: CanonicalResponse | None = None

        logger.info(
            "Orchestrating across %d eligible providers: %s",
            len(candidates),
            ", ".join(p.name for p in candidates),
            extra={"correlation_id": correlation_id},
        )

        for provider in candidates:
            attempted.append(provider.name)
            response = await provider.call(request)

            if self.is_acceptable(response):
                response = provider.priced(response)
                logger.info(
                    "Provider %s succeeded",
                    provider.name,
                    extra={
                        "correlation_id": correlation_id,
                        "provider": provider.name,
                        "model": response.model,
                        "latency_ms": response.latency_ms,
                        "total_tokens": response.usage.total_tokens,
                        "estimated_cost_usd": response.estimated_cost_usd,
                    },
                )
                return response.model_copy(update={"attempted": attempted})

            if response.success:
                reason = f"content too short ({len(response.content.strip())} chars)"
                response = response.model_copy(
                    update={
                        "success": False,
                        "error": f"{provider.name} returned {reason}",
                        "error_type": "MalformedResponseError",
                    }
                )
            else:
                reason = response.error or "unknown error"

            logger.warning(
                "Provider %s rejected: %s",
                provider.name,
                reason,
                extra={"correlation_id": correlation_id, "provider": provider.name},
            )
            last_failure = response

        error = AllProvidersFailedError(
            attempted,
            last_error=last_failure.error if last_failure else None,
            retry_after=last_failure.retry_after if last_failure else None,
        )
        logger.error(error.message, extra={"correlation_id": correlation_id})
        return CanonicalResponse(
            success=False,
            provider=EXHAUSTED_PROVIDER,
            error=error.message,
            error_type=type(error).__name__,
            status_code=last_failure.status_code if last_failure else None,
            retry_after=error.retry_after,
            attempted=attempted,
        )


def raise_for_failure(response: CanonicalResponse) -> CanonicalResponse:
    """Turn an exhausted orchestration result into AllProvidersFailedError."""
    if response.success:
        return response
    raise AllProvidersFailedError(response.attempted, retry_after=response.retry_after)
