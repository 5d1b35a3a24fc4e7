"""Abstract base class for completion providers.

Defines the interface that all provider adapters must implement.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from ...config import ProviderDescriptor
from ..errors import GatewayError
from ..models import CanonicalRequest, CanonicalResponse, Usage

logger = logging.getLogger(__name__)


class CompletionProvider(ABC):
    """Base interface for completion providers.

    Every adapter translates a CanonicalRequest into one provider-specific
    call and translates the result back. Adapters carry their own timeout.
    """

    # Environment variable holding the API key
    API_KEY_ENV: str = ""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        api_key: str | None = None,
        timeout: float = 60.0,
    ):
        """Initialize provider.

        Args:
            descriptor: Static configuration for this provider.
            api_key: API key. Defaults to the adapter's API_KEY_ENV env var.
            timeout: Request timeout in seconds.
        """
        self.descriptor = descriptor
        self._api_key = api_key or os.environ.get(self.API_KEY_ENV)
        self._timeout = timeout

    @property
    def name(self) -> str:
        """Provider identifier: 'groq', 'google_ai', etc."""
        return self.descriptor.name

    @property
    def default_model(self) -> str:
        return self.descriptor.default_model

    def is_configured(self) -> bool:
        """Whether credentials are available for this provider."""
        return bool(self._api_key)

    def supports(self, feature: str) -> bool:
        """Check a capability flag: 'vision', 'json' or 'streaming'."""
        if feature == "vision":
            return self.descriptor.supports_vision
        if feature == "json":
            return self.descriptor.supports_json
        if feature == "streaming":
            return self.supports_streaming
        return False

    supports_streaming = False

    @abstractmethod
    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        """Send a completion request and return a successful response.

        Raises:
            AuthenticationError: Missing or rejected credentials.
            RateLimitError: 429 from upstream.
            QuotaExceededError: 402 from upstream.
            InvalidRequestError: Other 4xx.
            ProviderUnavailableError: Network failure, timeout or 5xx.
            MalformedResponseError: 2xx with an unreadable body.
        """
        ...

    def estimate_cost(self, usage: Usage) -> float:
        """Approximate USD cost of a call from its token usage."""
        return usage.total_tokens * self.descriptor.cost_per_token

    def priced(self, response: CanonicalResponse) -> CanonicalResponse:
        return response.model_copy(update={"estimated_cost_usd": self.estimate_cost(response.usage)})

    async def call(self, request: CanonicalRequest) -> CanonicalResponse:
        """Like generate, but failures come back as an unsuccessful response."""
        try:
            return await self.generate(request)
        except GatewayError as e:
            logger.warning(
                "Provider %s call failed: %s",
                self.name,
                e.message,
                extra={"provider": self.name, "error_type": type(e).__name__},
            )
            return CanonicalResponse(
                success=False,
                provider=self.name,
                model=request.model or self.default_model,
                error=e.message,
                error_type=type(e).__name__,
                status_code=e.status_code,
                retry_after=e.retry_after,
            )

    async def open_stream(self, request: CanonicalRequest) -> AsyncIterator[dict[str, Any]]:
        """Open a streaming completion.

        HTTP failures raise here, before any chunk is produced. The returned
        iterator yields provider-native event dicts.

        Raises:
            NotImplementedError: If streaming is not supported.
        """
        raise NotImplementedError(f"Streaming not supported by {self.name}")
