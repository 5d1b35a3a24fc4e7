"""Inbound call contract for host applications.

AIGateway wires the configured providers, cache and circuit store together
and exposes the two entry points host code uses:

- orchestrate(): one logical completion under RetryPolicy + CircuitBreaker,
  optionally cached
- extract_document(): the document extraction pipeline

plus the two-tier chat path (complete_chat / stream_chat).
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any, Optional

from .cache.store import BaseCacheStore, compute_cache_key, get_cache_store
from .config import ProviderKind, Settings, get_settings
from .documents.ocr import OCRChain
from .documents.pdf import PDFProcessor
from .documents.pipeline import DocumentExtractionPipeline, StructuredResult
from .llm.circuit_breaker import BaseCircuitStore, CircuitBreaker, CircuitBreakerConfig, get_circuit_store
from .llm.errors import ChatUnavailableError, ExtractionError
from .llm.fallback import FailoverEvent, TwoTierFallback
from .llm.json_extractor import extract_json
from .llm.models import CanonicalRequest, CanonicalResponse
from .llm.orchestrator import ProviderOrchestrator, raise_for_failure
from .llm.providers import CompletionProvider, GeminiProvider, build_providers
from .llm.retry import RetryOptions, RetryPolicy
from .llm.sanitizer import validate_ai_response

logger = logging.getLogger(__name__)


def request_fingerprint(request: CanonicalRequest) -> dict[str, Any]:
    """JSON-safe identity of a request for cache keys. Image bytes are hashed."""
    return {
        "messages": [m.model_dump() for m in request.messages],
        "model": request.model,
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "response_format": request.response_format.type,
        "tools": list(request.tools) if request.tools else None,
        "vision": hashlib.sha256(request.vision.data).hexdigest() if request.vision else None,
    }


class AIGateway:
    """Facade over orchestration, two-tier fallback and document extraction."""

    def __init__(
        self,
        settings: Settings | None = None,
        providers: list[CompletionProvider] | None = None,
        cache: BaseCacheStore | None = None,
        circuit_store: BaseCircuitStore | None = None,
        fallback: TwoTierFallback | None = None,
        on_failover: Callable[[FailoverEvent], None] | None = None,
        pdf_processor: PDFProcessor | None = None,
        ocr_chain: OCRChain | None = None,
    ):
        self.settings = settings or get_settings()
        self._providers = providers if providers is not None else build_providers(
            self.settings.catalog, timeout=self.settings.provider_timeout_seconds
        )
        self._cache = cache
        self._circuit_store = circuit_store
        self._breakers: dict[str, CircuitBreaker] = {}

        self.orchestrator = ProviderOrchestrator(
            self._providers, min_content_length=self.settings.min_content_length
        )
        self._fallback = fallback or self._default_fallback(on_failover)
        self._pipeline = DocumentExtractionPipeline(
            orchestrator=self.orchestrator,
            cache=self.cache,
            breaker_factory=self.breaker,
            pdf_processor=pdf_processor
            or PDFProcessor(
                max_pages=self.settings.pdf_max_pages,
                dpi=self.settings.pdf_dpi,
                min_text_length=self.settings.pdf_min_text_length,
            ),
            ocr_chain=ocr_chain
            or OCRChain(
                orchestrator=self.orchestrator,
                min_length=self.settings.ocr_min_text_length,
                min_confidence=self.settings.ocr_min_confidence,
                keyword_bypass_confidence=self.settings.ocr_keyword_bypass_confidence,
            ),
            retry_options=RetryOptions(max_retries=self.settings.max_retries),
            ttl_hours=self.settings.document_cache_ttl_hours,
        )

    @property
    def providers(self) -> list[CompletionProvider]:
        return list(self._providers)

    @property
    def cache(self) -> BaseCacheStore:
        if self._cache is None:
            self._cache = get_cache_store()
        return self._cache

    @property
    def circuit_store(self) -> BaseCircuitStore:
        if self._circuit_store is None:
            self._circuit_store = get_circuit_store()
        return self._circuit_store

    @property
    def fallback(self) -> TwoTierFallback | None:
        return self._fallback

    def _provider(self, kind: ProviderKind) -> CompletionProvider | None:
        return next((p for p in self._providers if p.descriptor.kind is kind), None)

    def _default_fallback(self, on_failover: Callable[[FailoverEvent], None] | None) -> TwoTierFallback | None:
        primary = self._provider(ProviderKind.lovable_ai)
        secondary = self._provider(ProviderKind.google_ai)
        if primary is None or not isinstance(secondary, GeminiProvider):
            logger.warning("Two-tier fallback unavailable: lovable_ai or google_ai missing from catalog")
            return None
        return TwoTierFallback(primary, secondary, on_failover=on_failover)

    def breaker(self, operation: str) -> CircuitBreaker:
        """Breaker for an operation name, created on first use."""
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(
                operation,
                self.circuit_store,
                CircuitBreakerConfig(
                    failure_threshold=self.settings.circuit_failure_threshold,
                    failure_window_minutes=self.settings.circuit_failure_window_minutes,
                    cooldown_seconds=self.settings.circuit_cooldown_seconds,
                ),
            )
            self._breakers[operation] = breaker
        return breaker

    async def start(self) -> None:
        """Start background maintenance (cache expiry sweep)."""
        await self.cache.start_cleanup_task()

    async def stop(self) -> None:
        await self.cache.stop_cleanup_task()

    async def orchestrate(
        self,
        request: CanonicalRequest,
        caller_id: str,
        operation_name: str,
        retry_options: RetryOptions | None = None,
        cache_ttl_hours: float | None = None,
    ) -> CanonicalResponse:
        """Run one logical completion across the provider chain.

        Args:
            request: The completion request.
            caller_id: Identity of the calling user or service.
            operation_name: Names the circuit breaker and cache namespace.
            retry_options: Overrides the default retry configuration.
            cache_ttl_hours: When set, identical requests from the same caller
                are served from cache for this long.

        Raises:
            AllProvidersFailedError: Every eligible provider failed.
            CircuitOpenError: The operation's circuit is open.
            RetryExhaustedError: A JSON-mode answer never parsed.
        """
        correlation_id = str(uuid.uuid4())
        cache_key = None
        if cache_ttl_hours is not None:
            cache_key = compute_cache_key(operation_name, caller_id, request_fingerprint(request))
            cached = await self.cache.get(cache_key)
            if cached is not None:
                response = CanonicalResponse.model_validate(cached).model_copy(update={"estimated_cost_usd": 0.0})
                logger.info(
                    "Served %s from cache",
                    operation_name,
                    extra={
                        "operation": operation_name,
                        "caller_id": caller_id,
                        "provider": response.provider,
                        "total_tokens": response.usage.total_tokens,
                        "estimated_cost_usd": 0.0,
                    },
                )
                return response

        async def attempt() -> CanonicalResponse:
            response = raise_for_failure(await self.orchestrator.orchestrate(request, correlation_id))
            if request.wants_json and not response.tool_calls:
                # Unparseable JSON raises ExtractionError and is retried
                try:
                    extract_json(response.content)
                except ExtractionError as e:
                    e.provider = response.provider
                    raise
            return response

        policy = RetryPolicy(
            breaker=self.breaker(operation_name),
            options=retry_options or RetryOptions(max_retries=self.settings.max_retries),
        )
        response = await policy.run(attempt, operation_name=operation_name)

        if not request.wants_json and not response.tool_calls:
            check = validate_ai_response(response.content)
            if not check.valid:
                logger.warning(
                    "Replaced leaking response from %s",
                    response.provider,
                    extra={"operation": operation_name, "caller_id": caller_id, "provider": response.provider},
                )
                response = response.model_copy(update={"content": check.sanitized})

        if cache_key is not None:
            await self.cache.set(
                cache_key,
                response.model_dump(mode="json"),
                function_name=operation_name,
                ttl_hours=cache_ttl_hours,
                provider=response.provider,
                model=response.model or "unknown",
                tokens_used=response.usage.total_tokens,
            )
        return response

    def _require_fallback(self) -> TwoTierFallback:
        if self._fallback is None:
            raise ChatUnavailableError("Two-tier fallback is not configured")
        return self._fallback

    async def complete_chat(self, request: CanonicalRequest) -> CanonicalResponse:
        """Non-streaming completion through the primary/secondary chain."""
        return await self._require_fallback().complete(request)

    def stream_chat(self, request: CanonicalRequest) -> AsyncIterator[str]:
        """OpenAI-format SSE frames through the primary/secondary chain."""
        return self._require_fallback().stream(request)

    async def extract_document(
        self,
        source_bytes: bytes,
        mime_hint: str | None,
        caller_id: str,
        pipeline_name: str,
        force_reprocess: bool = False,
    ) -> StructuredResult:
        """Turn a PDF or image into structured fields."""
        return await self._pipeline.run(
            source_bytes,
            mime_hint,
            caller_id,
            pipeline_name,
            force_reprocess=force_reprocess,
        )


# Module-level singleton instance
_gateway: Optional[AIGateway] = None


def get_gateway() -> AIGateway:
    """Get the process-wide gateway, building it on first use."""
    global _gateway
    if _gateway is None:
        _gateway = AIGateway()
    return _gateway


def set_gateway(gateway: Optional[AIGateway]) -> None:
    """Set the gateway instance (for testing)."""
    global _gateway
    _gateway = gateway
