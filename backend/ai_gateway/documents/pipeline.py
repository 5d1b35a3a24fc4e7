"""Document extraction pipeline.

Turns an uploaded PDF or image into a structured DocumentExtraction:

    received → cache check → {hit: done}
                           → {miss: extracting_text → structuring → validated → cached → done}

Text comes from the PDF itself when it carries enough, otherwise from
rasterized pages or the image through the OCR chain. Structuring runs one
orchestration pass per attempt under RetryPolicy and the pipeline's
circuit breaker; an unparseable answer degrades to a best-effort parse and
finally a placeholder instead of failing the whole run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from ai_gateway.cache.store import DOCUMENT_TTL_HOURS, BaseCacheStore, compute_cache_key
from ai_gateway.llm.circuit_breaker import CircuitBreaker
from ai_gateway.llm.errors import DocumentProcessingError, ExtractionError, RetryExhaustedError
from ai_gateway.llm.json_extractor import extract_json
from ai_gateway.llm.models import CanonicalRequest, CanonicalResponse, ResponseFormat
from ai_gateway.llm.orchestrator import ProviderOrchestrator, raise_for_failure
from ai_gateway.llm.retry import RetryOptions, RetryPolicy
from ai_gateway.llm.sanitizer import build_secure_prompt
from ai_gateway.llm.schemas import (
    PLACEHOLDER_EXTRACTION,
    STRUCTURING_SYSTEM_PROMPT,
    DocumentExtraction,
    ExtractedParameter,
)

from .images import DocumentKind, detect_document_kind, normalize_for_ocr
from .ocr import OCRChain
from .pdf import PDFProcessor

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n--- Page ---\n\n"


class PipelineStage(str, Enum):
    """Stages a document passes through, in order."""

    received = "received"
    cache_check = "cache_check"
    extracting_text = "extracting_text"
    structuring = "structuring"
    validated = "validated"
    cached = "cached"
    done = "done"


class StructuredResult(BaseModel):
    """Result of one pipeline run."""

    data: DocumentExtraction
    cached: bool = False
    stages: list[PipelineStage] = Field(default_factory=list)
    document_kind: DocumentKind | None = None
    ocr_provider: str | None = None
    ai_provider: str | None = None
    model: str | None = None
    page_count: int = 0
    text_length: int = 0
    validation: Literal["schema", "raw", "placeholder", "cache"] = "schema"
    processing_ms: int = 0


class _ExtractedText(BaseModel):
    text: str
    ocr_provider: str | None = None
    page_count: int = 0


def best_effort_extraction(content: str) -> DocumentExtraction | None:
    """Salvage what is usable from an answer that failed schema validation.

    Missing identity fields fall back to the placeholder's values and
    parameters that do not validate individually are dropped.
    """
    try:
        raw = extract_json(content)
    except ExtractionError:
        return None
    if not isinstance(raw, dict):
        return None

    parameters = []
    for item in raw.get("parameters") or []:
        try:
            parameters.append(ExtractedParameter.model_validate(item))
        except ValidationError:
            continue

    try:
        return DocumentExtraction(
            document_name=str(raw.get("document_name") or PLACEHOLDER_EXTRACTION.document_name),
            document_date=raw.get("document_date") if isinstance(raw.get("document_date"), str) else None,
            issuer=raw.get("issuer") if isinstance(raw.get("issuer"), str) else None,
            category=str(raw.get("category") or PLACEHOLDER_EXTRACTION.category),
            parameters=parameters,
        )
    except ValidationError:
        return None


class DocumentExtractionPipeline:
    """Cache-first document → structured data pipeline."""

    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        cache: BaseCacheStore,
        breaker_factory: Callable[[str], CircuitBreaker] | None = None,
        pdf_processor: PDFProcessor | None = None,
        ocr_chain: OCRChain | None = None,
        retry_options: RetryOptions | None = None,
        ttl_hours: float = DOCUMENT_TTL_HOURS,
    ):
        self._orchestrator = orchestrator
        self._cache = cache
        self._breaker_factory = breaker_factory
        self._pdf = pdf_processor or PDFProcessor()
        self._ocr = ocr_chain or OCRChain(orchestrator=orchestrator)
        self._retry_options = retry_options
        self._ttl_hours = ttl_hours

    async def run(
        self,
        source: bytes,
        mime_hint: str | None,
        caller_id: str,
        pipeline_name: str,
        force_reprocess: bool = False,
    ) -> StructuredResult:
        """Extract structured data from a document.

        Raises:
            UnsupportedDocumentError: Not a PDF or supported image.
            DocumentProcessingError: No text could be obtained.
            AllProvidersFailedError: Structuring found no working provider.
            CircuitOpenError: The pipeline's circuit is open.
        """
        start_time = time.perf_counter()
        stages = [PipelineStage.received]
        log_extra = {"operation": pipeline_name, "caller_id": caller_id}
        cache_key = compute_cache_key(pipeline_name, caller_id, source)

        if not force_reprocess:
            stages.append(PipelineStage.cache_check)
            hit = await self._from_cache(cache_key)
            if hit is not None:
                logger.info(f"{pipeline_name}: served from cache", extra=log_extra)
                stages.append(PipelineStage.done)
                return StructuredResult(
                    data=hit,
                    cached=True,
                    stages=stages,
                    validation="cache",
                    processing_ms=int((time.perf_counter() - start_time) * 1000),
                )

        kind = detect_document_kind(source, mime_hint)
        logger.info(f"{pipeline_name}: processing {kind.value} document ({len(source)} bytes)", extra=log_extra)

        stages.append(PipelineStage.extracting_text)
        if kind is DocumentKind.pdf:
            extracted = await self._text_from_pdf(source)
        else:
            extracted = await self._text_from_image(source, kind)
        logger.info(
            f"{pipeline_name}: extracted {len(extracted.text)} chars via {extracted.ocr_provider}",
            extra=log_extra,
        )

        stages.append(PipelineStage.structuring)
        data, validation, response = await self._structure(extracted.text, pipeline_name)
        stages.append(PipelineStage.validated)

        stored = await self._cache.set(
            cache_key,
            data.model_dump(mode="json"),
            function_name=pipeline_name,
            ttl_hours=self._ttl_hours,
            provider=response.provider if response else "unknown",
            model=(response.model if response else None) or "unknown",
            tokens_used=response.usage.total_tokens if response else 0,
        )
        if stored:
            stages.append(PipelineStage.cached)
        stages.append(PipelineStage.done)

        processing_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            f"{pipeline_name}: done in {processing_ms}ms, {len(data.parameters)} parameters ({validation})",
            extra={**log_extra, "latency_ms": processing_ms},
        )
        return StructuredResult(
            data=data,
            cached=False,
            stages=stages,
            document_kind=kind,
            ocr_provider=extracted.ocr_provider,
            ai_provider=response.provider if response else None,
            model=response.model if response else None,
            page_count=extracted.page_count,
            text_length=len(extracted.text),
            validation=validation,
            processing_ms=processing_ms,
        )

    async def _from_cache(self, cache_key: str) -> DocumentExtraction | None:
        payload = await self._cache.get(cache_key)
        if payload is None:
            return None
        try:
            return DocumentExtraction.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring cached entry {cache_key} that no longer validates: {e}")
            return None

    async def _text_from_pdf(self, source: bytes) -> _ExtractedText:
        result = await self._pdf.process(source)
        if not result.rasterized:
            return _ExtractedText(
                text=PAGE_SEPARATOR.join(p.text for p in result.pages if p.text),
                ocr_provider="pdf_text",
                page_count=result.total_pages,
            )

        texts = []
        ocr_provider = None
        for page in result.pages:
            if not page.has_image:
                continue
            try:
                ocr = await self._ocr.extract(page.image, page.mime_type or "image/png")
            except DocumentProcessingError as e:
                logger.warning(f"Skipping page {page.page_number}: {e}")
                continue
            texts.append(ocr.text)
            ocr_provider = ocr.provider

        if not texts:
            raise DocumentProcessingError(
                f"No text recognised on any of {result.total_pages} rasterized pages"
            )
        return _ExtractedText(
            text=PAGE_SEPARATOR.join(texts),
            ocr_provider=ocr_provider,
            page_count=result.total_pages,
        )

    async def _text_from_image(self, source: bytes, kind: DocumentKind) -> _ExtractedText:
        try:
            image, mime_type = normalize_for_ocr(source)
        except ValueError as e:
            raise DocumentProcessingError(f"Image could not be decoded: {e}") from e

        ocr = await self._ocr.extract(image, mime_type)
        return _ExtractedText(text=ocr.text, ocr_provider=ocr.provider, page_count=1)

    def _structuring_request(self, text: str) -> CanonicalRequest:
        return CanonicalRequest(
            messages=build_secure_prompt(STRUCTURING_SYSTEM_PROMPT, text),
            temperature=0.1,
            response_format=ResponseFormat(type="json"),
        )

    async def _structure(
        self, text: str, pipeline_name: str
    ) -> tuple[DocumentExtraction, str, CanonicalResponse | None]:
        request = self._structuring_request(text)
        last_response: CanonicalResponse | None = None

        async def attempt() -> tuple[DocumentExtraction, CanonicalResponse]:
            nonlocal last_response
            response = raise_for_failure(await self._orchestrator.orchestrate(request))
            last_response = response
            return extract_json(response.content, DocumentExtraction), response

        breaker = self._breaker_factory(pipeline_name) if self._breaker_factory else None
        policy = RetryPolicy(breaker=breaker, options=self._retry_options)

        try:
            data, response = await policy.run(attempt, operation_name=pipeline_name)
            return data, "schema", response
        except RetryExhaustedError as e:
            if not isinstance(e.last_error, ExtractionError) or last_response is None:
                raise
            logger.warning(f"{pipeline_name}: structured output never validated, trying raw parse: {e}")

        salvaged = best_effort_extraction(last_response.content)
        if salvaged is not None:
            return salvaged, "raw", last_response

        logger.error(f"{pipeline_name}: raw parse failed, returning placeholder extraction")
        return PLACEHOLDER_EXTRACTION.model_copy(deep=True), "placeholder", last_response
