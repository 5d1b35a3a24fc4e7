"""Dedicated OCR providers with fallback.

OCR is kept separate from AI structuring. Providers are tried in a fixed
order and the first result passing validate_ocr_result wins:

1. OCR.space (free tier)
2. Google Cloud Vision
3. Azure Computer Vision Read (asynchronous, polled)

When none is configured or all fail, a vision-capable completion provider
is asked to transcribe the image instead.

Configuration (env vars):
- OCR_SPACE_API_KEY
- GOOGLE_VISION_API_KEY
- AZURE_VISION_ENDPOINT / AZURE_VISION_API_KEY
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from ai_gateway.llm.errors import DocumentProcessingError, GatewayError, MalformedResponseError
from ai_gateway.llm.models import CanonicalRequest, ChatMessage, VisionPayload
from ai_gateway.llm.orchestrator import ProviderOrchestrator
from ai_gateway.llm.providers.http import raise_for_status, transport_error
from ai_gateway.llm.schemas import VISION_OCR_PROMPT

logger = logging.getLogger(__name__)

OCR_TIMEOUT_SECONDS = 60.0
MIN_OCR_TEXT_LENGTH = 50
MIN_OCR_CONFIDENCE = 50.0
KEYWORD_BYPASS_CONFIDENCE = 80.0

# Vocabulary expected in lab reports (Portuguese and English)
DOMAIN_KEYWORDS = (
    "resultado",
    "referência",
    "valor",
    "exame",
    "laboratório",
    "data",
    "paciente",
    "hemograma",
    "colesterol",
    "glicose",
    "mg/dl",
    "ml",
    "g/dl",
    "mm³",
    "u/l",
    "normal",
    "result",
    "reference",
    "value",
    "laboratory",
    "patient",
    "cholesterol",
    "glucose",
)


@dataclass
class OCRResult:
    """Text recognised in one image."""

    success: bool
    text: str
    confidence: float
    provider: str
    processing_ms: int = 0
    error: str | None = None


@dataclass(frozen=True)
class OCRValidation:
    valid: bool
    reason: str | None = None


def validate_ocr_result(
    result: OCRResult,
    min_length: int = MIN_OCR_TEXT_LENGTH,
    min_confidence: float = MIN_OCR_CONFIDENCE,
    keyword_bypass_confidence: float = KEYWORD_BYPASS_CONFIDENCE,
) -> OCRValidation:
    """Decide whether OCR output is usable.

    Text must be longer than ``min_length``, confidence at least
    ``min_confidence``, and the text must contain a domain keyword unless
    confidence reaches ``keyword_bypass_confidence``.
    """
    if not result.success:
        return OCRValidation(False, result.error or "OCR failed")

    text = result.text.strip()
    if len(text) <= min_length:
        return OCRValidation(False, f"text too short ({len(text)} chars)")

    if result.confidence < min_confidence:
        return OCRValidation(False, f"confidence too low ({result.confidence:.1f})")

    lowered = text.lower()
    if not any(keyword in lowered for keyword in DOMAIN_KEYWORDS) and result.confidence < keyword_bypass_confidence:
        return OCRValidation(False, "text does not look like a supported document")

    return OCRValidation(True)


class OCRProvider(ABC):
    """One dedicated OCR API."""

    name: str = ""

    def __init__(
        self,
        timeout: float = OCR_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout
        self._transport = transport

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @abstractmethod
    async def extract(self, image: bytes, mime_type: str) -> tuple[str, float]:
        """Return (text, confidence 0-100).

        Raises:
            GatewayError: HTTP or protocol failure.
        """
        pass

    async def recognize(self, image: bytes, mime_type: str) -> OCRResult:
        """Run extract() and convert any failure into a failed OCRResult."""
        start_time = time.perf_counter()
        try:
            try:
                text, confidence = await self.extract(image, mime_type)
            except httpx.TransportError as e:
                raise transport_error(e, self.name, self._timeout) from e
            except (KeyError, ValueError) as e:
                raise MalformedResponseError(f"{self.name} returned an unexpected payload: {e}", provider=self.name) from e
        except GatewayError as e:
            return OCRResult(
                success=False,
                text="",
                confidence=0.0,
                provider=self.name,
                processing_ms=int((time.perf_counter() - start_time) * 1000),
                error=e.message,
            )
        return OCRResult(
            success=True,
            text=text,
            confidence=min(confidence, 100.0),
            provider=self.name,
            processing_ms=int((time.perf_counter() - start_time) * 1000),
        )


class OCRSpaceProvider(OCRProvider):
    """OCR.space parse/image, engine 2 (better on documents)."""

    name = "ocr_space"
    ENDPOINT = "https://api.ocr.space/parse/image"
    # OCR.space reports no confidence for parsed text
    DEFAULT_CONFIDENCE = 85.0

    def __init__(self, api_key: str | None = None, language: str = "por", **kwargs: Any):
        super().__init__(**kwargs)
        self._api_key = api_key or os.environ.get("OCR_SPACE_API_KEY")
        self._language = language

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def extract(self, image: bytes, mime_type: str) -> tuple[str, float]:
        form = {
            "base64Image": f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}",
            "language": self._language,
            "detectOrientation": "true",
            "scale": "true",
            "isTable": "true",
            "OCREngine": "2",
        }
        async with self._http_client() as client:
            response = await client.post(self.ENDPOINT, data=form, headers={"apikey": self._api_key or ""})

        raise_for_status(response, self.name)
        result = response.json()
        if result.get("IsErroredOnProcessing"):
            errors = result.get("ErrorMessage") or ["OCR processing failed"]
            message = errors[0] if isinstance(errors, list) else str(errors)
            raise DocumentProcessingError(message, provider=self.name)

        parsed = result.get("ParsedResults") or [{}]
        return parsed[0].get("ParsedText", ""), self.DEFAULT_CONFIDENCE


class GoogleVisionProvider(OCRProvider):
    """Cloud Vision images:annotate with DOCUMENT_TEXT_DETECTION."""

    name = "google_vision"
    ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"
    # Used when the response carries no word-level confidence
    DEFAULT_CONFIDENCE = 85.0

    def __init__(self, api_key: str | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._api_key = api_key or os.environ.get("GOOGLE_VISION_API_KEY")

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def extract(self, image: bytes, mime_type: str) -> tuple[str, float]:
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("ascii")},
                    "features": [{"type": "DOCUMENT_TEXT_DETECTION"}, {"type": "TEXT_DETECTION"}],
                    "imageContext": {"languageHints": ["pt", "en"]},
                }
            ]
        }
        async with self._http_client() as client:
            response = await client.post(self.ENDPOINT, params={"key": self._api_key}, json=payload)

        raise_for_status(response, self.name)
        first = (response.json().get("responses") or [{}])[0]
        full = first.get("fullTextAnnotation")
        annotations = first.get("textAnnotations") or []
        if not full and not annotations:
            raise DocumentProcessingError("No text detected in image", provider=self.name)

        text = (full or {}).get("text") or (annotations[0].get("description", "") if annotations else "")
        return text, self._average_confidence(full or {})

    def _average_confidence(self, full: dict[str, Any]) -> float:
        scores = [
            word["confidence"]
            for page in full.get("pages", [])
            for block in page.get("blocks", [])
            for paragraph in block.get("paragraphs", [])
            for word in paragraph.get("words", [])
            if word.get("confidence")
        ]
        if not scores:
            return self.DEFAULT_CONFIDENCE
        return sum(scores) / len(scores) * 100


class AzureReadProvider(OCRProvider):
    """Azure Computer Vision Read 3.2: submit, then poll Operation-Location."""

    name = "azure_vision"
    # The Read API reports no overall confidence
    DEFAULT_CONFIDENCE = 90.0
    POLL_INTERVAL_SECONDS = 1.0
    MAX_POLLS = 10

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._endpoint = (endpoint or os.environ.get("AZURE_VISION_ENDPOINT") or "").rstrip("/")
        self._api_key = api_key or os.environ.get("AZURE_VISION_API_KEY")
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(self._endpoint and self._api_key)

    async def extract(self, image: bytes, mime_type: str) -> tuple[str, float]:
        headers = {"Ocp-Apim-Subscription-Key": self._api_key or ""}
        async with self._http_client() as client:
            response = await client.post(
                f"{self._endpoint}/vision/v3.2/read/analyze",
                content=image,
                headers={**headers, "Content-Type": "application/octet-stream"},
            )
            raise_for_status(response, self.name)

            operation_url = response.headers.get("Operation-Location")
            if not operation_url:
                raise MalformedResponseError("Azure returned no Operation-Location", provider=self.name)

            result = await self._poll(client, operation_url, headers)

        lines = [
            line["text"]
            for page in (result.get("analyzeResult") or {}).get("readResults", [])
            for line in page.get("lines", [])
        ]
        return "\n".join(lines), self.DEFAULT_CONFIDENCE

    async def _poll(self, client: httpx.AsyncClient, url: str, headers: dict[str, str]) -> dict:
        for _ in range(self.MAX_POLLS):
            await self._sleep(self.POLL_INTERVAL_SECONDS)
            response = await client.get(url, headers=headers)
            raise_for_status(response, self.name)
            result = response.json()
            status = result.get("status")
            if status == "succeeded":
                return result
            if status == "failed":
                raise DocumentProcessingError("Azure OCR processing failed", provider=self.name)
        raise DocumentProcessingError(f"Azure OCR did not finish after {self.MAX_POLLS} polls", provider=self.name)


def default_ocr_providers() -> list[OCRProvider]:
    return [OCRSpaceProvider(), GoogleVisionProvider(), AzureReadProvider()]


class OCRChain:
    """Tries dedicated OCR providers in order, then a vision completion."""

    def __init__(
        self,
        providers: list[OCRProvider] | None = None,
        orchestrator: ProviderOrchestrator | None = None,
        min_length: int = MIN_OCR_TEXT_LENGTH,
        min_confidence: float = MIN_OCR_CONFIDENCE,
        keyword_bypass_confidence: float = KEYWORD_BYPASS_CONFIDENCE,
    ):
        self._providers = providers if providers is not None else default_ocr_providers()
        self._orchestrator = orchestrator
        self._min_length = min_length
        self._min_confidence = min_confidence
        self._keyword_bypass_confidence = keyword_bypass_confidence

    async def extract(self, image: bytes, mime_type: str) -> OCRResult:
        """Return the first acceptable OCR result for an image.

        Raises:
            DocumentProcessingError: No provider, dedicated or vision, produced text.
        """
        for provider in self._providers:
            if not provider.is_configured():
                continue

            result = await provider.recognize(image, mime_type)
            check = validate_ocr_result(
                result,
                min_length=self._min_length,
                min_confidence=self._min_confidence,
                keyword_bypass_confidence=self._keyword_bypass_confidence,
            )
            if check.valid:
                logger.info(
                    f"OCR via {provider.name}: {len(result.text)} chars in {result.processing_ms}ms",
                    extra={"provider": provider.name, "latency_ms": result.processing_ms},
                )
                return result

            logger.warning(
                f"OCR result from {provider.name} rejected: {check.reason}",
                extra={"provider": provider.name},
            )

        return await self._vision_fallback(image, mime_type)

    async def _vision_fallback(self, image: bytes, mime_type: str) -> OCRResult:
        if self._orchestrator is None:
            raise DocumentProcessingError("No OCR provider produced usable text")

        logger.info("Dedicated OCR exhausted, falling back to vision completion")
        request = CanonicalRequest(
            messages=(ChatMessage(role="user", content=VISION_OCR_PROMPT),),
            temperature=0.0,
            vision=VisionPayload(data=image, mime_type=mime_type),
        )
        response = await self._orchestrator.orchestrate(request)
        if not response.success:
            raise DocumentProcessingError(
                f"Text could not be extracted from the image: {response.error}",
            )

        return OCRResult(
            success=True,
            text=response.content,
            confidence=0.0,
            provider=f"ai_vision_{response.provider}",
            processing_ms=response.latency_ms,
        )
