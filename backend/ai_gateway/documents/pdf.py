"""PDF processing for document extraction.

Strategies, in order:
1. Direct text extraction with pypdf (digital PDFs, no external cost)
2. Page rasterization through an external conversion API, tried in sequence:
   PDF.co, ConvertAPI, CloudConvert

Rasterized pages are returned as PNG bytes for the OCR chain.

Configuration (env vars):
- PDF_CO_API_KEY
- CONVERT_API_KEY
- CLOUDCONVERT_API_KEY
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from pypdf import PdfReader

from ai_gateway.llm.errors import DocumentProcessingError, GatewayError
from ai_gateway.llm.providers.http import raise_for_status, transport_error

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 5
DEFAULT_DPI = 150
# Below this many characters a PDF is treated as scanned
MIN_DIRECT_TEXT_LENGTH = 200
RASTERIZER_TIMEOUT_SECONDS = 60.0


@dataclass
class PDFPage:
    """One page, carrying either extracted text or a rendered image."""

    page_number: int
    text: str | None = None
    image: bytes | None = None
    mime_type: str | None = None

    @property
    def has_image(self) -> bool:
        return self.image is not None


@dataclass
class PDFProcessingResult:
    """Outcome of processing one PDF."""

    pages: list[PDFPage]
    method: str  # "text" or the rasterizer name
    processing_ms: int = 0
    attempted: list[str] = field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    @property
    def rasterized(self) -> bool:
        return self.method != "text"


def extract_pdf_text(data: bytes) -> list[str]:
    """Extract the embedded text of every page.

    Blocking; call through ``asyncio.to_thread``. Unreadable or encrypted
    PDFs yield an empty list so the caller moves on to rasterization.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        return [(page.extract_text() or "").strip() for page in reader.pages]
    except Exception as e:
        logger.warning(f"Direct PDF text extraction failed: {e}")
        return []


class PageRasterizer(ABC):
    """Converts PDF pages into images through an external API."""

    name: str = ""
    API_KEY_ENV: str = ""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = RASTERIZER_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key or os.environ.get(self.API_KEY_ENV)
        self._timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @abstractmethod
    async def rasterize(self, pdf: bytes, max_pages: int, dpi: int) -> list[PDFPage]:
        """Render up to ``max_pages`` pages as PNG.

        Raises:
            GatewayError: HTTP or protocol failure.
        """
        pass

    async def _download(self, client: httpx.AsyncClient, urls: list[str]) -> list[PDFPage]:
        pages = []
        for number, url in enumerate(urls, start=1):
            response = await client.get(url)
            raise_for_status(response, self.name)
            pages.append(PDFPage(page_number=number, image=response.content, mime_type="image/png"))
        return pages


def _page_range(max_pages: int) -> str:
    return f"1-{max_pages}"


class PdfCoRasterizer(PageRasterizer):
    """PDF.co /v1/pdf/convert/to/png; results are download URLs."""

    name = "pdf_co"
    API_KEY_ENV = "PDF_CO_API_KEY"
    ENDPOINT = "https://api.pdf.co/v1/pdf/convert/to/png"

    async def rasterize(self, pdf: bytes, max_pages: int, dpi: int) -> list[PDFPage]:
        payload = {
            "file": f"data:application/pdf;base64,{base64.b64encode(pdf).decode('ascii')}",
            "pages": _page_range(max_pages),
            "resolution": dpi,
        }
        try:
            async with self._http_client() as client:
                response = await client.post(
                    self.ENDPOINT,
                    json=payload,
                    headers={"x-api-key": self._api_key or ""},
                )
                raise_for_status(response, self.name)
                result = response.json()
                if result.get("error"):
                    raise DocumentProcessingError(
                        result.get("message") or "PDF.co conversion failed", provider=self.name
                    )
                return await self._download(client, result.get("urls") or [])
        except httpx.TransportError as e:
            raise transport_error(e, self.name, self._timeout) from e


class ConvertApiRasterizer(PageRasterizer):
    """ConvertAPI pdf→png; page images come back inline as base64."""

    name = "convertapi"
    API_KEY_ENV = "CONVERT_API_KEY"
    ENDPOINT = "https://v2.convertapi.com/convert/pdf/to/png"

    async def rasterize(self, pdf: bytes, max_pages: int, dpi: int) -> list[PDFPage]:
        payload = {
            "Parameters": [
                {
                    "Name": "File",
                    "FileValue": {"Name": "document.pdf", "Data": base64.b64encode(pdf).decode("ascii")},
                },
                {"Name": "PageRange", "Value": _page_range(max_pages)},
                {"Name": "Resolution", "Value": dpi},
            ]
        }
        try:
            async with self._http_client() as client:
                response = await client.post(
                    self.ENDPOINT,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TransportError as e:
            raise transport_error(e, self.name, self._timeout) from e

        raise_for_status(response, self.name)
        files = response.json().get("Files") or []
        if not files:
            raise DocumentProcessingError("ConvertAPI returned no files", provider=self.name)
        return [
            PDFPage(page_number=number, image=base64.b64decode(f["FileData"]), mime_type="image/png")
            for number, f in enumerate(files, start=1)
        ]


class CloudConvertRasterizer(PageRasterizer):
    """CloudConvert job (import/base64 → convert → export/url), polled to completion."""

    name = "cloudconvert"
    API_KEY_ENV = "CLOUDCONVERT_API_KEY"
    ENDPOINT = "https://api.cloudconvert.com/v2/jobs"
    POLL_INTERVAL_SECONDS = 2.0
    MAX_POLLS = 30

    def __init__(self, *args: Any, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._sleep = sleep

    async def rasterize(self, pdf: bytes, max_pages: int, dpi: int) -> list[PDFPage]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        job_payload = {
            "tasks": {
                "import-pdf": {
                    "operation": "import/base64",
                    "file": base64.b64encode(pdf).decode("ascii"),
                    "filename": "document.pdf",
                },
                "convert-to-png": {
                    "operation": "convert",
                    "input": ["import-pdf"],
                    "output_format": "png",
                    "pages": _page_range(max_pages),
                    "pixel_density": dpi,
                },
                "export-result": {"operation": "export/url", "input": ["convert-to-png"]},
            }
        }
        try:
            async with self._http_client() as client:
                response = await client.post(self.ENDPOINT, json=job_payload, headers=headers)
                raise_for_status(response, self.name)
                job_id = response.json()["data"]["id"]

                job = await self._wait_for_job(client, job_id, headers)
                export = next(
                    (t for t in job.get("tasks", []) if t.get("name") == "export-result"), None
                )
                files = ((export or {}).get("result") or {}).get("files") or []
                return await self._download(client, [f["url"] for f in files])
        except httpx.TransportError as e:
            raise transport_error(e, self.name, self._timeout) from e

    async def _wait_for_job(self, client: httpx.AsyncClient, job_id: str, headers: dict[str, str]) -> dict:
        for _ in range(self.MAX_POLLS):
            await self._sleep(self.POLL_INTERVAL_SECONDS)
            response = await client.get(f"{self.ENDPOINT}/{job_id}", headers=headers)
            raise_for_status(response, self.name)
            job = response.json()["data"]
            status = job.get("status")
            if status == "finished":
                return job
            if status == "error":
                raise DocumentProcessingError(f"CloudConvert job {job_id} failed", provider=self.name)
        raise DocumentProcessingError(
            f"CloudConvert job {job_id} did not finish after {self.MAX_POLLS} polls", provider=self.name
        )


def default_rasterizers() -> list[PageRasterizer]:
    return [PdfCoRasterizer(), ConvertApiRasterizer(), CloudConvertRasterizer()]


class PDFProcessor:
    """Direct text extraction with rasterization fallback for scanned PDFs."""

    def __init__(
        self,
        rasterizers: list[PageRasterizer] | None = None,
        max_pages: int = DEFAULT_MAX_PAGES,
        dpi: int = DEFAULT_DPI,
        min_text_length: int = MIN_DIRECT_TEXT_LENGTH,
    ):
        self._rasterizers = rasterizers if rasterizers is not None else default_rasterizers()
        self._max_pages = max_pages
        self._dpi = dpi
        self._min_text_length = min_text_length

    async def process(self, pdf: bytes) -> PDFProcessingResult:
        """Return page texts, or page images when the PDF carries too little text.

        Raises:
            DocumentProcessingError: Scanned PDF and no rasterizer succeeded.
        """
        start_time = time.perf_counter()

        page_texts = await asyncio.to_thread(extract_pdf_text, pdf)
        combined = "\n".join(t for t in page_texts if t)
        if len(combined.strip()) > self._min_text_length:
            logger.info(
                "PDF text extracted directly: %d pages, %d chars",
                len(page_texts),
                len(combined),
            )
            pages = [
                PDFPage(page_number=number, text=text)
                for number, text in enumerate(page_texts, start=1)
                if text
            ]
            return PDFProcessingResult(
                pages=pages,
                method="text",
                processing_ms=int((time.perf_counter() - start_time) * 1000),
            )

        logger.info(
            f"PDF has {len(combined.strip())} chars of embedded text, treating as scanned"
        )

        attempted: list[str] = []
        for rasterizer in self._rasterizers:
            if not rasterizer.is_configured():
                continue
            attempted.append(rasterizer.name)
            try:
                pages = await rasterizer.rasterize(pdf, self._max_pages, self._dpi)
            except (GatewayError, KeyError, ValueError) as e:
                # Malformed upstream payloads surface as KeyError / ValueError
                logger.warning(
                    f"Rasterizer {rasterizer.name} failed: {e}",
                    extra={"provider": rasterizer.name},
                )
                continue

            if pages:
                logger.info(
                    f"Rasterized {len(pages)} pages via {rasterizer.name}",
                    extra={"provider": rasterizer.name},
                )
                return PDFProcessingResult(
                    pages=pages[: self._max_pages],
                    method=rasterizer.name,
                    processing_ms=int((time.perf_counter() - start_time) * 1000),
                    attempted=attempted,
                )
            logger.warning(f"Rasterizer {rasterizer.name} returned no pages")

        if not attempted:
            raise DocumentProcessingError(
                "Scanned PDF cannot be processed: configure PDF_CO_API_KEY, CONVERT_API_KEY or CLOUDCONVERT_API_KEY"
            )
        raise DocumentProcessingError(f"Every PDF rasterizer failed ({', '.join(attempted)})")
