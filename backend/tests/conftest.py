"""Pytest fixtures for testing."""

import io
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import replace
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient
from PIL import Image
from pypdf import PdfWriter

from ai_gateway.api.dependencies import set_rate_limiter
from ai_gateway.api.main import app
from ai_gateway.cache.store import InMemoryCacheStore, set_cache_store
from ai_gateway.config import DEFAULT_PROVIDERS, ProviderDescriptor, ProviderKind, Settings, set_settings
from ai_gateway.db import mongo
from ai_gateway.gateway import AIGateway, set_gateway
from ai_gateway.llm.circuit_breaker import InMemoryCircuitStore, set_circuit_store
from ai_gateway.llm.errors import GatewayError
from ai_gateway.llm.models import CanonicalRequest, CanonicalResponse, Usage
from ai_gateway.llm.providers.base import CompletionProvider


def make_descriptor(kind: ProviderKind, **overrides: Any) -> ProviderDescriptor:
    """Default descriptor for a kind, with field overrides."""
    base = next(d for d in DEFAULT_PROVIDERS if d.kind is kind)
    return replace(base, **overrides)


def ok_response(content: str = "A perfectly reasonable answer.", provider: str = "groq", **kwargs: Any) -> CanonicalResponse:
    """Create a successful CanonicalResponse for testing."""
    return CanonicalResponse(
        success=True,
        content=content,
        provider=provider,
        model=kwargs.pop("model", "test-model"),
        usage=kwargs.pop("usage", Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)),
        latency_ms=kwargs.pop("latency_ms", 100),
        **kwargs,
    )


class ScriptedProvider(CompletionProvider):
    """Provider returning queued responses or raising queued errors.

    The last scripted item repeats once the queue runs dry.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        script: list[CanonicalResponse | GatewayError | str] | None = None,
        configured: bool = True,
    ):
        super().__init__(descriptor, api_key="test-key" if configured else None)
        self._script = list(script or ["Scripted answer long enough."])
        self.requests: list[CanonicalRequest] = []

    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        self.requests.append(request)
        item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(item, GatewayError):
            raise item
        if isinstance(item, str):
            return ok_response(item, provider=self.name)
        return item

    async def open_stream(self, request: CanonicalRequest) -> AsyncIterator[dict[str, Any]]:
        """One OpenAI-format chunk carrying the scripted answer."""
        response = await self.generate(request)

        async def events() -> AsyncIterator[dict[str, Any]]:
            yield {
                "id": "chatcmpl-scripted",
                "object": "chat.completion.chunk",
                "model": response.model,
                "choices": [
                    {"index": 0, "delta": {"role": "assistant", "content": response.content}, "finish_reason": "stop"}
                ],
            }

        return events()

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture
def descriptor() -> Callable[..., ProviderDescriptor]:
    return make_descriptor


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    """Factory: scripted_provider(kind, script, configured=True, **descriptor_overrides)."""

    def factory(
        kind: ProviderKind,
        script: list | None = None,
        configured: bool = True,
        **overrides: Any,
    ) -> ScriptedProvider:
        return ScriptedProvider(make_descriptor(kind, **overrides), script, configured=configured)

    return factory


@pytest_asyncio.fixture
async def mock_db() -> AsyncGenerator[Any, None]:
    """Provide a mock MongoDB database for testing."""
    # Create mock client
    mock_client = AsyncMongoMockClient()
    mock_database = mock_client[mongo.DATABASE_NAME]

    # Replace the real client with mock
    mongo.set_client(mock_client)

    yield mock_database

    # Cleanup
    mongo.set_client(None)


@pytest.fixture
def memory_cache() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def memory_circuits() -> InMemoryCircuitStore:
    return InMemoryCircuitStore()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(cache_store_backend="memory", circuit_store_backend="memory")


@pytest_asyncio.fixture
async def gateway(
    scripted_provider: Callable[..., ScriptedProvider],
    memory_cache: InMemoryCacheStore,
    memory_circuits: InMemoryCircuitStore,
    test_settings: Settings,
) -> AsyncGenerator[AIGateway, None]:
    """Gateway over scripted groq and lovable_ai providers and in-memory stores."""
    providers = [
        scripted_provider(ProviderKind.groq, ["Groq says hello there."]),
        scripted_provider(ProviderKind.lovable_ai, ["Lovable says hello there."]),
    ]
    gw = AIGateway(
        settings=test_settings,
        providers=providers,
        cache=memory_cache,
        circuit_store=memory_circuits,
    )
    set_settings(test_settings)
    set_gateway(gw)
    set_cache_store(memory_cache)
    set_circuit_store(memory_circuits)

    yield gw

    set_gateway(None)
    set_settings(None)
    set_cache_store(None)
    set_circuit_store(None)
    set_rate_limiter(None)


@pytest_asyncio.fixture
async def client(gateway: AIGateway) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def make_text_pdf(text: str) -> bytes:
    """Build a one-page PDF whose content stream draws ``text`` in Helvetica."""
    escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    stream = f"BT /F1 10 Tf 36 750 Td ({escaped}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_offset = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n".encode()
    return bytes(out)


def make_blank_pdf() -> bytes:
    """A one-page PDF with no text, like a scan without an OCR layer."""
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_image(width: int = 64, height: int = 48, fmt: str = "PNG", color: str = "white") -> bytes:
    """Encode a solid-colour image with Pillow."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_factory() -> Callable[..., bytes]:
    return make_image


@pytest.fixture
def png_bytes() -> bytes:
    return make_image()


@pytest.fixture
def text_pdf() -> bytes:
    """PDF carrying well over 200 characters of embedded text."""
    line = "Hemograma completo - Paciente Maria Silva - Resultado: Hemoglobina 13.5 g/dL referencia 12.0 a 16.0. "
    return make_text_pdf(line * 4)


@pytest.fixture
def scanned_pdf() -> bytes:
    return make_blank_pdf()
