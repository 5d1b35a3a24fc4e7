"""Hugging Face Inference API provider.

Text-generation only: messages are flattened into a single prompt, and
neither vision nor JSON mode is supported.
"""

import time
from typing import Any

import httpx

from ..errors import AuthenticationError, MalformedResponseError
from ..models import CanonicalRequest, CanonicalResponse
from .base import CompletionProvider
from .http import raise_for_status, transport_error

HUGGINGFACE_BASE_URL = "https://api-inference.huggingface.co/models"


class HuggingFaceProvider(CompletionProvider):
    """Hugging Face hosted inference provider."""

    API_KEY_ENV = "HUGGINGFACE_API_KEY"

    def __init__(self, *args: Any, transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._transport = transport

    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        """Send a text-generation request."""
        if not self._api_key:
            raise AuthenticationError(
                f"Hugging Face API key not configured. Set {self.API_KEY_ENV} environment variable.",
                provider=self.name,
            )

        model = request.model or self.default_model
        prompt = "\n\n".join(f"{m.role}: {m.content}" for m in request.messages)
        body = {
            "inputs": prompt,
            "parameters": {
                "temperature": request.temperature,
                "max_new_tokens": request.max_tokens or 2048,
                "return_full_text": False,
            },
        }
        start_time = time.perf_counter()

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{HUGGINGFACE_BASE_URL}/{model}",
                    json=body,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TransportError as e:
            raise transport_error(e, self.name, self._timeout) from e

        raise_for_status(response, self.name)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self.name} returned invalid JSON", provider=self.name) from e

        # The API returns either a list of generations or a single object
        if isinstance(data, list):
            content = (data[0] or {}).get("generated_text", "") if data else ""
        else:
            content = data.get("generated_text", "")

        return CanonicalResponse(
            success=True,
            content=content,
            provider=self.name,
            model=model,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )
