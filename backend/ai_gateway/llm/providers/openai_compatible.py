"""OpenAI-compatible provider implementation.

Groq, Together AI, OpenRouter and the Lovable AI gateway all expose the
OpenAI Chat Completions API, so one adapter built on the openai SDK serves
them, parameterised by base URL and API key variable.
"""

import time
from collections.abc import AsyncIterator
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from ...config import ProviderDescriptor, ProviderKind
from ..errors import (
    AuthenticationError,
    MalformedResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from ..models import CanonicalRequest, CanonicalResponse, ToolCall, Usage
from .base import CompletionProvider
from .http import error_for_status, parse_retry_after

# (base URL, API key env var, extra headers) per endpoint
ENDPOINTS: dict[ProviderKind, tuple[str, str, dict[str, str]]] = {
    ProviderKind.groq: ("https://api.groq.com/openai/v1", "GROQ_API_KEY", {}),
    ProviderKind.together_ai: ("https://api.together.xyz/v1", "TOGETHER_API_KEY", {}),
    ProviderKind.openrouter: (
        "https://openrouter.ai/api/v1",
        "OPENROUTER_API_KEY",
        {"X-Title": "ai-gateway"},
    ),
    ProviderKind.lovable_ai: ("https://ai.gateway.lovable.dev/v1", "LOVABLE_API_KEY", {}),
}


def build_openai_messages(request: CanonicalRequest) -> list[dict[str, Any]]:
    """Convert canonical messages to the Chat Completions format.

    The vision payload is attached to the last user message as an
    image_url content part carrying a data URI.
    """
    messages: list[dict[str, Any]] = []
    for msg in request.messages:
        openai_msg: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.name:
            openai_msg["name"] = msg.name
        if msg.tool_call_id:
            openai_msg["tool_call_id"] = msg.tool_call_id
        messages.append(openai_msg)

    if request.vision is not None:
        for openai_msg in reversed(messages):
            if openai_msg["role"] == "user":
                openai_msg["content"] = [
                    {"type": "text", "text": openai_msg["content"]},
                    {"type": "image_url", "image_url": {"url": request.vision.as_data_uri()}},
                ]
                break
    return messages


class OpenAICompatibleProvider(CompletionProvider):
    """Chat Completions provider for any OpenAI-compatible endpoint."""

    supports_streaming = True

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        api_key: str | None = None,
        timeout: float = 60.0,
        base_url: str | None = None,
    ):
        endpoint, key_env, headers = ENDPOINTS[descriptor.kind]
        self.API_KEY_ENV = key_env
        super().__init__(descriptor, api_key=api_key, timeout=timeout)
        self._base_url = base_url or endpoint
        self._headers = headers
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-initialized OpenAI SDK client bound to this endpoint."""
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    f"{self.name} API key not configured. Set {self.API_KEY_ENV} environment variable.",
                    provider=self.name,
                )
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
                default_headers=self._headers or None,
            )
        return self._client

    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        """Send a completion request to the endpoint."""
        start_time = time.perf_counter()
        payload = self._build_request(request)

        try:
            response = await self.client.chat.completions.create(**payload)
        except APITimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.name} request timed out after {self._timeout}s",
                provider=self.name,
            ) from e
        except APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to {self.name}: {e}",
                provider=self.name,
            ) from e
        except APIStatusError as e:
            raise self._map_status_error(e) from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        return self._parse_response(response, latency_ms, payload["model"])

    async def open_stream(self, request: CanonicalRequest) -> AsyncIterator[dict[str, Any]]:
        """Open a streamed completion; yields chat.completion.chunk dicts."""
        payload = self._build_request(request)
        payload["stream"] = True

        try:
            stream = await self.client.chat.completions.create(**payload)
        except APITimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.name} request timed out after {self._timeout}s",
                provider=self.name,
            ) from e
        except APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to {self.name}: {e}",
                provider=self.name,
            ) from e
        except APIStatusError as e:
            raise self._map_status_error(e) from e

        return self._iterate_stream(stream)

    async def _iterate_stream(self, stream: Any) -> AsyncIterator[dict[str, Any]]:
        async for chunk in stream:
            yield chunk.model_dump(exclude_none=True)

    def _build_request(self, request: CanonicalRequest) -> dict[str, Any]:
        """Convert CanonicalRequest to Chat Completions format."""
        payload: dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": build_openai_messages(request),
            "temperature": request.temperature,
        }

        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens

        if request.wants_json:
            payload["response_format"] = {"type": "json_object"}

        if request.tools:
            payload["tools"] = list(request.tools)

        return payload

    def _parse_response(self, response: Any, latency_ms: int, requested_model: str) -> CanonicalResponse:
        """Convert a ChatCompletion to CanonicalResponse."""
        if not getattr(response, "choices", None):
            raise MalformedResponseError(f"{self.name} returned no choices", provider=self.name)

        message = response.choices[0].message

        tool_calls = None
        if message.tool_calls:
            tool_calls = [
                ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments)
                for tc in message.tool_calls
            ]

        usage = Usage()
        if response.usage is not None:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        return CanonicalResponse(
            success=True,
            content=message.content or "",
            tool_calls=tool_calls,
            provider=self.name,
            model=response.model or requested_model,
            usage=usage,
            latency_ms=latency_ms,
        )

    def _map_status_error(self, error: APIStatusError):
        """Convert SDK status errors to gateway errors."""
        message = str(error.message) if hasattr(error, "message") else str(error)
        response = getattr(error, "response", None)
        return error_for_status(
            error.status_code,
            message,
            self.name,
            retry_after=parse_retry_after(response.headers if response is not None else None),
            request_id=getattr(error, "request_id", None),
        )
