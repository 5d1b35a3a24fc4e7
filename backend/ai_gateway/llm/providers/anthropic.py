"""Anthropic provider implementation.

Implements the CompletionProvider interface for Anthropic's Messages API.
JSON mode is requested through the system prompt since the Messages API
has no response_format switch.
"""

import json
import time
from typing import Any

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
)

from ..errors import (
    AuthenticationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from ..models import CanonicalRequest, CanonicalResponse, ToolCall, Usage
from .base import CompletionProvider
from .http import error_for_status, parse_retry_after

JSON_ONLY_INSTRUCTION = "Respond with a single JSON object and nothing else."


class AnthropicProvider(CompletionProvider):
    """Anthropic Messages API provider."""

    API_KEY_ENV = "ANTHROPIC_API_KEY"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._client: AsyncAnthropic | None = None

    @property
    def client(self) -> AsyncAnthropic:
        """Lazy-initialized Anthropic client."""
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    "Anthropic API key not configured. Set ANTHROPIC_API_KEY environment variable.",
                    provider=self.name,
                )
            self._client = AsyncAnthropic(api_key=self._api_key, timeout=self._timeout, max_retries=0)
        return self._client

    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        """Send a completion request to Anthropic."""
        start_time = time.perf_counter()
        anthropic_request = self._build_request(request)

        try:
            response = await self.client.messages.create(**anthropic_request)
        except APITimeoutError as e:
            raise ProviderTimeoutError(
                f"Anthropic request timed out after {self._timeout}s",
                provider=self.name,
            ) from e
        except APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to Anthropic: {e}",
                provider=self.name,
            ) from e
        except APIStatusError as e:
            message = str(e.message) if hasattr(e, "message") else str(e)
            response_obj = getattr(e, "response", None)
            raise error_for_status(
                e.status_code,
                message,
                self.name,
                retry_after=parse_retry_after(response_obj.headers if response_obj is not None else None),
                request_id=getattr(e, "request_id", None),
            ) from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        return self._parse_response(response, latency_ms)

    def _build_request(self, request: CanonicalRequest) -> dict[str, Any]:
        """Convert CanonicalRequest to Anthropic API format."""
        messages: list[dict[str, Any]] = []

        for msg in request.messages:
            if msg.role == "system":
                # Anthropic takes system as a top-level parameter
                continue
            if msg.role == "tool":
                messages.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": msg.tool_call_id,
                        "content": msg.content,
                    }],
                })
            else:
                messages.append({"role": msg.role, "content": msg.content})

        if request.vision is not None:
            for anthropic_msg in reversed(messages):
                if anthropic_msg["role"] == "user" and isinstance(anthropic_msg["content"], str):
                    anthropic_msg["content"] = [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": request.vision.mime_type,
                                "data": request.vision.as_base64(),
                            },
                        },
                        {"type": "text", "text": anthropic_msg["content"]},
                    ]
                    break

        anthropic_request: dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": messages,
            "max_tokens": request.max_tokens or 4096,
            # Anthropic uses 0-1 range, canonical requests allow 0-2
            "temperature": min(request.temperature, 1.0),
        }

        system_parts = [request.system_prompt] if request.system_prompt else []
        if request.wants_json:
            system_parts.append(JSON_ONLY_INSTRUCTION)
        if system_parts:
            anthropic_request["system"] = "\n\n".join(system_parts)

        if request.tools:
            anthropic_request["tools"] = [
                {
                    "name": tool["function"]["name"],
                    "description": tool["function"].get("description", ""),
                    "input_schema": tool["function"].get("parameters") or {"type": "object", "properties": {}},
                }
                for tool in request.tools
                if tool.get("type") == "function"
            ]

        return anthropic_request

    def _parse_response(self, response: Any, latency_ms: int) -> CanonicalResponse:
        """Convert Anthropic response to CanonicalResponse."""
        text_parts = []
        tool_calls = []

        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
                )

        return CanonicalResponse(
            success=True,
            content="\n".join(text_parts),
            tool_calls=tool_calls or None,
            provider=self.name,
            model=response.model,
            usage=Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            ),
            latency_ms=latency_ms,
        )
