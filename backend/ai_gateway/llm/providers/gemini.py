"""Google Gemini provider implementation.

Talks to the Generative Language REST API over httpx. Besides serving as a
regular orchestrated provider, it is the secondary tier of TwoTierFallback,
so the request translation (role mapping, system instruction extraction,
tool declarations) lives here as plain functions.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..errors import AuthenticationError, MalformedResponseError
from ..models import CanonicalRequest, CanonicalResponse, ToolCall, Usage
from .base import CompletionProvider
from .http import araise_for_status, raise_for_status, transport_error

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def gemini_role(role: str) -> str:
    """Gemini only knows 'user' and 'model'."""
    return "model" if role == "assistant" else "user"


def to_gemini_tools(tools: tuple[dict[str, Any], ...] | None) -> list[dict[str, Any]] | None:
    """Translate OpenAI function declarations to Gemini functionDeclarations."""
    if not tools:
        return None
    declarations = []
    for tool in tools:
        if tool.get("type") != "function":
            continue
        function = tool["function"]
        declaration: dict[str, Any] = {
            "name": function["name"],
            "description": function.get("description", ""),
        }
        if function.get("parameters"):
            declaration["parameters"] = function["parameters"]
        declarations.append(declaration)
    return [{"functionDeclarations": declarations}] if declarations else None


def to_gemini_payload(request: CanonicalRequest) -> dict[str, Any]:
    """Build a generateContent body from a canonical request.

    System messages become ``systemInstruction``; every other message is
    mapped to a user/model turn. The vision payload is appended as
    ``inlineData`` to the last user turn.
    """
    contents: list[dict[str, Any]] = []
    for msg in request.messages:
        if msg.role == "system":
            continue
        contents.append({"role": gemini_role(msg.role), "parts": [{"text": msg.content}]})

    if request.vision is not None:
        for turn in reversed(contents):
            if turn["role"] == "user":
                turn["parts"].append(
                    {
                        "inlineData": {
                            "mimeType": request.vision.mime_type,
                            "data": request.vision.as_base64(),
                        }
                    }
                )
                break

    generation_config: dict[str, Any] = {
        "temperature": request.temperature,
        "maxOutputTokens": request.max_tokens or 4096,
    }
    if request.wants_json:
        generation_config["responseMimeType"] = "application/json"

    payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}

    system_prompt = request.system_prompt
    if system_prompt:
        payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

    tools = to_gemini_tools(request.tools)
    if tools:
        payload["tools"] = tools

    return payload


def parse_gemini_parts(data: dict[str, Any]) -> tuple[str, list[ToolCall]]:
    """Pull text and function calls out of a generateContent body or stream event."""
    candidates = data.get("candidates") or []
    if not candidates:
        return "", []
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text_parts = []
    tool_calls = []
    for part in parts:
        if "text" in part:
            text_parts.append(part["text"])
        elif "functionCall" in part:
            call = part["functionCall"]
            tool_calls.append(
                ToolCall(name=call["name"], arguments=json.dumps(call.get("args", {})))
            )
    return "".join(text_parts), tool_calls


class GeminiProvider(CompletionProvider):
    """Gemini generateContent / streamGenerateContent provider."""

    API_KEY_ENV = "GOOGLE_AI_API_KEY"
    supports_streaming = True

    def __init__(self, *args: Any, transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key or ""}

    def _model(self, request: CanonicalRequest) -> str:
        # Hints like "google/gemini-2.5-flash" target gateways, not the native API
        model = request.model or self.default_model
        return model.split("/", 1)[1] if model.startswith("google/") else model

    async def generate(self, request: CanonicalRequest) -> CanonicalResponse:
        """Send a generateContent request."""
        self._require_key()
        model = self._model(request)
        url = f"{GEMINI_BASE_URL}/models/{model}:generateContent"
        start_time = time.perf_counter()

        try:
            async with self._http_client() as client:
                response = await client.post(url, json=to_gemini_payload(request), headers=self._headers())
        except httpx.TransportError as e:
            raise transport_error(e, self.name, self._timeout) from e

        raise_for_status(response, self.name)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self.name} returned invalid JSON", provider=self.name) from e

        text, tool_calls = parse_gemini_parts(data)
        usage_meta = data.get("usageMetadata") or {}
        return CanonicalResponse(
            success=True,
            content=text,
            tool_calls=tool_calls or None,
            provider=self.name,
            model=model,
            usage=Usage(
                prompt_tokens=usage_meta.get("promptTokenCount", 0),
                completion_tokens=usage_meta.get("candidatesTokenCount", 0),
                total_tokens=usage_meta.get("totalTokenCount", 0),
            ),
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )

    async def open_stream(self, request: CanonicalRequest) -> AsyncIterator[dict[str, Any]]:
        """Open streamGenerateContent with SSE framing; yields Gemini event dicts."""
        self._require_key()
        model = self._model(request)
        url = f"{GEMINI_BASE_URL}/models/{model}:streamGenerateContent"

        client = self._http_client()
        try:
            http_request = client.build_request(
                "POST",
                url,
                params={"alt": "sse"},
                json=to_gemini_payload(request),
                headers=self._headers(),
            )
            response = await client.send(http_request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            raise transport_error(e, self.name, self._timeout) from e

        try:
            await araise_for_status(response, self.name)
        except Exception:
            await response.aclose()
            await client.aclose()
            raise

        return self._iterate_events(client, response)

    async def _iterate_events(
        self, client: httpx.AsyncClient, response: httpx.Response
    ) -> AsyncIterator[dict[str, Any]]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if not data:
                    continue
                try:
                    yield json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Skipping unparseable Gemini stream event: %s", data[:200])
        finally:
            await response.aclose()
            await client.aclose()

    def _require_key(self) -> None:
        if not self._api_key:
            raise AuthenticationError(
                f"Gemini API key not configured. Set {self.API_KEY_ENV} environment variable.",
                provider=self.name,
            )
