"""Two-tier provider fallback driven by HTTP status.

The primary tier is an OpenAI-compatible gateway; the secondary is Gemini.
Falls back when the primary answers 429 (rate limited) or 402 (credits
exhausted), when the request never reaches it, or when it has no
credentials. Every other status comes back to the caller unchanged: it
points at the request shape, which the secondary would reject too.

Streaming is supported end to end. Whichever tier serves the request, the
caller receives OpenAI ``chat.completion.chunk`` SSE frames ending with
``data: [DONE]``; Gemini events are rewritten chunk by chunk.

Failover is reported as an explicit FailoverEvent to an optional listener
and to the log.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import FALLBACK_STATUS_CODES, GatewayError, ProviderUnavailableError
from .models import CanonicalRequest, CanonicalResponse
from .providers.base import CompletionProvider
from .providers.gemini import GeminiProvider, parse_gemini_parts

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}


@dataclass(frozen=True)
class FailoverEvent:
    """Emitted whenever a request is served by the secondary tier."""

    primary: str
    secondary: str
    reason: str
    status_code: int | None
    streaming: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


class GeminiStreamTranslator:
    """Rewrites Gemini stream events into OpenAI chat.completion.chunk dicts.

    One translator per stream: it keeps the completion id, emits the
    assistant role on the first chunk only and numbers tool calls.
    """

    def __init__(self, model: str, completion_id: str | None = None, created: int | None = None):
        self.model = model
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.created = created if created is not None else int(time.time())
        self._sent_role = False
        self._tool_index = 0

    def translate(self, event: dict[str, Any]) -> dict[str, Any] | None:
        """Translate one event. Returns None for events carrying nothing."""
        text, tool_calls = parse_gemini_parts(event)
        candidates = event.get("candidates") or []
        native_finish = candidates[0].get("finishReason") if candidates else None
        finish_reason = _FINISH_REASONS.get(native_finish, "stop") if native_finish else None

        delta: dict[str, Any] = {}
        if not self._sent_role:
            delta["role"] = "assistant"
        if text:
            delta["content"] = text
        if tool_calls:
            delta["tool_calls"] = []
            for call in tool_calls:
                delta["tool_calls"].append(
                    {
                        "index": self._tool_index,
                        "id": f"call_{uuid.uuid4().hex[:24]}",
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                )
                self._tool_index += 1
            if finish_reason == "stop":
                finish_reason = "tool_calls"

        if not text and not tool_calls and finish_reason is None:
            return None

        self._sent_role = True
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }


class TwoTierFallback:
    """Primary/secondary completion chain with stream translation."""

    def __init__(
        self,
        primary: CompletionProvider,
        secondary: GeminiProvider,
        on_failover: Callable[[FailoverEvent], None] | None = None,
        fallback_statuses: frozenset[int] = FALLBACK_STATUS_CODES,
    ):
        self.primary = primary
        self.secondary = secondary
        self._on_failover = on_failover
        self._fallback_statuses = fallback_statuses

    def should_fall_back(self, error: GatewayError) -> bool:
        """Quota and rate-limit statuses, or no response at all."""
        if error.status_code is None:
            return isinstance(error, ProviderUnavailableError)
        return error.status_code in self._fallback_statuses

    def _failover(self, reason: str, status_code: int | None, streaming: bool) -> None:
        event = FailoverEvent(
            primary=self.primary.name,
            secondary=self.secondary.name,
            reason=reason,
            status_code=status_code,
            streaming=streaming,
        )
        logger.warning(
            "Falling back from %s to %s: %s",
            event.primary,
            event.secondary,
            reason,
            extra={
                "provider": event.primary,
                "fallback_provider": event.secondary,
                "status_code": status_code,
                "streaming": streaming,
            },
        )
        if self._on_failover is not None:
            try:
                self._on_failover(event)
            except Exception as e:
                logger.warning(f"Failover listener raised: {e}")

    def _secondary_request(self, request: CanonicalRequest) -> CanonicalRequest:
        # The primary's model hint is meaningless to the secondary
        return request.model_copy(update={"model": None})

    async def complete(self, request: CanonicalRequest) -> CanonicalResponse:
        """Non-streaming completion.

        Raises:
            GatewayError: The primary's error when no fallback applies, or the
                secondary's error when it fails as well.
        """
        if self.primary.is_configured():
            try:
                return self.primary.priced(await self.primary.generate(request))
            except GatewayError as e:
                if not self.should_fall_back(e):
                    logger.error(
                        "Primary %s failed without fallback: %s",
                        self.primary.name,
                        e,
                        extra={"provider": self.primary.name, "status_code": e.status_code},
                    )
                    raise
                self._failover(e.message, e.status_code, streaming=False)
        else:
            self._failover("primary not configured", None, streaming=False)

        return self.secondary.priced(await self.secondary.generate(self._secondary_request(request)))

    async def stream(self, request: CanonicalRequest) -> AsyncIterator[str]:
        """Stream OpenAI-format SSE frames from whichever tier serves the request.

        The tier is chosen before the first frame; errors after that point
        propagate to the consumer.
        """
        if self.primary.is_configured():
            try:
                events = await self.primary.open_stream(request)
            except GatewayError as e:
                if not self.should_fall_back(e):
                    raise
                self._failover(e.message, e.status_code, streaming=True)
            else:
                async for chunk in events:
                    yield sse_frame(chunk)
                yield SSE_DONE
                return
        else:
            self._failover("primary not configured", None, streaming=True)

        secondary_request = self._secondary_request(request)
        events = await self.secondary.open_stream(secondary_request)
        translator = GeminiStreamTranslator(model=secondary_request.model or self.secondary.default_model)
        async for event in events:
            chunk = translator.translate(event)
            if chunk is not None:
                yield sse_frame(chunk)
        yield SSE_DONE
