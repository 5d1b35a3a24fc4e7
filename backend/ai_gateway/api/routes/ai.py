"""AI completion endpoints.

Provides endpoints for:
- POST /ai/complete: Priority-ordered completion under retry + circuit breaker
- POST /ai/chat: Two-tier chat completion, streamed as OpenAI-format SSE
"""

from collections.abc import AsyncIterator
from typing import Annotated, Any, Literal

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ai_gateway.api.dependencies import CallerId, Gateway
from ai_gateway.api.exceptions import ValidationError
from ai_gateway.api.response import success_response
from ai_gateway.llm.models import CanonicalRequest, ChatMessage, ResponseFormat
from ai_gateway.llm.retry import RetryOptions
from ai_gateway.llm.sanitizer import INPUT_LIMITS, sanitize_user_input, validate_and_sanitize

router = APIRouter(prefix="/ai", tags=["AI"])


class MessageBody(BaseModel):
    """A single chat message."""

    role: Literal["system", "user", "assistant"]
    content: Annotated[str, Field(min_length=1, max_length=50000)]


class CompleteRequest(BaseModel):
    """Request body for an orchestrated completion."""

    messages: Annotated[list[MessageBody], Field(min_length=1)]
    operation: Annotated[str, Field(min_length=1, max_length=100)] = "complete"
    model: str | None = None
    temperature: Annotated[float, Field(ge=0.0, le=2.0)] = 0.7
    max_tokens: Annotated[int | None, Field(gt=0)] = None
    response_format: Literal["text", "json"] = "text"
    max_retries: Annotated[int | None, Field(ge=1, le=5)] = None
    cache_ttl_hours: Annotated[float | None, Field(gt=0)] = None


class ChatRequest(BaseModel):
    """Request body for the two-tier chat endpoint."""

    messages: Annotated[list[MessageBody], Field(min_length=1)]
    model: str | None = None
    temperature: Annotated[float, Field(ge=0.0, le=2.0)] = 0.7
    max_tokens: Annotated[int | None, Field(gt=0)] = None
    tools: list[dict[str, Any]] | None = None
    stream: bool = True


def _sanitized_messages(messages: list[MessageBody], max_length: int | None = None) -> tuple[ChatMessage, ...]:
    """Sanitize user-authored content; system and assistant turns pass through."""
    result = []
    for message in messages:
        content = message.content
        if message.role == "user":
            if max_length is None:
                content = sanitize_user_input(content)
            else:
                check = validate_and_sanitize(content, max_length=max_length)
                if not check.valid:
                    raise ValidationError(check.error or "Invalid input")
                content = check.sanitized
        result.append(ChatMessage(role=message.role, content=content))
    return tuple(result)


@router.post("/complete")
async def complete(body: CompleteRequest, caller_id: CallerId, gateway: Gateway) -> dict:
    """Run a completion across the provider chain.

    Providers are tried in priority order; unparseable JSON output is
    retried with backoff. Identical requests are served from cache when
    ``cache_ttl_hours`` is set.
    """
    request = CanonicalRequest(
        messages=_sanitized_messages(body.messages),
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        response_format=ResponseFormat(type=body.response_format),
    )
    retry_options = RetryOptions(max_retries=body.max_retries) if body.max_retries else None
    response = await gateway.orchestrate(
        request,
        caller_id=caller_id,
        operation_name=body.operation,
        retry_options=retry_options,
        cache_ttl_hours=body.cache_ttl_hours,
    )
    return success_response(response.model_dump(mode="json"))


@router.post("/chat")
async def chat(body: ChatRequest, caller_id: CallerId, gateway: Gateway):
    """Chat completion through the primary gateway with Gemini failover.

    Streams ``text/event-stream`` frames in OpenAI chunk format ending with
    ``data: [DONE]`` regardless of which provider served the request.
    """
    request = CanonicalRequest(
        messages=_sanitized_messages(body.messages, max_length=INPUT_LIMITS["max_chat_message_length"]),
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        tools=tuple(body.tools) if body.tools else None,
    )

    if not body.stream:
        response = await gateway.complete_chat(request)
        return success_response(response.model_dump(mode="json"))

    frames = gateway.stream_chat(request)
    # Pull the first frame here so upstream failures still map to an HTTP status
    try:
        first = await frames.__anext__()
    except StopAsyncIteration:
        first = None

    async def body_iterator() -> AsyncIterator[str]:
        if first is not None:
            yield first
        async for frame in frames:
            yield frame

    return StreamingResponse(
        body_iterator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
