"""Canonical data models.

Vendor-neutral request and response models shared by every provider adapter.
These models abstract away provider-specific details.
"""

import base64
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """A single message in the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    name: str | None = None
    tool_call_id: str | None = None


class VisionPayload(BaseModel):
    """Image attached to the last user message."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str = "image/png"

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def as_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.as_base64()}"


class ResponseFormat(BaseModel):
    """Output format configuration."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text", "json"] = "text"


class CanonicalRequest(BaseModel):
    """Vendor-neutral completion request. Immutable per call."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessage, ...]
    model: str | None = None  # Hint; adapters fall back to their default model
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = None
    response_format: ResponseFormat = ResponseFormat()
    vision: VisionPayload | None = None
    tools: tuple[dict[str, Any], ...] | None = None  # OpenAI function declarations

    @property
    def wants_json(self) -> bool:
        return self.response_format.type == "json"

    @property
    def system_prompt(self) -> str | None:
        parts = [m.content for m in self.messages if m.role == "system"]
        return "\n\n".join(parts) if parts else None


class ToolCall(BaseModel):
    """A function call requested by the model."""

    id: str | None = None
    name: str
    arguments: str  # JSON-encoded


class Usage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CanonicalResponse(BaseModel):
    """Vendor-neutral completion response."""

    success: bool
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    provider: str
    model: str | None = None
    usage: Usage = Field(default_factory=Usage)
    latency_ms: int = 0
    estimated_cost_usd: float = 0.0
    error: str | None = None
    error_type: str | None = None
    status_code: int | None = None
    retry_after: float | None = None
    attempted: list[str] = Field(default_factory=list)
