"""Unit tests for canonical request/response models and configuration."""

import pytest
from pydantic import ValidationError

from ai_gateway.config import DEFAULT_PROVIDERS, ProviderCatalog, ProviderKind, load_settings
from ai_gateway.llm.models import (
    CanonicalRequest,
    CanonicalResponse,
    ChatMessage,
    ResponseFormat,
    ToolCall,
    Usage,
    VisionPayload,
)


class TestChatMessage:
    """Tests for ChatMessage model."""

    def test_create_system_message(self):
        msg = ChatMessage(role="system", content="You are a helpful assistant.")
        assert msg.role == "system"
        assert msg.content == "You are a helpful assistant."

    def test_create_tool_message(self):
        msg = ChatMessage(role="tool", content='{"ok": true}', tool_call_id="call_1")
        assert msg.tool_call_id == "call_1"

    def test_invalid_role_rejected(self):
        with pytest.raises(ValidationError):
            ChatMessage(role="invalid", content="Hello")

    def test_message_is_immutable(self):
        msg = ChatMessage(role="user", content="Hello")
        with pytest.raises(ValidationError):
            msg.content = "Changed"


class TestCanonicalRequest:
    """Tests for CanonicalRequest model."""

    def test_defaults(self):
        request = CanonicalRequest(messages=(ChatMessage(role="user", content="Hi"),))
        assert request.model is None
        assert request.temperature == 0.7
        assert request.max_tokens is None
        assert request.response_format.type == "text"
        assert request.vision is None
        assert request.wants_json is False

    def test_wants_json(self):
        request = CanonicalRequest(
            messages=(ChatMessage(role="user", content="Hi"),),
            response_format=ResponseFormat(type="json"),
        )
        assert request.wants_json is True

    def test_temperature_bounds(self):
        with pytest.raises(ValidationError):
            CanonicalRequest(messages=(ChatMessage(role="user", content="Hi"),), temperature=2.5)

    def test_system_prompt_joins_system_messages(self):
        request = CanonicalRequest(
            messages=(
                ChatMessage(role="system", content="First rule."),
                ChatMessage(role="user", content="Hi"),
                ChatMessage(role="system", content="Second rule."),
            )
        )
        assert request.system_prompt == "First rule.\n\nSecond rule."

    def test_system_prompt_none_without_system_messages(self):
        request = CanonicalRequest(messages=(ChatMessage(role="user", content="Hi"),))
        assert request.system_prompt is None

    def test_request_is_immutable(self):
        request = CanonicalRequest(messages=(ChatMessage(role="user", content="Hi"),))
        with pytest.raises(ValidationError):
            request.temperature = 0.1


class TestVisionPayload:
    def test_data_uri(self):
        payload = VisionPayload(data=b"abc", mime_type="image/jpeg")
        assert payload.as_base64() == "YWJj"
        assert payload.as_data_uri() == "data:image/jpeg;base64,YWJj"


class TestCanonicalResponse:
    """Tests for CanonicalResponse model."""

    def test_success_response(self):
        response = CanonicalResponse(
            success=True,
            content="Hello!",
            provider="groq",
            model="llama-3.3-70b-versatile",
            usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            latency_ms=120,
        )
        assert response.success is True
        assert response.usage.total_tokens == 15
        assert response.attempted == []

    def test_failure_response_defaults(self):
        response = CanonicalResponse(success=False, provider="none", error="boom")
        assert response.content == ""
        assert response.tool_calls is None
        assert response.usage.total_tokens == 0

    def test_tool_calls(self):
        response = CanonicalResponse(
            success=True,
            provider="lovable_ai",
            tool_calls=[ToolCall(id="call_1", name="lookup", arguments='{"q": "x"}')],
        )
        assert response.tool_calls[0].name == "lookup"


class TestProviderCatalog:
    """Tests for the provider catalog and settings."""

    def test_default_catalog_sorted_by_priority(self):
        catalog = ProviderCatalog()
        priorities = [p.priority for p in catalog.providers]
        assert priorities == sorted(priorities)
        assert catalog.providers[0].kind is ProviderKind.groq

    def test_every_kind_has_a_descriptor(self):
        kinds = {d.kind for d in DEFAULT_PROVIDERS}
        assert kinds == set(ProviderKind)

    def test_get_unknown_kind_raises(self):
        catalog = ProviderCatalog(providers=DEFAULT_PROVIDERS[:1])
        with pytest.raises(KeyError):
            catalog.get(ProviderKind.anthropic)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER_GROQ_ENABLED", "false")
        monkeypatch.setenv("AI_PROVIDER_ANTHROPIC_PRIORITY", "0")

        catalog = ProviderCatalog.from_env()

        assert catalog.get(ProviderKind.groq).enabled is False
        assert catalog.providers[0].kind is ProviderKind.anthropic
        assert ProviderKind.groq not in {p.kind for p in catalog.enabled()}

    def test_invalid_priority_ignored(self, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER_GROQ_PRIORITY", "first")
        catalog = ProviderCatalog.from_env()
        assert catalog.get(ProviderKind.groq).priority == 1

    def test_load_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("CIRCUIT_FAILURE_THRESHOLD", "3")
        monkeypatch.setenv("CACHE_STORE_BACKEND", "MEMORY")
        monkeypatch.setenv("AI_MAX_RETRIES", "not-a-number")

        settings = load_settings()

        assert settings.circuit_failure_threshold == 3
        assert settings.cache_store_backend == "memory"
        assert settings.max_retries == 3
