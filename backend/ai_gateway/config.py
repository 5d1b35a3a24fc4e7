"""Gateway configuration.

Settings and the provider catalog are read from environment variables once
at startup and never mutated afterwards. Components receive them by
reference, so concurrent orchestration passes always observe the same view.

Configuration (env vars):
- AI_PROVIDER_TIMEOUT_SECONDS: Per-call provider timeout (default: 60)
- AI_MIN_CONTENT_LENGTH: Minimum accepted completion length (default: 10)
- AI_MAX_RETRIES: RetryPolicy attempts (default: 3)
- CIRCUIT_FAILURE_THRESHOLD / CIRCUIT_FAILURE_WINDOW_MINUTES / CIRCUIT_COOLDOWN_SECONDS
- CACHE_DEFAULT_TTL_HOURS / DOCUMENT_CACHE_TTL_HOURS
- CACHE_STORE_BACKEND / CIRCUIT_STORE_BACKEND: "mongo" or "memory"
- AI_PROVIDER_<KIND>_ENABLED / AI_PROVIDER_<KIND>_PRIORITY: per-provider overrides
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Closed set of completion provider adapters."""

    groq = "groq"
    google_ai = "google_ai"
    together_ai = "together_ai"
    openrouter = "openrouter"
    huggingface = "huggingface"
    lovable_ai = "lovable_ai"
    anthropic = "anthropic"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one completion provider."""

    kind: ProviderKind
    display_name: str
    enabled: bool
    priority: int  # Lower is tried first
    cost_per_token: float
    supports_vision: bool
    supports_json: bool
    rate_limit_per_minute: int
    default_model: str

    @property
    def name(self) -> str:
        return self.kind.value


DEFAULT_PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        kind=ProviderKind.groq,
        display_name="Groq",
        enabled=True,
        priority=1,
        cost_per_token=0.0,
        supports_vision=False,
        supports_json=True,
        rate_limit_per_minute=30,
        default_model="llama-3.3-70b-versatile",
    ),
    ProviderDescriptor(
        kind=ProviderKind.google_ai,
        display_name="Google AI",
        enabled=True,
        priority=2,
        cost_per_token=0.0,
        supports_vision=True,
        supports_json=True,
        rate_limit_per_minute=60,
        default_model="gemini-2.0-flash",
    ),
    ProviderDescriptor(
        kind=ProviderKind.together_ai,
        display_name="Together AI",
        enabled=True,
        priority=3,
        cost_per_token=0.0,
        supports_vision=False,
        supports_json=True,
        rate_limit_per_minute=60,
        default_model="meta-llama/Llama-3.3-70B-Instruct-Turbo",
    ),
    ProviderDescriptor(
        kind=ProviderKind.openrouter,
        display_name="OpenRouter",
        enabled=True,
        priority=4,
        cost_per_token=0.0001,
        supports_vision=True,
        supports_json=True,
        rate_limit_per_minute=200,
        default_model="google/gemini-2.0-flash-exp:free",
    ),
    ProviderDescriptor(
        kind=ProviderKind.huggingface,
        display_name="Hugging Face",
        enabled=True,
        priority=5,
        cost_per_token=0.0,
        supports_vision=False,
        supports_json=False,
        rate_limit_per_minute=10,
        default_model="microsoft/Phi-3-mini-4k-instruct",
    ),
    ProviderDescriptor(
        kind=ProviderKind.lovable_ai,
        display_name="Lovable AI",
        enabled=True,
        priority=6,
        cost_per_token=0.001,
        supports_vision=True,
        supports_json=True,
        rate_limit_per_minute=100,
        default_model="google/gemini-2.5-flash",
    ),
    ProviderDescriptor(
        kind=ProviderKind.anthropic,
        display_name="Anthropic",
        enabled=True,
        priority=7,
        cost_per_token=0.003,
        supports_vision=True,
        supports_json=True,
        rate_limit_per_minute=50,
        default_model="claude-sonnet-4-5-20250929",
    ),
)


@dataclass(frozen=True)
class ProviderCatalog:
    """Immutable, priority-ordered collection of provider descriptors."""

    providers: tuple[ProviderDescriptor, ...] = DEFAULT_PROVIDERS

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.providers, key=lambda p: p.priority))
        object.__setattr__(self, "providers", ordered)

    def get(self, kind: ProviderKind) -> ProviderDescriptor:
        for descriptor in self.providers:
            if descriptor.kind is kind:
                return descriptor
        raise KeyError(kind.value)

    def enabled(self) -> tuple[ProviderDescriptor, ...]:
        return tuple(p for p in self.providers if p.enabled)

    @classmethod
    def from_env(cls, base: tuple[ProviderDescriptor, ...] = DEFAULT_PROVIDERS) -> ProviderCatalog:
        """Apply AI_PROVIDER_<KIND>_ENABLED / _PRIORITY overrides to the defaults."""
        providers = []
        for descriptor in base:
            prefix = f"AI_PROVIDER_{descriptor.kind.value.upper()}"
            enabled = os.environ.get(f"{prefix}_ENABLED")
            priority = os.environ.get(f"{prefix}_PRIORITY")
            if enabled is not None:
                descriptor = replace(descriptor, enabled=_parse_bool(enabled))
            if priority is not None:
                try:
                    descriptor = replace(descriptor, priority=int(priority))
                except ValueError:
                    logger.warning("Ignoring invalid %s_PRIORITY=%r", prefix, priority)
            providers.append(descriptor)
        return cls(tuple(providers))


@dataclass(frozen=True)
class Settings:
    """Process-wide gateway settings."""

    provider_timeout_seconds: float = 60.0
    min_content_length: int = 10
    max_retries: int = 3

    circuit_failure_threshold: int = 5
    circuit_failure_window_minutes: int = 5
    circuit_cooldown_seconds: int = 60

    cache_default_ttl_hours: int = 72
    document_cache_ttl_hours: int = 168

    cache_store_backend: str = "mongo"
    circuit_store_backend: str = "mongo"

    pdf_max_pages: int = 5
    pdf_dpi: int = 150
    pdf_min_text_length: int = 200

    ocr_min_text_length: int = 50
    ocr_min_confidence: float = 50.0
    ocr_keyword_bypass_confidence: float = 80.0

    catalog: ProviderCatalog = field(default_factory=ProviderCatalog)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def load_settings() -> Settings:
    """Build Settings from the environment."""
    return Settings(
        provider_timeout_seconds=_env_float("AI_PROVIDER_TIMEOUT_SECONDS", 60.0),
        min_content_length=_env_int("AI_MIN_CONTENT_LENGTH", 10),
        max_retries=_env_int("AI_MAX_RETRIES", 3),
        circuit_failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 5),
        circuit_failure_window_minutes=_env_int("CIRCUIT_FAILURE_WINDOW_MINUTES", 5),
        circuit_cooldown_seconds=_env_int("CIRCUIT_COOLDOWN_SECONDS", 60),
        cache_default_ttl_hours=_env_int("CACHE_DEFAULT_TTL_HOURS", 72),
        document_cache_ttl_hours=_env_int("DOCUMENT_CACHE_TTL_HOURS", 168),
        cache_store_backend=os.environ.get("CACHE_STORE_BACKEND", "mongo").lower(),
        circuit_store_backend=os.environ.get("CIRCUIT_STORE_BACKEND", "mongo").lower(),
        pdf_max_pages=_env_int("PDF_MAX_PAGES", 5),
        pdf_dpi=_env_int("PDF_DPI", 150),
        catalog=ProviderCatalog.from_env(),
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Set the settings instance (for testing)."""
    global _settings
    _settings = settings
