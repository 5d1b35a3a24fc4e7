"""AI completion orchestration layer.

This module provides a vendor-neutral interface for calling completion
providers with priority fallback, two-tier failover, circuit breaking and
bounded retry.
"""

from .circuit_breaker import AdmissionToken, CircuitBreaker, CircuitState, get_circuit_store
from .errors import (
    AllProvidersFailedError,
    AuthenticationError,
    CacheError,
    ChatUnavailableError,
    CircuitOpenError,
    DocumentProcessingError,
    ExtractionError,
    GatewayError,
    InvalidRequestError,
    MalformedResponseError,
    Outcome,
    OutcomeKind,
    ProviderTimeoutError,
    ProviderUnavailableError,
    QuotaExceededError,
    RateLimitError,
    RetryExhaustedError,
    UnsupportedDocumentError,
    classify_error,
)
from .fallback import FailoverEvent, TwoTierFallback
from .json_extractor import extract_json
from .models import CanonicalRequest, CanonicalResponse, ChatMessage, ResponseFormat, ToolCall, Usage, VisionPayload
from .orchestrator import ProviderOrchestrator, raise_for_failure
from .retry import RetryOptions, RetryPolicy

__all__ = [
    "CanonicalRequest",
    "CanonicalResponse",
    "ChatMessage",
    "ResponseFormat",
    "ToolCall",
    "Usage",
    "VisionPayload",
    "ProviderOrchestrator",
    "raise_for_failure",
    "TwoTierFallback",
    "FailoverEvent",
    "CircuitBreaker",
    "CircuitState",
    "AdmissionToken",
    "get_circuit_store",
    "RetryPolicy",
    "RetryOptions",
    "extract_json",
    "GatewayError",
    "ProviderUnavailableError",
    "ProviderTimeoutError",
    "ChatUnavailableError",
    "AuthenticationError",
    "InvalidRequestError",
    "RateLimitError",
    "QuotaExceededError",
    "MalformedResponseError",
    "ExtractionError",
    "CircuitOpenError",
    "CacheError",
    "AllProvidersFailedError",
    "RetryExhaustedError",
    "DocumentProcessingError",
    "UnsupportedDocumentError",
    "OutcomeKind",
    "Outcome",
    "classify_error",
]
