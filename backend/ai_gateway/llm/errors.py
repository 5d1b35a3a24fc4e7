"""Gateway error hierarchy.

Every error carries the provider it came from, an optional HTTP status and
retry-after hint, and a caller-facing ``user_message`` that never leaks
provider-internal text. Each class also declares the outcome category it
belongs to so RetryPolicy can branch on the category instead of the message.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class OutcomeKind(str, Enum):
    """Outcome categories for a fallible operation."""

    success = "success"
    transient = "transient"  # Same call may succeed if repeated
    fatal = "fatal"  # Repetition will not help


class GatewayError(Exception):
    """Base exception for gateway operations."""

    kind: OutcomeKind = OutcomeKind.fatal
    user_message = "The AI service is temporarily unavailable. Please try again shortly."

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " ".join(parts)


class ProviderUnavailableError(GatewayError):
    """Network failure or a non-2xx status without dedicated handling.

    Moves orchestration on to the next provider; never retried with backoff.
    """

    pass


class ProviderTimeoutError(ProviderUnavailableError):
    """Request exceeded the adapter's own timeout."""

    user_message = "The AI service took too long to respond. Please try again shortly."


class ChatUnavailableError(ProviderUnavailableError):
    """The primary/secondary chat chain is missing from the provider catalog."""

    user_message = "Chat is not available right now. Please contact support if this persists."


class AuthenticationError(GatewayError):
    """401/403 or missing credentials."""

    user_message = "The AI service is not configured correctly. Please contact support."


class InvalidRequestError(GatewayError):
    """4xx caused by the request shape. Another provider would reject it too."""

    user_message = "The request could not be processed. Please check the input and try again."


class RateLimitError(GatewayError):
    """429 - upstream rate limit."""

    user_message = "Too many requests right now. Please try again shortly."


class QuotaExceededError(GatewayError):
    """402 - upstream credits or quota exhausted."""

    user_message = "The AI service quota is exhausted. Please try again later."


class MalformedResponseError(GatewayError):
    """2xx response with empty or under-threshold content."""

    pass


class ExtractionError(GatewayError):
    """JSON parse or schema validation failure on otherwise successful content.

    The only category eligible for backoff-retry: a repeated call to the
    same provider may produce parseable output.
    """

    kind = OutcomeKind.transient
    user_message = "The AI response could not be understood. Please try again."

    def __init__(self, message: str, step: str, preview: str = "", provider: str | None = None):
        super().__init__(message, provider=provider)
        self.step = step
        self.preview = preview


class CircuitOpenError(GatewayError):
    """Admission denied by the circuit breaker."""

    def __init__(self, operation: str, wait_seconds: int):
        super().__init__(
            f"Circuit breaker is open for {operation}. Wait {wait_seconds}s before retrying.",
            retry_after=float(wait_seconds),
        )
        self.operation = operation
        self.wait_seconds = wait_seconds

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return (
            "This feature is temporarily paused after repeated failures. "
            f"Please try again in {self.wait_seconds} seconds."
        )


class CacheError(GatewayError):
    """Cache read or write failure. Always logged and treated as a miss."""

    pass


class AllProvidersFailedError(GatewayError):
    """Every eligible provider was attempted and none succeeded."""

    def __init__(self, attempted: list[str], last_error: str | None = None, retry_after: float | None = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"All providers failed ({', '.join(attempted) or 'none eligible'}){detail}",
            retry_after=retry_after,
        )
        self.attempted = attempted
        self.last_error = last_error


class RetryExhaustedError(GatewayError):
    """Terminal error after every RetryPolicy attempt failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            provider=getattr(last_error, "provider", None),
            retry_after=getattr(last_error, "retry_after", None),
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return getattr(self.last_error, "user_message", GatewayError.user_message)


class DocumentProcessingError(GatewayError):
    """Text could not be obtained from a document by any route."""

    user_message = "The document could not be read. Please upload a clearer image or PDF."


class UnsupportedDocumentError(DocumentProcessingError):
    """Byte signature matches neither a PDF nor a supported image format."""

    user_message = "Unsupported document type. Please upload a PDF, PNG, JPEG, WEBP or GIF."


def classify_error(error: BaseException) -> OutcomeKind:
    """Return the outcome category of an exception.

    Exceptions outside the gateway hierarchy are fatal.
    """
    if isinstance(error, GatewayError):
        return error.kind
    return OutcomeKind.fatal


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Typed result of a fallible operation."""

    kind: OutcomeKind
    value: T | None = None
    error: BaseException | None = None

    @classmethod
    def ok(cls, value: T) -> Outcome[T]:
        return cls(OutcomeKind.success, value=value)

    @classmethod
    def failed(cls, error: BaseException) -> Outcome[T]:
        return cls(classify_error(error), error=error)

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.success

    @property
    def is_transient(self) -> bool:
        return self.kind is OutcomeKind.transient


# Statuses that move TwoTierFallback on to the secondary provider
FALLBACK_STATUS_CODES = frozenset({402, 429})
