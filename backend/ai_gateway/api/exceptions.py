"""Custom exception classes for the API."""


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class FileTooLargeError(Exception):
    """Raised when an uploaded document exceeds the maximum size limit."""

    def __init__(self, file_size: int, max_size: int):
        self.file_size = file_size
        self.max_size = max_size
        super().__init__(
            f"File size ({file_size} bytes) exceeds maximum allowed size ({max_size} bytes)"
        )


class RateLimitExceededError(Exception):
    """Raised when the host rate limiter rejects a caller."""

    def __init__(self, caller_id: str, endpoint: str, retry_after: int | None = None):
        self.caller_id = caller_id
        self.endpoint = endpoint
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {caller_id} on {endpoint}")
