"""
Domain error taxonomy.
Every error carries a stable error_code that is persisted on failed sessions
and returned by the API.
"""

from typing import Optional


class ProcessingError(Exception):
    """Base class for all statement-processing errors."""

    status_code = 500

    def __init__(self, message: str, error_code: str = "ERR_PROCESSING"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class ValidationError(ProcessingError):
    """Malformed input, local to the request."""

    status_code = 400

    def __init__(self, message: str, error_code: str = "ERR_VALIDATION"):
        super().__init__(message, error_code)


class InsufficientTokens(ProcessingError):
    """Pre-flight quota check failed."""

    status_code = 402

    def __init__(self, message: str, required: int = 0, available: int = 0):
        self.required = required
        self.available = available
        super().__init__(message, "ERR_INSUFFICIENT_TOKENS")


class SessionConflict(ProcessingError):
    """Session is already active or terminal."""

    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message, "ERR_SESSION_CONFLICT")


class UpstreamRateLimited(ProcessingError):
    """
    Rate-limit response from the text-understanding service.

    retry_after: provider hint in seconds (retry-after / retry-after-ms).
    reset_window: raw reset hint such as "6m0s" or "20ms".
    token_exhausted: the token-per-minute budget ran out (vs request rate).
    """

    status_code = 503

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        reset_window: Optional[str] = None,
        token_exhausted: bool = False,
        retryable: bool = True,
        error_code: str = "ERR_UPSTREAM_RATE_LIMITED",
    ):
        self.retry_after = retry_after
        self.reset_window = reset_window
        self.token_exhausted = token_exhausted
        self.retryable = retryable
        super().__init__(message, error_code)


class RateLimitExhausted(UpstreamRateLimited):
    """Retries exhausted; terminal."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            message,
            retryable=False,
            error_code="ERR_RATE_LIMIT_EXHAUSTED",
        )


class UpstreamExtractionError(ProcessingError):
    """Non-retryable failure from the text-understanding service."""

    status_code = 502

    def __init__(self, message: str, error_code: str = "ERR_UPSTREAM_EXTRACTION"):
        super().__init__(message, error_code)


class PersistenceError(ProcessingError):
    """Storage collaborator failure."""

    def __init__(self, message: str, error_code: str = "ERR_PERSISTENCE"):
        super().__init__(message, error_code)
