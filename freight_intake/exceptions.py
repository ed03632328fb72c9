"""Exception hierarchy for the intake pipeline.

External tools fail open and never raise these; AI, rate-limit and upload
failures do, and callers decide whether to fall back, retry or surface them.
"""

from typing import Optional


class IntakeError(Exception):
    """Base exception for all intake pipeline errors."""

    pass


class DocumentNotFoundError(IntakeError):
    """Raised when a Document or Intake id does not resolve to a row."""

    pass


class RateLimitExceeded(IntakeError):
    """Raised when OCR or AI call volume exceeds the configured window.

    Retryable: callers should back off for ``retry_after`` seconds.
    """

    def __init__(self, scope: str, limit: int, retry_after: float = 60.0):
        self.scope = scope
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {scope}: {limit} calls per minute (retry in {retry_after:.0f}s)")


class AIExtractionError(IntakeError):
    """Raised when AI extraction fails on every configured provider."""

    pass


class AIProviderError(AIExtractionError):
    """Raised when a provider call fails at the transport or API level."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class InvalidAIResponseError(AIExtractionError):
    """Raised when a provider response cannot be parsed as JSON, even after salvage."""

    PREVIEW_LENGTH = 400

    def __init__(self, raw: Optional[str]):
        self.preview = (raw or "")[: self.PREVIEW_LENGTH]
        super().__init__(f"AI returned invalid JSON. Preview: {self.preview}")


class UploadError(IntakeError):
    """Base class for CRM upload failures."""

    pass


class UploadClientError(UploadError):
    """Raised for 4xx responses. Never retried."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"Upload rejected with HTTP {status_code}: {message}")


class UploadServerError(UploadError):
    """Raised for 5xx responses, timeouts and connection errors once retries are exhausted."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
