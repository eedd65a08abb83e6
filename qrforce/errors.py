"""qrforce/errors.py

Error taxonomy for the generation pipeline.

Every error raised by a pipeline component derives from GenerationError and
names the notification class the user sees when it ends a generation. Only
ConfigurationError and EmptyPromptError abort the retry loop; everything else
is converted into a failed attempt at the attempt boundary.
"""

from __future__ import annotations

# Standard Library
from enum import Enum


class NoticeKind(str, Enum):
    """User-visible notification classes."""

    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    FAILURE = "failure"
    WARNING = "warning"
    SUCCESS = "success"
    INFO = "info"


class GenerationError(Exception):
    """Base class for all pipeline errors."""

    notice: NoticeKind = NoticeKind.FAILURE
    retryable: bool = True


class ConfigurationError(GenerationError):
    """Missing endpoint, credentials or managed profile. Never retried."""

    notice = NoticeKind.CONFIGURATION
    retryable = False


class EmptyPromptError(GenerationError):
    """Prompt assembly produced zero messages. Never retried."""

    notice = NoticeKind.CONFIGURATION
    retryable = False


class TransportError(GenerationError):
    """Non-2xx HTTP response or an error payload from the provider.

    Attributes:
        status_code: HTTP status code, or ``None`` for error payloads carried
            inside a successful response.
        reason: HTTP reason phrase.
        body: Raw response body text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str = "",
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.body = body

    @classmethod
    def from_status(cls, status_code: int, reason: str, body: str) -> "TransportError":
        """Build the error raised for a non-2xx HTTP response."""
        return cls(
            f"HTTP error! status: {status_code} {reason} - {body}",
            status_code=status_code,
            reason=reason,
            body=body,
        )


class RequestTimeoutError(TransportError):
    """A non-streaming request lost the race against its total timeout."""

    notice = NoticeKind.TIMEOUT


class StreamTimeoutError(GenerationError):
    """No streaming chunk arrived within the liveness window."""

    notice = NoticeKind.TIMEOUT


class EmptyContentError(GenerationError):
    """The stream or request completed without any usable text."""


class ValidationError(GenerationError):
    """The returned content is missing one or more required keywords."""

    notice = NoticeKind.VALIDATION

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"reply is missing required keywords: {', '.join(missing)}")
        self.missing = missing


class RetryExhaustedError(GenerationError):
    """Every attempt in the retry budget failed.

    The notification class follows the failure of the last attempt, so a
    budget spent on keyword misses reads differently from one spent on
    timeouts.
    """

    def __init__(self, attempts: int, last_error: GenerationError | None = None) -> None:
        super().__init__(f"exhausted {attempts} retries without valid content")
        self.attempts = attempts
        self.last_error = last_error
        if last_error is not None:
            self.notice = last_error.notice
