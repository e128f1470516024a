#!/usr/bin/env python3
"""Common error types shared across modules.

Every failure that crosses a component boundary is expressed as a `PipelineError`
carrying an `ErrorKind`. The kind decides whether RetryableFetcher may try again
and which processing status an item ends up in.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ErrorKind(str, Enum):
    VIDEO_NOT_FOUND = "VIDEO_NOT_FOUND"
    VIDEO_PRIVATE = "VIDEO_PRIVATE"
    VIDEO_DELETED = "VIDEO_DELETED"
    VIDEO_UNAVAILABLE = "VIDEO_UNAVAILABLE"
    AGE_RESTRICTED = "AGE_RESTRICTED"
    REGION_RESTRICTED = "REGION_RESTRICTED"
    REQUIRES_PAYMENT = "REQUIRES_PAYMENT"
    REQUIRES_MEMBERSHIP = "REQUIRES_MEMBERSHIP"
    COPYRIGHT_BLOCKED = "COPYRIGHT_BLOCKED"
    CAPTIONS_DISABLED = "CAPTIONS_DISABLED"
    NO_CAPTIONS_AVAILABLE = "NO_CAPTIONS_AVAILABLE"
    CAPTION_FETCH_FAILED = "CAPTION_FETCH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    PARSE_ERROR = "PARSE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    CAPACITY_TIMEOUT = "CAPACITY_TIMEOUT"
    AUDIO_TOO_LARGE = "AUDIO_TOO_LARGE"
    NOT_FOUND = "NOT_FOUND"


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.TIMEOUT,
    ErrorKind.VIDEO_UNAVAILABLE,
    ErrorKind.CAPTION_FETCH_FAILED,
})

# Content that will not become available by waiting
PERMANENT_KINDS = frozenset({
    ErrorKind.VIDEO_NOT_FOUND,
    ErrorKind.VIDEO_PRIVATE,
    ErrorKind.VIDEO_DELETED,
    ErrorKind.AGE_RESTRICTED,
    ErrorKind.REGION_RESTRICTED,
    ErrorKind.REQUIRES_PAYMENT,
    ErrorKind.REQUIRES_MEMBERSHIP,
    ErrorKind.COPYRIGHT_BLOCKED,
    ErrorKind.AUDIO_TOO_LARGE,
    ErrorKind.NOT_FOUND,
})

# Nothing to summarize, but the item itself is fine
NO_TRANSCRIPT_KINDS = frozenset({
    ErrorKind.CAPTIONS_DISABLED,
    ErrorKind.NO_CAPTIONS_AVAILABLE,
})

USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.VIDEO_NOT_FOUND: "This content could not be found. It may have been removed or the link is incorrect.",
    ErrorKind.VIDEO_PRIVATE: "This content is private and cannot be accessed.",
    ErrorKind.VIDEO_DELETED: "This content has been removed by its owner or the platform.",
    ErrorKind.VIDEO_UNAVAILABLE: "This content is temporarily unavailable. Please try again later.",
    ErrorKind.AGE_RESTRICTED: "This content is age-restricted and cannot be processed.",
    ErrorKind.REGION_RESTRICTED: "This content is not available in this region.",
    ErrorKind.REQUIRES_PAYMENT: "This content requires a purchase or rental.",
    ErrorKind.REQUIRES_MEMBERSHIP: "This content is only available to channel members.",
    ErrorKind.COPYRIGHT_BLOCKED: "This content has been blocked due to a copyright claim.",
    ErrorKind.CAPTIONS_DISABLED: "Captions have been disabled for this content.",
    ErrorKind.NO_CAPTIONS_AVAILABLE: "No transcript or captions are available for this content.",
    ErrorKind.CAPTION_FETCH_FAILED: "The transcript could not be retrieved. Please try again later.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorKind.NETWORK_ERROR: "A network error occurred. Please check the connection and try again.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.PARSE_ERROR: "The response could not be understood.",
    ErrorKind.UNKNOWN_ERROR: "An unexpected error occurred.",
    ErrorKind.BUDGET_EXCEEDED: "The AI spending limit has been reached. Processing resumes when the budget window rolls over.",
    ErrorKind.CAPACITY_TIMEOUT: "The AI service is at capacity. Processing will be retried later.",
    ErrorKind.AUDIO_TOO_LARGE: "The audio file is too large to transcribe.",
    ErrorKind.NOT_FOUND: "Content item not found.",
}


class PipelineError(Exception):
    """A classified failure.

    Attributes:
        kind: The ErrorKind classification.
        status: HTTP status when the failure came from an HTTP response.
        retry_after: Server-provided delay hint in seconds, if any.
        attempts: Number of attempts made before giving up (set by RetryableFetcher).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.status = status
        self.retry_after = retry_after
        self.details = details or {}
        self.attempts = 0
        super().__init__(message or USER_MESSAGES.get(kind, kind.value))

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def permanent(self) -> bool:
        return self.kind in PERMANENT_KINDS

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.kind, USER_MESSAGES[ErrorKind.UNKNOWN_ERROR])

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, status={self.status}, message={str(self)!r})"


class BudgetExceededError(PipelineError):
    """Raised before a generation call that would push spend over the daily or monthly ceiling."""

    def __init__(self, message: str, stats: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.BUDGET_EXCEEDED, message, details=stats)

    @property
    def stats(self) -> Dict[str, Any]:
        return self.details


class CapacityTimeoutError(PipelineError):
    """Raised when the rate limiter could not grant capacity within its maximum wait."""

    def __init__(self, message: str, waited: float):
        super().__init__(ErrorKind.CAPACITY_TIMEOUT, message, details={"waited_seconds": waited})


class HttpStatusError(Exception):
    """A completed HTTP exchange with a non-success status, handed to a classifier."""

    def __init__(self, status: int, url: str = "", body: str = "", headers: Optional[Mapping[str, str]] = None):
        self.status = status
        self.url = url
        self.body = body
        self.headers = dict(headers or {})
        super().__init__(f"HTTP {status} for {url}" if url else f"HTTP {status}")


def kind_for_http_status(status: int) -> ErrorKind:
    """Map an HTTP status code onto the error taxonomy."""
    if status in (401, 403):
        return ErrorKind.VIDEO_UNAVAILABLE
    if status == 404:
        return ErrorKind.VIDEO_NOT_FOUND
    if status == 410:
        return ErrorKind.VIDEO_DELETED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.VIDEO_UNAVAILABLE
    return ErrorKind.UNKNOWN_ERROR


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "PERMANENT_KINDS",
    "NO_TRANSCRIPT_KINDS",
    "USER_MESSAGES",
    "PipelineError",
    "BudgetExceededError",
    "CapacityTimeoutError",
    "HttpStatusError",
    "kind_for_http_status",
]
