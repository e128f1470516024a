#!/usr/bin/env python3
"""
Uniform retry/backoff/classification layer for external calls.

`RetryableFetcher.perform` runs an awaitable operation with a hard per-attempt
timeout, hands any exception (or the completed response) to a pluggable
classifier, and retries retryable classifications with jittered exponential
backoff. Three classifiers are provided:

- classify_feed_response: HTTP status only
- classify_transcript_response: HTTP status plus scanning the body for
  "private / age-restricted / region-blocked ..." markers
- classify_generation_error: provider errors, including rate-limit signalling
"""

from asyncio import TimeoutError as AsyncTimeoutError, sleep as asyncio_sleep, wait_for
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from aiohttp import ClientError, ClientResponseError
import openai

from config import config, get_logger
from errors import ErrorKind, HttpStatusError, PipelineError, kind_for_http_status
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("retry")

T = TypeVar("T")

# Server-provided Retry-After hints are honoured up to this many seconds
MAX_RETRY_AFTER_SECONDS = 300.0


@dataclass
class FetchResponse:
    """A completed HTTP exchange, body already read."""

    status: int
    url: str = ""
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


Classifier = Callable[[Optional[BaseException], Any], Optional[PipelineError]]


# Ordered: the first matching group wins
CONTENT_ERROR_MARKERS: List[Tuple[ErrorKind, Tuple[str, ...]]] = [
    (ErrorKind.AGE_RESTRICTED, (
        "Sign in to confirm your age",
        "age-restricted",
        '"isAgeRestricted":true',
        "CONTENT_CHECK_REQUIRED",
    )),
    (ErrorKind.REGION_RESTRICTED, (
        "not available in your country",
        "blocked it in your country",
        '"isUnplayable":true',
        "VIDEO_UNAVAILABLE_IN_YOUR_REGION",
    )),
    (ErrorKind.VIDEO_PRIVATE, (
        "This video is private",
        '"isPrivate":true',
    )),
    (ErrorKind.VIDEO_DELETED, (
        "This video has been removed",
        "Video unavailable",
        '"status":"ERROR"',
    )),
    (ErrorKind.REQUIRES_MEMBERSHIP, (
        "Join this channel to get access",
        "members-only",
    )),
    (ErrorKind.REQUIRES_PAYMENT, (
        "requires payment",
        "purchase or rent",
    )),
    (ErrorKind.COPYRIGHT_BLOCKED, (
        "blocked on copyright grounds",
        "copyright claim",
    )),
    (ErrorKind.CAPTIONS_DISABLED, (
        '"captionsDisabled":true',
        "captions have been disabled",
    )),
]


def detect_content_error(body: str) -> Optional[ErrorKind]:
    """Scan a response body for markers of unavailable content."""
    if not body:
        return None
    for kind, markers in CONTENT_ERROR_MARKERS:
        if any(marker in body for marker in markers):
            return kind
    return None


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered:
            return value
    return None


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """Read Retry-After (seconds or HTTP-date) or retry-after-ms, in seconds."""
    millis = _header(headers, "retry-after-ms")
    if millis:
        try:
            return max(float(millis) / 1000.0, 0.0)
        except ValueError:
            pass
    value = _header(headers, "retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _classify_transport_error(error: BaseException) -> PipelineError:
    """Failures shared by every HTTP call site."""
    if isinstance(error, PipelineError):
        return error
    if isinstance(error, HttpStatusError):
        return PipelineError(
            kind_for_http_status(error.status),
            str(error),
            status=error.status,
            retry_after=parse_retry_after(error.headers),
        )
    # TimeoutError is an OSError subclass, check it first
    if isinstance(error, (AsyncTimeoutError, TimeoutError)):
        return PipelineError(ErrorKind.TIMEOUT, f"Timed out: {error}" if str(error) else "Timed out")
    if isinstance(error, ClientResponseError):
        return PipelineError(
            kind_for_http_status(error.status),
            f"HTTP {error.status}: {error.message}",
            status=error.status,
            retry_after=parse_retry_after(error.headers),
        )
    if isinstance(error, (ClientError, OSError)):
        return PipelineError(ErrorKind.NETWORK_ERROR, f"{type(error).__name__}: {error}")
    return PipelineError(ErrorKind.UNKNOWN_ERROR, f"{type(error).__name__}: {error}")


def classify_feed_response(error: Optional[BaseException], response: Any) -> Optional[PipelineError]:
    """Feed fetches: only the HTTP status matters. 304 Not Modified is a success."""
    if error is not None:
        return _classify_transport_error(error)
    if isinstance(response, FetchResponse) and not (response.ok or response.status == 304):
        return PipelineError(
            kind_for_http_status(response.status),
            f"HTTP {response.status} for {response.url}",
            status=response.status,
            retry_after=parse_retry_after(response.headers),
        )
    return None


def classify_transcript_response(error: Optional[BaseException], response: Any) -> Optional[PipelineError]:
    """Transcript/video fetches: HTTP status, then body markers, then empty-body detection."""
    if error is not None:
        if isinstance(error, HttpStatusError):
            marker_kind = detect_content_error(error.body)
            if marker_kind is not None:
                return PipelineError(marker_kind, status=error.status)
        return _classify_transport_error(error)
    if not isinstance(response, FetchResponse):
        return None
    body = response.text
    if not response.ok:
        marker_kind = detect_content_error(body)
        kind = marker_kind or kind_for_http_status(response.status)
        return PipelineError(
            kind,
            f"HTTP {response.status} for {response.url}",
            status=response.status,
            retry_after=parse_retry_after(response.headers),
        )
    marker_kind = detect_content_error(body)
    if marker_kind is not None:
        return PipelineError(marker_kind, status=response.status)
    if not body.strip():
        return PipelineError(ErrorKind.NO_CAPTIONS_AVAILABLE, status=response.status)
    return None


def _openai_error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error") if isinstance(body.get("error"), dict) else body
        if isinstance(inner, dict) and inner.get("code"):
            return str(inner["code"])
    return None


def classify_generation_error(error: Optional[BaseException], result: Any) -> Optional[PipelineError]:
    """Generation calls: provider exceptions, with 429 split into rate limiting vs. exhausted quota."""
    if error is None:
        return None
    if isinstance(error, PipelineError):
        return error
    if isinstance(error, openai.RateLimitError):
        headers = getattr(getattr(error, "response", None), "headers", None)
        if _openai_error_code(error) == "insufficient_quota":
            return PipelineError(ErrorKind.BUDGET_EXCEEDED, f"Provider quota exhausted: {error}", status=429)
        return PipelineError(ErrorKind.RATE_LIMITED, str(error), status=429, retry_after=parse_retry_after(headers))
    # APITimeoutError subclasses APIConnectionError
    if isinstance(error, openai.APITimeoutError):
        return PipelineError(ErrorKind.TIMEOUT, str(error))
    if isinstance(error, openai.APIConnectionError):
        return PipelineError(ErrorKind.NETWORK_ERROR, str(error))
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 408:
            kind = ErrorKind.TIMEOUT
        elif status >= 500:
            kind = ErrorKind.NETWORK_ERROR
        else:
            kind = ErrorKind.UNKNOWN_ERROR
        return PipelineError(kind, str(error), status=status)
    return _classify_transport_error(error)


class RetryableFetcher:
    """Run external calls with a per-attempt timeout, classification and backoff."""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        retry_helper: Optional[RetryHelper] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio_sleep,
    ):
        self.max_retries = max_retries if max_retries is not None else config.MAX_RETRIES
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.retry_helper = retry_helper or RetryHelper(
            max_retries=self.max_retries,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_DELAY_MAX,
        )
        self._sleep = sleep

    def delay_for(self, attempt: int, failure: PipelineError) -> float:
        if failure.retry_after is not None:
            return min(failure.retry_after, MAX_RETRY_AFTER_SECONDS)
        return self.retry_helper.calculate_delay(attempt)

    @trace_span(
        "retry.perform",
        tracer_name="retry",
        attr_from_args=lambda self, operation, **kw: {"retry.label": kw.get("label", "request")},
    )
    async def perform(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        classifier: Classifier = classify_feed_response,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        label: str = "request",
    ) -> T:
        """Execute `operation` until it succeeds, fails permanently, or retries run out.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            classifier: Maps (exception, None) or (None, result) to a PipelineError, or None on success.
            max_retries: Retries after the first attempt (defaults to the fetcher's setting).
            timeout: Per-attempt timeout in seconds; the in-flight attempt is cancelled on expiry.
            label: Name used in logs.

        Raises:
            PipelineError: the last classified failure.
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt_timeout = self.timeout if timeout is None else timeout
        attempt = 0
        while True:
            try:
                result = await wait_for(operation(), timeout=attempt_timeout)
            except Exception as e:
                failure = classifier(e, None) or _classify_transport_error(e)
            else:
                failure = classifier(None, result)
                if failure is None:
                    if attempt:
                        logger.info(f"{label} succeeded after {attempt + 1} attempts")
                    return result

            failure.attempts = attempt + 1
            if not failure.retryable:
                logger.info(f"{label} failed with non-retryable {failure.kind.value}: {failure}")
                raise failure
            if attempt >= retries:
                logger.error(f"{label} failed after {attempt + 1} attempts ({failure.kind.value}): {failure}")
                raise failure

            delay = self.delay_for(attempt, failure)
            logger.warning(
                "%s transient %s: %s. Backoff %.2fs (attempt %d/%d)",
                label, failure.kind.value, failure, delay, attempt + 1, retries + 1,
            )
            await self._sleep(delay)
            attempt += 1
