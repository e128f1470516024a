#!/usr/bin/env python3
"""
Utility classes and functions shared across the pipeline.

Contains the generation-service RateLimiter (rolling 60 second request/token
window), the RetryHelper used for jittered exponential backoff, and small
helpers for hashing, word counting and duration handling.
"""

from asyncio import sleep as asyncio_sleep
from collections import deque
from hashlib import sha256
from threading import Lock
from time import monotonic
from typing import Any, Callable, Deque, Dict, Optional, Tuple
import random
import re

from config import config, get_logger
from errors import CapacityTimeoutError
from tokens import count_words

logger = get_logger("utils")

RATE_WINDOW_SECONDS = 60.0
# Upper bound for a single sleep while waiting for capacity
MAX_CAPACITY_CHECK_INTERVAL = 5.0


class RateLimiter:
    """Rolling-window limiter for requests and tokens sent to the generation service.

    Two lists are kept for the last 60 seconds: request timestamps and
    (timestamp, tokens) pairs. `record_request` must be called once per issued
    request, after the response arrived, with the confirmed token usage.
    State lives in memory only; a restart starts from an empty window.
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        tokens_per_minute: Optional[int] = None,
        max_wait: Optional[float] = None,
        clock: Callable[[], float] = monotonic,
        sleep: Callable[[float], Any] = asyncio_sleep,
    ):
        self.requests_per_minute = requests_per_minute or config.OPENAI_REQUESTS_PER_MINUTE
        self.tokens_per_minute = tokens_per_minute or config.OPENAI_TOKENS_PER_MINUTE
        self.max_wait = max_wait if max_wait is not None else config.RATE_LIMIT_MAX_WAIT
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()
        self._tokens: Deque[Tuple[float, int]] = deque()
        self._lock = Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - RATE_WINDOW_SECONDS
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= cutoff:
            self._tokens.popleft()

    def _tokens_in_window(self) -> int:
        return sum(tokens for _, tokens in self._tokens)

    def can_proceed(self, estimated_tokens: int = 0) -> bool:
        """True if one more request of `estimated_tokens` fits in the current window."""
        with self._lock:
            self._prune(self._clock())
            return (
                len(self._requests) < self.requests_per_minute
                and self._tokens_in_window() + estimated_tokens <= self.tokens_per_minute
            )

    def time_until_capacity(self, estimated_tokens: int = 0) -> float:
        """Seconds until enough window entries expire for the request to fit."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            wait = 0.0
            if len(self._requests) >= self.requests_per_minute:
                excess = len(self._requests) - self.requests_per_minute
                wait = max(wait, self._requests[excess] + RATE_WINDOW_SECONDS - now)
            overflow = self._tokens_in_window() + estimated_tokens - self.tokens_per_minute
            if overflow > 0:
                freed = 0
                for timestamp, tokens in self._tokens:
                    freed += tokens
                    if freed >= overflow:
                        wait = max(wait, timestamp + RATE_WINDOW_SECONDS - now)
                        break
            return max(wait, 0.0)

    async def await_capacity(self, estimated_tokens: int = 0) -> float:
        """Wait until `can_proceed(estimated_tokens)` holds.

        Sleeps in increments of at most 5 seconds. Raises CapacityTimeoutError when the
        request can never fit (larger than the per-minute token ceiling) or when the total
        wait would exceed `max_wait`.

        Returns:
            Seconds spent waiting.
        """
        if estimated_tokens > self.tokens_per_minute:
            raise CapacityTimeoutError(
                f"Request of ~{estimated_tokens} tokens exceeds the {self.tokens_per_minute} tokens/minute ceiling",
                waited=0.0,
            )
        started = self._clock()
        while not self.can_proceed(estimated_tokens):
            waited = self._clock() - started
            if waited >= self.max_wait:
                raise CapacityTimeoutError(
                    f"No rate limit capacity for ~{estimated_tokens} tokens after {waited:.1f}s",
                    waited=waited,
                )
            delay = min(
                MAX_CAPACITY_CHECK_INTERVAL,
                max(self.time_until_capacity(estimated_tokens), 0.05),
                self.max_wait - waited,
            )
            logger.debug(f"Rate limiting: waiting {delay:.2f} seconds for capacity")
            await self._sleep(delay)
        return self._clock() - started

    def record_request(self, tokens_used: int) -> None:
        """Record one issued request and its confirmed token usage."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._requests.append(now)
            self._tokens.append((now, max(int(tokens_used), 0)))

    def get_usage_stats(self) -> Dict[str, int]:
        with self._lock:
            self._prune(self._clock())
            return {
                "requests_in_window": len(self._requests),
                "tokens_in_window": self._tokens_in_window(),
                "requests_limit": self.requests_per_minute,
                "tokens_limit": self.tokens_per_minute,
            }


class RetryHelper:
    """Helper class for implementing retry logic with jittered exponential backoff."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.25,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
            jitter: Relative jitter applied to each delay (0.25 means +/-25%)
            rng: Source of uniform [0, 1) values, injectable for tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), capped at max_delay.

        Jitter is applied before the cap, and since 2 * (1 - j) >= 1 + j for j <= 1/3
        consecutive delays never shrink.
        """
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay *= 1 + self.jitter * (2 * self._rng() - 1)
        return min(delay, self.max_delay)


def content_hash(text: Optional[str]) -> str:
    """Deterministic hash of extracted text (metadata never participates)."""
    return sha256((text or "").encode("utf-8")).hexdigest()


def word_count(text: Optional[str]) -> int:
    return count_words(text or "")


_DURATION_PATTERN = re.compile(r"^\d+(:\d{1,2}){0,2}$")


def parse_duration(value: Any) -> Optional[int]:
    """Parse an episode duration into seconds.

    Accepts plain seconds ("3600", 3600, 3600.5), "MM:SS" and "HH:MM:SS".
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else None
    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = int(float(text))
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    if not _DURATION_PATTERN.match(text):
        return None
    seconds = 0
    for part in text.split(":"):
        seconds = seconds * 60 + int(part)
    return seconds


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def validate_url(url: Optional[str]) -> bool:
    """Basic check for an absolute http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    return url.startswith(('http://', 'https://')) and '.' in url


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)] + suffix
