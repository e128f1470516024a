#!/usr/bin/env python3
"""
Token estimation and model pricing.

Both estimators are approximations of the generation model's tokenizer and lean
towards overestimating so that budget and rate checks err on the safe side:

- estimate_tokens: ~4 characters per token, used on hot paths (rate limiting)
- count_tokens: ~1.3 tokens per whitespace-separated word, used for accounting
- conservative_tokens: the word estimate, except runs longer than a typical word
  are counted by characters; used for every sizing decision so text without
  whitespace (CJK, URLs, base64) is not undercounted
"""

import math
import re
from typing import Dict, Any

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 1.3
# Inverse of TOKENS_PER_WORD, used when converting a token allowance back into words
WORDS_PER_TOKEN = 0.75

_WORD_PATTERN = re.compile(r"\S+")
# Past this length a run costs more by characters than by the word ratio
_LONG_RUN_CHARS = TOKENS_PER_WORD * CHARS_PER_TOKEN

MODEL_LIMITS: Dict[str, Dict[str, Any]] = {
    "gpt-4o": {
        "context_window": 128000,
        "output_limit": 16384,
        "input_cost_per_1k": 0.0025,
        "output_cost_per_1k": 0.01,
    },
    "gpt-4o-mini": {
        "context_window": 128000,
        "output_limit": 16384,
        "input_cost_per_1k": 0.00015,
        "output_cost_per_1k": 0.0006,
    },
    "gpt-4-turbo": {
        "context_window": 128000,
        "output_limit": 4096,
        "input_cost_per_1k": 0.01,
        "output_cost_per_1k": 0.03,
    },
}
DEFAULT_MODEL = "gpt-4o"

# Audio transcription is billed per minute rather than per token
TRANSCRIPTION_COST_PER_MINUTE = {
    "whisper-1": 0.006,
}


def estimate_tokens(text: str) -> int:
    """Fast estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_words(text: str) -> int:
    if not text:
        return 0
    return len(_WORD_PATTERN.findall(text))


def count_tokens(text: str) -> int:
    """Word-based estimate: 1.3 tokens per word, rounded up."""
    return math.ceil(count_words(text) * TOKENS_PER_WORD)


def conservative_tokens(text: str) -> int:
    """Never below count_tokens; equals estimate_tokens for text without whitespace."""
    if not text:
        return 0
    short_words = 0
    long_chars = 0
    for word in _WORD_PATTERN.findall(text):
        if len(word) > _LONG_RUN_CHARS:
            long_chars += len(word)
        else:
            short_words += 1
    return math.ceil(short_words * TOKENS_PER_WORD + long_chars / CHARS_PER_TOKEN)


def get_model_limits(model: str) -> Dict[str, Any]:
    """Return the limits/prices for a model, falling back to the default model's entry."""
    return MODEL_LIMITS.get(model) or MODEL_LIMITS[DEFAULT_MODEL]


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    limits = get_model_limits(model)
    input_cost = (input_tokens / 1000) * limits["input_cost_per_1k"]
    output_cost = (output_tokens / 1000) * limits["output_cost_per_1k"]
    return input_cost + output_cost


def calculate_transcription_cost(model: str, duration_seconds: float) -> float:
    per_minute = TRANSCRIPTION_COST_PER_MINUTE.get(model, TRANSCRIPTION_COST_PER_MINUTE["whisper-1"])
    return max(duration_seconds, 0) / 60 * per_minute


def fits_in_context(text: str, model: str = DEFAULT_MODEL, reserve_for_output: int = 4096) -> bool:
    return conservative_tokens(text) + reserve_for_output <= get_model_limits(model)["context_window"]


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    """Cut text at a word boundary so that count_tokens(result) <= max_tokens."""
    if count_tokens(text) <= max_tokens:
        return text
    words = _WORD_PATTERN.findall(text)
    # Largest word count whose estimate still fits
    lo, hi = 0, len(words)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if math.ceil(mid * TOKENS_PER_WORD) <= max_tokens:
            lo = mid
        else:
            hi = mid - 1
    return " ".join(words[:lo])
