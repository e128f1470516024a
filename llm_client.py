#!/usr/bin/env python3
"""Async OpenAI / Azure OpenAI generation client.

Every call goes through the same three guards, in order: the BudgetGuard
(refuse calls that would overspend), the RateLimiter (wait for request/token
capacity in the rolling window) and the RetryableFetcher (per-attempt timeout,
classification, jittered backoff honouring Retry-After). Usage is recorded only
for responses that actually arrived.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Dict, Any, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI

from budget import BudgetGuard, UsageRecord
from config import config, get_logger
from errors import BudgetExceededError, ErrorKind, PipelineError
from retry import RetryableFetcher, classify_generation_error
from telemetry import annotate_current_span, init_telemetry, trace_span
from tokens import calculate_transcription_cost, count_tokens, estimate_tokens
from utils import RateLimiter

logger = get_logger("llm_client")

init_telemetry("content-pipeline-llm")

DEFAULT_OUTPUT_TOKENS = 2000
TRUNCATED_PLACEHOLDER = "[Truncated output: no content returned]"


@dataclass
class CompletionResult:
    text: str
    input_tokens: int
    output_tokens: int
    cost: float
    model: str
    finish_reason: Optional[str] = None


@dataclass
class TranscriptionResult:
    text: str
    duration_seconds: Optional[float]
    cost: float
    language: Optional[str] = None


def _extract_text(choice: Any) -> str:
    """Normalize a choice's message content (plain string or list of parts) to text."""
    message = getattr(choice, "message", {}) or {}
    if isinstance(message, dict) and message.get("refusal"):
        return ""
    content = getattr(message, "content", None) if not isinstance(message, dict) else message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                ptype = part.get("type")
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
                elif ptype not in ("text", "output_text", None):
                    logger.debug("Ignoring non-text part type=%s keys=%s", ptype, list(part.keys()))
        return "\n".join(texts).strip()
    return ""


def _collect_response_text(resp: Any, operation: str) -> tuple:
    """Join the text of all choices; returns (text, finish_reason)."""
    choices = getattr(resp, "choices", None) or []
    if not choices:
        logger.error("No choices in %s response", operation)
        return "", None

    fragments: List[str] = []
    refusal_detected = False
    for ch in choices:
        msg_obj = getattr(ch, "message", {}) or {}
        refusal_flag = msg_obj.get("refusal") if isinstance(msg_obj, dict) else getattr(msg_obj, "refusal", None)
        if refusal_flag:
            refusal_detected = True
            logger.warning("Refusal detected in %s response: %s", operation, refusal_flag)
        txt = _extract_text(ch)
        if txt:
            fragments.append(txt)

    finish_reason = getattr(choices[0], "finish_reason", None)
    raw = "\n".join(fragments).strip()
    if raw:
        if finish_reason == "length":
            logger.warning("%s output hit the token limit; response may be incomplete", operation)
        return raw, finish_reason
    if refusal_detected:
        logger.warning("All choices refused for %s", operation)
        return "", finish_reason
    finish_reasons = {getattr(c, "finish_reason", None) for c in choices if getattr(c, "finish_reason", None)}
    if "length" in finish_reasons:
        logger.warning("Truncated output with empty content (%s); returning placeholder", operation)
        return TRUNCATED_PLACEHOLDER, "length"
    logger.error("Empty content in %s response despite choices (finish_reasons=%s)", operation, finish_reasons)
    return "", finish_reason


def _usage_value(usage: Any, name: str) -> Optional[int]:
    if usage is None:
        return None
    value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
    return int(value) if isinstance(value, (int, float)) and value > 0 else None


class GenerationClient:
    """The pipeline's only path to the text-generation service.

    Args:
        rate_limiter: Shared RateLimiter (one per process)
        budget: Shared BudgetGuard (one per process)
        fetcher: RetryableFetcher used for the retry/backoff loop
        db: Optional DatabaseQueue; when given, usage records are persisted
        client_override: Pre-built client exposing `chat.completions.create`
            (and `audio.transcriptions.create`), mainly for tests
        model: Default model name
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        budget: Optional[BudgetGuard] = None,
        fetcher: Optional[RetryableFetcher] = None,
        db: Any = None,
        client_override: Any = None,
        model: Optional[str] = None,
    ):
        self.rate_limiter = rate_limiter or RateLimiter()
        self.budget = budget or BudgetGuard()
        self.fetcher = fetcher or RetryableFetcher(
            max_retries=config.GENERATION_MAX_RETRIES,
            timeout=config.GENERATION_TIMEOUT,
        )
        self.db = db
        self.model = model or config.OPENAI_MODEL
        self._client = client_override

    def _get_client(self) -> Any:
        """Instantiate the async client on first use (Azure when an endpoint is configured)."""
        if self._client is not None:
            return self._client
        if not config.OPENAI_API_KEY:
            raise PipelineError(ErrorKind.UNKNOWN_ERROR, "OPENAI_API_KEY is not configured")
        # Retries are handled by RetryableFetcher, not the SDK
        if config.AZURE_ENDPOINT:
            endpoint = (
                f"https://{config.AZURE_ENDPOINT}" if not str(config.AZURE_ENDPOINT).startswith("http") else config.AZURE_ENDPOINT
            )
            self._client = AsyncAzureOpenAI(
                api_key=config.OPENAI_API_KEY,
                api_version=config.OPENAI_API_VERSION,
                azure_endpoint=endpoint,
                max_retries=0,
            )
        else:
            self._client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, max_retries=0)
        return self._client

    def _deployment_for(self, model: str) -> str:
        # Azure routes by deployment name rather than model id
        if config.AZURE_ENDPOINT and config.DEPLOYMENT_NAME:
            return config.DEPLOYMENT_NAME
        return model

    def _check_budget(self, model: str, input_tokens: int, output_tokens: int, operation: str) -> None:
        estimated_cost = self.budget.estimate_cost(model, input_tokens, output_tokens)
        self._ensure_affordable(estimated_cost, operation)

    def _ensure_affordable(self, estimated_cost: float, operation: str) -> None:
        if self.budget.can_afford(estimated_cost):
            return
        stats = self.budget.get_usage_stats()
        raise BudgetExceededError(
            f"Budget exceeded for {operation}. "
            f"Daily: ${stats['daily_usage']:.2f}/${stats['daily_limit']}, "
            f"Monthly: ${stats['monthly_usage']:.2f}/${stats['monthly_limit']}",
            stats,
        )

    async def _persist_usage(self, record: UsageRecord) -> None:
        if self.db is None:
            return
        try:
            await self.db.execute('insert_usage_record', **record.to_dict())
        except Exception as e:
            # The in-memory ledger already holds the record
            logger.error(f"Failed to persist usage record for {record.operation}: {e}")

    @trace_span(
        "llm.complete",
        tracer_name="llm",
        attr_from_args=lambda self, messages, **kw: {
            "llm.operation": kw.get("operation", "completion"),
            "llm.messages": len(messages or []),
            "llm.json_mode": bool(kw.get("json_mode")),
        },
    )
    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        operation: str = "completion",
    ) -> CompletionResult:
        """Run one chat completion.

        Raises:
            BudgetExceededError: the estimated cost does not fit the remaining budget (no retry).
            PipelineError: classified failure after retries ran out, or capacity could not be obtained.
        """
        if not messages:
            raise ValueError("complete() requires at least one message")

        model = model or self.model
        input_text = " ".join(m.get("content", "") for m in messages)
        estimated_input = estimate_tokens(input_text)
        estimated_output = max_tokens or DEFAULT_OUTPUT_TOKENS

        async def attempt() -> CompletionResult:
            self._check_budget(model, estimated_input, estimated_output, operation)
            await self.rate_limiter.await_capacity(estimated_input + estimated_output)

            params: Dict[str, Any] = {
                "model": self._deployment_for(model),
                "messages": messages,
                "temperature": temperature,
                "timeout": config.GENERATION_TIMEOUT,
            }
            if max_tokens:
                params["max_tokens"] = max_tokens
            if json_mode:
                params["response_format"] = {"type": "json_object"}

            logger.debug(
                "Sending %s request: model=%s est_input=%d max_tokens=%s json=%s",
                operation, model, estimated_input, max_tokens, json_mode,
            )
            resp = await self._get_client().chat.completions.create(**params)
            text, finish_reason = _collect_response_text(resp, operation)

            usage = getattr(resp, "usage", None)
            input_tokens = _usage_value(usage, "prompt_tokens") or count_tokens(input_text)
            output_tokens = _usage_value(usage, "completion_tokens") or count_tokens(text)

            self.rate_limiter.record_request(input_tokens + output_tokens)
            record = self.budget.record_usage(model, input_tokens, output_tokens, operation)
            await self._persist_usage(record)
            annotate_current_span({
                "llm.model": model,
                "llm.input_tokens": input_tokens,
                "llm.output_tokens": output_tokens,
                "llm.cost_usd": record.cost,
            })

            logger.info(
                "%s response: in=%d out=%d cost=$%.4f finish=%s",
                operation, input_tokens, output_tokens, record.cost, finish_reason,
            )
            return CompletionResult(
                text=text,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=record.cost,
                model=model,
                finish_reason=finish_reason,
            )

        return await self.fetcher.perform(
            attempt,
            classifier=classify_generation_error,
            # Capacity waits happen inside the attempt, so the hard limit covers both
            timeout=config.GENERATION_TIMEOUT + self.rate_limiter.max_wait,
            label=operation,
        )

    @trace_span(
        "llm.transcribe",
        tracer_name="llm",
        attr_from_args=lambda self, audio, **kw: {
            "audio.bytes": len(audio or b""),
            "audio.filename": kw.get("filename"),
        },
    )
    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "audio.mp3",
        duration_seconds: Optional[float] = None,
        language: Optional[str] = None,
        operation: str = "transcribe",
    ) -> TranscriptionResult:
        """Transcribe audio with the Whisper model; cost is billed per audio minute."""
        if len(audio) > config.MAX_AUDIO_BYTES:
            raise PipelineError(
                ErrorKind.AUDIO_TOO_LARGE,
                f"Audio file ({len(audio) // (1024 * 1024)}MB) exceeds the {config.MAX_AUDIO_BYTES // (1024 * 1024)}MB limit",
            )
        model = config.TRANSCRIPTION_MODEL

        async def attempt() -> TranscriptionResult:
            if duration_seconds:
                self._ensure_affordable(calculate_transcription_cost(model, duration_seconds), operation)
            await self.rate_limiter.await_capacity(0)

            params: Dict[str, Any] = {
                "file": (filename, audio),
                "model": model,
                "response_format": "verbose_json",
            }
            if language:
                params["language"] = language
            resp = await self._get_client().audio.transcriptions.create(**params)

            text = resp if isinstance(resp, str) else (getattr(resp, "text", None) or "")
            detected_duration = getattr(resp, "duration", None) if not isinstance(resp, str) else None
            duration = float(detected_duration) if detected_duration else duration_seconds
            cost = calculate_transcription_cost(model, duration or 0)

            self.rate_limiter.record_request(0)
            record = self.budget.record_usage(model, 0, 0, operation, cost=cost)
            await self._persist_usage(record)
            logger.info(f"Transcribed {len(audio)} bytes ({duration or 0:.0f}s audio) for ${cost:.4f}")
            return TranscriptionResult(
                text=text.strip(),
                duration_seconds=duration,
                cost=cost,
                language=getattr(resp, "language", None) if not isinstance(resp, str) else None,
            )

        return await self.fetcher.perform(
            attempt,
            classifier=classify_generation_error,
            timeout=config.GENERATION_TIMEOUT * 5 + self.rate_limiter.max_wait,
            label=operation,
        )

    def get_usage_stats(self) -> Dict[str, Any]:
        return self.budget.get_usage_stats()

    def get_rate_limit_stats(self) -> Dict[str, int]:
        return self.rate_limiter.get_usage_stats()


__all__ = ["GenerationClient", "CompletionResult", "TranscriptionResult"]
