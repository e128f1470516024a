#!/usr/bin/env python3
"""
Summarization orchestrator.

Picks a strategy for each piece of content and drives the generation client:

- short articles: one call with the short-content prompt
- medium/long articles: chunk, summarize chunks concurrently in small batches,
  then one combine call over all chunk notes (map, then reduce)
- podcast episodes and videos: a single-pass transcript prompt that also asks
  for speakers, falling back to the chunked path for very long transcripts

The result always carries a schema-shaped Summary; malformed model output
becomes a degraded summary rather than an error.
"""

import json
import time
from asyncio import gather
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import yaml

from chunker import Chunk, Chunker, get_chunking_strategy
from config import config, get_logger
from llm_client import CompletionResult, GenerationClient
from schema import Summary, calculate_quality_score, ensure_minimum_takeaways, parse_summary_response
from telemetry import init_telemetry, trace_span
from tokens import conservative_tokens

logger = get_logger("summarizer")

init_telemetry("content-pipeline-summarizer")

CHUNK_BATCH_SIZE = 3
# Transcripts above this many tokens go through the chunked path
PODCAST_SINGLE_PASS_MAX_TOKENS = 12000
SUMMARY_MAX_TOKENS = 4000
CHUNK_MAX_TOKENS = 2000
VALIDATION_MAX_TOKENS = 1000
SUMMARY_TEMPERATURE = 0.3
MIN_TAKEAWAYS = 3

TRANSCRIPT_CONTENT_TYPES = ("podcast_episode", "video")


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        prompt_path = config.PROMPT_CONFIG_PATH
        with open(prompt_path, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}  # Handle case where yaml.safe_load returns None
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


def format_prompt(template: str, **variables: Any) -> str:
    """Substitute {name} placeholders literally (templates contain JSON braces)."""
    result = template
    for key, value in variables.items():
        result = result.replace(f"{{{key}}}", str(value))
    return result


@dataclass
class SummarizationResult:
    summary: Summary
    strategy: str
    input_tokens: int
    output_tokens: int
    cost: float
    processing_time_ms: int
    model: str
    quality_score: int
    degraded: bool = False
    chunk_count: int = 1
    call_count: int = 1

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class SummarizationOrchestrator:
    """Chooses a summarization strategy and runs it through the generation client."""

    def __init__(
        self,
        client: GenerationClient,
        chunker: Optional[Chunker] = None,
        prompts: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.chunker = chunker or Chunker()
        self.prompts: Dict[str, str] = prompts if prompts is not None else load_prompts()
        self._clock = clock
        for key in ("system", "short_content", "chunk_summary", "combine_chunks", "podcast"):
            if not self.prompts.get(key):
                logger.error(f"No '{key}' prompt found in configuration")

    def _messages(self, user_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.prompts.get("system", "")},
            {"role": "user", "content": user_prompt},
        ]

    async def _call(self, user_prompt: str, operation: str, max_tokens: int, calls: List[CompletionResult]) -> CompletionResult:
        result = await self.client.complete(
            self._messages(user_prompt),
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=max_tokens,
            json_mode=True,
            operation=operation,
        )
        calls.append(result)
        return result

    @trace_span(
        "summarizer.summarize",
        tracer_name="summarizer",
        attr_from_args=lambda self, content, **kw: {
            "content.length": len(content or ""),
            "content.type": kw.get("content_type", "article"),
        },
    )
    async def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        content_type: str = "article",
        duration_seconds: Optional[int] = None,
    ) -> SummarizationResult:
        """Summarize one piece of content.

        Token usage and cost are totals over every generation call made (chunk
        calls included). Errors from the generation client propagate.
        """
        started = self._clock()
        calls: List[CompletionResult] = []
        chunk_count = 1

        if content_type in TRANSCRIPT_CONTENT_TYPES:
            strategy = "podcast"
            final, chunk_count = await self._summarize_transcript(content, title, duration_seconds, calls)
        else:
            strategy = get_chunking_strategy(conservative_tokens(content))
            if strategy == "short":
                final = await self._summarize_short(content, calls)
            else:
                final, chunk_count = await self._summarize_long(content, title or "Untitled", calls)

        summary, degraded = parse_summary_response(final.text)
        if not degraded:
            summary = ensure_minimum_takeaways(summary, MIN_TAKEAWAYS)

        elapsed_ms = int((self._clock() - started) * 1000)
        result = SummarizationResult(
            summary=summary,
            strategy=strategy,
            input_tokens=sum(c.input_tokens for c in calls),
            output_tokens=sum(c.output_tokens for c in calls),
            cost=sum(c.cost for c in calls),
            processing_time_ms=elapsed_ms,
            model=final.model,
            quality_score=calculate_quality_score(summary),
            degraded=degraded,
            chunk_count=chunk_count,
            call_count=len(calls),
        )
        logger.info(
            f"📝 Summarized via {strategy} ({len(calls)} calls, {chunk_count} chunks): "
            f"{result.total_tokens} tokens, ${result.cost:.4f}, quality {result.quality_score}"
            + (" [degraded]" if degraded else "")
        )
        return result

    async def _summarize_short(self, content: str, calls: List[CompletionResult]) -> CompletionResult:
        prompt = format_prompt(self.prompts.get("short_content", ""), content=content)
        return await self._call(prompt, "summarize-short", SUMMARY_MAX_TOKENS, calls)

    @staticmethod
    def _context_note(chunk: Chunk) -> str:
        if chunk.is_first:
            return "This is the beginning of the document."
        if chunk.is_last:
            return "This is the end of the document."
        return ""

    async def _summarize_long(self, content: str, title: str, calls: List[CompletionResult]) -> tuple:
        chunks = self.chunker.chunk(content)
        logger.info(f"🧩 Summarizing {len(chunks)} chunks in batches of {CHUNK_BATCH_SIZE}")

        chunk_notes: List[str] = []
        for start in range(0, len(chunks), CHUNK_BATCH_SIZE):
            batch = chunks[start:start + CHUNK_BATCH_SIZE]
            prompts = [
                format_prompt(
                    self.prompts.get("chunk_summary", ""),
                    chunkIndex=chunk.index + 1,
                    totalChunks=len(chunks),
                    contextNote=self._context_note(chunk),
                    content=chunk.text,
                )
                for chunk in batch
            ]
            # All chunk notes must be in before the combine call
            results = await gather(*(
                self._call(prompt, "summarize-chunk", CHUNK_MAX_TOKENS, calls) for prompt in prompts
            ))
            chunk_notes.extend(r.text for r in results)

        combined = "\n\n---\n\n".join(f"Section {i + 1}:\n{note}" for i, note in enumerate(chunk_notes))
        prompt = format_prompt(self.prompts.get("combine_chunks", ""), chunkSummaries=combined, title=title)
        final = await self._call(prompt, "summarize-combine", SUMMARY_MAX_TOKENS, calls)
        return final, len(chunks)

    async def _summarize_transcript(
        self,
        transcript: str,
        title: Optional[str],
        duration_seconds: Optional[int],
        calls: List[CompletionResult],
    ) -> tuple:
        title = title or "Podcast Episode"
        if conservative_tokens(transcript) > PODCAST_SINGLE_PASS_MAX_TOKENS:
            return await self._summarize_long(transcript, title, calls)

        duration = f"{duration_seconds // 60} minutes" if duration_seconds else "Unknown"
        prompt = format_prompt(self.prompts.get("podcast", ""), title=title, duration=duration, content=transcript)
        final = await self._call(prompt, "summarize-podcast", SUMMARY_MAX_TOKENS, calls)
        return final, 1

    async def review_summary(self, content: str, summary: Summary, excerpt_chars: int = 2000) -> Dict[str, Any]:
        """Ask the model to critique a summary against the start of its source text.

        Returns the decoded review ({isValid, issues, suggestions, missingPoints});
        an unparseable review comes back with isValid None.
        """
        prompt = format_prompt(
            self.prompts.get("validation", ""),
            excerpt=content[:excerpt_chars],
            summary=json.dumps(summary.to_payload(), indent=2),
        )
        result = await self.client.complete(
            self._messages(prompt),
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=VALIDATION_MAX_TOKENS,
            json_mode=True,
            operation="validate-summary",
        )
        try:
            review = json.loads(result.text)
        except json.JSONDecodeError:
            logger.warning("Summary review response was not valid JSON")
            review = None
        if not isinstance(review, dict):
            return {"isValid": None, "issues": [], "suggestions": [], "missingPoints": [], "raw": result.text}
        return review
