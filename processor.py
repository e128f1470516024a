#!/usr/bin/env python3
"""
Per-item processing state machine.

    pending -> processing -> completed | failed | skipped | permanently_failed

`process_item` moves an item to `processing` before any external call, makes
sure podcast/video items have a usable transcript (Podcast 2.0 transcript URL,
then audio transcription), enforces the word-count floor, summarizes through
the orchestrator and persists the result. Every failure path ends in exactly
one status; the method returns a ProcessingResult and never raises.
"""

import os
import traceback
from asyncio import sleep as asyncio_sleep
from dataclasses import dataclass
from time import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

from config import config, get_logger
from errors import ErrorKind, NO_TRANSCRIPT_KINDS, PipelineError
from models import DEFAULT_SUMMARY_TYPE
from summarizer import SummarizationOrchestrator, SummarizationResult, TRANSCRIPT_CONTENT_TYPES
from telemetry import annotate_current_span, init_telemetry, trace_span
from utils import format_duration, word_count

logger = get_logger("processor")

init_telemetry("content-pipeline-processor")

MAX_ITEM_RETRIES = 3
# Wait before re-attempting a failed item, indexed by its retry count
RETRY_DELAYS_SECONDS = (5 * 60, 30 * 60, 2 * 60 * 60)
USAGE_RETENTION_DAYS = 62

# Failures caused by shared limits rather than the item itself
_TRANSIENT_LIMIT_KINDS = frozenset({ErrorKind.BUDGET_EXCEEDED, ErrorKind.CAPACITY_TIMEOUT})


@dataclass
class ProcessingResult:
    content_id: int
    success: bool = False
    transcribed: bool = False
    summarized: bool = False
    status: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    transcription_source: Optional[str] = None
    word_count: int = 0
    summary_id: Optional[int] = None
    degraded: bool = False
    transcription_cost: float = 0.0
    summarization_cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class SkipProcessing(Exception):
    """The item cannot be summarized, and that is a normal outcome."""

    def __init__(self, reason: str, kind: Optional[ErrorKind] = None):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind


def summary_row(result: SummarizationResult) -> Dict[str, Any]:
    """Flatten an orchestrator result into the summaries table columns."""
    payload = result.summary.to_payload()
    return {
        "headline": result.summary.headline,
        "tldr": result.summary.tldr,
        "full_summary": result.summary.full_summary,
        "key_points": payload.get("keyPoints", []),
        "key_takeaways": payload.get("keyTakeaways", []),
        "related_ideas": payload.get("relatedIdeas", []),
        "allied_trivia": payload.get("alliedTrivia", []),
        "speakers": payload.get("speakers"),
        "topics_discussed": payload.get("topicsDiscussed"),
        "strategy": result.strategy,
        "model_used": result.model,
        "input_tokens": result.input_tokens,
        "output_tokens": result.output_tokens,
        "cost": result.cost,
        "processing_time_ms": result.processing_time_ms,
        "quality_score": result.quality_score,
        "degraded": result.degraded,
    }


class ProcessingStateMachine:
    """Drives content items through transcription and summarization.

    Args:
        db: Running DatabaseQueue
        orchestrator: SummarizationOrchestrator (its client also does transcription)
        fetcher: Object with `fetch_transcript(url)` and `fetch_audio(url)`; only
            needed for podcast/video items
        now: Wall clock in epoch seconds
        sleep: Used for the pause between batch items
    """

    def __init__(
        self,
        db,
        orchestrator: SummarizationOrchestrator,
        fetcher: Any = None,
        now: Callable[[], float] = time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio_sleep,
        item_delay: Optional[float] = None,
        transcribe_if_missing: Optional[bool] = None,
        max_audio_duration: Optional[int] = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.client = orchestrator.client
        self.fetcher = fetcher
        self._now = now
        self._sleep = sleep
        self.item_delay = config.PROCESSING_ITEM_DELAY if item_delay is None else item_delay
        self.transcribe_if_missing = (
            config.TRANSCRIBE_IF_MISSING if transcribe_if_missing is None else transcribe_if_missing
        )
        self.max_audio_duration = max_audio_duration or config.MAX_AUDIO_DURATION_SECONDS

    async def load_usage_ledger(self) -> int:
        """Restore this month's spend from the usage table so budgets survive restarts."""
        budget = self.client.budget
        since = budget.month_start().timestamp()
        rows = await self.db.execute('load_usage_records', since=since)
        loaded = budget.load_records(rows)
        await self.db.execute('prune_usage_records', before=self._now() - USAGE_RETENTION_DAYS * 86400)
        stats = budget.get_usage_stats()
        logger.info(
            f"💰 Loaded {loaded} usage records: today ${stats['daily_usage']:.2f}/${stats['daily_limit']}, "
            f"month ${stats['monthly_usage']:.2f}/${stats['monthly_limit']}"
        )
        return loaded

    @staticmethod
    def min_words_for(content_type: str) -> int:
        if content_type in TRANSCRIPT_CONTENT_TYPES:
            return config.MIN_WORDS_FOR_PODCAST_SUMMARY
        return config.MIN_WORDS_FOR_SUMMARY

    @trace_span(
        "processor.process_item",
        tracer_name="processor",
        attr_from_args=lambda self, content_id, **kw: {
            "content.id": int(content_id),
            "force.resummarize": bool(kw.get("force_resummarize")),
            "force.retranscribe": bool(kw.get("force_retranscribe")),
        },
    )
    async def process_item(
        self,
        content_id: int,
        force_resummarize: bool = False,
        force_retranscribe: bool = False,
    ) -> ProcessingResult:
        """Run one item to a terminal (or retryable) status. Never raises."""
        result = ProcessingResult(content_id=content_id)

        try:
            item = await self.db.execute('get_content_item', content_id=content_id)
        except Exception as e:
            logger.error(f"Could not load content item {content_id}: {e}")
            result.error = f"Could not load content item: {e}"
            result.error_kind = ErrorKind.UNKNOWN_ERROR.value
            return result

        if item is None:
            result.error = "Content item not found"
            result.error_kind = ErrorKind.NOT_FOUND.value
            return result

        logger.info(f"⚙️ Processing item {content_id}: {item.get('title')} ({item['content_type']})")

        try:
            await self.db.execute('update_processing_status', content_id=content_id, status='processing')

            # A pending item is new or changed upstream, any stored summary is stale
            if not (force_resummarize or force_retranscribe) and item['processing_status'] != 'pending':
                existing = await self.db.execute(
                    'get_summary', content_id=content_id, summary_type=DEFAULT_SUMMARY_TYPE
                )
                if existing:
                    logger.info(f"Summary already exists for item {content_id}, skipping generation")
                    await self.db.execute('mark_completed', content_id=content_id)
                    result.success = True
                    result.summarized = True
                    result.status = 'completed'
                    result.summary_id = existing['id']
                    result.word_count = item.get('word_count') or 0
                    return result

            text = item.get('extracted_text') or ''
            min_words = self.min_words_for(item['content_type'])
            if item['content_type'] in TRANSCRIPT_CONTENT_TYPES:
                text = await self._ensure_transcript(item, text, min_words, force_retranscribe, result)

            result.word_count = word_count(text)
            if result.word_count < min_words:
                raise SkipProcessing(f"Insufficient content: {result.word_count} words (need {min_words})")

            summarized = await self.orchestrator.summarize(
                text,
                title=item.get('title'),
                content_type=item['content_type'],
                duration_seconds=item.get('audio_duration_seconds'),
            )
            result.summarization_cost = summarized.cost
            result.degraded = summarized.degraded

            summary_id = await self.db.execute(
                'upsert_summary',
                content_id=content_id,
                summary=summary_row(summarized),
                summary_type=DEFAULT_SUMMARY_TYPE,
            )
            if summary_id is None:
                raise PipelineError(ErrorKind.UNKNOWN_ERROR, "Failed to save summary")

            await self.db.execute('mark_completed', content_id=content_id)
            result.summary_id = summary_id
            result.summarized = True
            result.success = True
            result.status = 'completed'
            annotate_current_span({"processing.status": 'completed', "processing.degraded": result.degraded})
            logger.info(
                f"✅ Item {content_id} completed ({summarized.strategy}, {result.word_count} words, "
                f"${summarized.cost + result.transcription_cost:.4f})" + (" [degraded]" if summarized.degraded else "")
            )
            return result

        except SkipProcessing as skip:
            return await self._finish_skipped(item, result, skip)
        except PipelineError as e:
            return await self._finish_failed(item, result, e)
        except Exception as e:
            logger.error(f"Unexpected error processing item {content_id}: {e}")
            logger.debug(traceback.format_exc())
            return await self._finish_failed(item, result, PipelineError(ErrorKind.UNKNOWN_ERROR, str(e)))

    async def _ensure_transcript(
        self,
        item: Dict[str, Any],
        text: str,
        min_words: int,
        force_retranscribe: bool,
        result: ProcessingResult,
    ) -> str:
        """Return transcript text for a podcast/video item, fetching or transcribing when needed."""
        current_words = word_count(text)
        if not force_retranscribe and current_words >= min_words:
            result.transcription_source = 'existing'
            return text

        logger.info(f"Item {item['id']} needs a transcript: {current_words} words, minimum {min_words}")
        transcript = text
        transcript_error: Optional[PipelineError] = None

        if item.get('transcript_url') and not force_retranscribe and self.fetcher is not None:
            try:
                fetched = await self.fetcher.fetch_transcript(item['transcript_url'])
            except PipelineError as e:
                transcript_error = e
                logger.warning(f"Transcript fetch failed for item {item['id']}: {e.kind.value} {e}")
            else:
                transcript = fetched
                result.transcribed = True
                result.transcription_source = 'transcript_url'

        needs_audio = force_retranscribe or word_count(transcript) < min_words
        if needs_audio and item.get('audio_url') and self.transcribe_if_missing and self.fetcher is not None:
            duration = item.get('audio_duration_seconds') or 0
            if duration > self.max_audio_duration:
                raise SkipProcessing(
                    f"Episode duration ({format_duration(duration)}) exceeds the "
                    f"{format_duration(self.max_audio_duration)} limit"
                )
            try:
                transcript = await self._transcribe_audio(item, result)
            except PipelineError as e:
                if current_words >= min_words:
                    logger.warning(f"Transcription failed for item {item['id']}, keeping existing text: {e}")
                    result.transcription_source = 'existing'
                    return text
                raise
        elif transcript_error is not None and word_count(transcript) < min_words:
            # No audio fallback, so the transcript failure decides the outcome
            if transcript_error.kind in NO_TRANSCRIPT_KINDS:
                raise SkipProcessing(transcript_error.user_message, transcript_error.kind)
            raise transcript_error

        if result.transcribed and transcript != item.get('extracted_text'):
            # content_hash keeps describing the upstream text so re-syncs stay no-ops
            await self.db.execute(
                'update_content_item',
                content_id=item['id'],
                fields={'extracted_text': transcript, 'word_count': word_count(transcript)},
            )
        return transcript

    async def _transcribe_audio(self, item: Dict[str, Any], result: ProcessingResult) -> str:
        duration = item.get('audio_duration_seconds') or None
        if duration:
            logger.info(f"🎙️ Transcribing item {item['id']} ({format_duration(duration)} of audio)")
        else:
            logger.info(f"🎙️ Transcribing item {item['id']} (unknown duration)")
        audio = await self.fetcher.fetch_audio(item['audio_url'])
        filename = os.path.basename(urlparse(item['audio_url']).path) or "audio.mp3"
        transcription = await self.client.transcribe(audio, filename=filename, duration_seconds=duration)
        result.transcribed = True
        result.transcription_source = 'whisper'
        result.transcription_cost = transcription.cost
        logger.info(f"Transcription for item {item['id']}: {word_count(transcription.text)} words, ${transcription.cost:.4f}")
        return transcription.text

    async def _finish_skipped(self, item: Dict[str, Any], result: ProcessingResult, skip: SkipProcessing) -> ProcessingResult:
        logger.info(f"⏭️ Item {item['id']} skipped: {skip.reason}")
        result.status = 'skipped'
        annotate_current_span({"processing.status": 'skipped'})
        result.error = skip.reason
        result.error_kind = skip.kind.value if skip.kind else None
        await self._safe_status_update(
            item['id'], 'skipped', last_error=skip.reason, error_kind=result.error_kind
        )
        return result

    async def _finish_failed(self, item: Dict[str, Any], result: ProcessingResult, error: PipelineError) -> ProcessingResult:
        kind = error.kind
        result.error = str(error) or error.user_message
        result.error_kind = kind.value

        if kind in NO_TRANSCRIPT_KINDS:
            return await self._finish_skipped(item, result, SkipProcessing(error.user_message, kind))

        if kind in _TRANSIENT_LIMIT_KINDS:
            # Not the item's fault, so the retry budget is left alone
            result.status = 'failed'
            logger.warning(f"💸 Item {item['id']} blocked by {kind.value}: {error}")
            await self._safe_status_update(item['id'], 'failed', last_error=result.error, error_kind=kind.value)
            return result

        if error.permanent:
            status = 'permanently_failed'
        else:
            status = 'permanently_failed' if (item.get('retry_count') or 0) + 1 >= MAX_ITEM_RETRIES else 'failed'
        result.status = status
        annotate_current_span({"processing.status": status, "error.kind": kind.value})
        logger.error(f"❌ Item {item['id']} {status} ({kind.value}): {error}")
        try:
            await self.db.execute(
                'record_processing_failure',
                content_id=item['id'],
                status=status,
                last_error=result.error,
                error_kind=kind.value,
            )
        except Exception as e:
            logger.error(f"Could not record failure for item {item['id']}: {e}")
        return result

    async def _safe_status_update(self, content_id: int, status: str, **kwargs) -> None:
        try:
            await self.db.execute('update_processing_status', content_id=content_id, status=status, **kwargs)
        except Exception as e:
            logger.error(f"Could not set item {content_id} to {status}: {e}")

    async def process_batch(
        self,
        content_ids: List[int],
        force_resummarize: bool = False,
        force_retranscribe: bool = False,
    ) -> List[ProcessingResult]:
        """Process items one after another with a short pause in between."""
        results: List[ProcessingResult] = []
        for index, content_id in enumerate(content_ids):
            if index and self.item_delay > 0:
                await self._sleep(self.item_delay)
            results.append(await self.process_item(
                content_id,
                force_resummarize=force_resummarize,
                force_retranscribe=force_retranscribe,
            ))

        succeeded = sum(1 for r in results if r.success)
        skipped = sum(1 for r in results if r.status == 'skipped')
        logger.info(f"Batch done: {succeeded} completed, {skipped} skipped, {len(results) - succeeded - skipped} failed")
        return results

    @trace_span("processor.list_pending", tracer_name="processor")
    async def list_pending(self, limit: int = 10, source_id: Optional[int] = None) -> List[int]:
        """Ids of pending items plus failed items whose retry delay has elapsed.

        Failed items that already used up their retries are moved to
        `permanently_failed` on the way.
        """
        candidates = await self.db.execute('list_processing_candidates', source_id=source_id)
        now = self._now()
        eligible: List[int] = []
        for item in candidates:
            if item['processing_status'] == 'failed':
                retry_count = item.get('retry_count') or 0
                if retry_count >= MAX_ITEM_RETRIES:
                    logger.info(f"Item {item['id']}: max retries reached, marking permanently failed")
                    await self.db.execute(
                        'update_processing_status',
                        content_id=item['id'],
                        status='permanently_failed',
                        last_error=item.get('last_error'),
                        error_kind=item.get('error_kind'),
                    )
                    continue
                last_retry_at = item.get('last_retry_at')
                if last_retry_at:
                    delay = RETRY_DELAYS_SECONDS[min(retry_count, len(RETRY_DELAYS_SECONDS) - 1)]
                    if now < last_retry_at + delay:
                        logger.debug(f"Item {item['id']}: retry delay not elapsed")
                        continue
            eligible.append(item['id'])
            if len(eligible) >= limit:
                break
        return eligible

    async def retry_summarization(self, content_id: int) -> ProcessingResult:
        """Reset an item's retry bookkeeping and summarize it again right away."""
        item = await self.db.execute('get_content_item', content_id=content_id)
        if item is None:
            return ProcessingResult(
                content_id=content_id,
                error="Content item not found",
                error_kind=ErrorKind.NOT_FOUND.value,
            )
        await self.db.execute('reset_retry_state', content_id=content_id)
        logger.info(f"🔁 Manual retry for item {content_id}")
        return await self.process_item(content_id, force_resummarize=True)
