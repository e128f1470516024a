#!/usr/bin/env python3
"""
Ingestion with change detection.

Feed entries (already normalized by the fetcher) are keyed by the source's
external identifier. The SHA-256 of the extracted text decides what happens:

- unknown external id: insert as `pending`
- known id, different hash: refresh text/metadata and reset to `pending`
- known id, same hash: nothing changes, so noisy feeds never re-trigger
  summarization
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from config import get_logger
from extractor import captions_to_text, extract
from telemetry import trace_span
from utils import content_hash, parse_duration, word_count

logger = get_logger("ingest")

ADDED = "added"
UPDATED = "updated"
UNCHANGED = "unchanged"

SUBMISSIONS_SLUG = "submissions"
SUBMISSIONS_URL = "local://submissions"

_AUDIO_EXTENSION = re.compile(r'\.(mp3|m4a|wav|ogg)$', re.IGNORECASE)


@dataclass
class IngestOutcome:
    content_id: Optional[int]
    action: str


def _is_audio_enclosure(enclosure: Optional[Dict[str, Any]]) -> bool:
    if not enclosure or not enclosure.get('url'):
        return False
    mime = str(enclosure.get('type') or '').lower()
    # Query strings are common on podcast CDNs
    url_path = str(enclosure['url']).split('?', 1)[0]
    return mime.startswith('audio/') or bool(_AUDIO_EXTENSION.search(url_path))


def determine_content_type(entry: Dict[str, Any], source_type: str) -> str:
    if source_type == 'podcast' or _is_audio_enclosure(entry.get('enclosure')):
        return 'podcast_episode'
    return 'article'


def external_id_for(entry: Dict[str, Any], source_id: int) -> str:
    return entry.get('guid') or entry.get('link') or f"{source_id}-{entry.get('title')}"


class IngestionDeduper:
    """Turns fetched entries into content items, inserting or refreshing only on real change."""

    def __init__(self, db, extractor: Callable[..., Dict[str, Any]] = extract):
        self.db = db
        self.extractor = extractor

    def build_record(self, entry: Dict[str, Any], source_type: str = 'rss') -> Dict[str, Any]:
        """Column values for a content item built from one normalized entry."""
        raw = entry.get('content') or ''
        extracted = self.extractor(raw, base_url=entry.get('link'))
        text = extracted.get('text') or ''

        record: Dict[str, Any] = {
            'content_type': determine_content_type(entry, source_type),
            'title': entry.get('title') or extracted.get('title') or 'Untitled',
            'url': entry.get('link'),
            'author': entry.get('author') or extracted.get('author'),
            'published_at': entry.get('published_at') or extracted.get('published_at'),
            'image_url': entry.get('image_url') or extracted.get('image_url'),
            'raw_text': raw,
            'extracted_text': text,
            'content_hash': content_hash(text),
            'word_count': word_count(text),
            'audio_url': None,
            'audio_duration_seconds': None,
            'transcript_url': entry.get('transcript_url'),
        }

        enclosure = entry.get('enclosure')
        if _is_audio_enclosure(enclosure):
            record['audio_url'] = enclosure['url']
            record['audio_duration_seconds'] = parse_duration(entry.get('itunes_duration'))
        return record

    @trace_span(
        "ingest.entry",
        tracer_name="ingest",
        attr_from_args=lambda self, source, entry: {
            "source.id": int(source.get('id') or 0),
            "entry.has_guid": bool(entry.get('guid')),
        },
    )
    async def ingest_entry(self, source: Dict[str, Any], entry: Dict[str, Any]) -> IngestOutcome:
        source_id = source['id']
        external_id = external_id_for(entry, source_id)
        record = self.build_record(entry, source.get('source_type') or 'rss')
        return await self._upsert(source_id, external_id, record)

    async def _upsert(self, source_id: int, external_id: str, record: Dict[str, Any]) -> IngestOutcome:
        existing = await self.db.execute('get_content_item_by_external_id', source_id=source_id, external_id=external_id)
        if existing is None:
            content_id = await self.db.execute(
                'insert_content_item', source_id=source_id, external_id=external_id, fields=record
            )
            if content_id is not None:
                logger.info(f"New item {content_id}: {record['title']} ({record['word_count']} words)")
                return IngestOutcome(content_id, ADDED)
            # Lost an insert race; compare against the winner
            existing = await self.db.execute(
                'get_content_item_by_external_id', source_id=source_id, external_id=external_id
            )
            if existing is None:
                logger.error(f"Could not insert or find item {external_id} for source {source_id}")
                return IngestOutcome(None, UNCHANGED)

        if existing.get('content_hash') == record['content_hash']:
            logger.debug(f"Item {existing['id']} unchanged")
            return IngestOutcome(existing['id'], UNCHANGED)

        changes = dict(record)
        changes.update({
            'processing_status': 'pending',
            'retry_count': 0,
            'last_retry_at': None,
            'last_error': None,
            'error_kind': None,
        })
        # Summaries of the old text must not satisfy the next run
        dropped = await self.db.execute('delete_summaries', content_id=existing['id'])
        await self.db.execute('update_content_item', content_id=existing['id'], fields=changes)
        logger.info(f"Item {existing['id']} changed upstream, reset to pending ({dropped} stale summaries dropped)")
        return IngestOutcome(existing['id'], UPDATED)

    async def ingest_entries(self, source: Dict[str, Any], entries: Iterable[Dict[str, Any]]) -> Dict[str, int]:
        counts = {ADDED: 0, UPDATED: 0, UNCHANGED: 0}
        for entry in entries:
            outcome = await self.ingest_entry(source, entry)
            counts[outcome.action] += 1
        return counts

    async def ingest_submission(
        self,
        transcript: str,
        *,
        title: Optional[str] = None,
        url: Optional[str] = None,
        external_id: Optional[str] = None,
        author: Optional[str] = None,
        transcript_url: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> IngestOutcome:
        """Store a caller-provided video transcript under the submissions source.

        Caption files (SRT/WebVTT) are flattened to plain text first. Without an
        explicit external id the URL, then the text hash, identifies the item.
        """
        source_id = await self.db.execute(
            'register_source', slug=SUBMISSIONS_SLUG, url=SUBMISSIONS_URL, source_type='submission', title='Submissions'
        )
        if source_id is None:
            raise RuntimeError("Could not register the submissions source")

        text = captions_to_text(transcript or '')
        digest = content_hash(text)
        record = {
            'content_type': 'video',
            'title': title or 'Untitled Video',
            'url': url,
            'author': author,
            'published_at': None,
            'image_url': None,
            'raw_text': transcript,
            'extracted_text': text,
            'content_hash': digest,
            'word_count': word_count(text),
            'audio_url': None,
            'audio_duration_seconds': duration_seconds,
            'transcript_url': transcript_url,
        }
        return await self._upsert(source_id, external_id or url or digest, record)
