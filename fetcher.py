#!/usr/bin/env python3
"""
Fetcher collaborator for the content pipeline.

- Feed sync: conditional requests (ETag / Last-Modified), per-source fetch
  intervals, exponential error backoff and deactivation of sources that keep
  failing. Parsed entries are handed to the IngestionDeduper.
- Transcript fetch: Podcast 2.0 / caption URLs, converted to plain text.
- Audio fetch: size-capped download for transcription.

Every HTTP request goes through RetryableFetcher with the classifier that fits
the call site.
"""

from time import time
from calendar import timegm
from asyncio import get_event_loop, wait_for, TimeoutError, Semaphore, gather
from aiohttp import ClientSession, ClientTimeout
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from hashlib import sha256
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import re

import feedparser

from config import config, get_logger
from errors import ErrorKind, PipelineError
from extractor import captions_to_text, extract, looks_like_html
from ingest import ADDED, UPDATED, IngestionDeduper
from models import DatabaseQueue
from retry import FetchResponse, RetryableFetcher, classify_feed_response, classify_transcript_response
from telemetry import init_telemetry, trace_span
from utils import validate_url

logger = get_logger("fetcher")
init_telemetry("content-pipeline-fetcher")

# Processing constants
HOUR_IN_SECONDS = 3600
MAX_BACKOFF_HOURS = 24
SECONDS_PER_MINUTE = 60
MAX_CONCURRENT_SOURCES = 5
AUDIO_FETCH_TIMEOUT = 300
AUDIO_CHUNK_BYTES = 64 * 1024
FEED_SOURCE_TYPES = ("rss", "podcast")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"
TRANSCRIPT_ACCEPT = "text/plain, text/vtt, application/x-subrip, application/json, */*"

HttpGet = Callable[[str, Dict[str, str], Optional[int]], Awaitable[FetchResponse]]


@dataclass
class SyncResult:
    slug: str
    source_id: Optional[int] = None
    items_found: int = 0
    items_added: int = 0
    items_updated: int = 0
    error: Optional[str] = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


class FeedFetcher:
    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        ingester: Optional[IngestionDeduper] = None,
        retryable: Optional[RetryableFetcher] = None,
        http_get: Optional[HttpGet] = None,
        now: Callable[[], float] = time,
    ) -> None:
        self.executor = ThreadPoolExecutor()
        self.db = db
        self.ingester = ingester or (IngestionDeduper(db) if db is not None else None)
        self.retryable = retryable or RetryableFetcher()
        self._http_get = http_get
        self._session: Optional[ClientSession] = None
        self._now = now

    async def initialize(self) -> None:
        """Open the database when none was injected."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            await self.db.start()
        if self.ingester is None:
            self.ingester = IngestionDeduper(self.db)
        logger.info("FeedFetcher initialized")

    # HTTP plumbing

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            # Per-attempt timeouts are enforced by RetryableFetcher
            self._session = ClientSession(
                headers={'User-Agent': config.USER_AGENT},
                timeout=ClientTimeout(total=None),
            )
        return self._session

    async def _aiohttp_get(self, url: str, headers: Dict[str, str], max_bytes: Optional[int] = None) -> FetchResponse:
        session = await self._get_session()
        async with session.get(url, headers=headers, max_redirects=config.MAX_REDIRECTS) as response:
            if max_bytes is None:
                body = await response.read()
            else:
                if response.content_length and response.content_length > max_bytes:
                    raise PipelineError(
                        ErrorKind.AUDIO_TOO_LARGE,
                        f"{url} is {response.content_length} bytes (limit {max_bytes})",
                    )
                buffer = bytearray()
                async for chunk in response.content.iter_chunked(AUDIO_CHUNK_BYTES):
                    buffer.extend(chunk)
                    if len(buffer) > max_bytes:
                        raise PipelineError(ErrorKind.AUDIO_TOO_LARGE, f"{url} exceeds {max_bytes} bytes")
                body = bytes(buffer)
            return FetchResponse(
                status=response.status,
                url=str(response.url),
                body=body,
                headers={k: v for k, v in response.headers.items()},
            )

    async def _get(self, url: str, headers: Optional[Dict[str, str]] = None, max_bytes: Optional[int] = None) -> FetchResponse:
        request_headers = {'User-Agent': config.USER_AGENT}
        request_headers.update(headers or {})
        getter = self._http_get or self._aiohttp_get
        return await getter(url, request_headers, max_bytes)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    # Collaborator operations

    @trace_span(
        "fetcher.fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, headers=None, label=None: {"http.url": url},
    )
    async def fetch_feed(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        label: Optional[str] = None,
    ) -> Tuple[FetchResponse, Optional[Any]]:
        """Fetch and parse a feed. The parsed feed is None on 304 Not Modified.

        Raises:
            PipelineError: classified HTTP/transport failure after retries.
        """
        request_headers = {'Accept': FEED_ACCEPT}
        request_headers.update(headers or {})
        response = await self.retryable.perform(
            lambda: self._get(url, request_headers),
            classifier=classify_feed_response,
            label=label or f"feed {url}",
        )
        if response.status == HTTP_NOT_MODIFIED:
            return response, None

        # Set safer parsing options for feedparser
        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
        }
        # feedparser is not async, run in executor
        feed = await self.run_in_executor(lambda c: feedparser.parse(c, **feedparser_options), response.body)
        if feed.bozo and hasattr(feed, 'bozo_exception'):
            logger.warning(f"Feed parsing warning for {url}: {feed.bozo_exception}")
            if not feed.get('entries'):
                raise PipelineError(ErrorKind.PARSE_ERROR, f"Could not parse feed {url}: {feed.bozo_exception}")
        return response, feed

    @trace_span(
        "fetcher.fetch_transcript",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch_transcript(self, url: str) -> str:
        """Fetch a transcript/caption file and return it as plain text.

        Raises:
            PipelineError: classified failure, NO_CAPTIONS_AVAILABLE when nothing usable came back.
        """
        response = await self.retryable.perform(
            lambda: self._get(url, {'Accept': TRANSCRIPT_ACCEPT}),
            classifier=classify_transcript_response,
            label=f"transcript {url}",
        )
        body = response.text
        content_type = str(response.headers.get('Content-Type') or response.headers.get('content-type') or '').lower()
        if 'html' in content_type or looks_like_html(body):
            text = extract(body, base_url=url)['text']
        else:
            text = captions_to_text(body)
        if not text.strip():
            raise PipelineError(ErrorKind.NO_CAPTIONS_AVAILABLE, f"Transcript at {url} is empty")
        logger.info(f"Fetched transcript from {url} ({len(text.split())} words)")
        return text

    @trace_span(
        "fetcher.fetch_audio",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, max_bytes=None: {"http.url": url},
    )
    async def fetch_audio(self, url: str, max_bytes: Optional[int] = None) -> bytes:
        """Download audio for transcription, refusing files over the size cap."""
        limit = max_bytes if max_bytes is not None else config.MAX_AUDIO_BYTES
        response = await self.retryable.perform(
            lambda: self._get(url, {'Accept': 'audio/*, */*'}, limit),
            classifier=classify_feed_response,
            timeout=AUDIO_FETCH_TIMEOUT,
            label=f"audio {url}",
        )
        if len(response.body) > limit:
            raise PipelineError(ErrorKind.AUDIO_TOO_LARGE, f"{url} exceeds {limit} bytes")
        logger.info(f"Downloaded {len(response.body) / (1024 * 1024):.1f} MB of audio from {url}")
        return response.body

    # Source sync

    def calculate_backoff_delay(self, error_count: int) -> float:
        """Calculate exponential backoff delay based on error count."""
        if error_count <= 0:
            return 0

        # Exponential backoff: 2^(error_count-1) hours, capped at 24 hours
        delay = HOUR_IN_SECONDS * (2 ** (error_count - 1))
        return min(delay, MAX_BACKOFF_HOURS * HOUR_IN_SECONDS)

    def _interval_minutes(self, slug: str) -> int:
        feed_cfg = config.FEED_SOURCES.get(slug) or {}
        try:
            return int(feed_cfg.get('interval_minutes', config.FETCH_INTERVAL_MINUTES))
        except (TypeError, ValueError):
            return config.FETCH_INTERVAL_MINUTES

    def should_fetch_source(self, source: Dict[str, Any], force: bool = False) -> bool:
        """Respect error backoff first, then the per-source fetch interval."""
        last_fetched = int(source.get('last_fetched') or 0)
        if not last_fetched:
            return True

        elapsed = self._now() - last_fetched
        error_count = int(source.get('error_count') or 0)
        if error_count:
            backoff_delay = self.calculate_backoff_delay(error_count)
            if elapsed < backoff_delay:
                remaining_time = backoff_delay - elapsed
                logger.info(f"Source {source['slug']} in backoff (error count: {error_count}), "
                            f"next attempt in {remaining_time / HOUR_IN_SECONDS:.1f} hours")
                return False
            return True

        if force or config.FORCE_REFRESH_FEEDS:
            return True

        interval_minutes = self._interval_minutes(source['slug'])
        if elapsed < interval_minutes * SECONDS_PER_MINUTE:
            logger.info(
                f"Skipping {source['slug']}, fetched too recently "
                f"(last: {self._format_timestamp(last_fetched)}, interval: {interval_minutes}m)."
            )
            return False
        return True

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if not dt:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            dt = dt.astimezone(timezone.utc)
            return format_datetime(dt, usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    def _prepare_request_headers(self, source: Dict[str, Any]) -> Dict[str, str]:
        """Conditional request headers from the cache validators stored on the source."""
        headers: Dict[str, str] = {}
        etag = source.get('etag')
        if etag:
            # Quote unquoted ETags, keep weak ones as-is
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag

        last_modified = self._normalize_http_date(source.get('last_modified'))
        if last_modified:
            headers['If-Modified-Since'] = last_modified
        elif source.get('last_modified'):
            logger.warning(
                f"Invalid Last-Modified format for {source['slug']}, not sending header "
                f"(stored value: {source['last_modified']})"
            )
        return headers

    async def _handle_fetch_error(self, source: Dict[str, Any], error_message: str) -> None:
        """Bump the error count (and deactivate the source once it hits the limit)."""
        new_error_count = int(source.get('error_count') or 0) + 1
        active = new_error_count < config.SOURCE_MAX_CONSECUTIVE_ERRORS
        await self.db.execute(
            'update_source_error',
            source_id=source['id'],
            error_count=new_error_count,
            last_error=error_message,
            active=active,
        )
        if active:
            backoff_delay = self.calculate_backoff_delay(new_error_count)
            logger.warning(f"Source {source['slug']} error count increased to {new_error_count}. "
                           f"Next attempt in {backoff_delay / HOUR_IN_SECONDS:.1f} hours")
        else:
            logger.error(f"🛑 Source {source['slug']} deactivated after {new_error_count} consecutive errors")

    @trace_span(
        "fetcher.sync_source",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, force=False: {
            "source.slug": source.get('slug'),
            "source.id": int(source.get('id') or 0),
        },
    )
    async def sync_source(self, source: Dict[str, Any], force: bool = False) -> SyncResult:
        """Fetch one source and ingest its entries. Never raises for fetch/parse problems."""
        slug = source['slug']
        result = SyncResult(slug=slug, source_id=source.get('id'))

        if not validate_url(source.get('url')):
            result.error = f"Invalid feed URL: {source.get('url') or '(none)'}"
            await self._handle_fetch_error(source, result.error)
            return result

        if not self.should_fetch_source(source, force=force):
            result.skipped = True
            return result

        logger.info(f"Fetching feed: {slug} from {source['url']}")
        try:
            response, feed = await self.fetch_feed(
                source['url'], self._prepare_request_headers(source), label=f"feed {slug}"
            )
        except PipelineError as e:
            result.error = str(e)
            logger.error(f"Error fetching {slug}: {e.kind.value} {e}")
            await self._handle_fetch_error(source, result.error)
            return result

        new_etag = response.headers.get('ETag') or response.headers.get('etag')
        new_last_modified = self._normalize_http_date(
            response.headers.get('Last-Modified') or response.headers.get('last-modified')
        )

        if feed is None:
            logger.info(f"Feed {slug} not modified since last fetch")
            await self.db.execute('update_source_fetched', source_id=source['id'])
            return result

        entries = [self.normalize_entry(entry) for entry in feed.get('entries', [])]
        result.items_found = len(entries)
        try:
            counts = await self.ingester.ingest_entries(source, entries)
        except Exception as e:
            result.error = f"Ingestion failed: {e}"
            logger.error(f"Error ingesting entries for {slug}: {e}")
            await self._handle_fetch_error(source, result.error)
            return result

        result.items_added = counts[ADDED]
        result.items_updated = counts[UPDATED]
        feed_title = feed.get('feed', {}).get('title')
        await self.db.execute(
            'update_source_fetched',
            source_id=source['id'],
            etag=new_etag,
            last_modified=new_last_modified,
            title=feed_title,
        )
        logger.info(
            f"📥 {slug}: {result.items_found} entries, {result.items_added} new, {result.items_updated} updated"
        )
        return result

    async def register_configured_sources(self) -> List[Dict[str, Any]]:
        """Make sure every source from feeds.yaml exists in the database."""
        for slug, feed_cfg in config.FEED_SOURCES.items():
            await self.db.execute(
                'register_source', slug=slug, url=feed_cfg['url'], source_type=feed_cfg.get('type', 'rss')
            )
        return await self.db.execute('list_sources', active_only=True)

    @trace_span("fetcher.sync_all_sources", tracer_name="fetcher")
    async def sync_all_sources(self, only_slugs: Optional[List[str]] = None, force: bool = False) -> List[SyncResult]:
        """Sync every active feed source, a few at a time.

        Args:
            only_slugs: If provided, only sync these slugs.
            force: Ignore fetch intervals (error backoff still applies).
        """
        sources = await self.register_configured_sources()
        sources = [
            s for s in sources
            if s.get('source_type') in FEED_SOURCE_TYPES and (only_slugs is None or s['slug'] in only_slugs)
        ]
        # Least recently fetched first
        sources.sort(key=lambda s: int(s.get('last_fetched') or 0))
        logger.info(f"Syncing {len(sources)} sources")

        semaphore = Semaphore(MAX_CONCURRENT_SOURCES)

        async def sync_with_semaphore(source: Dict[str, Any]) -> SyncResult:
            async with semaphore:
                return await self.sync_source(source, force=force)

        outcomes = await gather(*(sync_with_semaphore(s) for s in sources), return_exceptions=True)
        results: List[SyncResult] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error syncing {source['slug']}: {outcome}")
                results.append(SyncResult(slug=source['slug'], source_id=source['id'], error=str(outcome)))
            else:
                results.append(outcome)

        added = sum(r.items_added for r in results)
        updated = sum(r.items_updated for r in results)
        failed = sum(1 for r in results if not r.success)
        logger.info(f"Sync finished: {added} new, {updated} updated, {failed} sources failed")
        return results

    # Entry normalization

    def normalize_entry(self, entry) -> Dict[str, Any]:
        """Flatten a feedparser entry into the fields the deduper consumes."""
        title, url, guid = self._normalize_entry_identity(
            self._get_entry_value(entry, 'title'),
            self._get_entry_value(entry, 'link'),
            self._get_entry_value(entry, 'id'),
        )
        return {
            'guid': guid or None,
            'link': url or None,
            'title': title or None,
            'author': self._get_entry_value(entry, 'author') or self._get_entry_value(entry, 'itunes_author'),
            'content': self.extract_content(entry),
            'published_at': self.parse_date_enhanced(entry),
            'enclosure': self._get_enclosure(entry),
            'itunes_duration': self._get_entry_value(entry, 'itunes_duration'),
            'image_url': self._get_image_url(entry),
            'transcript_url': self._get_transcript_url(entry),
        }

    def _normalize_entry_identity(self, title: Optional[str], url: Optional[str], guid: Optional[str]) -> Tuple[str, str, str]:
        """Trim identity fields; over-long GUIDs are hashed so they stay unique."""
        norm_title = (title or "").strip()[:255]

        norm_url = (url or "").strip()
        if norm_url:
            norm_url = norm_url[:2048]

        norm_guid = (guid or "").strip()
        if len(norm_guid) > 255:
            norm_guid = sha256(norm_guid.encode('utf-8')).hexdigest()

        return norm_title, norm_url, norm_guid

    def extract_content(self, entry) -> str:
        """Raw (HTML) body of an entry: content, then summary, then description."""
        contents = self._get_entry_value(entry, 'content')
        if contents:
            for content_item in contents:
                value = content_item.get('value') if hasattr(content_item, 'get') else None
                if value:
                    return value

        for field in ('summary', 'description', 'itunes_summary'):
            value = self._get_entry_value(entry, field)
            if value:
                return value
        return ""

    def _get_enclosure(self, entry) -> Optional[Dict[str, Any]]:
        enclosures = self._get_entry_value(entry, 'enclosures') or []
        candidates = list(enclosures)
        for link in self._get_entry_value(entry, 'links') or []:
            if hasattr(link, 'get') and link.get('rel') == 'enclosure':
                candidates.append(link)
        for enclosure in candidates:
            href = enclosure.get('href') or enclosure.get('url')
            if href:
                return {'url': href, 'type': enclosure.get('type'), 'length': enclosure.get('length')}
        return None

    def _get_image_url(self, entry) -> Optional[str]:
        image = self._get_entry_value(entry, 'image')
        if hasattr(image, 'get') and image.get('href'):
            return image['href']
        for field in ('media_content', 'media_thumbnail'):
            media = self._get_entry_value(entry, field) or []
            for item in media:
                if hasattr(item, 'get') and item.get('url'):
                    medium = str(item.get('medium') or item.get('type') or 'image')
                    if medium.startswith('image'):
                        return item['url']
        return None

    def _get_transcript_url(self, entry) -> Optional[str]:
        """Podcast 2.0 transcript link, preferring caption formats."""
        candidates = []
        transcript = self._get_entry_value(entry, 'podcast_transcript')
        if isinstance(transcript, str) and transcript.startswith(('http://', 'https://')):
            candidates.append({'href': transcript, 'type': ''})
        elif hasattr(transcript, 'get'):
            candidates.append({'href': transcript.get('url') or transcript.get('href'), 'type': transcript.get('type') or ''})
        for link in self._get_entry_value(entry, 'links') or []:
            if hasattr(link, 'get') and link.get('rel') == 'transcript':
                candidates.append({'href': link.get('href'), 'type': link.get('type') or ''})

        candidates = [c for c in candidates if c['href']]
        for candidate in candidates:
            if 'srt' in candidate['type'] or 'vtt' in candidate['type']:
                return candidate['href']
        return candidates[0]['href'] if candidates else None

    # Date parsing

    def parse_date_enhanced(self, entry) -> Optional[int]:
        """Publication timestamp from the usual feed date fields, or None."""
        date_fields = [
            'published',
            'updated',
            'created',
            'modified',
            'date',
            'pubDate',
            'pubdate',
            'issued',
        ]

        # Try the listed fields plus their *_parsed variants in priority order
        for field in date_fields:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp

            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp

        # Try to extract date from the guid if it looks like it contains a date
        entry_id = self._get_entry_value(entry, 'id')
        if entry_id:
            for pattern in (r'(\d{4})-(\d{2})-(\d{2})', r'(\d{4})/(\d{2})/(\d{2})'):
                match = re.search(pattern, str(entry_id))
                if match:
                    try:
                        year, month, day = map(int, match.groups())
                        if 1900 <= year <= 2100 and 1 <= month <= 12 and 1 <= day <= 31:
                            return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                    except (ValueError, TypeError, OSError) as e:
                        logger.debug(f"Failed to parse date components for '{entry_id}': {e}")

        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None

        if value is not None:
            return value

        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None

        if isinstance(value, datetime):
            dt = value
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        for parser in (self._parse_with_email_utils, self._parse_with_feedparser, self._parse_with_custom_formats):
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OSError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError):
            return None
        return None

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S %Z", "%d %b %Y %H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"):
            try:
                dt = datetime.strptime(date_str.strip(), fmt)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
            except (ValueError, TypeError):
                continue
        return None

    def _format_timestamp(self, timestamp: Optional[int]) -> str:
        """Return a human-readable UTC timestamp for diagnostics."""
        if timestamp in (None, ""):
            return "n/a"
        try:
            return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
        except (OSError, OverflowError, ValueError, TypeError):
            return str(timestamp)

    async def close(self, close_db: bool = True) -> None:
        """Close connections and clean up resources."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        if close_db and self.db:
            await self.db.stop()
        if self.executor:
            try:
                await wait_for(
                    get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                    timeout=30.0
                )
            except TimeoutError:
                logger.warning("Thread pool executor shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
