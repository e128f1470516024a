from time import time

import pytest

from config import config
from errors import ErrorKind, PipelineError
from fetcher import FeedFetcher
from models import DatabaseQueue
from retry import FetchResponse, RetryableFetcher

from conftest import no_sleep

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
  <title>Example Tech</title>
  <link>https://example.com/</link>
  <item>
    <title>First post</title>
    <link>https://example.com/first</link>
    <guid>first-guid</guid>
    <pubDate>Wed, 01 Jan 2025 10:00:00 GMT</pubDate>
    <description>&lt;p&gt;Body of the first post.&lt;/p&gt;</description>
  </item>
  <item>
    <title>Second post</title>
    <link>https://example.com/second</link>
    <guid>second-guid</guid>
    <pubDate>Thu, 02 Jan 2025 10:00:00 GMT</pubDate>
    <description>&lt;p&gt;Body of the second post.&lt;/p&gt;</description>
  </item>
</channel>
</rss>
"""


class FakeHttp:
    """Scripted responses keyed by URL; records every request."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def __call__(self, url, headers, max_bytes=None):
        self.requests.append((url, dict(headers), max_bytes))
        reply = self.responses[url]
        if callable(reply):
            reply = reply(headers)
        return reply


def make_fetcher(db, http, now=time):
    return FeedFetcher(
        db,
        retryable=RetryableFetcher(max_retries=0, timeout=5.0, sleep=no_sleep),
        http_get=http,
        now=now,
    )


async def register(db, slug='tech', url='https://example.com/feed.xml'):
    source_id = await db.execute('register_source', slug=slug, url=url, source_type='rss')
    return await db.execute('get_source', source_id=source_id)


def test_backoff_delay_doubles_and_caps():
    fetcher = FeedFetcher(db=None)
    assert fetcher.calculate_backoff_delay(0) == 0
    assert fetcher.calculate_backoff_delay(1) == 3600
    assert fetcher.calculate_backoff_delay(3) == 4 * 3600
    assert fetcher.calculate_backoff_delay(10) == 24 * 3600


def test_should_fetch_respects_interval_and_backoff(monkeypatch):
    monkeypatch.setattr(config, "FEED_SOURCES", {'tech': {'url': 'u', 'type': 'rss', 'interval_minutes': 60}})
    monkeypatch.setattr(config, "FORCE_REFRESH_FEEDS", False)
    fetcher = FeedFetcher(db=None, now=lambda: 100_000.0)

    assert fetcher.should_fetch_source({'slug': 'tech', 'last_fetched': 0})
    assert not fetcher.should_fetch_source({'slug': 'tech', 'last_fetched': 100_000 - 1800})
    assert fetcher.should_fetch_source({'slug': 'tech', 'last_fetched': 100_000 - 1800}, force=True)
    assert fetcher.should_fetch_source({'slug': 'tech', 'last_fetched': 100_000 - 3700})

    # Error backoff wins over force
    in_backoff = {'slug': 'tech', 'last_fetched': 100_000 - 3000, 'error_count': 2}
    assert not fetcher.should_fetch_source(in_backoff, force=True)
    in_backoff['last_fetched'] = 100_000 - 7300
    assert fetcher.should_fetch_source(in_backoff)


def test_conditional_headers():
    fetcher = FeedFetcher(db=None)
    headers = fetcher._prepare_request_headers({
        'slug': 'tech', 'etag': 'abc123', 'last_modified': 'Wed, 01 Jan 2025 10:00:00 +0000',
    })
    assert headers['If-None-Match'] == '"abc123"'
    assert headers['If-Modified-Since'] == 'Wed, 01 Jan 2025 10:00:00 GMT'

    weak = fetcher._prepare_request_headers({'slug': 'tech', 'etag': 'W/"xyz"', 'last_modified': 'garbage'})
    assert weak == {'If-None-Match': 'W/"xyz"'}


@pytest.mark.asyncio
async def test_sync_source_ingests_and_honours_not_modified(tmp_path):
    url = 'https://example.com/feed.xml'

    def respond(headers):
        if headers.get('If-None-Match') == '"v1"':
            return FetchResponse(status=304, url=url)
        return FetchResponse(status=200, url=url, body=RSS, headers={'ETag': '"v1"'})

    http = FakeHttp({url: respond})
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await register(db, url=url)
        fetcher = make_fetcher(db, http)

        result = await fetcher.sync_source(source)
        assert result.success
        assert (result.items_found, result.items_added, result.items_updated) == (2, 2, 0)

        stored = await db.execute('get_source', source_id=source['id'])
        assert stored['etag'] == '"v1"'
        assert stored['title'] == 'Example Tech'
        candidates = await db.execute('list_processing_candidates', source_id=source['id'])
        assert {c['title'] for c in candidates} == {'First post', 'Second post'}

        again = await fetcher.sync_source(stored, force=True)
        assert again.success
        assert again.items_found == 0
        assert http.requests[-1][1]['If-None-Match'] == '"v1"'
        assert len(await db.execute('list_processing_candidates', source_id=source['id'])) == 2
        await fetcher.close(close_db=False)


@pytest.mark.asyncio
async def test_repeated_failures_deactivate_source(tmp_path):
    url = 'https://example.com/gone.xml'
    http = FakeHttp({url: FetchResponse(status=404, url=url)})
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await register(db, url=url)
        # Far enough ahead that error backoff never blocks the next attempt
        fetcher = make_fetcher(db, http, now=lambda: time() + 10 ** 7)

        for expected_count in range(1, config.SOURCE_MAX_CONSECUTIVE_ERRORS + 1):
            result = await fetcher.sync_source(source)
            assert not result.success
            source = await db.execute('get_source', source_id=source['id'])
            assert source['error_count'] == expected_count

        assert source['active'] == 0
        assert await db.execute('list_sources', active_only=True) == []
        await fetcher.close(close_db=False)


@pytest.mark.asyncio
async def test_sync_all_sources_filters_by_slug(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "FEED_SOURCES", {
        'tech': {'url': 'https://example.com/feed.xml', 'type': 'rss', 'interval_minutes': 30},
        'other': {'url': 'https://example.org/feed.xml', 'type': 'rss', 'interval_minutes': 30},
    })
    http = FakeHttp({
        'https://example.com/feed.xml': FetchResponse(status=200, url='https://example.com/feed.xml', body=RSS),
        'https://example.org/feed.xml': FetchResponse(status=200, url='https://example.org/feed.xml', body=RSS),
    })
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        fetcher = make_fetcher(db, http)
        results = await fetcher.sync_all_sources(only_slugs=['tech'])
        assert [r.slug for r in results] == ['tech']
        assert results[0].items_added == 2
        assert [req[0] for req in http.requests] == ['https://example.com/feed.xml']
        assert len(await db.execute('list_sources')) == 2
        await fetcher.close(close_db=False)


@pytest.mark.asyncio
async def test_fetch_transcript_flattens_captions():
    url = 'https://example.com/ep1.vtt'
    vtt = b"WEBVTT\n\n00:00:01.000 --> 00:00:03.000\n<v Host>Welcome back to the show\n\n00:00:03.000 --> 00:00:05.000\nToday we talk about soil\n"
    http = FakeHttp({url: FetchResponse(status=200, url=url, body=vtt, headers={'Content-Type': 'text/vtt'})})
    fetcher = make_fetcher(None, http)
    assert await fetcher.fetch_transcript(url) == "Welcome back to the show Today we talk about soil"
    await fetcher.close(close_db=False)


@pytest.mark.asyncio
async def test_fetch_transcript_without_text():
    url = 'https://example.com/empty.vtt'
    http = FakeHttp({url: FetchResponse(status=200, url=url, body=b"WEBVTT\n\n", headers={'Content-Type': 'text/vtt'})})
    fetcher = make_fetcher(None, http)
    with pytest.raises(PipelineError) as excinfo:
        await fetcher.fetch_transcript(url)
    assert excinfo.value.kind == ErrorKind.NO_CAPTIONS_AVAILABLE
    await fetcher.close(close_db=False)


@pytest.mark.asyncio
async def test_fetch_audio_enforces_size_cap():
    url = 'https://cdn.example.com/ep.mp3'
    http = FakeHttp({url: FetchResponse(status=200, url=url, body=b"x" * 2048)})
    fetcher = make_fetcher(None, http)

    assert len(await fetcher.fetch_audio(url, max_bytes=4096)) == 2048
    assert http.requests[-1][2] == 4096
    with pytest.raises(PipelineError) as excinfo:
        await fetcher.fetch_audio(url, max_bytes=1024)
    assert excinfo.value.kind == ErrorKind.AUDIO_TOO_LARGE
    await fetcher.close(close_db=False)
