import pytest

from ingest import ADDED, UNCHANGED, UPDATED, IngestionDeduper, determine_content_type, external_id_for
from models import DatabaseQueue
from utils import content_hash


def article_entry(body="<p>Original body text for the article.</p>", **overrides):
    entry = {
        'guid': 'guid-1',
        'link': 'https://example.com/a',
        'title': 'An article',
        'author': None,
        'content': body,
        'published_at': 1700000000,
        'enclosure': None,
        'itunes_duration': None,
        'image_url': None,
        'transcript_url': None,
    }
    entry.update(overrides)
    return entry


async def setup_source(db, slug='tech', source_type='rss'):
    source_id = await db.execute('register_source', slug=slug, url=f'https://example.com/{slug}', source_type=source_type)
    return await db.execute('get_source', source_id=source_id)


def test_content_type_detection():
    assert determine_content_type({}, 'rss') == 'article'
    assert determine_content_type({}, 'podcast') == 'podcast_episode'
    assert determine_content_type({'enclosure': {'url': 'https://x/ep.mp3?sig=1', 'type': None}}, 'rss') == 'podcast_episode'
    assert determine_content_type({'enclosure': {'url': 'https://x/ep', 'type': 'audio/mpeg'}}, 'rss') == 'podcast_episode'
    assert determine_content_type({'enclosure': {'url': 'https://x/pic.jpg', 'type': 'image/jpeg'}}, 'rss') == 'article'


def test_external_id_fallbacks():
    assert external_id_for({'guid': 'g', 'link': 'l'}, 1) == 'g'
    assert external_id_for({'link': 'l'}, 1) == 'l'
    assert external_id_for({'title': 'T'}, 7) == '7-T'


@pytest.mark.asyncio
async def test_unchanged_reingest_keeps_status(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await setup_source(db)
        deduper = IngestionDeduper(db)

        first = await deduper.ingest_entry(source, article_entry())
        assert first.action == ADDED
        await db.execute('mark_completed', content_id=first.content_id)

        # Metadata changes alone do not count as a change
        again = await deduper.ingest_entry(source, article_entry(title='Retitled'))
        assert again.action == UNCHANGED
        assert again.content_id == first.content_id
        item = await db.execute('get_content_item', content_id=first.content_id)
        assert item['processing_status'] == 'completed'
        assert item['title'] == 'An article'


@pytest.mark.asyncio
async def test_changed_text_resets_to_pending(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await setup_source(db)
        deduper = IngestionDeduper(db)

        first = await deduper.ingest_entry(source, article_entry())
        await db.execute('record_processing_failure', content_id=first.content_id, status='failed',
                         last_error='boom', error_kind='NETWORK_ERROR')

        changed = await deduper.ingest_entry(source, article_entry(body="<p>Entirely rewritten body.</p>"))
        assert changed.action == UPDATED
        item = await db.execute('get_content_item', content_id=first.content_id)
        assert item['processing_status'] == 'pending'
        assert item['retry_count'] == 0
        assert item['last_error'] is None
        assert item['extracted_text'] == 'Entirely rewritten body.'
        assert item['content_hash'] == content_hash('Entirely rewritten body.')


@pytest.mark.asyncio
async def test_changed_text_drops_stored_summary(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await setup_source(db)
        deduper = IngestionDeduper(db)

        first = await deduper.ingest_entry(source, article_entry())
        await db.execute('upsert_summary', content_id=first.content_id, summary={
            'headline': 'Old headline', 'tldr': 'Old', 'full_summary': 'Old summary',
        })
        await db.execute('mark_completed', content_id=first.content_id)

        await deduper.ingest_entry(source, article_entry(title='Retitled'))
        assert await db.execute('count_summaries', content_id=first.content_id) == 1

        changed = await deduper.ingest_entry(source, article_entry(body="<p>Entirely rewritten body.</p>"))
        assert changed.action == UPDATED
        assert await db.execute('count_summaries', content_id=first.content_id) == 0


@pytest.mark.asyncio
async def test_ingest_entries_counts(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await setup_source(db)
        deduper = IngestionDeduper(db)
        entries = [article_entry(guid=f'g{i}', link=f'https://example.com/{i}') for i in range(3)]

        assert await deduper.ingest_entries(source, entries) == {ADDED: 3, UPDATED: 0, UNCHANGED: 0}
        entries[1] = article_entry(guid='g1', link='https://example.com/1', body='<p>new words</p>')
        assert await deduper.ingest_entries(source, entries) == {ADDED: 0, UPDATED: 1, UNCHANGED: 2}


@pytest.mark.asyncio
async def test_podcast_entry_record(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source = await setup_source(db, slug='pod', source_type='podcast')
        deduper = IngestionDeduper(db)
        entry = article_entry(
            body='Short show notes.',
            enclosure={'url': 'https://cdn.example.com/1.mp3', 'type': 'audio/mpeg', 'length': '100'},
            itunes_duration='45:30',
            transcript_url='https://example.com/1.vtt',
        )
        outcome = await deduper.ingest_entry(source, entry)
        item = await db.execute('get_content_item', content_id=outcome.content_id)
        assert item['content_type'] == 'podcast_episode'
        assert item['audio_url'] == 'https://cdn.example.com/1.mp3'
        assert item['audio_duration_seconds'] == 2730
        assert item['transcript_url'] == 'https://example.com/1.vtt'
        assert item['word_count'] == 3


@pytest.mark.asyncio
async def test_submission_flattens_captions(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        deduper = IngestionDeduper(db)
        srt = "1\n00:00:01,000 --> 00:00:02,000\nHello and welcome\n\n2\n00:00:02,000 --> 00:00:04,000\nto the talk\n"

        outcome = await deduper.ingest_submission(srt, title='Talk', url='https://video.example.com/v1')
        assert outcome.action == ADDED
        item = await db.execute('get_content_item', content_id=outcome.content_id)
        assert item['content_type'] == 'video'
        assert item['extracted_text'] == 'Hello and welcome to the talk'
        assert item['external_id'] == 'https://video.example.com/v1'

        again = await deduper.ingest_submission(srt, title='Talk', url='https://video.example.com/v1')
        assert again.action == UNCHANGED
        source = await db.execute('get_source_by_slug', slug='submissions')
        assert source['source_type'] == 'submission'
