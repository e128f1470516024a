import pytest

from models import DatabaseQueue


def article_fields(**overrides):
    fields = {
        'content_type': 'article',
        'title': 'Hello',
        'url': 'https://example.com/hello',
        'extracted_text': 'hello world',
        'content_hash': 'abc',
        'word_count': 2,
    }
    fields.update(overrides)
    return fields


@pytest.mark.asyncio
async def test_sources_and_content_items(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source_id = await db.execute('register_source', slug='tech', url='https://example.com/feed', source_type='rss')
        assert source_id is not None
        # Registering again refreshes rather than duplicating
        assert await db.execute('register_source', slug='tech', url='https://example.com/feed2') == source_id
        source = await db.execute('get_source_by_slug', slug='tech')
        assert source['url'] == 'https://example.com/feed2'
        assert source['active'] == 1

        content_id = await db.execute('insert_content_item', source_id=source_id, external_id='guid-1', fields=article_fields())
        assert content_id is not None
        assert await db.execute('insert_content_item', source_id=source_id, external_id='guid-1', fields=article_fields()) is None

        item = await db.execute('get_content_item', content_id=content_id)
        assert item['processing_status'] == 'pending'
        assert item['retry_count'] == 0
        by_external = await db.execute('get_content_item_by_external_id', source_id=source_id, external_id='guid-1')
        assert by_external['id'] == content_id


@pytest.mark.asyncio
async def test_failure_bookkeeping(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source_id = await db.execute('register_source', slug='tech', url='https://example.com/feed')
        content_id = await db.execute('insert_content_item', source_id=source_id, external_id='g', fields=article_fields())

        count = await db.execute('record_processing_failure', content_id=content_id, status='failed',
                                 last_error='boom', error_kind='NETWORK_ERROR')
        assert count == 1
        item = await db.execute('get_content_item', content_id=content_id)
        assert item['processing_status'] == 'failed'
        assert item['last_error'] == 'boom'
        assert item['last_retry_at'] is not None

        candidates = await db.execute('list_processing_candidates')
        assert [c['id'] for c in candidates] == [content_id]

        await db.execute('mark_completed', content_id=content_id)
        item = await db.execute('get_content_item', content_id=content_id)
        assert item['processing_status'] == 'completed'
        assert item['retry_count'] == 0
        assert item['last_error'] is None
        assert await db.execute('list_processing_candidates') == []

        counts = await db.execute('count_items_by_status')
        assert counts['completed'] == 1
        assert counts['pending'] == 0


@pytest.mark.asyncio
async def test_invalid_status_is_rejected(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source_id = await db.execute('register_source', slug='tech', url='https://example.com/feed')
        content_id = await db.execute('insert_content_item', source_id=source_id, external_id='g', fields=article_fields())
        with pytest.raises(Exception):
            await db.execute('update_processing_status', content_id=content_id, status='exploded')


@pytest.mark.asyncio
async def test_summary_upsert_roundtrip(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        source_id = await db.execute('register_source', slug='tech', url='https://example.com/feed')
        content_id = await db.execute('insert_content_item', source_id=source_id, external_id='g', fields=article_fields())
        summary = {
            'headline': 'Headline',
            'tldr': 'Short version of things',
            'full_summary': 'Long version',
            'key_points': ['a', 'b'],
            'key_takeaways': [{'takeaway': 't', 'context': 'c', 'confidence': 0.8}],
            'related_ideas': [],
            'allied_trivia': [],
            'speakers': None,
            'topics_discussed': None,
            'strategy': 'short',
            'model_used': 'gpt-4o',
            'input_tokens': 10,
            'output_tokens': 5,
            'cost': 0.01,
            'processing_time_ms': 12,
            'quality_score': 70,
            'degraded': False,
        }
        first_id = await db.execute('upsert_summary', content_id=content_id, summary=summary)
        second_id = await db.execute('upsert_summary', content_id=content_id, summary=dict(summary, headline='Updated'))
        assert first_id == second_id
        assert await db.execute('count_summaries') == 1

        stored = await db.execute('get_summary', content_id=content_id)
        assert stored['headline'] == 'Updated'
        assert stored['key_points'] == ['a', 'b']
        assert stored['key_takeaways'][0]['takeaway'] == 't'
        assert stored['speakers'] is None
        assert stored['degraded'] is False


@pytest.mark.asyncio
async def test_usage_records_load_and_prune(tmp_path):
    async with DatabaseQueue(str(tmp_path / "pipeline.db")) as db:
        for ts in (100.0, 200.0, 300.0):
            await db.execute('insert_usage_record', timestamp=ts, model='gpt-4o', input_tokens=1,
                             output_tokens=1, cost=0.5, operation='x')
        rows = await db.execute('load_usage_records', since=150.0)
        assert [r['timestamp'] for r in rows] == [200.0, 300.0]
        assert await db.execute('prune_usage_records', before=250.0) == 2
        assert len(await db.execute('load_usage_records', since=0)) == 1


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    db = DatabaseQueue(str(tmp_path / "pipeline.db"))
    with pytest.raises(RuntimeError):
        await db.execute('list_sources')
