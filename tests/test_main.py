import time

import pytest

from main import PipelineOrchestrator
from models import DatabaseQueue


def test_status_reports_missing_database(tmp_path):
    status = PipelineOrchestrator(str(tmp_path / "absent.db")).check_status()
    assert status['checks']['database']['status'] == 'missing'
    assert status['overall_status'] == 'issues_detected'


@pytest.mark.asyncio
async def test_status_counts_items_and_spend(tmp_path):
    db_path = str(tmp_path / "pipeline.db")
    async with DatabaseQueue(db_path) as db:
        source_id = await db.execute('register_source', slug='tech', url='https://example.com/feed.xml')
        for i in range(3):
            await db.execute('insert_content_item', source_id=source_id, external_id=f'item-{i}',
                             fields={'content_type': 'article', 'title': f'Item {i}'})
        await db.execute('mark_completed', content_id=1)
        await db.execute('insert_usage_record', timestamp=time.time(), model='gpt-4o',
                         input_tokens=10, output_tokens=10, cost=0.25, operation='summarize-short')

    database = PipelineOrchestrator(db_path).check_status()['checks']['database']
    assert database['status'] == 'ok'
    assert database['total_items'] == 3
    assert database['items_by_status'] == {'completed': 1, 'pending': 2}
    assert database['active_sources'] == 1
    assert database['monthly_cost'] == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_submission_without_processing(tmp_path):
    transcript = tmp_path / "keynote.srt"
    transcript.write_text("1\n00:00:01,000 --> 00:00:03,000\nGood morning everyone\n", encoding='utf-8')
    orchestrator = PipelineOrchestrator(str(tmp_path / "pipeline.db"))
    try:
        content_id = await orchestrator.submit(str(transcript), url='https://video.example.com/k', process=False)
        item = await orchestrator.db.execute('get_content_item', content_id=content_id)
        assert item['title'] == 'keynote'
        assert item['extracted_text'] == 'Good morning everyone'
        assert item['processing_status'] == 'pending'

        pending = await orchestrator.list_pending()
        assert [p['id'] for p in pending] == [content_id]
    finally:
        await orchestrator.close()
