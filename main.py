#!/usr/bin/env python3
"""
Content Pipeline Orchestrator

Runs the processing pipeline in the correct sequence:
1. Sync configured RSS/podcast sources into content items
2. Transcribe (when needed) and summarize pending items

Also exposes status/pending listings, manual retries and transcript
submission for one-off runs from the command line.
"""

import argparse
import asyncio
import sqlite3
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import config, get_logger, mask_secret
from fetcher import FeedFetcher
from ingest import IngestionDeduper
from llm_client import GenerationClient
from models import DatabaseQueue
from processor import ProcessingStateMachine
from summarizer import SummarizationOrchestrator
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("content-pipeline-orchestrator")


class PipelineOrchestrator:
    """Orchestrates source sync and content processing."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.db: Optional[DatabaseQueue] = None
        self.fetcher: Optional[FeedFetcher] = None
        self.processor: Optional[ProcessingStateMachine] = None

    async def open(self) -> None:
        """Start the database worker and wire the shared components together."""
        if self.db is not None:
            return
        logger.debug(f"Configuration: {config.get_config_summary()}")
        self.db = DatabaseQueue(self.db_path)
        await self.db.start()
        self.fetcher = FeedFetcher(self.db)
        await self.fetcher.initialize()
        client = GenerationClient(db=self.db)
        self.processor = ProcessingStateMachine(self.db, SummarizationOrchestrator(client), fetcher=self.fetcher)
        await self.processor.load_usage_ledger()

    async def close(self) -> None:
        if self.fetcher is not None:
            await self.fetcher.close(close_db=False)
            self.fetcher = None
        if self.db is not None:
            await self.db.stop()
            self.db = None
        self.processor = None

    async def run_sync(self, only_slugs: Optional[List[str]] = None, force: bool = False) -> bool:
        """Run the source sync step."""
        logger.info("📡 Syncing sources")
        try:
            return await self._run_sync_impl(only_slugs, force)
        except Exception as e:
            logger.error(f"❌ Source sync failed: {e}")
            return False

    @trace_span(
        "run_sync",
        tracer_name="orchestrator",
        attr_from_args=lambda self, only_slugs=None, force=False: {
            "feed.only_slugs": ",".join(only_slugs) if only_slugs else "",
            "feed.force": bool(force),
        },
    )
    async def _run_sync_impl(self, only_slugs: Optional[List[str]] = None, force: bool = False) -> bool:
        await self.open()
        results = await self.fetcher.sync_all_sources(only_slugs=only_slugs, force=force or config.FORCE_REFRESH_FEEDS)
        failed = [r.slug for r in results if not r.success]
        if failed:
            logger.warning(f"⚠️ Sources with errors: {', '.join(failed)}")
        logger.info("✅ Source sync completed")
        return True

    async def run_processing(self, limit: Optional[int] = None, source_slug: Optional[str] = None) -> bool:
        """Run the processing step over eligible items."""
        logger.info("🧠 Processing pending items")
        try:
            return await self._run_processing_impl(limit, source_slug)
        except Exception as e:
            logger.error(f"❌ Processing failed: {e}")
            return False

    @trace_span(
        "run_processing",
        tracer_name="orchestrator",
        attr_from_args=lambda self, limit=None, source_slug=None: {
            "processing.limit": int(limit or 0),
            "source.slug": source_slug or "",
        },
    )
    async def _run_processing_impl(self, limit: Optional[int] = None, source_slug: Optional[str] = None) -> bool:
        await self.open()
        source_id = await self._source_id(source_slug)
        if source_slug and source_id is None:
            logger.error(f"❌ Unknown source: {source_slug}")
            return False

        content_ids = await self.processor.list_pending(limit=limit or config.PROCESSING_BATCH_SIZE, source_id=source_id)
        if not content_ids:
            logger.info("ℹ️ Nothing to process")
            return True
        results = await self.processor.process_batch(content_ids)
        stats = self.processor.client.get_usage_stats()
        logger.info(
            f"✅ Processed {len(results)} items; spend today ${stats['daily_usage']:.2f}, "
            f"this month ${stats['monthly_usage']:.2f}"
        )
        return True

    async def _source_id(self, slug: Optional[str]) -> Optional[int]:
        if not slug:
            return None
        source = await self.db.execute('get_source_by_slug', slug=slug)
        return source['id'] if source else None

    @trace_span(
        "pipeline.run",
        tracer_name="orchestrator",
        attr_from_args=lambda self, only_slugs=None, limit=None, force=False: {
            "feed.only_slugs": ",".join(only_slugs) if only_slugs else "",
        },
    )
    async def run_pipeline(self, only_slugs: Optional[List[str]] = None, limit: Optional[int] = None, force: bool = False) -> bool:
        """Sync sources, then process what became eligible.

        Returns:
            True if all steps succeeded, False otherwise
        """
        logger.info("🚀 Starting content pipeline")
        logger.info(f"Paths: DATABASE_PATH={self.db_path}")
        start_time = time.time()
        try:
            if not await self.run_sync(only_slugs=only_slugs, force=force):
                logger.error("💀 Critical step failed, stopping pipeline")
                return False

            if not await self.run_processing(limit=limit):
                logger.error("💥 Critical step failed, stopping pipeline")
                return False
        finally:
            await self.close()

        elapsed_time = time.time() - start_time
        logger.info(f"🎉 Pipeline completed successfully in {elapsed_time:.1f}s")
        return True

    async def submit(
        self,
        transcript_path: str,
        title: Optional[str] = None,
        url: Optional[str] = None,
        process: bool = True,
    ) -> Optional[int]:
        """Store a transcript file as a video item and optionally summarize it right away."""
        text = Path(transcript_path).read_text(encoding='utf-8')
        await self.open()
        ingester = IngestionDeduper(self.db)
        outcome = await ingester.ingest_submission(text, title=title or Path(transcript_path).stem, url=url)
        if outcome.content_id is None:
            logger.error(f"❌ Could not store submission from {transcript_path}")
            return None
        logger.info(f"📥 Submission stored as item {outcome.content_id} ({outcome.action})")
        if process:
            result = await self.processor.process_item(outcome.content_id)
            logger.info(f"Item {outcome.content_id}: {result.status} {result.error or ''}".rstrip())
        return outcome.content_id

    async def retry(self, content_id: int) -> bool:
        await self.open()
        result = await self.processor.retry_summarization(content_id)
        if result.success:
            logger.info(f"✅ Item {content_id} summarized")
        else:
            logger.error(f"❌ Item {content_id} {result.status or 'failed'}: {result.error}")
        return result.success

    async def list_pending(self, limit: int = 10, source_slug: Optional[str] = None) -> List[dict]:
        await self.open()
        source_id = await self._source_id(source_slug)
        content_ids = await self.processor.list_pending(limit=limit, source_id=source_id)
        items = []
        for content_id in content_ids:
            item = await self.db.execute('get_content_item', content_id=content_id)
            if item:
                items.append(item)
        return items

    def check_status(self) -> dict:
        """Check the current status of the pipeline database.

        Returns:
            Dictionary with status information
        """
        logger.info("📊 Checking system status")

        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {},
        }

        try:
            db_path = Path(self.db_path)
            if db_path.exists():
                conn = sqlite3.connect(db_path)
                try:
                    cursor = conn.cursor()
                    cursor.execute("SELECT processing_status, COUNT(*) FROM content_items GROUP BY processing_status")
                    by_status = {row[0]: row[1] for row in cursor.fetchall()}

                    cursor.execute("SELECT COUNT(*) FROM summaries")
                    total_summaries = cursor.fetchone()[0]

                    cursor.execute("SELECT COUNT(*), SUM(CASE WHEN active = 1 THEN 1 ELSE 0 END) FROM sources")
                    total_sources, active_sources = cursor.fetchone()

                    month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
                    cursor.execute(
                        "SELECT COALESCE(SUM(cost), 0) FROM usage_records WHERE timestamp >= ?",
                        (month_start.timestamp(),),
                    )
                    monthly_cost = cursor.fetchone()[0]
                finally:
                    conn.close()

                total_items = sum(by_status.values())
                status['checks']['database'] = {
                    'status': 'ok',
                    'total_items': total_items,
                    'items_by_status': by_status,
                    'total_summaries': total_summaries,
                    'total_sources': total_sources,
                    'active_sources': active_sources or 0,
                    'monthly_cost': float(monthly_cost or 0),
                    'summarization_rate': f"{(total_summaries/total_items*100):.1f}%" if total_items > 0 else "0%",
                }
            else:
                status['checks']['database'] = {
                    'status': 'missing',
                    'message': 'Database file not found',
                }
        except Exception as e:
            status['checks']['database'] = {
                'status': 'error',
                'message': str(e),
            }

        status['checks']['generation'] = {
            'configured': bool(config.OPENAI_API_KEY or config.AZURE_ENDPOINT),
            'api_key': mask_secret(config.OPENAI_API_KEY),
            'model': config.OPENAI_MODEL,
            'monthly_budget': config.OPENAI_MONTHLY_BUDGET,
        }

        all_ok = (
            status['checks']['database'].get('status') == 'ok' and
            status['checks']['generation']['configured']
        )
        status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
        return status

    def print_status(self, status: dict):
        """Print formatted status information."""
        print("\n📊 Content Pipeline Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        db = status['checks']['database']
        if db['status'] == 'ok':
            print("\n💾 Database:")
            print(f"   📡 Sources: {db['active_sources']} active of {db['total_sources']}")
            print(f"   📰 Items: {db['total_items']}")
            for name, count in sorted(db['items_by_status'].items()):
                print(f"      {name}: {count}")
            print(f"   📝 Summaries: {db['total_summaries']} ({db['summarization_rate']})")
            print(f"   💰 Spend this month: ${db['monthly_cost']:.2f}")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

        generation = status['checks']['generation']
        print("\n🧠 Generation:")
        print(f"   🔑 Configured: {'yes' if generation['configured'] else 'no'}")
        print(f"   🗝️ API key: {generation['api_key']}")
        print(f"   🤖 Model: {generation['model']}")
        print(f"   💵 Monthly budget: ${generation['monthly_budget']:.2f}")


async def _run_and_close(orchestrator: PipelineOrchestrator, coro):
    try:
        return await coro
    finally:
        await orchestrator.close()


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Content Pipeline Orchestrator')
    parser.add_argument('mode', choices=['run', 'sync', 'process', 'status', 'pending', 'retry', 'submit'],
                        help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Content id for retry, transcript file for submit')
    parser.add_argument('--only', type=str,
                        help='Comma-separated source slugs to sync')
    parser.add_argument('--source', type=str,
                        help='Only process items from this source slug')
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum number of items to process or list')
    parser.add_argument('--force', action='store_true',
                        help='Ignore fetch intervals when syncing')
    parser.add_argument('--title', type=str,
                        help='Title for a submitted transcript')
    parser.add_argument('--url', type=str,
                        help='Source URL for a submitted transcript')
    parser.add_argument('--no-process', action='store_true',
                        help='Store a submission without summarizing it')
    parser.add_argument('--database', type=str,
                        help='Database path (defaults to DATABASE_PATH)')

    args = parser.parse_args()
    only_slugs = [s.strip() for s in args.only.split(',') if s.strip()] if args.only else None

    orchestrator = PipelineOrchestrator(args.database)

    try:
        if args.mode == 'run':
            success = asyncio.run(orchestrator.run_pipeline(only_slugs=only_slugs, limit=args.limit, force=args.force))
            sys.exit(0 if success else 1)

        elif args.mode == 'sync':
            success = asyncio.run(_run_and_close(orchestrator, orchestrator.run_sync(only_slugs=only_slugs, force=args.force)))
            sys.exit(0 if success else 1)

        elif args.mode == 'process':
            success = asyncio.run(_run_and_close(orchestrator, orchestrator.run_processing(limit=args.limit, source_slug=args.source)))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = orchestrator.check_status()
            orchestrator.print_status(status)

        elif args.mode == 'pending':
            items = asyncio.run(_run_and_close(orchestrator, orchestrator.list_pending(limit=args.limit or 10, source_slug=args.source)))
            print(f"\n⏳ {len(items)} items eligible for processing")
            for item in items:
                retries = f" (retry {item['retry_count']})" if item.get('retry_count') else ""
                print(f"   [{item['id']}] {item['content_type']:<15} {item['processing_status']:<8} {item.get('title')}{retries}")

        elif args.mode == 'retry':
            if not args.target or not args.target.isdigit():
                parser.error("retry needs a numeric content id")
            success = asyncio.run(_run_and_close(orchestrator, orchestrator.retry(int(args.target))))
            sys.exit(0 if success else 1)

        elif args.mode == 'submit':
            if not args.target:
                parser.error("submit needs a transcript file")
            content_id = asyncio.run(_run_and_close(
                orchestrator,
                orchestrator.submit(args.target, title=args.title, url=args.url, process=not args.no_process),
            ))
            sys.exit(0 if content_id is not None else 1)

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
