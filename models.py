#!/usr/bin/env python3
"""
Database models and operations for the content pipeline.

All SQLite access goes through `DatabaseQueue`: callers `await
db.execute('operation_name', **params)` and a single worker task runs the
same-named synchronous method against one connection, so operations are
serialized without any locking in the callers.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

# Import config for unified logging
from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

PROCESSING_STATUSES = ("pending", "processing", "completed", "failed", "skipped", "permanently_failed")
CONTENT_TYPES = ("article", "podcast_episode", "video")
DEFAULT_SUMMARY_TYPE = "detailed"

# Columns a caller may change through update_content_item
_UPDATABLE_CONTENT_COLUMNS = {
    "content_type", "title", "url", "author", "published_at", "image_url",
    "raw_text", "extracted_text", "content_hash", "word_count",
    "audio_url", "audio_duration_seconds", "transcript_url",
    "processing_status", "retry_count", "last_retry_at", "last_error", "error_kind",
}

_JSON_SUMMARY_COLUMNS = ("key_points", "key_takeaways", "related_ideas", "allied_trivia", "speakers", "topics_discussed")


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='content_items'")
        items_table_exists = cursor.fetchone() is not None

        if not items_table_exists:
            logger.info("Database is new or empty. Initializing schema.")

            # Read and execute schema from external file
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
            # Run any necessary migrations
            _run_migrations(conn)

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by earlier versions up to the current schema."""
    cursor = conn.cursor()

    try:
        # Migration 1: retry bookkeeping on content items
        cursor.execute("PRAGMA table_info(content_items)")
        columns = [column[1] for column in cursor.fetchall()]
        for column, ddl in (
            ("error_kind", "ALTER TABLE content_items ADD COLUMN error_kind TEXT"),
            ("last_retry_at", "ALTER TABLE content_items ADD COLUMN last_retry_at INTEGER"),
            ("transcript_url", "ALTER TABLE content_items ADD COLUMN transcript_url TEXT"),
        ):
            if column not in columns:
                logger.info(f"Adding {column} column to content_items table")
                cursor.execute(ddl)
                conn.commit()

        # Migration 2: degraded flag on summaries
        cursor.execute("PRAGMA table_info(summaries)")
        summary_columns = [column[1] for column in cursor.fetchall()]
        if summary_columns and 'degraded' not in summary_columns:
            logger.info("Adding degraded column to summaries table")
            cursor.execute("ALTER TABLE summaries ADD COLUMN degraded INTEGER NOT NULL DEFAULT 0")
            conn.commit()

        # Migration 3: persisted usage ledger
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='usage_records'")
        if cursor.fetchone() is None:
            logger.info("Creating usage_records table")
            cursor.execute("""
                CREATE TABLE usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    cost REAL NOT NULL DEFAULT 0,
                    operation TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_usage_records_timestamp ON usage_records(timestamp)")
            conn.commit()
            logger.info("Migration completed: created usage_records table")

    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        # Check if file exists and is accessible before attempting to read it
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        # Check if we have read permissions
        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        # Check file size to prevent reading extremely large files
        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _summary_row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    data = _row_to_dict(row)
    if data is None:
        return None
    for column in _JSON_SUMMARY_COLUMNS:
        raw = data.get(column)
        if raw is None:
            continue
        try:
            data[column] = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid JSON in summaries.{column} for content {data.get('content_id')}")
            data[column] = []
    data["degraded"] = bool(data.get("degraded"))
    return data


class DatabaseQueue:
    """A queue for database operations to ensure thread safety."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any callers still waiting on results
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        db_exists = path.isfile(self.db_path)
        if not db_exists:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        # Connect to database in this thread
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        # Initialize tables using external schema
        initialize_database(self.conn)

        while self.running:
            try:
                # Get the next operation from the queue with timeout
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    # Execute the appropriate database operation
                    method = getattr(self, operation_name, None) if not operation_name.startswith("_") else None
                    if callable(method):
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    # Signal that the operation is complete
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise RuntimeError("Database worker is not running; call start() first")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before completing {operation_name}")
            if "error" in result:
                raise Exception(result["error"])

            return result["result"]
        finally:
            # Clean up the event to prevent memory leaks
            self.events.pop(operation_id, None)

    # Source Operations
    def register_source(self, slug: str, url: str, source_type: str = "rss", title: Optional[str] = None) -> Optional[int]:
        """Insert a source if new, refresh its URL/type otherwise; returns the source id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO sources (slug, url, source_type, title, last_fetched) VALUES (?, ?, ?, ?, 0)",
                (slug, url, source_type, title)
            )
            cursor.execute(
                "UPDATE sources SET url = ?, source_type = ?, title = COALESCE(title, ?) WHERE slug = ?",
                (url, source_type, title, slug)
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM sources WHERE slug = ?", (slug,))
            row = cursor.fetchone()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error registering source {slug}: {e}")
            return None

    def get_source(self, source_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
        return _row_to_dict(cursor.fetchone())

    def get_source_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM sources WHERE slug = ?", (slug,))
        return _row_to_dict(cursor.fetchone())

    def list_sources(self, active_only: bool = False) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        query = "SELECT * FROM sources"
        if active_only:
            query += " WHERE active = 1"
        cursor.execute(query + " ORDER BY slug")
        return [dict(row) for row in cursor.fetchall()]

    def update_source_fetched(
        self,
        source_id: int,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        title: Optional[str] = None,
    ) -> bool:
        """Record a successful fetch: timestamp, cache validators, and a cleared error state."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE sources
                SET last_fetched = ?, error_count = 0, last_error = NULL,
                    etag = COALESCE(?, etag), last_modified = COALESCE(?, last_modified),
                    title = COALESCE(?, title)
                WHERE id = ?
                """,
                (int(time()), etag, last_modified, title, source_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating fetch state for source ID {source_id}: {e}")
            return False

    def update_source_error(self, source_id: int, error_count: int, last_error: Optional[str] = None, active: bool = True) -> bool:
        """Update error tracking for a source (and deactivate it when asked)."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE sources SET error_count = ?, last_error = ?, active = ?, last_fetched = ? WHERE id = ?",
                (error_count, last_error, 1 if active else 0, int(time()), source_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating error info for source ID {source_id}: {e}")
            return False

    # Content Item Operations
    def get_content_item(self, content_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM content_items WHERE id = ?", (content_id,))
        return _row_to_dict(cursor.fetchone())

    def get_content_item_by_external_id(self, source_id: int, external_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM content_items WHERE source_id = ? AND external_id = ?",
            (source_id, external_id)
        )
        return _row_to_dict(cursor.fetchone())

    def insert_content_item(self, source_id: int, external_id: str, fields: Dict[str, Any]) -> Optional[int]:
        """Insert a new content item in `pending`; returns its id (None if it already existed)."""
        columns = {k: v for k, v in fields.items() if k in _UPDATABLE_CONTENT_COLUMNS}
        columns.setdefault("processing_status", "pending")
        now = int(time())
        names = ["source_id", "external_id", *columns.keys(), "created_at", "updated_at"]
        values = [source_id, external_id, *columns.values(), now, now]
        placeholders = ",".join("?" for _ in names)
        cursor = self.conn.cursor()
        cursor.execute(
            f"INSERT OR IGNORE INTO content_items ({','.join(names)}) VALUES ({placeholders})",
            values
        )
        self.conn.commit()
        return cursor.lastrowid if cursor.rowcount > 0 else None

    def update_content_item(self, content_id: int, fields: Dict[str, Any]) -> bool:
        """Update whitelisted columns of a content item."""
        columns = {k: v for k, v in fields.items() if k in _UPDATABLE_CONTENT_COLUMNS}
        unknown = set(fields) - set(columns)
        if unknown:
            logger.warning(f"Ignoring unknown content item fields: {sorted(unknown)}")
        if not columns:
            return False
        if "processing_status" in columns and columns["processing_status"] not in PROCESSING_STATUSES:
            raise ValueError(f"Invalid processing status: {columns['processing_status']}")
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = self.conn.cursor()
        cursor.execute(
            f"UPDATE content_items SET {assignments}, updated_at = ? WHERE id = ?",
            [*columns.values(), int(time()), content_id]
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_processing_status(
        self,
        content_id: int,
        status: str,
        last_error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> bool:
        if status not in PROCESSING_STATUSES:
            raise ValueError(f"Invalid processing status: {status}")
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE content_items SET processing_status = ?, last_error = ?, error_kind = ?, updated_at = ? WHERE id = ?",
            (status, last_error, error_kind, int(time()), content_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def mark_completed(self, content_id: int) -> bool:
        """Terminal success: clears retry bookkeeping."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE content_items
            SET processing_status = 'completed', retry_count = 0, last_retry_at = NULL,
                last_error = NULL, error_kind = NULL, updated_at = ?
            WHERE id = ?
            """,
            (int(time()), content_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def record_processing_failure(self, content_id: int, status: str, last_error: str, error_kind: Optional[str] = None) -> int:
        """Store a failed attempt and bump the retry counter; returns the new retry count."""
        if status not in PROCESSING_STATUSES:
            raise ValueError(f"Invalid processing status: {status}")
        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE content_items
            SET processing_status = ?, retry_count = retry_count + 1, last_retry_at = ?,
                last_error = ?, error_kind = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, now, last_error, error_kind, now, content_id)
        )
        self.conn.commit()
        cursor.execute("SELECT retry_count FROM content_items WHERE id = ?", (content_id,))
        row = cursor.fetchone()
        return row['retry_count'] if row else 0

    def reset_retry_state(self, content_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE content_items SET retry_count = 0, last_retry_at = NULL, updated_at = ? WHERE id = ?",
            (int(time()), content_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def list_processing_candidates(self, source_id: Optional[int] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Pending and failed items, newest first (retry eligibility is decided by the caller)."""
        query = """
            SELECT id, source_id, title, content_type, processing_status, retry_count, last_retry_at,
                   last_error, error_kind, word_count
            FROM content_items
            WHERE processing_status IN ('pending', 'failed')
        """
        params: List[Any] = []
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        query += " ORDER BY COALESCE(published_at, created_at) DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def count_items_by_status(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT processing_status, COUNT(*) AS n FROM content_items GROUP BY processing_status")
        counts = {status: 0 for status in PROCESSING_STATUSES}
        for row in cursor.fetchall():
            counts[row['processing_status']] = row['n']
        return counts

    # Summary Operations
    def get_summary(self, content_id: int, summary_type: str = DEFAULT_SUMMARY_TYPE) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM summaries WHERE content_id = ? AND summary_type = ?",
            (content_id, summary_type)
        )
        return _summary_row_to_dict(cursor.fetchone())

    def count_summaries(self, content_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        if content_id is None:
            cursor.execute("SELECT COUNT(*) FROM summaries")
        else:
            cursor.execute("SELECT COUNT(*) FROM summaries WHERE content_id = ?", (content_id,))
        return cursor.fetchone()[0]

    def delete_summaries(self, content_id: int) -> int:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM summaries WHERE content_id = ?", (content_id,))
        self.conn.commit()
        return cursor.rowcount

    def upsert_summary(self, content_id: int, summary: Dict[str, Any], summary_type: str = DEFAULT_SUMMARY_TYPE) -> Optional[int]:
        """Insert or replace the summary for (content_id, summary_type); returns the row id."""
        record = dict(summary)
        for column in _JSON_SUMMARY_COLUMNS:
            value = record.get(column)
            record[column] = json.dumps(value) if value is not None else None
        for column in ("key_points", "key_takeaways", "related_ideas", "allied_trivia"):
            if record[column] is None:
                record[column] = "[]"
        now = int(time())
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO summaries (
                    content_id, summary_type, headline, tldr, full_summary,
                    key_points, key_takeaways, related_ideas, allied_trivia, speakers, topics_discussed,
                    strategy, model_used, input_tokens, output_tokens, cost,
                    processing_time_ms, quality_score, degraded, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(content_id, summary_type) DO UPDATE SET
                    headline = excluded.headline,
                    tldr = excluded.tldr,
                    full_summary = excluded.full_summary,
                    key_points = excluded.key_points,
                    key_takeaways = excluded.key_takeaways,
                    related_ideas = excluded.related_ideas,
                    allied_trivia = excluded.allied_trivia,
                    speakers = excluded.speakers,
                    topics_discussed = excluded.topics_discussed,
                    strategy = excluded.strategy,
                    model_used = excluded.model_used,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    cost = excluded.cost,
                    processing_time_ms = excluded.processing_time_ms,
                    quality_score = excluded.quality_score,
                    degraded = excluded.degraded,
                    updated_at = excluded.updated_at
                """,
                (
                    content_id, summary_type,
                    record["headline"], record["tldr"], record["full_summary"],
                    record["key_points"], record["key_takeaways"], record["related_ideas"], record["allied_trivia"],
                    record["speakers"], record["topics_discussed"],
                    record.get("strategy"), record.get("model_used"),
                    int(record.get("input_tokens") or 0), int(record.get("output_tokens") or 0),
                    float(record.get("cost") or 0.0),
                    int(record.get("processing_time_ms") or 0), int(record.get("quality_score") or 0),
                    1 if record.get("degraded") else 0,
                    now, now,
                )
            )
            self.conn.commit()
            cursor.execute(
                "SELECT id FROM summaries WHERE content_id = ? AND summary_type = ?",
                (content_id, summary_type)
            )
            row = cursor.fetchone()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error saving summary for content ID {content_id}: {e}")
            return None

    # Usage Ledger Operations
    def insert_usage_record(
        self,
        timestamp: float,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        operation: str,
    ) -> Optional[int]:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO usage_records (timestamp, model, input_tokens, output_tokens, cost, operation) VALUES (?, ?, ?, ?, ?, ?)",
            (timestamp, model, input_tokens, output_tokens, cost, operation)
        )
        self.conn.commit()
        return cursor.lastrowid

    def load_usage_records(self, since: float) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT timestamp, model, input_tokens, output_tokens, cost, operation FROM usage_records "
            "WHERE timestamp >= ? ORDER BY timestamp",
            (since,)
        )
        return [dict(row) for row in cursor.fetchall()]

    def prune_usage_records(self, before: float) -> int:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM usage_records WHERE timestamp < ?", (before,))
        self.conn.commit()
        deleted = cursor.rowcount
        if deleted:
            logger.info(f"Pruned {deleted} usage records")
        return deleted
