#!/usr/bin/env python3
"""
Database models and operations for the report pipeline.

All SQLite access goes through a single ``DatabaseQueue`` worker so callers on
the event loop never share a connection. Operations are plain synchronous
methods dispatched by name via ``await db.execute("operation", **params)``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql and run migrations."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='report_requests'")
        exists = cursor.fetchone() is not None
        if not exists:
            logger.info("Database is new or empty. Initializing schema.")
        # Schema statements are idempotent (IF NOT EXISTS)
        cursor.executescript(_read_schema_file())
        conn.commit()
        if exists:
            _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()
    try:
        # Migration 1: optimistic concurrency column on report_requests
        cursor.execute("PRAGMA table_info(report_requests)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'version' not in columns:
            logger.info("Adding version column to report_requests table")
            cursor.execute("ALTER TABLE report_requests ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
            conn.commit()
            logger.info("Migration completed: added version column")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure single-connection access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready: Optional[Event] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self._ready = Event()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise RuntimeError(f"Database worker failed to open {self.db_path}")
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

        # Release anyone still waiting so they do not hang
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            if self.conn:
                self.conn.close()
            self.conn = None
            return
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                result: Dict[str, Any] = {"error": RuntimeError(f"{operation_name} was interrupted")}
                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith("_"):
                        result = {"error": LookupError(f"Unknown operation: {operation_name}")}
                    else:
                        result = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    result = {"error": e}
                finally:
                    # Callers cancelled while waiting have already dropped their event
                    event = self.events.get(operation_id)
                    if event is not None:
                        self.results[operation_id] = result
                        event.set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

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
        """Execute a database operation and re-raise its exception, if any."""
        if not self.running:
            raise RuntimeError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Report request (dedup registry) operations
    def get_report_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM report_requests WHERE id = ?", (request_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def insert_report_request(self, request_id: str, partition_key: str, platform_type: str, target: str) -> bool:
        """Insert a brand-new record with count 1.

        Returns False when the id already exists (conditional insert lost the race).
        """
        now = int(time())
        try:
            self.conn.execute(
                """
                INSERT INTO report_requests
                    (id, partition_key, platform_type, target, subscriber_count, created_at, updated_at, version)
                VALUES (?, ?, ?, ?, 1, ?, ?, 1)
                """,
                (request_id, partition_key, platform_type, target, now, now),
            )
            self.conn.commit()
            return True
        except IntegrityError:
            self.conn.rollback()
            return False

    def update_subscriber_count(self, request_id: str, subscriber_count: int, expected_version: int) -> bool:
        """Compare-and-swap the subscriber count. False means the version moved on."""
        cursor = self.conn.execute(
            """
            UPDATE report_requests
               SET subscriber_count = ?, updated_at = ?, version = version + 1
             WHERE id = ? AND version = ?
            """,
            (subscriber_count, int(time()), request_id, expected_version),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def delete_report_request(self, request_id: str, expected_version: int) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM report_requests WHERE id = ? AND version = ?",
            (request_id, expected_version),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def list_report_requests(self, partition_key: Optional[str] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if partition_key:
            cursor.execute(
                "SELECT * FROM report_requests WHERE partition_key = ? ORDER BY id",
                (partition_key,),
            )
        else:
            cursor.execute("SELECT * FROM report_requests ORDER BY partition_key, id")
        return [dict(row) for row in cursor.fetchall()]

    def count_report_requests(self) -> Dict[str, int]:
        cursor = self.conn.execute(
            "SELECT partition_key, COUNT(*) AS n FROM report_requests GROUP BY partition_key"
        )
        return {row["partition_key"]: row["n"] for row in cursor.fetchall()}

    # Admin report config operations
    def list_admin_configs(self, active_only: bool = True) -> List[Dict[str, Any]]:
        query = "SELECT * FROM admin_report_configs"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY name COLLATE NOCASE, id"
        return [dict(row) for row in self.conn.execute(query).fetchall()]

    def get_admin_config(self, config_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM admin_report_configs WHERE id = ?", (config_id,)).fetchone()
        return dict(row) if row else None

    def create_admin_config(
        self,
        config_id: str,
        name: str,
        email_recipient: str,
        platform_type: str,
        target: str,
        active: bool = True,
        created_by: Optional[str] = None,
    ) -> str:
        self.conn.execute(
            """
            INSERT INTO admin_report_configs
                (id, name, email_recipient, platform_type, target, active, created_at, created_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (config_id, name, email_recipient, platform_type, target, 1 if active else 0, int(time()), created_by),
        )
        self.conn.commit()
        return config_id

    def mark_admin_config_processed(self, config_id: str, processed_at: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE admin_report_configs SET last_processed_at = ? WHERE id = ?",
            (processed_at, config_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    # Report job operations
    def create_job(self, job_id: str, request_id: str, status: str) -> str:
        self.conn.execute(
            "INSERT INTO report_jobs (id, request_id, status, created_at) VALUES (?, ?, ?, ?)",
            (job_id, request_id, status, int(time())),
        )
        self.conn.commit()
        return job_id

    def update_job(
        self,
        job_id: str,
        status: str,
        report_id: Optional[str] = None,
        error: Optional[str] = None,
        finished: bool = False,
    ) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE report_jobs
               SET status = ?, report_id = COALESCE(?, report_id), error = ?,
                   finished_at = CASE WHEN ? THEN ? ELSE finished_at END
             WHERE id = ?
            """,
            (status, report_id, error, 1 if finished else 0, int(time()), job_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM report_jobs WHERE id = ?", (job_id,)).fetchone()
        return dict(row) if row else None

