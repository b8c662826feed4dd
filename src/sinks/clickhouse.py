"""
ClickHouse Analytics Sink
Loads buffered event snapshots into ClickHouse as discrete load jobs
"""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Tuple
from uuid import uuid4

import structlog
from clickhouse_driver import Client

from src.models.record import ROW_COLUMNS
from src.sinks.base import AnalyticsSink, JobState, JobStatus, LoadJob, SinkError

logger = structlog.get_logger(__name__)

TIMESTAMP_COLUMNS = ("created_at", "processed_at", "failed_at")


def parse_row(line: str) -> Tuple[Any, ...]:
    """Convert one NDJSON artifact line into a tuple in table column order"""
    row = json.loads(line)
    for column in TIMESTAMP_COLUMNS:
        if row.get(column):
            row[column] = datetime.fromisoformat(row[column])
    return tuple(row.get(column) for column in ROW_COLUMNS)


class ClickHouseLoadJob(LoadJob):
    """
    Load job backed by an insert running on the sink's executor thread
    """

    def __init__(self, job_id: str, future: "asyncio.Future[int]"):
        super().__init__(job_id)
        self._future = future
        self._future.add_done_callback(self._on_done)

    def _on_done(self, future: "asyncio.Future[int]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug("ClickHouse load job finished with error", job_id=self.job_id, error=str(error))

    async def get_status(self) -> JobStatus:
        if not self._future.done():
            return JobStatus(state=JobState.RUNNING)

        if self._future.cancelled():
            return JobStatus(state=JobState.ERROR, errors=["load job cancelled"])

        error = self._future.exception()
        if error is not None:
            return JobStatus(state=JobState.ERROR, errors=[str(error)])

        return JobStatus(state=JobState.DONE, output_rows=self._future.result())


class ClickHouseLoadSink(AnalyticsSink):
    """
    Append-only ClickHouse sink

    The destination table is a MergeTree partitioned by day on created_at.
    Rows are never updated; retried loads may append duplicates.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 9000,
        database: str = "eventflow",
        table: str = "events",
        user: str = "default",
        password: str = "",
    ):
        """
        Initialize ClickHouse sink

        Args:
            host: ClickHouse host
            port: ClickHouse native port (9000)
            database: Database name
            table: Table name
            user: Username
            password: Password
        """
        super().__init__("clickhouse")
        self.host = host
        self.port = port
        self.database = database
        self.table = table
        self.user = user
        self.password = password
        self._client: Optional[Client] = None
        # clickhouse-driver clients are not thread-safe: one worker thread
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="clickhouse-load")

    @property
    def qualified_table(self) -> str:
        return f"{self.database}.{self.table}"

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def connect(self) -> None:
        """
        Establish connection to ClickHouse and create the table

        Raises:
            SinkError: If connection fails
        """
        try:
            self._client = Client(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
            )
            await self._run(self._client.execute, "SELECT 1")
            self.is_connected = True
            logger.info("Connected to ClickHouse", database=self.database)

        except Exception as e:
            self.increment_errors()
            raise SinkError(f"Failed to connect to ClickHouse: {e}") from e

        await self.ensure_table()

    async def disconnect(self) -> None:
        """Close ClickHouse connection"""
        if self._client:
            await self._run(self._client.disconnect)
            self.is_connected = False
            logger.info("Disconnected from ClickHouse")
        self._executor.shutdown(wait=False)

    async def ensure_table(self) -> None:
        if not self._client:
            raise SinkError("Not connected to ClickHouse")

        query = f"""
            CREATE TABLE IF NOT EXISTS {self.qualified_table} (
                id String,
                event_type String,
                payload String,
                metadata Nullable(String),
                status String,
                created_at DateTime64(3, 'UTC'),
                processed_at Nullable(DateTime64(3, 'UTC')),
                failed_at Nullable(DateTime64(3, 'UTC')),
                failure_reason Nullable(String),
                retry_count UInt32
            )
            ENGINE = MergeTree
            PARTITION BY toDate(created_at)
            ORDER BY (created_at, id)
        """

        try:
            await self._run(self._client.execute, query)
            logger.info("ClickHouse table ready", table=self.qualified_table)

        except Exception as e:
            self.increment_errors()
            raise SinkError(f"Failed to create ClickHouse table: {e}") from e

    def _load_artifact(self, artifact_path: str) -> int:
        with open(artifact_path, "r", encoding="utf-8") as f:
            rows: List[Tuple[Any, ...]] = [parse_row(line) for line in f if line.strip()]

        if not rows:
            return 0

        query = f"INSERT INTO {self.qualified_table} ({', '.join(ROW_COLUMNS)}) VALUES"
        self._client.execute(query, rows)
        return len(rows)

    async def submit_load_job(self, artifact_path: Path) -> LoadJob:
        if not self._client:
            raise SinkError("Not connected to ClickHouse")

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self._load_artifact, str(artifact_path))
        job = ClickHouseLoadJob(job_id=f"clickhouse-{uuid4()}", future=future)
        self.increment_jobs_submitted()

        logger.debug("ClickHouse load job submitted", job_id=job.job_id, artifact=str(artifact_path))
        return job

    async def health_check(self) -> bool:
        """
        Check ClickHouse health

        Returns:
            True if healthy, False otherwise
        """
        try:
            if not self._client:
                return False

            await self._run(self._client.execute, "SELECT 1")
            return True

        except Exception as e:
            logger.warning("ClickHouse health check failed", error=str(e))
            return False
