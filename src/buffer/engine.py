"""
Batch Buffer Engine
Accumulates event snapshots in memory and loads them into the analytics sink
as discrete load jobs, re-queuing the whole batch when a load fails
"""

import asyncio
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from src.models.record import BufferedRecord
from src.observability.metrics import (
    increment_buffer_flushes,
    observe_load_job_duration,
    set_buffer_depth,
)
from src.observability.tracing import trace_buffer_flush
from src.sinks.base import AnalyticsSink, JobStatus, LoadJob, LoadJobError, LoadJobTimeoutError
from src.sinks.retry import calculate_backoff

logger = structlog.get_logger(__name__)


@dataclass
class FlushResult:
    """
    Outcome of a flush attempt

    Attributes:
        attempted: False when nothing was flushed (empty buffer or a flush
            already in flight)
        succeeded: True when the load job completed without errors
        record_count: Records in the flushed batch
        job_id: Load job identifier, when one was submitted
        rows_loaded: Rows the sink reported as written
        error: Failure message; the batch was re-queued
    """

    attempted: bool
    succeeded: bool = False
    record_count: int = 0
    job_id: Optional[str] = None
    rows_loaded: Optional[int] = None
    error: Optional[str] = None


class BatchBufferEngine:
    """
    Owned in-memory buffer in front of an append-only analytics sink

    ``append`` only contends for the list handle; the swap-on-flush pattern
    lets appends land in a fresh list while a load job is in flight. At most
    one flush runs at a time. A failed flush prepends its batch back onto the
    live buffer so older records are retried before newer ones.
    """

    def __init__(
        self,
        sink: AnalyticsSink,
        batch_size: int = 10,
        poll_interval_seconds: float = 1.0,
        max_poll_attempts: int = 120,
        poll_backoff_multiplier: float = 1.0,
        max_poll_interval_seconds: Optional[float] = None,
        artifact_dir: Optional[str] = None,
    ):
        """
        Initialize the buffer

        Args:
            sink: Destination for load jobs
            batch_size: Buffer length that triggers a flush
            poll_interval_seconds: Delay between load job status polls
            max_poll_attempts: Polls before a load job counts as timed out
            poll_backoff_multiplier: Growth of the poll delay (1.0 = fixed)
            max_poll_interval_seconds: Cap on the poll delay
            artifact_dir: Directory for temporary load artifacts (system temp if None)
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be at least 1")

        self.sink = sink
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.poll_backoff_multiplier = poll_backoff_multiplier
        self.max_poll_interval_seconds = max_poll_interval_seconds
        self.artifact_dir = artifact_dir

        self._records: List[BufferedRecord] = []
        self._lock = threading.Lock()
        self._flushing = False
        self._idle = asyncio.Event()
        self._idle.set()

        self.flush_attempts = 0
        self.flush_failures = 0

        logger.info("Batch buffer initialized", sink=sink.name, batch_size=batch_size)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.size

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def pending_records(self) -> List[BufferedRecord]:
        """Copy of the records currently waiting in the buffer, oldest first"""
        with self._lock:
            return list(self._records)

    async def append(self, record: BufferedRecord) -> Optional[FlushResult]:
        """
        Add a record to the tail of the buffer

        Reaching ``batch_size`` awaits a flush attempt. If a flush is already
        in flight the attempt is skipped and the next trigger picks the
        records up.

        Returns:
            The flush result when the append triggered a flush, else None
        """
        with self._lock:
            self._records.append(record)
            depth = len(self._records)

        set_buffer_depth(depth)
        logger.debug("Record added to buffer", event_id=record.id, buffer_size=depth)

        if depth >= self.batch_size:
            return await self.flush_buffer()
        return None

    async def flush(self) -> FlushResult:
        """
        Force a flush regardless of the threshold

        Waits for an in-flight flush to finish first. Call during graceful
        shutdown; records left after a failed final flush are lost.
        """
        while True:
            await self._idle.wait()

            if self.size == 0:
                return FlushResult(attempted=False)

            logger.info("Flushing remaining records", buffer_size=self.size)
            result = await self.flush_buffer()
            if result.attempted:
                return result

    async def flush_buffer(self) -> FlushResult:
        """
        Swap out the buffer and load it as a single job

        Returns:
            FlushResult describing the attempt
        """
        with self._lock:
            if self._flushing or not self._records:
                return FlushResult(attempted=False)
            self._flushing = True
            batch = self._records
            self._records = []

        self._idle.clear()
        self.flush_attempts += 1
        set_buffer_depth(0)
        start_time = time.monotonic()

        try:
            with trace_buffer_flush(batch_size=len(batch), sink=self.sink.name):
                job_id, rows_loaded = await self._load(batch)

        except asyncio.CancelledError:
            self._requeue(batch)
            logger.warning("Flush cancelled, records re-queued", record_count=len(batch))
            raise

        except Exception as e:
            depth = self._requeue(batch)
            self.flush_failures += 1
            increment_buffer_flushes(sink=self.sink.name, result="failure")
            logger.error(
                "Failed to flush records, records re-queued",
                error=str(e),
                error_type=type(e).__name__,
                record_count=len(batch),
                buffer_size=depth,
            )
            return FlushResult(
                attempted=True,
                succeeded=False,
                record_count=len(batch),
                job_id=getattr(e, "job_id", None),
                error=str(e),
            )

        finally:
            with self._lock:
                self._flushing = False
            self._idle.set()

        duration = time.monotonic() - start_time
        increment_buffer_flushes(sink=self.sink.name, result="success", records=len(batch))
        observe_load_job_duration(sink=self.sink.name, duration_seconds=duration)
        self.sink.increment_rows_loaded(rows_loaded)

        logger.info(
            "Records flushed via load job",
            record_count=len(batch),
            rows_loaded=rows_loaded,
            job_id=job_id,
            duration_seconds=round(duration, 3),
            event_ids=[r.id for r in batch[:5]],
        )
        return FlushResult(
            attempted=True,
            succeeded=True,
            record_count=len(batch),
            job_id=job_id,
            rows_loaded=rows_loaded,
        )

    def _requeue(self, batch: List[BufferedRecord]) -> int:
        with self._lock:
            self._records = batch + self._records
            depth = len(self._records)
        set_buffer_depth(depth)
        return depth

    async def _load(self, batch: List[BufferedRecord]) -> Tuple[str, int]:
        await self.sink.ensure_connected()
        artifact = self._create_artifact()
        write = asyncio.ensure_future(asyncio.to_thread(self._write_artifact, artifact, batch))

        try:
            await asyncio.shield(write)
            job = await self.sink.submit_load_job(artifact)
            status = await self._wait_for_job(job)

            if not status.succeeded:
                errors = status.errors or [f"job ended in state {status.state.value}"]
                self.sink.increment_errors()
                raise LoadJobError(job.job_id, errors)

            rows_loaded = status.output_rows if status.output_rows is not None else len(batch)
            return job.job_id, rows_loaded

        finally:
            if write.done():
                self._remove_artifact(artifact)
            else:
                # Cancelled mid-write: the thread keeps running, remove the file once it returns
                write.add_done_callback(lambda _: self._remove_artifact(artifact))

    def _create_artifact(self) -> Path:
        fd, path = tempfile.mkstemp(prefix="eventflow-records-", suffix=".json", dir=self.artifact_dir)
        os.close(fd)
        return Path(path)

    def _write_artifact(self, path: Path, batch: List[BufferedRecord]) -> None:
        """Write the batch as newline-delimited JSON, in insertion order"""
        with path.open("w", encoding="utf-8") as f:
            f.write("\n".join(record.to_json_line() for record in batch))
            f.write("\n")

    def _remove_artifact(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove load artifact", error=str(e), artifact=str(path))

    async def _wait_for_job(self, job: LoadJob) -> JobStatus:
        """
        Poll a load job until it reaches a terminal state

        Raises:
            LoadJobTimeoutError: If the job is still running after max_poll_attempts polls
        """
        status = None

        for attempt in range(1, self.max_poll_attempts + 1):
            status = await job.get_status()
            if status.state.is_terminal:
                return status

            if attempt < self.max_poll_attempts:
                delay = calculate_backoff(
                    attempt=attempt,
                    base_delay=self.poll_interval_seconds,
                    multiplier=self.poll_backoff_multiplier,
                    max_delay=self.max_poll_interval_seconds,
                    jitter=False,
                )
                await asyncio.sleep(delay)

        raise LoadJobTimeoutError(job.job_id, status.state.value, self.max_poll_attempts)
