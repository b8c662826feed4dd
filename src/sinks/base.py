"""
Base Analytics Sink Interface
Abstract base classes for bulk-load destinations and their load jobs
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import structlog

logger = structlog.get_logger(__name__)


class SinkError(Exception):
    """Base exception for sink errors"""

    pass


class LoadJobError(SinkError):
    """Raised when a load job reports errors"""

    def __init__(self, job_id: str, errors: List[str]):
        super().__init__(f"Load job {job_id} failed: {errors}")
        self.job_id = job_id
        self.errors = errors


class LoadJobTimeoutError(SinkError):
    """Raised when a load job does not reach a terminal state within the polling budget"""

    def __init__(self, job_id: str, state: str, attempts: int):
        super().__init__(
            f"Load job {job_id} did not complete after {attempts} polls. State: {state}"
        )
        self.job_id = job_id
        self.state = state
        self.attempts = attempts


class JobState(str, Enum):
    """Lifecycle state of a load job"""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.ERROR)


@dataclass
class JobStatus:
    """
    Snapshot of a load job's progress

    Attributes:
        state: Current job state
        errors: Error messages reported by the destination (a DONE job with
            errors is a failed job)
        output_rows: Rows written, when the destination reports it
    """

    state: JobState
    errors: List[str] = field(default_factory=list)
    output_rows: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.DONE and not self.errors


class LoadJob(ABC):
    """A discrete bulk-ingest operation submitted to a sink"""

    def __init__(self, job_id: str):
        self.job_id = job_id

    @abstractmethod
    async def get_status(self) -> JobStatus:
        """Return the job's current status without blocking on completion"""
        pass


class AnalyticsSink(ABC):
    """
    Abstract base class for append-only analytics destinations

    All sinks must implement:
    - connect(): Establish connection to destination
    - ensure_table(): Create the destination table if it does not exist
    - submit_load_job(): Start loading a newline-delimited JSON artifact
    - health_check(): Verify destination is healthy
    """

    def __init__(self, name: str):
        self.name = name
        self.is_connected = False
        self._jobs_submitted = 0
        self._rows_loaded = 0
        self._errors_count = 0

        logger.info("Sink initialized", sink=name)

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to destination

        Raises:
            SinkError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to destination"""
        pass

    @abstractmethod
    async def ensure_table(self) -> None:
        """
        Create the destination table (time-partitioned on created_at) if missing

        Raises:
            SinkError: If the table cannot be created
        """
        pass

    @abstractmethod
    async def submit_load_job(self, artifact_path: Path) -> LoadJob:
        """
        Submit a newline-delimited JSON artifact as a single append load job

        The artifact must stay on disk until the job reaches a terminal state.

        Raises:
            SinkError: If the job cannot be submitted
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def ensure_connected(self) -> None:
        """
        Ensure sink is connected, reconnect if needed

        Raises:
            SinkError: If connection cannot be established
        """
        if not self.is_connected:
            logger.info("Connecting to sink", sink=self.name)
            await self.connect()

    def increment_jobs_submitted(self, count: int = 1) -> None:
        self._jobs_submitted += count

    def increment_rows_loaded(self, count: int) -> None:
        self._rows_loaded += count

    def increment_errors(self, count: int = 1) -> None:
        self._errors_count += count

    def get_stats(self) -> dict:
        """
        Get sink statistics

        Returns:
            Dict with jobs_submitted, rows_loaded, errors_count
        """
        return {
            "sink": self.name,
            "is_connected": self.is_connected,
            "jobs_submitted": self._jobs_submitted,
            "rows_loaded": self._rows_loaded,
            "errors_count": self._errors_count,
        }

    async def __aenter__(self):
        """Async context manager entry"""
        await self.ensure_connected()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()
