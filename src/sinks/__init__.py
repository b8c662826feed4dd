"""
Analytics sinks for bulk-loading buffered event snapshots
"""

from src.sinks.base import (
    AnalyticsSink,
    JobState,
    JobStatus,
    LoadJob,
    LoadJobError,
    LoadJobTimeoutError,
    SinkError,
)
from src.sinks.clickhouse import ClickHouseLoadSink

__all__ = [
    "AnalyticsSink",
    "LoadJob",
    "JobState",
    "JobStatus",
    "SinkError",
    "LoadJobError",
    "LoadJobTimeoutError",
    "ClickHouseLoadSink",
]
