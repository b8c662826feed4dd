"""
Batch buffer for bulk-loading event snapshots into the analytics sink
"""

from src.buffer.engine import BatchBufferEngine, FlushResult

__all__ = ["BatchBufferEngine", "FlushResult"]
