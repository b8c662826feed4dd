"""
Unit tests for the batch buffer engine
Tests threshold flushes, load job polling, failure re-queueing and the
single-flight guarantee
"""

import asyncio
import time

import pytest

from src.buffer.engine import BatchBufferEngine
from src.models.event import Event
from src.models.record import BufferedRecord
from src.sinks.base import JobState, JobStatus
from tests.doubles import make_event


def record(n: int) -> BufferedRecord:
    return BufferedRecord.from_event(make_event(payload={"n": n}))


def make_buffer(sink, tmp_path, **kwargs) -> BatchBufferEngine:
    kwargs.setdefault("batch_size", 10)
    kwargs.setdefault("poll_interval_seconds", 0.0)
    return BatchBufferEngine(sink=sink, artifact_dir=str(tmp_path), **kwargs)


class TestThresholdFlush:
    """Test flushes triggered by reaching the batch size"""

    @pytest.mark.asyncio
    async def test_ten_appends_flush_once(self, fake_sink, tmp_path):
        """Reaching the threshold flushes every record and empties the buffer"""
        buffer = make_buffer(fake_sink, tmp_path)

        results = [await buffer.append(record(i)) for i in range(10)]

        assert results[:9] == [None] * 9
        assert results[9].succeeded
        assert results[9].record_count == 10
        assert buffer.size == 0
        assert buffer.flush_attempts == 1
        assert len(fake_sink.rows) == 10
        assert [row["payload"] for row in fake_sink.rows] == [f'{{"n": {i}}}' for i in range(10)]

    @pytest.mark.asyncio
    async def test_below_threshold_does_not_flush(self, fake_sink, tmp_path):
        """Appends under the threshold only buffer"""
        buffer = make_buffer(fake_sink, tmp_path)

        for i in range(9):
            await buffer.append(record(i))

        assert buffer.size == 9
        assert buffer.flush_attempts == 0
        assert fake_sink.jobs == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("appends,batch_size", [(10, 10), (25, 10), (7, 3), (1, 1)])
    async def test_flush_attempts_at_least_appends_over_threshold(
        self, fake_sink, tmp_path, appends, batch_size
    ):
        """K appends at threshold T trigger at least floor(K/T) flushes"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=batch_size)

        for i in range(appends):
            await buffer.append(record(i))

        assert buffer.flush_attempts >= appends // batch_size
        assert buffer.size + len(fake_sink.rows) == appends

    def test_invalid_batch_size(self, fake_sink):
        """batch_size below 1 is rejected"""
        with pytest.raises(ValueError):
            BatchBufferEngine(sink=fake_sink, batch_size=0)


class TestFailedFlush:
    """Test that failed loads lose nothing"""

    @pytest.mark.asyncio
    async def test_fail_then_succeed_loads_all_twelve(self, fake_sink, tmp_path):
        """A failed flush re-queues; the retry loads all twelve accumulated records"""
        buffer = make_buffer(fake_sink, tmp_path, poll_interval_seconds=0.05)
        fake_sink.script_next_job(
            JobStatus(JobState.RUNNING),
            JobStatus(JobState.RUNNING),
            JobStatus(JobState.ERROR, errors=["quota exceeded"]),
        )

        for i in range(9):
            await buffer.append(record(i))
        failing_flush = asyncio.create_task(buffer.append(record(9)))
        await asyncio.sleep(0.01)
        await buffer.append(record(10))
        await buffer.append(record(11))

        failed = await failing_flush
        assert not failed.succeeded
        assert failed.record_count == 10
        assert buffer.size == 12
        assert buffer.flush_failures == 1
        assert fake_sink.rows == []

        result = await buffer.flush()

        assert result.succeeded
        assert result.record_count == 12
        assert buffer.size == 0
        loaded_ids = [row["id"] for row in fake_sink.rows]
        assert len(loaded_ids) == 12
        assert len(set(loaded_ids)) == 12

    @pytest.mark.asyncio
    async def test_failed_batch_requeued_before_newer_records(self, fake_sink, tmp_path):
        """Re-queued records keep their original order ahead of newer ones"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=3)
        fake_sink.fail_next_submits(1)
        records = [record(i) for i in range(5)]

        for r in records[:3]:
            await buffer.append(r)
        for r in records[3:]:
            await buffer.append(r)
        await buffer.flush()

        assert [row["id"] for row in fake_sink.rows] == [r.id for r in records]

    @pytest.mark.asyncio
    async def test_job_errors_count_as_failure(self, fake_sink, tmp_path):
        """A DONE job carrying errors is a failed load"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=2)
        fake_sink.script_next_job(JobStatus(JobState.DONE, errors=["bad row"]))

        await buffer.append(record(0))
        result = await buffer.append(record(1))

        assert not result.succeeded
        assert result.job_id == "job-1"
        assert "bad row" in result.error
        assert buffer.size == 2
        assert fake_sink.get_stats()["errors_count"] == 1

    @pytest.mark.asyncio
    async def test_buffer_plus_sink_total_unchanged_by_failure(self, fake_sink, tmp_path):
        """Buffer size + loaded rows is the same before and after a failed flush"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=5)
        for i in range(4):
            await buffer.append(record(i))
        before = buffer.size + len(fake_sink.rows)

        fake_sink.fail_next_submits(1)
        await buffer.append(record(4))

        assert buffer.size + len(fake_sink.rows) == before + 1


class TestLoadJobPolling:
    """Test load job status polling"""

    @pytest.mark.asyncio
    async def test_polls_until_done(self, fake_sink, tmp_path):
        """Running jobs are polled until they reach a terminal state"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=1)
        fake_sink.script_next_job(
            JobStatus(JobState.PENDING),
            JobStatus(JobState.RUNNING),
            JobStatus(JobState.DONE, output_rows=1),
        )

        result = await buffer.append(record(0))

        assert result.succeeded
        assert result.rows_loaded == 1
        assert fake_sink.jobs[0].polls == 3

    @pytest.mark.asyncio
    async def test_poll_timeout_requeues(self, fake_sink, tmp_path):
        """A job still running after max_poll_attempts counts as failed"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=1, max_poll_attempts=4)
        fake_sink.script_next_job(JobStatus(JobState.RUNNING))

        result = await buffer.append(record(0))

        assert not result.succeeded
        assert "did not complete after 4 polls" in result.error
        assert fake_sink.jobs[0].polls == 4
        assert buffer.size == 1

    @pytest.mark.asyncio
    async def test_artifacts_removed_on_success_and_failure(self, fake_sink, tmp_path):
        """Temporary artifacts never outlive the flush"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=1)
        fake_sink.fail_next_submits(1)

        await buffer.append(record(0))
        await buffer.flush()

        assert len(fake_sink.submitted_artifacts) == 2
        assert all(not path.exists() for path in fake_sink.submitted_artifacts)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_artifact_removed_when_cancelled_during_write(self, fake_sink, tmp_path, monkeypatch):
        """A flush cancelled while the artifact is being written leaves no file behind"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=1)
        write_artifact = buffer._write_artifact

        def slow_write(path, batch):
            time.sleep(0.2)
            write_artifact(path, batch)

        monkeypatch.setattr(buffer, "_write_artifact", slow_write)

        flush = asyncio.create_task(buffer.append(record(0)))
        await asyncio.sleep(0.05)
        flush.cancel()
        with pytest.raises(asyncio.CancelledError):
            await flush

        await asyncio.sleep(0.3)

        assert list(tmp_path.iterdir()) == []
        assert buffer.size == 1
        assert fake_sink.submitted_artifacts == []

    @pytest.mark.asyncio
    async def test_artifact_is_newline_delimited_json(self, fake_sink, tmp_path):
        """Each record becomes one JSON line, in insertion order"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=3)
        records = [record(i) for i in range(3)]

        for r in records:
            await buffer.append(r)

        assert [row["id"] for row in fake_sink.rows] == [r.id for r in records]
        assert fake_sink.rows[0]["status"] == "PENDING"


class TestSingleFlight:
    """Test that only one flush runs at a time"""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_skipped_while_flushing(self, fake_sink, tmp_path):
        """Appends during an in-flight flush land in the fresh buffer"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=2, poll_interval_seconds=0.05)
        fake_sink.script_next_job(
            JobStatus(JobState.RUNNING),
            JobStatus(JobState.RUNNING),
            JobStatus(JobState.DONE),
        )

        await buffer.append(record(0))
        first_flush = asyncio.create_task(buffer.append(record(1)))
        await asyncio.sleep(0.01)
        assert buffer.is_flushing

        await buffer.append(record(2))
        skipped = await buffer.append(record(3))

        assert skipped is not None
        assert not skipped.attempted
        assert buffer.size == 2

        result = await first_flush
        assert result.succeeded
        assert result.record_count == 2
        assert len(fake_sink.jobs) == 1

    @pytest.mark.asyncio
    async def test_flush_waits_for_in_flight_flush(self, fake_sink, tmp_path):
        """flush() drains records that arrived during an in-flight flush"""
        buffer = make_buffer(fake_sink, tmp_path, batch_size=2, poll_interval_seconds=0.05)
        fake_sink.script_next_job(JobStatus(JobState.RUNNING), JobStatus(JobState.DONE))

        await buffer.append(record(0))
        first_flush = asyncio.create_task(buffer.append(record(1)))
        await asyncio.sleep(0.01)
        await buffer.append(record(2))

        result = await buffer.flush()
        await first_flush

        assert result.succeeded
        assert result.record_count == 1
        assert buffer.size == 0
        assert len(fake_sink.rows) == 3

    @pytest.mark.asyncio
    async def test_flush_of_empty_buffer_is_noop(self, fake_sink, tmp_path):
        buffer = make_buffer(fake_sink, tmp_path)

        result = await buffer.flush()

        assert not result.attempted
        assert fake_sink.jobs == []


class TestSnapshots:
    """Test that buffered records are independent of their events"""

    def test_record_unaffected_by_later_event_changes(self, sample_event: Event):
        snapshot = BufferedRecord.from_event(sample_event)

        sample_event.payload["plan"] = "free"
        sample_event.retry_count = 2

        assert snapshot.payload["plan"] == "pro"
        assert snapshot.retry_count == 0
        assert snapshot.status == "PENDING"
