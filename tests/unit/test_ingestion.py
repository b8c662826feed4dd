"""
Unit tests for the ingestion service and request schemas
"""

import pytest
from pydantic import ValidationError

from src.buffer.engine import BatchBufferEngine
from src.delivery.channel import parse_event_id
from src.delivery.coordinator import PUBLISH_FAILURE_REASON, PublishError
from src.ingestion.schemas import EventAccepted, EventRequest
from src.ingestion.service import IngestionService
from src.models.event import EventStatus


@pytest.fixture
def buffer(fake_sink, tmp_path):
    return BatchBufferEngine(sink=fake_sink, batch_size=2, poll_interval_seconds=0.0, artifact_dir=str(tmp_path))


@pytest.fixture
def service(store, coordinator, buffer):
    return IngestionService(store=store, coordinator=coordinator, buffer=buffer)


class TestEventRequest:
    """Test request validation"""

    def test_valid_request(self):
        request = EventRequest.model_validate(
            {
                "eventType": "user.signup",
                "payload": {"userId": "u-1"},
                "metadata": {"source": "web", "correlationId": "c-1", "region": "eu"},
            }
        )

        assert request.event_type == "user.signup"
        assert request.metadata_dict() == {"source": "web", "correlationId": "c-1", "region": "eu"}

    @pytest.mark.parametrize(
        "body",
        [
            {"payload": {}},
            {"eventType": "", "payload": {}},
            {"eventType": "x" * 101, "payload": {}},
            {"eventType": "a"},
            {"eventType": "a", "payload": [1, 2]},
            {"eventType": "a", "payload": {}, "metadata": "web"},
        ],
    )
    def test_invalid_requests(self, body):
        with pytest.raises(ValidationError):
            EventRequest.model_validate(body)

    def test_no_metadata(self):
        request = EventRequest.model_validate({"eventType": "a", "payload": {}})

        assert request.metadata_dict() is None

    def test_accepted_response_uses_camel_case(self):
        body = EventAccepted(event_id="e-1").model_dump(by_alias=True)

        assert body == {
            "success": True,
            "eventId": "e-1",
            "message": "Event received and queued for processing",
        }


class TestIngestionService:
    """Test persisting, buffering and publishing new events"""

    @pytest.mark.asyncio
    async def test_ingest_stores_buffers_and_publishes(self, service, store, channel, buffer):
        event = await service.ingest("user.signup", {"userId": "u-1"}, {"source": "web"})

        stored = await store.get(event.id)
        assert stored.status == EventStatus.PENDING
        assert stored.metadata == {"source": "web"}

        assert [r.id for r in buffer.pending_records()] == [event.id]

        message = await channel.receive(timeout=1.0)
        assert parse_event_id(message.data) == event.id

    @pytest.mark.asyncio
    async def test_buffer_threshold_reached_through_ingestion(self, service, fake_sink):
        first = await service.ingest("a", {"n": 1})
        second = await service.ingest("a", {"n": 2})

        assert [row["id"] for row in fake_sink.rows] == [first.id, second.id]
        assert all(row["status"] == "PENDING" for row in fake_sink.rows)

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_ingestion(self, service, store, fake_sink, buffer):
        fake_sink.fail_next_submits(1)

        await service.ingest("a", {"n": 1})
        event = await service.ingest("a", {"n": 2})

        assert (await store.get(event.id)).status == EventStatus.PENDING
        assert buffer.size == 2

    @pytest.mark.asyncio
    async def test_buffer_error_is_not_critical(self, store, coordinator, channel):
        class BrokenBuffer:
            async def append(self, record):
                raise RuntimeError("disk full")

        service = IngestionService(store=store, coordinator=coordinator, buffer=BrokenBuffer())

        event = await service.ingest("a", {"n": 1})

        assert channel.pending_count == 1
        assert (await store.get(event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_publish_failure_marks_event_failed(self, service, store, channel):
        await channel.close()

        with pytest.raises(PublishError) as exc_info:
            await service.ingest("a", {"n": 1})

        stored = await store.get(exc_info.value.event_id)
        assert stored.status == EventStatus.FAILED
        assert stored.failure_reason == PUBLISH_FAILURE_REASON
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_without_buffer(self, store, coordinator, channel):
        service = IngestionService(store=store, coordinator=coordinator)

        await service.ingest("a", {"n": 1})

        assert channel.pending_count == 1
