"""
Unit tests for the HTTP API
Tests routes and error mapping with in-memory backends
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.config.settings import EventFlowSettings
from src.delivery.channel import InMemoryChannel
from src.main import EventFlowApp
from src.models.event import EventStatus, utc_now
from src.store.base import StoreError
from src.store.memory import InMemoryEventStore
from tests.doubles import FakeSink, ScriptedProcessor, make_event


@pytest.fixture
def eventflow():
    return EventFlowApp(
        EventFlowSettings(),
        store=InMemoryEventStore(),
        channel=InMemoryChannel(),
        sink=FakeSink(),
        processor=ScriptedProcessor(),
    )


@pytest.fixture
def client(eventflow):
    with TestClient(create_app(eventflow, embedded_worker=False)) as test_client:
        yield test_client


def seed(client, event, status=None, **fields):
    """Insert an event straight into the store on the app's loop"""
    store = client.app.state.eventflow.store

    async def insert():
        await store.create(event)
        if status is not None:
            await store.transition(event.id, expected={EventStatus.PENDING}, status=EventStatus.PROCESSING)
            await store.transition(event.id, expected={EventStatus.PROCESSING}, status=status, **fields)

    client.portal.call(insert)
    return event


class TestIngestEndpoint:
    """Test POST /events"""

    def test_accepts_event(self, client, eventflow):
        response = client.post(
            "/events",
            json={"eventType": "user.signup", "payload": {"userId": "u-1"}, "metadata": {"source": "web"}},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Event received and queued for processing"
        assert eventflow.channel.pending_count == 1
        assert len(eventflow.store) == 1

    @pytest.mark.parametrize(
        "body",
        [
            {"payload": {"a": 1}},
            {"eventType": "", "payload": {}},
            {"eventType": "x" * 101, "payload": {}},
            {"eventType": "a", "payload": "text"},
        ],
    )
    def test_validation_errors(self, client, body):
        response = client.post("/events", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"
        assert response.json()["details"]

    def test_publish_failure(self, client, eventflow):
        client.portal.call(eventflow.channel.close)

        response = client.post("/events", json={"eventType": "a", "payload": {}})

        assert response.status_code == 500
        event_id = response.json()["eventId"]
        assert client.get(f"/admin/events/{event_id}").json()["status"] == "FAILED"


class TestAdminEndpoints:
    """Test operator routes"""

    def test_get_event(self, client):
        event = seed(client, make_event())

        response = client.get(f"/admin/events/{event.id}")

        assert response.status_code == 200
        assert response.json()["id"] == event.id
        assert response.json()["status"] == "PENDING"

    def test_get_missing_event(self, client):
        response = client.get("/admin/events/8c6f1b1e-8a4e-4a5b-9c3d-0f1e2d3c4b5a")

        assert response.status_code == 404
        assert response.json() == {"error": "Event not found"}

    def test_list_failed(self, client):
        seed(client, make_event())
        failed = seed(client, make_event(), EventStatus.FAILED, retry_count=1, failed_at=utc_now())
        dead = seed(client, make_event(), EventStatus.DEAD_LETTER, retry_count=3, failed_at=utc_now())

        response = client.get("/admin/events/failed", params={"page": 1, "limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert [e["id"] for e in body["events"]] == [dead.id, failed.id]
        assert body["pagination"] == {"page": 1, "limit": 10, "total": 2, "totalPages": 1}

    def test_list_failed_rejects_bad_page(self, client):
        assert client.get("/admin/events/failed", params={"page": 0}).status_code == 400

    def test_replay(self, client, eventflow):
        event = seed(client, make_event(), EventStatus.DEAD_LETTER, retry_count=3, failed_at=utc_now())

        response = client.post(f"/admin/events/{event.id}/replay")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["event"]["status"] == "PENDING"
        assert body["event"]["retryCount"] == 0
        assert eventflow.channel.pending_count == 1

    def test_replay_processed(self, client):
        event = seed(client, make_event(), EventStatus.PROCESSED, processed_at=utc_now())

        response = client.post(f"/admin/events/{event.id}/replay")

        assert response.status_code == 400
        assert response.json()["error"] == "Event is already processed"

    def test_replay_pending_conflicts(self, client):
        event = seed(client, make_event())

        response = client.post(f"/admin/events/{event.id}/replay")

        assert response.status_code == 409
        assert response.json()["status"] == "PENDING"

    def test_replay_missing(self, client):
        response = client.post("/admin/events/8c6f1b1e-8a4e-4a5b-9c3d-0f1e2d3c4b5a/replay")

        assert response.status_code == 404

    def test_metrics(self, client):
        seed(client, make_event("order.created"))
        seed(client, make_event("order.created"), EventStatus.FAILED, retry_count=1, failed_at=utc_now())

        response = client.get("/admin/metrics")

        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["total"] == 2
        assert body["summary"]["failed"] == 1
        assert body["eventsByType"] == [{"eventType": "order.created", "count": 2}]

    def test_store_error_is_500(self, client, eventflow):
        async def broken(*args, **kwargs):
            raise StoreError("database unavailable")

        eventflow.store.get_metrics = broken

        response = client.get("/admin/metrics")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestHealthEndpoint:
    """Test GET /health"""

    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["dependencies"]) == {"event_store", "channel", "analytics_sink"}

    def test_sink_outage_is_degraded(self, client, eventflow):
        eventflow.sink.is_connected = False

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"


class TestEmbeddedWorker:
    """Test running the delivery worker inside the API process"""

    def test_ingested_event_is_processed(self, eventflow):
        with TestClient(create_app(eventflow, embedded_worker=True)) as client:
            event_id = client.post("/events", json={"eventType": "a", "payload": {}}).json()["eventId"]

            status = None
            for _ in range(100):
                status = client.get(f"/admin/events/{event_id}").json()["status"]
                if status == "PROCESSED":
                    break
                client.portal.call(asyncio.sleep, 0.01)

        assert status == "PROCESSED"

    def test_failed_worker_makes_health_unhealthy(self, eventflow, monkeypatch):
        """A worker stopped by a persistence error is reported, not silently lost"""
        store = eventflow.store
        transition = store.transition
        failures = []

        async def transition_failing_once(*args, **kwargs):
            if not failures:
                failures.append(args[0])
                raise StoreError("connection lost")
            return await transition(*args, **kwargs)

        monkeypatch.setattr(store, "transition", transition_failing_once)

        with TestClient(create_app(eventflow, embedded_worker=True)) as client:
            assert client.get("/health").status_code == 200
            client.post("/events", json={"eventType": "a", "payload": {}})

            response = None
            for _ in range(100):
                response = client.get("/health")
                if response.status_code == 503:
                    break
                client.portal.call(asyncio.sleep, 0.01)

        assert failures
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["dependencies"]["delivery_worker"]["status"] == "down"
