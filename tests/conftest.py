"""
Pytest Fixtures and Test Configuration
In-memory store and channel wired to a scripted processing step
"""

import pytest

from src.delivery.channel import InMemoryChannel
from src.delivery.coordinator import DeliveryCoordinator
from src.models.event import Event
from src.store.memory import InMemoryEventStore
from tests.doubles import FakeSink, ScriptedProcessor


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel(lease_seconds=60.0, poll_interval_seconds=0.01)


@pytest.fixture
def processor() -> ScriptedProcessor:
    return ScriptedProcessor()


@pytest.fixture
def coordinator(store, channel, processor) -> DeliveryCoordinator:
    return DeliveryCoordinator(
        store=store,
        channel=channel,
        processor=processor,
        max_retries=3,
        processing_timeout_seconds=300,
    )


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def sample_event() -> Event:
    return Event.create(
        event_type="user.signup",
        payload={"userId": "u-1", "plan": "pro"},
        metadata={"source": "web"},
    )
