"""
Event delivery: channel abstraction, processing step and the coordinator
driving the event status state machine
"""

from src.delivery.channel import (
    ChannelError,
    ChannelMessage,
    DeliveryChannel,
    InMemoryChannel,
    encode_message,
    parse_event_id,
)
from src.delivery.coordinator import (
    AlreadyProcessedError,
    DeliveryCoordinator,
    DeliveryError,
    DeliveryOutcome,
    PublishError,
    ReplayConflictError,
)
from src.delivery.processor import (
    CallableProcessingStep,
    ProcessingResult,
    ProcessingStep,
    SimulatedProcessingStep,
)
from src.delivery.redis_channel import RedisStreamChannel

__all__ = [
    "ChannelError",
    "ChannelMessage",
    "DeliveryChannel",
    "InMemoryChannel",
    "RedisStreamChannel",
    "encode_message",
    "parse_event_id",
    "DeliveryCoordinator",
    "DeliveryOutcome",
    "DeliveryError",
    "AlreadyProcessedError",
    "ReplayConflictError",
    "PublishError",
    "ProcessingStep",
    "ProcessingResult",
    "CallableProcessingStep",
    "SimulatedProcessingStep",
]
