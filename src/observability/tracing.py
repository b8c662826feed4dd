"""
OpenTelemetry Tracing Setup for EventFlow
"""

from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

# Global tracer instance
tracer: Optional[trace.Tracer] = None


def init_tracing(
    service_name: str = "eventflow",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing

    Args:
        service_name: Name of the service for trace identification
        enable_console_export: Whether to export traces to console (dev mode)

    Returns:
        Configured Tracer instance
    """
    global tracer

    resource = Resource(attributes={SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)

    return tracer


def trace_event_processing(event_id: str, message_id: str) -> trace.Span:
    """
    Create a span for one delivery of an event

    The span is usable as a context manager and ends on exit. Without
    ``init_tracing()`` a non-recording span is returned.
    """
    if tracer is None:
        return trace.INVALID_SPAN

    return tracer.start_span(
        "process_event",
        attributes={
            "event.id": event_id,
            "message.id": message_id,
        },
    )


def trace_buffer_flush(batch_size: int, sink: str) -> trace.Span:
    """Create a span for a buffer flush and its load job"""
    if tracer is None:
        return trace.INVALID_SPAN

    return tracer.start_span(
        "buffer_flush",
        attributes={
            "batch.size": batch_size,
            "sink": sink,
        },
    )
