"""
Prometheus Metrics for the EventFlow pipeline
"""

import structlog
from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = structlog.get_logger(__name__)

# Counters
events_ingested_total = Counter(
    "eventflow_events_ingested_total",
    "Total events accepted by the ingestion endpoint",
)

delivery_outcomes_total = Counter(
    "eventflow_delivery_outcomes_total",
    "Delivered channel messages by coordinator outcome",
    ["outcome"],
)

channel_responses_total = Counter(
    "eventflow_channel_responses_total",
    "Acknowledgements sent back to the delivery channel",
    ["action"],
)

replays_total = Counter("eventflow_replays_total", "Events reset to PENDING by operators")

buffer_flushes_total = Counter(
    "eventflow_buffer_flushes_total",
    "Buffer flush attempts by result",
    ["sink", "result"],
)

buffer_records_flushed_total = Counter(
    "eventflow_buffer_records_flushed_total",
    "Records successfully loaded into the analytics sink",
    ["sink"],
)

# Gauges
buffer_depth = Gauge("eventflow_buffer_depth", "Records waiting in the batch buffer")

# Histograms
processing_duration_seconds = Histogram(
    "eventflow_processing_duration_seconds",
    "Time spent in the processing step per attempt",
    ["result"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

load_job_duration_seconds = Histogram(
    "eventflow_load_job_duration_seconds",
    "Time from flush start to load job completion",
    ["sink"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server

    Args:
        port: HTTP port to expose /metrics endpoint (default 9090)
    """
    start_http_server(port)
    logger.info("Prometheus metrics server started", port=port)


def increment_events_ingested() -> None:
    # Unlabelled: event types are client input; per-type counts live in /admin/metrics
    events_ingested_total.inc()


def increment_delivery_outcome(outcome: str) -> None:
    delivery_outcomes_total.labels(outcome=outcome).inc()


def increment_channel_response(action: str) -> None:
    """Count an ack or nack sent to the channel"""
    channel_responses_total.labels(action=action).inc()


def increment_replays() -> None:
    replays_total.inc()


def increment_buffer_flushes(sink: str, result: str, records: int = 0) -> None:
    buffer_flushes_total.labels(sink=sink, result=result).inc()
    if records:
        buffer_records_flushed_total.labels(sink=sink).inc(records)


def set_buffer_depth(depth: int) -> None:
    buffer_depth.set(depth)


def observe_processing_duration(result: str, duration_seconds: float) -> None:
    processing_duration_seconds.labels(result=result).observe(duration_seconds)


def observe_load_job_duration(sink: str, duration_seconds: float) -> None:
    load_job_duration_seconds.labels(sink=sink).observe(duration_seconds)
