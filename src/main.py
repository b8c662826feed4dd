"""
EventFlow Main Entrypoint
Wires stores, channel, sink, buffer and coordinator, and runs the API or
worker process
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from src.buffer.engine import BatchBufferEngine
from src.config.loader import load_config
from src.config.settings import EventFlowSettings
from src.delivery.channel import DeliveryChannel, InMemoryChannel
from src.delivery.coordinator import DeliveryCoordinator
from src.delivery.processor import ProcessingStep, SimulatedProcessingStep
from src.delivery.redis_channel import RedisStreamChannel
from src.observability.health import HealthMonitor, start_health_server
from src.observability.logging import bind_context, configure_logging
from src.observability.metrics import start_metrics_server
from src.observability.tracing import init_tracing
from src.sinks.base import AnalyticsSink, SinkError
from src.sinks.clickhouse import ClickHouseLoadSink
from src.sinks.retry import RetryPolicy
from src.store.base import EventStore
from src.store.memory import InMemoryEventStore
from src.store.postgres import PostgresEventStore
from src.ingestion.service import IngestionService
from src.worker import DeliveryWorker

logger = structlog.get_logger(__name__)


def build_store(settings: EventFlowSettings) -> EventStore:
    if settings.database.backend == "memory":
        return InMemoryEventStore()
    return PostgresEventStore(
        connection_url=settings.database.url,
        create_schema=settings.database.create_schema,
    )


def build_channel(settings: EventFlowSettings) -> DeliveryChannel:
    channel = settings.channel
    if channel.backend == "memory":
        return InMemoryChannel(lease_seconds=channel.lease_seconds)
    return RedisStreamChannel(
        redis_url=channel.redis_url,
        stream=channel.stream,
        group=channel.group,
        consumer=channel.consumer,
        lease_seconds=channel.lease_seconds,
        block_ms=channel.block_ms,
        batch_size=channel.read_batch_size,
        publish_retry=RetryPolicy(max_attempts=channel.publish_max_attempts),
    )


def build_sink(settings: EventFlowSettings) -> Optional[AnalyticsSink]:
    analytics = settings.analytics
    if not analytics.enabled:
        return None
    return ClickHouseLoadSink(
        host=analytics.host,
        port=analytics.port,
        database=analytics.database,
        table=analytics.table,
        user=analytics.username,
        password=analytics.password,
    )


class EventFlowApp:
    """
    Owns every long-lived component of one EventFlow process

    Components passed in explicitly (tests, embedding) take precedence over
    the ones built from settings.
    """

    def __init__(
        self,
        settings: Optional[EventFlowSettings] = None,
        store: Optional[EventStore] = None,
        channel: Optional[DeliveryChannel] = None,
        sink: Optional[AnalyticsSink] = None,
        processor: Optional[ProcessingStep] = None,
        with_analytics: bool = True,
    ):
        self.settings = settings or EventFlowSettings()

        self.store = store if store is not None else build_store(self.settings)
        self.channel = channel if channel is not None else build_channel(self.settings)
        self.sink = None
        if with_analytics:
            self.sink = sink if sink is not None else build_sink(self.settings)
        self.processor = processor
        if self.processor is None:
            self.processor = SimulatedProcessingStep(
                failure_rate=self.settings.delivery.simulated_failure_rate
            )

        self.buffer: Optional[BatchBufferEngine] = None
        if self.sink is not None:
            buffer = self.settings.buffer
            self.buffer = BatchBufferEngine(
                sink=self.sink,
                batch_size=buffer.batch_size,
                poll_interval_seconds=buffer.poll_interval_seconds,
                max_poll_attempts=buffer.max_poll_attempts,
                poll_backoff_multiplier=buffer.poll_backoff_multiplier,
                max_poll_interval_seconds=buffer.max_poll_interval_seconds,
                artifact_dir=buffer.artifact_dir,
            )

        self.coordinator = DeliveryCoordinator(
            store=self.store,
            channel=self.channel,
            processor=self.processor,
            max_retries=self.settings.delivery.max_retries,
            processing_timeout_seconds=self.settings.delivery.processing_timeout_seconds,
        )
        self.ingestion = IngestionService(
            store=self.store, coordinator=self.coordinator, buffer=self.buffer
        )

        checks = {"event_store": self.store.health_check, "channel": self.channel.health_check}
        if self.sink is not None:
            checks["analytics_sink"] = self.sink.health_check
        self.health = HealthMonitor(checks, optional={"analytics_sink"})

        logger.info("EventFlowApp initialized", analytics=self.sink is not None)

    def create_worker(self) -> DeliveryWorker:
        return DeliveryWorker(
            coordinator=self.coordinator,
            channel=self.channel,
            concurrency=self.settings.delivery.concurrency,
            fail_fast=self.settings.delivery.fail_fast,
        )

    async def start(self) -> None:
        """
        Connect the store and channel (required) and the sink (best effort)

        Raises:
            StoreError / ChannelError: If a required dependency is unreachable
        """
        await self.store.connect()
        await self.channel.connect()

        if self.sink is not None:
            try:
                await self.sink.connect()
            except SinkError as e:
                # Buffered records are retried on later flushes
                logger.warning("Analytics sink unavailable at startup", error=str(e))

        logger.info("EventFlow services started")

    async def stop(self) -> None:
        """Flush the buffer, then release sink, channel and store"""
        if self.buffer is not None:
            result = await self.buffer.flush()
            if self.buffer.size:
                logger.error(
                    "Buffered records lost at shutdown",
                    record_count=self.buffer.size,
                    error=result.error,
                )

        if self.sink is not None and self.sink.is_connected:
            await self.sink.disconnect()

        await self.channel.close()
        await self.store.close()
        logger.info("EventFlow services stopped")


def run_api(settings: EventFlowSettings) -> None:
    """Serve the HTTP API with uvicorn"""
    import uvicorn

    from src.api.app import create_app

    app = create_app(EventFlowApp(settings))
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


async def run_worker(settings: EventFlowSettings) -> int:
    """
    Run a delivery worker until SIGTERM/SIGINT

    Returns:
        Process exit code
    """
    eventflow = EventFlowApp(settings, with_analytics=False)
    await eventflow.start()

    worker = eventflow.create_worker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)

    await eventflow.health.run_checks()
    start_health_server(eventflow.health, port=settings.server.worker_health_port)
    health_task = asyncio.create_task(
        eventflow.health.run_periodic(settings.observability.health_check_interval_seconds)
    )

    exit_code = 0
    try:
        await worker.run()
    except Exception as e:
        logger.error("Worker failed", error=str(e))
        exit_code = 1
    finally:
        health_task.cancel()
        await eventflow.stop()

    return exit_code


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="eventflow", description="EventFlow event pipeline")
    parser.add_argument("role", choices=["api", "worker"], help="Process to run")
    parser.add_argument("--config", default=None, help="Path to YAML configuration file")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """
    Main entrypoint
    """
    args = parse_args(argv)
    settings = load_config(args.config)

    configure_logging(
        log_level=settings.observability.log_level,
        log_format=settings.observability.log_format,
    )
    bind_context(role=args.role)

    if settings.observability.metrics_enabled:
        start_metrics_server(port=settings.observability.metrics_port)
    if settings.observability.enable_tracing:
        init_tracing(service_name=f"eventflow-{args.role}")

    logger.info("Starting EventFlow", role=args.role, environment=settings.environment)

    if args.role == "api":
        run_api(settings)
        return

    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()
