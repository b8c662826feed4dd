"""
EventFlow FastAPI Application
Lifecycle management and mapping of domain errors to HTTP responses
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src import __version__
from src.api.routes import admin_router, router
from src.delivery.coordinator import AlreadyProcessedError, PublishError, ReplayConflictError
from src.store.base import EventNotFoundError, StoreError

logger = structlog.get_logger(__name__)


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def report_worker_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Embedded delivery worker cancelled")
        return

    error = task.exception()
    if error is not None:
        logger.error(
            "Embedded delivery worker failed, health now reports unhealthy",
            error=str(error),
            error_type=type(error).__name__,
        )
    else:
        logger.info("Embedded delivery worker stopped")


def create_app(eventflow, embedded_worker: Optional[bool] = None) -> FastAPI:
    """
    Create the FastAPI application around an EventFlowApp

    Args:
        eventflow: Wired EventFlowApp; started and stopped with the app
        embedded_worker: Run a delivery worker in this process (defaults to
            settings.server.embedded_worker)
    """
    if embedded_worker is None:
        embedded_worker = eventflow.settings.server.embedded_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await eventflow.start()

        worker_task = None
        if embedded_worker:
            worker = eventflow.create_worker()
            worker_task = asyncio.create_task(worker.run())
            worker_task.add_done_callback(report_worker_exit)

            # A dead worker means accepted events are never delivered
            async def worker_alive() -> bool:
                return not worker_task.done()

            eventflow.health.add_check("delivery_worker", worker_alive)
            logger.info("Embedded delivery worker started")

        yield

        if worker_task is not None:
            worker.stop()
            await asyncio.gather(worker_task, return_exceptions=True)

        await eventflow.stop()

    app = FastAPI(
        title="EventFlow",
        description="Event ingestion with at-least-once delivery and analytics batching",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.eventflow = eventflow

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Validation error", details=jsonable_encoder(exc.errors()))

    @app.exception_handler(EventNotFoundError)
    async def not_found_handler(request: Request, exc: EventNotFoundError):
        return error_response(404, "Event not found")

    @app.exception_handler(AlreadyProcessedError)
    async def already_processed_handler(request: Request, exc: AlreadyProcessedError):
        return error_response(400, "Event is already processed")

    @app.exception_handler(ReplayConflictError)
    async def replay_conflict_handler(request: Request, exc: ReplayConflictError):
        return error_response(409, str(exc), status=exc.status.value)

    @app.exception_handler(PublishError)
    async def publish_error_handler(request: Request, exc: PublishError):
        return error_response(500, "Failed to queue event for processing", eventId=exc.event_id)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Event store error", path=request.url.path, error=str(exc))
        return error_response(500, "Internal server error")

    app.include_router(router)
    app.include_router(admin_router)

    return app
