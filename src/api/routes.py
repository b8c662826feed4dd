"""
HTTP routes
Thin wrappers over the ingestion service, the coordinator and the event store
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from src.ingestion.schemas import EventAccepted, EventRequest

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["events"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def get_eventflow(request: Request):
    return request.app.state.eventflow


@router.post("/events", response_model=EventAccepted, status_code=201)
async def create_event(body: EventRequest, eventflow=Depends(get_eventflow)) -> EventAccepted:
    """Store a new event and queue it for processing"""
    event = await eventflow.ingestion.ingest(
        event_type=body.event_type,
        payload=body.payload,
        metadata=body.metadata_dict(),
    )
    return EventAccepted(event_id=event.id)


@router.get("/health")
async def health(eventflow=Depends(get_eventflow)) -> JSONResponse:
    health_data = await eventflow.health.run_checks()
    status_code = 503 if health_data["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=health_data)


# /events/failed is registered before /events/{event_id} so it is not taken as an id
@admin_router.get("/events/failed")
async def list_failed_events(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    eventflow=Depends(get_eventflow),
) -> Dict[str, Any]:
    """FAILED and DEAD_LETTER events, most recently failed first"""
    events, total = await eventflow.store.list_failed(page=page, limit=limit)
    return {
        "events": [event.to_dict() for event in events],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


@admin_router.get("/events/{event_id}")
async def get_event(event_id: str, eventflow=Depends(get_eventflow)) -> Dict[str, Any]:
    event = await eventflow.store.get_or_raise(event_id)
    return event.to_dict()


@admin_router.post("/events/{event_id}/replay")
async def replay_event(event_id: str, eventflow=Depends(get_eventflow)) -> Dict[str, Any]:
    """Reset a FAILED or DEAD_LETTER event and queue it again"""
    event = await eventflow.coordinator.replay(event_id)
    return {
        "success": True,
        "message": "Event queued for replay",
        "event": event.to_dict(),
    }


@admin_router.get("/metrics")
async def get_metrics(eventflow=Depends(get_eventflow)) -> Dict[str, Any]:
    metrics = await eventflow.store.get_metrics()
    return metrics.to_dict()
