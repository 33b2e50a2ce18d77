"""Expose Prometheus metrics and a liveness summary for the lifecycle scheduler."""

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
async def metrics() -> Response:
    """Return the Prometheus metrics registry."""

    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
async def health(request: Request) -> dict:
    scheduler = getattr(request.app.state, "lifecycle_scheduler", None)
    event_bus = getattr(request.app.state, "event_bus", None)
    running = sorted(scheduler.run_guard.running) if scheduler is not None else []
    return {
        "status": "ok",
        "scheduler": "running" if scheduler is not None else "disabled",
        "running_jobs": running,
        "event_bus": "running" if event_bus is not None and event_bus.is_running else "stopped",
    }
