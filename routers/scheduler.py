"""API endpoints for inspecting and controlling lifecycle jobs."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from schemas import (
    SchedulerJobActionResponse,
    SchedulerJobResponse,
    SchedulerJobsResponse,
)
from services.scheduler import LifecycleScheduler, SchedulerJobState

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


def _get_scheduler(request: Request) -> LifecycleScheduler:
    scheduler = getattr(request.app.state, "lifecycle_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not available")
    return scheduler


def _state_to_response(state: SchedulerJobState) -> SchedulerJobResponse:
    return SchedulerJobResponse.model_validate(state)


@router.get("/jobs", response_model=SchedulerJobsResponse)
async def list_jobs(request: Request) -> SchedulerJobsResponse:
    scheduler = _get_scheduler(request)
    states = await scheduler.list_jobs()
    jobs = [_state_to_response(state) for state in sorted(states, key=lambda s: s.created_at)]
    return SchedulerJobsResponse(jobs=jobs)


@router.get("/jobs/{name}", response_model=SchedulerJobResponse)
async def get_job(request: Request, name: str) -> SchedulerJobResponse:
    scheduler = _get_scheduler(request)
    try:
        state = await scheduler.get_job(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _state_to_response(state)


@router.post("/jobs/{name}/start", response_model=SchedulerJobActionResponse)
async def start_job(request: Request, name: str) -> SchedulerJobActionResponse:
    scheduler = _get_scheduler(request)
    try:
        state = await scheduler.set_job_active(name, True)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return SchedulerJobActionResponse(
        job=_state_to_response(state),
        message="Job resumed",
    )


@router.post("/jobs/{name}/stop", response_model=SchedulerJobActionResponse)
async def stop_job(request: Request, name: str) -> SchedulerJobActionResponse:
    scheduler = _get_scheduler(request)
    try:
        state = await scheduler.set_job_active(name, False)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return SchedulerJobActionResponse(
        job=_state_to_response(state),
        message="Job paused",
    )


@router.post("/jobs/{name}/run", response_model=SchedulerJobActionResponse)
async def run_job_now(request: Request, name: str) -> SchedulerJobActionResponse:
    scheduler = _get_scheduler(request)
    try:
        state = await scheduler.run_job_once(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return SchedulerJobActionResponse(
        job=_state_to_response(state),
        message=f"Job finished with status {state.last_run_status}",
    )
