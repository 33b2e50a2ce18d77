"""Pydantic schemas for lifecycle job status and control."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SchedulerJobResponse(BaseModel):
    id: int
    name: str = Field(..., min_length=1, max_length=255)
    schedule: str = Field(..., description="Schedule expression, e.g. 'every 60s' or 'daily 03:00'")
    is_active: bool = Field(True, description="Whether the scheduler fires this job")
    running: bool = Field(False, description="Whether an invocation is in progress")
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_message: Optional[str] = None
    last_run_duration_seconds: Optional[float] = None
    last_result_count: Optional[int] = None
    skipped_runs: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SchedulerJobsResponse(BaseModel):
    jobs: List[SchedulerJobResponse]


class SchedulerJobActionResponse(BaseModel):
    job: SchedulerJobResponse
    message: str
