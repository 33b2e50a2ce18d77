"""Pydantic schemas for API responses."""

from .scheduler import (
    SchedulerJobActionResponse,
    SchedulerJobResponse,
    SchedulerJobsResponse,
)

__all__ = [
    "SchedulerJobResponse",
    "SchedulerJobsResponse",
    "SchedulerJobActionResponse",
]
