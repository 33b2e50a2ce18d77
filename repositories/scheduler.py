"""Repository for lifecycle job bookkeeping."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ScheduledJob


class SchedulerJobRepository:
    """Encapsulates persistence of registered jobs and their last run."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_name(self, name: str) -> Optional[ScheduledJob]:
        stmt = select(ScheduledJob).where(ScheduledJob.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_job(self, *, name: str, schedule: str) -> ScheduledJob:
        """Create the row for a registered job, or refresh its schedule expression."""

        job = await self.get_by_name(name)
        if job is None:
            job = ScheduledJob(name=name, schedule=schedule, is_active=True)
            job.update_timestamp()
            self.session.add(job)
            await self.session.flush()
            logger.debug("Created scheduler job", job_id=job.id, name=job.name)
        elif job.schedule != schedule:
            job.schedule = schedule
            job.update_timestamp()
            await self.session.flush()
            logger.debug("Updated scheduler job schedule", name=job.name, schedule=schedule)
        return job

    async def update_job(
        self,
        job: ScheduledJob,
        *,
        is_active: Optional[bool] = None,
        last_run_at: Optional[datetime] = None,
        next_run_at: Optional[datetime] = None,
        last_run_status: Optional[str] = None,
        last_run_message: Optional[str] = None,
        last_run_duration_seconds: Optional[float] = None,
        last_result_count: Optional[int] = None,
        skipped: bool = False,
    ) -> ScheduledJob:
        if is_active is not None:
            job.is_active = is_active
        if last_run_at is not None:
            job.last_run_at = last_run_at
        if next_run_at is not None:
            job.next_run_at = next_run_at
        if last_run_status is not None:
            job.last_run_status = last_run_status
            # A successful run clears the previous failure message
            job.last_run_message = last_run_message
        if last_run_duration_seconds is not None:
            job.last_run_duration_seconds = last_run_duration_seconds
        if last_result_count is not None:
            job.last_result_count = last_result_count
        if skipped:
            job.skipped_runs = (job.skipped_runs or 0) + 1

        job.update_timestamp()
        await self.session.flush()
        logger.debug("Updated scheduler job", job_id=job.id, name=job.name)
        return job
