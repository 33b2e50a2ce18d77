import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from db.models import ListingStatus
from events import AuctionUpdated
from factories import NOW, StubEventBus, as_utc, create_listing, load_listing
from repositories import SchedulerJobRepository
from services.auction_jobs import (
    ACTIVATION_JOB,
    CLEANUP_JOB,
    ENDING_JOB,
    ActivationJob,
    JobRunResult,
)
from services.scheduler import JobSchedule, LifecycleScheduler, register_lifecycle_jobs
from utils.error_handling import SchedulerConfigurationError
from utils.settings import LifecycleSettings

DAILY = "daily 03:00"


def fixed_clock():
    return NOW


def make_callback(result_status="success", transitioned=0, calls=None):
    async def callback():
        if calls is not None:
            calls.append(1)
        return JobRunResult(job="test-job", started_at=NOW, status=result_status, transitioned=transitioned)

    return callback


@pytest.fixture()
async def scheduler(session_factory):
    scheduler = LifecycleScheduler(session_factory=session_factory, clock=fixed_clock)
    yield scheduler
    await scheduler.shutdown()


async def load_job_row(session_factory, name):
    async with session_factory() as session:
        return await SchedulerJobRepository(session).get_by_name(name)


class BlockingEventBus(StubEventBus):
    """Holds every publish until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def publish(self, event):
        self.entered.set()
        await self.release.wait()
        await super().publish(event)


async def start_blocked_activation(session_factory, bus):
    listing = await create_listing(session_factory)
    scheduler = LifecycleScheduler(session_factory=session_factory, clock=fixed_clock)
    scheduler.register(
        ACTIVATION_JOB,
        "every 1h",
        ActivationJob(session_factory=session_factory, event_bus=bus, clock=fixed_clock),
    )
    await scheduler.start()
    await asyncio.wait_for(bus.entered.wait(), timeout=5)
    return scheduler, listing


async def wait_for_run(scheduler, name):
    for _ in range(100):
        state = await scheduler.get_job(name)
        if state.last_run_status is not None:
            return state
        await asyncio.sleep(0.05)
    return await scheduler.get_job(name)


@pytest.mark.parametrize(
    "expression, seconds",
    [("every 30s", 30), ("every 5m", 300), ("every 2h", 7200), ("EVERY 10 s", 10)],
)
def test_parse_interval_schedules(expression, seconds):
    schedule = JobSchedule.parse(expression)

    assert schedule.interval_seconds == seconds
    assert schedule.runs_on_start is True
    assert schedule.next_run_after(NOW) == NOW + timedelta(seconds=seconds)


def test_daily_schedule_next_run():
    schedule = JobSchedule.parse("daily 03:00")

    assert schedule.runs_on_start is False
    assert schedule.next_run_after(NOW) == datetime(2024, 6, 2, 3, 0, tzinfo=timezone.utc)
    early = datetime(2024, 6, 1, 2, 59, tzinfo=timezone.utc)
    assert schedule.next_run_after(early) == datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)


def test_early_timer_does_not_repeat_daily_slot():
    schedule = JobSchedule.parse(DAILY)
    slot = datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)

    fired_early = slot - timedelta(milliseconds=1)

    assert schedule.next_run_following(slot, fired_early) == slot + timedelta(days=1)
    assert schedule.next_run_following(slot, slot + timedelta(seconds=5)) == slot + timedelta(days=1)


def test_interval_follows_the_actual_tick():
    schedule = JobSchedule.parse("every 30s")
    late = NOW + timedelta(seconds=10)

    assert schedule.next_run_following(NOW, late) == late + timedelta(seconds=30)


@pytest.mark.parametrize("expression", ["", "hourly", "every 0s", "every 5d", "daily 24:00", "daily 3:60"])
def test_invalid_schedule_expressions(expression):
    with pytest.raises(SchedulerConfigurationError):
        JobSchedule.parse(expression)


def test_registration_errors():
    scheduler = LifecycleScheduler(session_factory=None)
    scheduler.register("job", DAILY, make_callback())

    with pytest.raises(SchedulerConfigurationError):
        scheduler.register("job", DAILY, make_callback())
    with pytest.raises(SchedulerConfigurationError):
        scheduler.register(" ", DAILY, make_callback())
    with pytest.raises(SchedulerConfigurationError):
        scheduler.register("other", DAILY, "not callable")
    with pytest.raises(SchedulerConfigurationError):
        scheduler.register("other", "sometimes", make_callback())


@pytest.mark.asyncio
async def test_register_after_start_is_rejected(scheduler):
    scheduler.register("job", DAILY, make_callback())
    await scheduler.start()

    with pytest.raises(SchedulerConfigurationError):
        scheduler.register("late", DAILY, make_callback())


@pytest.mark.asyncio
async def test_start_persists_jobs(scheduler, session_factory):
    scheduler.register("job", DAILY, make_callback())
    await scheduler.start()

    jobs = await scheduler.list_jobs()
    assert [job.name for job in jobs] == ["job"]
    assert jobs[0].is_active is True
    row = await load_job_row(session_factory, "job")
    assert row.schedule == DAILY


@pytest.mark.asyncio
async def test_run_job_once_records_result(scheduler, session_factory):
    scheduler.register("job", DAILY, make_callback(transitioned=3))
    await scheduler.start()

    state = await scheduler.run_job_once("job")

    assert state.last_run_status == "success"
    assert state.last_result_count == 3
    assert state.last_run_message is None
    assert state.running is False

    row = await load_job_row(session_factory, "job")
    assert row.last_run_status == "success"
    assert row.last_result_count == 3
    assert as_utc(row.last_run_at) == NOW


@pytest.mark.asyncio
async def test_crashing_callback_is_recorded_as_error(scheduler, session_factory):
    async def crash():
        raise RuntimeError("boom")

    scheduler.register("job", DAILY, crash)
    await scheduler.start()

    result = await scheduler.trigger("job")

    assert result.status == "error"
    state = await scheduler.get_job("job")
    assert state.last_run_status == "error"
    assert "boom" in state.last_run_message
    assert not scheduler.run_guard.is_running("job")


@pytest.mark.asyncio
async def test_trigger_skips_while_previous_run_in_progress(scheduler, session_factory):
    calls = []
    scheduler.register("job", DAILY, make_callback(calls=calls))
    await scheduler.start()
    assert scheduler.run_guard.try_acquire("job")

    result = await scheduler.trigger("job")

    assert result.status == "skipped"
    assert calls == []
    state = await scheduler.get_job("job")
    assert state.skipped_runs == 1
    assert state.running is True
    assert state.last_run_status is None
    row = await load_job_row(session_factory, "job")
    assert row.skipped_runs == 1

    with pytest.raises(RuntimeError):
        await scheduler.run_job_once("job")

    scheduler.run_guard.release("job")
    await scheduler.run_job_once("job")
    assert calls == [1]


@pytest.mark.asyncio
async def test_unknown_job_raises_value_error(scheduler):
    await scheduler.start()

    with pytest.raises(ValueError):
        await scheduler.run_job_once("missing")
    with pytest.raises(ValueError):
        await scheduler.get_job("missing")
    with pytest.raises(ValueError):
        await scheduler.set_job_active("missing", False)


@pytest.mark.asyncio
async def test_pause_and_resume_job(scheduler, session_factory):
    scheduler.register("job", DAILY, make_callback())
    await scheduler.start()

    paused = await scheduler.set_job_active("job", False)
    assert paused.is_active is False
    assert (await load_job_row(session_factory, "job")).is_active is False

    resumed = await scheduler.set_job_active("job", True)
    assert resumed.is_active is True
    assert (await load_job_row(session_factory, "job")).is_active is True


@pytest.mark.asyncio
async def test_interval_job_fires_on_start(session_factory):
    fired = asyncio.Event()

    async def callback():
        fired.set()
        return JobRunResult(job="tick", started_at=datetime.now(timezone.utc))

    scheduler = LifecycleScheduler(session_factory=session_factory)
    scheduler.register("tick", "every 1h", callback)
    await scheduler.start()
    try:
        await asyncio.wait_for(fired.wait(), timeout=5)
        for _ in range(100):
            if (await scheduler.get_job("tick")).last_run_status is not None:
                break
            await asyncio.sleep(0.05)
        state = await scheduler.get_job("tick")
        assert state.last_run_status == "success"
        assert as_utc(state.next_run_at) > datetime.now(timezone.utc) + timedelta(minutes=59)
    finally:
        await scheduler.shutdown()

    assert await scheduler.list_jobs() == []


@pytest.mark.asyncio
async def test_register_lifecycle_jobs_uses_configured_schedules(session_factory):
    settings = LifecycleSettings(
        activation_schedule="every 30s",
        ending_schedule="every 15s",
        cleanup_schedule="daily 04:30",
    )
    scheduler = LifecycleScheduler(session_factory=session_factory)

    jobs = register_lifecycle_jobs(scheduler, settings, session_factory=session_factory)

    assert set(jobs) == {ACTIVATION_JOB, ENDING_JOB, CLEANUP_JOB}
    assert scheduler._registrations[ENDING_JOB].schedule.interval_seconds == 15
    assert scheduler._registrations[CLEANUP_JOB].schedule.daily_at.hour == 4


def test_register_lifecycle_jobs_rejects_bad_schedule():
    scheduler = LifecycleScheduler(session_factory=None)
    settings = LifecycleSettings(ending_schedule="whenever")

    with pytest.raises(SchedulerConfigurationError):
        register_lifecycle_jobs(scheduler, settings, session_factory=None)


@pytest.mark.asyncio
async def test_resuming_active_job_keeps_in_flight_run(session_factory):
    bus = BlockingEventBus()
    scheduler, listing = await start_blocked_activation(session_factory, bus)
    try:
        task = scheduler._tasks[ACTIVATION_JOB]

        await scheduler.set_job_active(ACTIVATION_JOB, True)
        assert scheduler._tasks[ACTIVATION_JOB] is task
        bus.release.set()
        state = await wait_for_run(scheduler, ACTIVATION_JOB)
    finally:
        bus.release.set()
        await scheduler.shutdown()

    assert state.last_run_status == "success"
    assert state.last_result_count == 1
    assert [event.listing_id for event in bus.of_type(AuctionUpdated)] == [listing.id]
    assert (await load_listing(session_factory, listing.id)).status == ListingStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_pausing_waits_for_in_flight_run(session_factory):
    bus = BlockingEventBus()
    scheduler, listing = await start_blocked_activation(session_factory, bus)
    try:
        pausing = asyncio.create_task(scheduler.set_job_active(ACTIVATION_JOB, False))
        await asyncio.sleep(0.05)
        assert not pausing.done()

        bus.release.set()
        state = await asyncio.wait_for(pausing, timeout=5)
    finally:
        bus.release.set()
        await scheduler.shutdown()

    assert state.is_active is False
    assert state.last_run_status == "success"
    assert len(bus.of_type(AuctionUpdated)) == 1
    assert ACTIVATION_JOB not in scheduler._tasks


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_run_publish(session_factory):
    bus = BlockingEventBus()
    scheduler, listing = await start_blocked_activation(session_factory, bus)

    stopping = asyncio.create_task(scheduler.shutdown())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    bus.release.set()
    await asyncio.wait_for(stopping, timeout=5)

    assert [event.listing_id for event in bus.of_type(AuctionUpdated)] == [listing.id]
    assert (await load_job_row(session_factory, ACTIVATION_JOB)).last_run_status == "success"


@pytest.mark.asyncio
async def test_shutdown_timeout_cancels_stuck_run(session_factory):
    bus = BlockingEventBus()
    scheduler, _ = await start_blocked_activation(session_factory, bus)

    await scheduler.shutdown(timeout=0.05)

    assert await scheduler.list_jobs() == []
    assert bus.published == []
