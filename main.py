from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Tuple
from fastapi import FastAPI
from routers import (
    scheduler as scheduler_router,
    metrics,
)
from utils.asyncio_optimizations import EventLoopOptimizer
from utils.settings import LifecycleSettings, load_settings
from db import init_db, close_db, get_session_factory
from services.event_bus import EventBus
from services.mailer import MailRelayClient
from services.notifications import NotificationDispatcher
from services.scheduler import LifecycleScheduler, register_lifecycle_jobs
import logging

logger = logging.getLogger(__name__)

Closer = Tuple[str, Callable[[], Awaitable[None]]]


async def _start_components(app: FastAPI, settings: LifecycleSettings, closers: List[Closer]) -> None:
    await init_db()
    closers.append(("database", close_db))
    session_factory = get_session_factory()

    event_bus = EventBus()
    await event_bus.start()
    app.state.event_bus = event_bus
    closers.append(("event bus", event_bus.stop))

    mailer = MailRelayClient(
        relay_url=settings.mail_relay_url,
        sender=settings.mail_from,
        token=settings.mail_relay_token,
        timeout_seconds=settings.mail_timeout_seconds,
    )
    await mailer.start()
    closers.append(("mail relay client", mailer.close))

    dispatcher = NotificationDispatcher(
        session_factory=session_factory,
        mailer=mailer,
        event_bus=event_bus,
    )
    app.state.notification_dispatcher = dispatcher
    closers.append(("email deliveries", lambda: dispatcher.wait_for_deliveries(timeout=10)))

    if not settings.scheduler_enabled:
        logger.warning("Lifecycle scheduler disabled via SCHEDULER_ENABLED")
        return

    scheduler = LifecycleScheduler(session_factory=session_factory)
    # A job that cannot be registered aborts startup
    register_lifecycle_jobs(
        scheduler,
        settings,
        session_factory=session_factory,
        event_bus=event_bus,
        dispatcher=dispatcher,
    )
    await scheduler.start()
    app.state.lifecycle_scheduler = scheduler
    closers.append(("scheduler", lambda: scheduler.shutdown(timeout=30)))
    logger.info(
        "Lifecycle scheduler started with %d jobs (max concurrency %d)",
        len(await scheduler.list_jobs()),
        settings.max_concurrency,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the database, event bus, mailer and scheduler; stop them in reverse order."""

    settings = load_settings()
    app.state.uvloop_enabled = EventLoopOptimizer.setup_uvloop()
    closers: List[Closer] = []

    try:
        await _start_components(app, settings, closers)
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:
        logger.error(f"Application startup failed: {e}")
        raise
    finally:
        logger.info("Application shutdown initiated...")
        for label, close in reversed(closers):
            try:
                await close()
                logger.info(f"Stopped {label}")
            except Exception as e:
                logger.error(f"Error stopping {label}: {e}")
        logger.info("Application shutdown completed")


app = FastAPI(title="Auction lifecycle scheduler", version="1.0.0", lifespan=lifespan)


@app.get("/")
async def root():
    return {
        "message": "Auction lifecycle scheduler",
        "endpoints": [
            "/scheduler/jobs",
            "/health",
            "/metrics",
        ],
        "status": "operational",
    }


app.include_router(scheduler_router.router)
app.include_router(metrics.router)
