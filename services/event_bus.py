"""In-process event bus that fans out lifecycle events to subscribers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Set, Type, TypeVar

from loguru import logger

EventT = TypeVar("EventT")
EventHandler = Callable[[EventT], Awaitable[None]]


def _event_name(event: object) -> str:
    return getattr(event, "name", type(event).__name__)


class EventBus:
    """Asynchronous event bus with a single dispatcher task.

    Publishing never waits for subscribers: events are queued and delivered by
    the dispatcher. Handler failures are logged and do not reach the publisher.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._subscribers: Dict[Type[object], List[EventHandler]] = defaultdict(list)
        self._listeners: Dict[Type[object], Set[asyncio.Queue]] = defaultdict(set)
        self._dispatcher: asyncio.Task | None = None
        self._running = asyncio.Event()
        self.dropped_events = 0

    def subscribe(self, event_type: Type[EventT], handler: EventHandler[EventT]) -> None:
        """Register an asynchronous handler for the given event type."""

        self._subscribers[event_type].append(handler)  # type: ignore[arg-type]

    @asynccontextmanager
    async def listen(self, event_type: Type[EventT], maxsize: int = 100) -> AsyncIterator["asyncio.Queue[EventT]"]:
        """Attach a bounded queue receiving every event of ``event_type`` while the context is open."""

        queue: asyncio.Queue[EventT] = asyncio.Queue(maxsize=maxsize)
        self._listeners[event_type].add(queue)
        try:
            yield queue
        finally:
            self._listeners[event_type].discard(queue)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        """Start the dispatcher loop if not already running."""

        if self.is_running:
            return

        self._running.set()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="event-bus-dispatcher")

    async def stop(self) -> None:
        """Stop the dispatcher loop after draining already queued events."""

        if self._dispatcher is None:
            return

        await self._queue.put(None)  # Sentinel to unblock queue

        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        finally:
            self._running.clear()
            self._dispatcher = None

    async def publish(self, event: object) -> None:
        """Enqueue an event for asynchronous fan-out."""

        self.publish_nowait(event)

    def publish_nowait(self, event: object) -> None:
        self._queue.put_nowait(event)
        logger.debug("Event published", event=_event_name(event))

    async def drain(self) -> None:
        """Wait until every event queued so far has been dispatched."""

        if self.is_running:
            await self._queue.join()

    async def _dispatch_loop(self) -> None:
        while self._running.is_set():
            event = await self._queue.get()
            if event is None:
                # Sentinel - allow graceful exit
                self._queue.task_done()
                break

            try:
                self._offer_to_listeners(event)
                handlers = list(self._subscribers.get(type(event), []))
                if handlers:
                    await self._fan_out(event, handlers)
                else:
                    logger.debug("No subscribers for event", event_type=type(event).__name__)
            finally:
                self._queue.task_done()

    def _offer_to_listeners(self, event: object) -> None:
        for queue in list(self._listeners.get(type(event), ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1
                logger.warning("Dropping event for slow listener", event=_event_name(event))

    async def _fan_out(self, event: object, handlers: List[EventHandler]) -> None:
        tasks = [asyncio.create_task(self._invoke_handler(handler, event)) for handler in handlers]
        await asyncio.gather(*tasks)

    async def _invoke_handler(self, handler: EventHandler, event: object) -> None:
        try:
            await handler(event)  # type: ignore[arg-type]
        except Exception:
            logger.exception(
                "Event handler failed",
                handler=getattr(handler, "__name__", repr(handler)),
                event_type=type(event).__name__,
            )
