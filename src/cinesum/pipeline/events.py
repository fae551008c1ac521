"""Event bus delivering orchestrator events to observers."""

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable

from cinesum.models.events import BaseEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseEvent], object]


class EventBus:
    """Publish/subscribe fan-out for pipeline events.

    Plain callables are invoked inline, in emission order. Coroutine
    functions are scheduled as tasks on the running loop. ``stream()`` gives
    an ordered async iterator backed by its own queue. A failing handler is
    logged and never affects the publisher or other observers.
    """

    def __init__(self):
        self._handlers: list[EventHandler] = []
        self._queues: set[asyncio.Queue] = set()
        self._tasks: set[asyncio.Task] = set()
        self._pending: deque[BaseEvent] = deque()
        self._delivering = False

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: BaseEvent) -> None:
        self.publish_all((event,))

    def publish_all(self, events: Iterable[BaseEvent]) -> None:
        """Deliver events in order.

        A handler may trigger further publishes (e.g. by cancelling the run);
        those are queued behind the events still being delivered.
        """
        self._pending.extend(events)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._delivering = False

    def _deliver(self, event: BaseEvent) -> None:
        for handler in list(self._handlers):
            if inspect.iscoroutinefunction(handler):
                self._schedule(handler, event)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %s", handler, event.kind)
        for queue in self._queues:
            queue.put_nowait(event)

    async def stream(self) -> AsyncIterator[BaseEvent]:
        """Yield every event published after the iterator starts, in order."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers) + len(self._queues)

    def _schedule(self, handler: EventHandler, event: BaseEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping async handler %r for %s", handler, event.kind)
            return
        task = loop.create_task(handler(event))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed", exc_info=task.exception())
