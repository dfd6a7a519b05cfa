"""Event fan-out bus.

Decouples the stream consumer from subscribers. Each subscription owns a
queue and a worker task, so ``publish`` never runs listener code on the
caller's stack, a slow listener only delays itself, and every listener sees
its events strictly in publish order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from axon_sync.events import GlobalEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[GlobalEvent], Awaitable[None] | None]


class _Subscription:
    def __init__(self, listener: EventListener, event_types: frozenset[str] | None):
        self.listener = listener
        self.event_types = event_types
        self.queue: asyncio.Queue[GlobalEvent] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None

    def accepts(self, event: GlobalEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    def ensure_running(self) -> None:
        if self.task is None or self.task.done():
            name = getattr(self.listener, "__qualname__", repr(self.listener))
            self.task = asyncio.get_running_loop().create_task(
                self._run(), name=f"event-bus-{name}"
            )

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result: Any = self.listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener %r failed on %s", self.listener, event.type)
            finally:
                self.queue.task_done()


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        listener: EventListener,
        *,
        event_types: Iterable[str] | None = None,
    ) -> Callable[[], None]:
        """Register a listener; returns the function that unregisters it."""
        sub = _Subscription(listener, frozenset(event_types) if event_types is not None else None)
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
            if sub.task is not None:
                sub.task.cancel()

        return unsubscribe

    def publish(self, event: GlobalEvent) -> None:
        """Queue the event for every matching listener. Never raises."""
        for sub in list(self._subscriptions):
            if not sub.accepts(event):
                continue
            sub.queue.put_nowait(event)
            sub.ensure_running()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        for sub in list(self._subscriptions):
            await sub.queue.join()

    async def close(self) -> None:
        tasks = [sub.task for sub in self._subscriptions if sub.task is not None]
        self._subscriptions.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
