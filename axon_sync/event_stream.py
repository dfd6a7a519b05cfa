"""Event stream consumer: keeps one SSE subscription alive per connection.

Lifecycle::

    idle -> starting -> active -> broken -> scheduled -> starting -> ...
                                        \\-> gave_up (after max attempts)

Every received frame counts as a heartbeat. A watchdog breaks the stream when
nothing has arrived for ``heartbeat_timeout`` seconds; breaks are followed by
an exponential-backoff reconnect that only fires while the connection manager
still reports a connected backend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

from axon_sync.api_client import AgentClient, EventStream
from axon_sync.config import Settings, settings as default_settings
from axon_sync.event_bus import EventBus
from axon_sync.models import StreamHealth, StreamPhase

logger = logging.getLogger(__name__)

HealthListener = Callable[[StreamHealth], None]


class ClientSource(Protocol):
    """The side of the connection manager the consumer depends on."""

    @property
    def client(self) -> AgentClient | None: ...

    @property
    def is_connected(self) -> bool: ...


def backoff_delay(attempt: int, *, base: float, multiplier: float, max_delay: float) -> float:
    """Delay before reconnect attempt number ``attempt`` (0-based), capped."""
    return min(max_delay, base * multiplier**attempt)


class EventStreamConsumer:
    def __init__(
        self,
        connection: ClientSource,
        bus: EventBus,
        *,
        settings: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connection = connection
        self._bus = bus
        self._settings = settings
        self._clock = clock

        self._phase = StreamPhase.IDLE
        self._attempts = 0
        self._last_heartbeat: float | None = None
        self._last_error: str | None = None
        self._next_retry_delay: float | None = None
        # Bumped by stop(); an open that completes under an older value is stale
        self._generation = 0

        self._stream: EventStream | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._listeners: list[HealthListener] = []

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def health(self) -> StreamHealth:
        return StreamHealth(
            phase=self._phase,
            reconnect_attempts=self._attempts,
            last_heartbeat_at=self._last_heartbeat,
            last_error=self._last_error,
            next_retry_delay=self._next_retry_delay,
        )

    def subscribe(self, listener: HealthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_phase(self, phase: StreamPhase) -> None:
        self._phase = phase
        snapshot = self.health
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Stream health listener failed")

    def backoff_delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            base=self._settings.reconnect_base_delay,
            multiplier=self._settings.reconnect_multiplier,
            max_delay=self._settings.reconnect_max_delay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the stream. No-op while already starting or active."""
        if self._phase in (StreamPhase.STARTING, StreamPhase.ACTIVE):
            return

        current = asyncio.current_task()
        if self._reconnect_task is not None and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        self._reconnect_task = None

        client = self._connection.client
        if client is None:
            logger.warning("Event stream not started: no client")
            return

        generation = self._generation
        self._set_phase(StreamPhase.STARTING)
        try:
            stream = await client.open_event_stream()
        except Exception as exc:
            if generation != self._generation:
                return
            logger.warning("Failed to open event stream: %s", exc)
            self._handle_break(str(exc) or exc.__class__.__name__)
            return

        if generation != self._generation:
            await stream.aclose()
            return

        self._stream = stream
        self._attempts = 0
        self._last_heartbeat = self._clock()
        self._last_error = None
        self._next_retry_delay = None
        self._set_phase(StreamPhase.ACTIVE)
        logger.info("Event stream connected to %s%s", client.base_url, client.event_path)

        loop = asyncio.get_running_loop()
        self._read_task = loop.create_task(self._read_loop(stream), name="event-stream-read")
        self._watchdog_task = loop.create_task(self._watchdog(), name="event-stream-watchdog")

    async def stop(self) -> None:
        """Cancel everything and release the response. Idempotent."""
        self._generation += 1
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._read_task, self._watchdog_task, self._reconnect_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._read_task = self._watchdog_task = self._reconnect_task = None

        stream, self._stream = self._stream, None
        if stream is not None and not stream.closed:
            await stream.aclose()

        self._attempts = 0
        self._last_heartbeat = None
        self._next_retry_delay = None
        if self._phase is not StreamPhase.IDLE:
            self._set_phase(StreamPhase.IDLE)
            logger.info("Event stream stopped")

    async def reconnect_now(self) -> None:
        """Manual retry, typically after giving up."""
        await self.stop()
        await self.start()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _read_loop(self, stream: EventStream) -> None:
        reason = "stream closed by server"
        try:
            async for event in stream.frames():
                self._last_heartbeat = self._clock()
                if event.is_heartbeat:
                    continue
                self._bus.publish(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
        finally:
            if not stream.closed:
                await stream.aclose()
            if self._stream is stream:
                self._stream = None
        self._handle_break(reason)

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._settings.heartbeat_check_interval)
            if self.check_heartbeat():
                return

    def check_heartbeat(self) -> bool:
        """Break the stream if the heartbeat is stale. Returns True if it broke."""
        if self._phase is not StreamPhase.ACTIVE or self._last_heartbeat is None:
            return False
        elapsed = self._clock() - self._last_heartbeat
        if elapsed > self._settings.heartbeat_timeout:
            logger.warning("No event stream activity for %.1fs", elapsed)
            self._handle_break("heartbeat timeout")
            return True
        return False

    def _handle_break(self, reason: str) -> None:
        if self._phase not in (StreamPhase.STARTING, StreamPhase.ACTIVE):
            return
        logger.warning("Event stream broken: %s", reason)
        self._last_error = reason
        self._set_phase(StreamPhase.BROKEN)

        current = asyncio.current_task()
        for task in (self._read_task, self._watchdog_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._read_task = self._watchdog_task = None
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self._settings.reconnect_max_attempts
        if self._attempts >= max_attempts:
            self._next_retry_delay = None
            self._set_phase(StreamPhase.GAVE_UP)
            logger.error("Event stream gave up after %d reconnect attempts", self._attempts)
            return

        delay = self.backoff_delay(self._attempts)
        self._attempts += 1
        self._next_retry_delay = delay
        self._set_phase(StreamPhase.SCHEDULED)
        logger.info(
            "Event stream reconnect %d/%d in %.2fs", self._attempts, max_attempts, delay
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay), name="event-stream-reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._connection.is_connected:
            logger.info("Skipping event stream reconnect: backend not connected")
            self._reconnect_task = None
            self._set_phase(StreamPhase.IDLE)
            return
        await self.start()
