"""Connection manager: owns the API client and the connection state machine.

Turns backend status and the chosen service mode into at most one live
:class:`AgentClient`, health-checks it, keeps the event stream consumer running
while connected and runs a periodic liveness check. Failures become
``Failed`` states, never exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from axon_sync.api_client import AgentClient
from axon_sync.backend_status import BackendStatusTracker, Supervisor
from axon_sync.config import Settings, settings as default_settings
from axon_sync.errors import HealthCheckError, extract_error_detail
from axon_sync.event_bus import EventBus
from axon_sync.event_stream import EventStreamConsumer
from axon_sync.models import (
    BackendError,
    BackendStatus,
    Connected,
    Connecting,
    ConnectionState,
    Disconnected,
    Failed,
    LocalMode,
    RemoteMode,
    Running,
    ServiceMode,
    ServiceState,
    StreamHealth,
    Stopped,
    service_mode_adapter,
)
from axon_sync.preferences import SERVICE_MODE_KEY, PreferenceStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., AgentClient]
StateListener = Callable[[ServiceState], None]


def default_mode(settings: Settings) -> ServiceMode:
    if settings.service_mode == "remote" and settings.remote_configured:
        return RemoteMode(url=settings.remote_url)
    return LocalMode()


def _endpoint_port(endpoint: str) -> int:
    url = httpx.URL(endpoint)
    # httpx reports scheme default ports as None
    return url.port or (443 if url.scheme == "https" else 80)


class ConnectionManager:
    def __init__(
        self,
        tracker: BackendStatusTracker,
        bus: EventBus,
        supervisor: Supervisor | None = None,
        *,
        settings: Settings = default_settings,
        client_factory: ClientFactory = AgentClient,
        preferences: PreferenceStore | None = None,
    ):
        self._tracker = tracker
        self._supervisor = supervisor
        self._settings = settings
        self._client_factory = client_factory
        self._preferences = preferences

        self._mode: ServiceMode = default_mode(settings)
        self._state: ConnectionState = Disconnected()
        self._client: AgentClient | None = None
        self._endpoint: str | None = None
        # Bumped by disconnect(); a health check finishing under an older value lost the race
        self._generation = 0
        self._health_task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []

        self.events = EventStreamConsumer(self, bus, settings=settings)
        self.events.subscribe(self._on_stream_health)
        self._unsubscribe_tracker = tracker.subscribe(self._on_backend_status)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def tracker(self) -> BackendStatusTracker:
        return self._tracker

    @property
    def client(self) -> AgentClient | None:
        return self._client

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def mode(self) -> ServiceMode:
        return self._mode

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        return isinstance(self._state, Connected)

    def snapshot(self) -> ServiceState:
        return ServiceState(
            mode=self._mode,
            backend_status=self._tracker.status,
            connection_state=self._state,
            endpoint=self._endpoint,
            stream=self.events.health,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener and call it immediately with the current state."""
        self._listeners.append(listener)
        listener(self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Connection state listener failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.info("Connection %s -> %s", self._state.status, state.status)
        self._state = state
        self._notify()

    def _on_stream_health(self, _health: StreamHealth) -> None:
        self._notify()

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def _resolve_endpoint(self) -> str:
        if isinstance(self._mode, RemoteMode):
            return self._mode.url.rstrip("/")

        status = self._tracker.status
        if isinstance(status, Running):
            return self._settings.local_endpoint(status.port)

        if self._supervisor is not None:
            try:
                endpoint = await self._supervisor.get_endpoint()
                if endpoint:
                    return endpoint.rstrip("/")
            except Exception:
                logger.warning("Supervisor endpoint lookup failed, using default port")
        return self._settings.local_endpoint()

    async def _release_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def connect(self) -> None:
        """Resolve the endpoint, check its health and start streaming events."""
        if isinstance(self._state, (Connecting, Connected)):
            return

        # Claim the attempt before the first await
        generation = self._generation
        self._set_state(Connecting())

        # A failed connection may still hold its client and stream
        await self._cancel_health_task()
        await self.events.stop()
        await self._release_client()
        if generation != self._generation:
            return

        endpoint = await self._resolve_endpoint()
        if generation != self._generation:
            return

        client = self._client_factory(
            endpoint,
            timeout=self._settings.health_timeout,
            event_path=self._settings.event_path,
        )
        self._client = client
        self._endpoint = endpoint
        logger.info("Connecting to %s", endpoint)

        try:
            health = await client.health()
            if not health.healthy:
                raise HealthCheckError("Server health check failed")
        except Exception as exc:
            if generation != self._generation:
                await client.aclose()
                return
            detail = extract_error_detail(exc) or "Connection failed"
            logger.warning("Connection to %s failed: %s", endpoint, detail)
            await self._release_client()
            self._endpoint = None
            self._set_state(Failed(message=detail))
            return

        if generation != self._generation:
            # disconnect() landed while the health check was in flight
            await client.aclose()
            return

        self._set_state(Connected(version=health.version or "unknown"))
        self._health_task = asyncio.get_running_loop().create_task(
            self._health_loop(), name="connection-health"
        )
        await self.events.start()

    async def disconnect(self) -> None:
        """Tear down the client, stream and liveness task. Always safe."""
        self._generation += 1
        await self._cancel_health_task()
        await self.events.stop()
        await self._release_client()
        self._endpoint = None
        if not isinstance(self._state, Disconnected):
            self._set_state(Disconnected())

    async def _cancel_health_task(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval)
            client = self._client
            if client is None or not self.is_connected:
                return
            try:
                health = await client.health()
            except Exception as exc:
                logger.warning("Liveness check failed: %s", exc)
                self._set_state(Failed(message="Connection lost"))
                return
            if not health.healthy:
                logger.warning("Liveness check reported unhealthy server")
                self._set_state(Failed(message="Health check failed"))
                return

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    async def load_preferred_mode(self) -> ServiceMode:
        """Restore the last chosen mode from preferences, if any."""
        if self._preferences is None:
            return self._mode
        stored = await self._preferences.get(SERVICE_MODE_KEY)
        if stored:
            try:
                self._mode = service_mode_adapter.validate_python(stored)
            except ValueError:
                logger.warning("Ignoring invalid stored service mode: %r", stored)
        return self._mode

    async def set_mode(self, mode: ServiceMode | dict[str, Any]) -> None:
        if isinstance(mode, dict):
            mode = service_mode_adapter.validate_python(mode)

        await self.disconnect()
        self._mode = mode
        self._notify()

        if self._preferences is not None:
            await self._preferences.set(SERVICE_MODE_KEY, mode.model_dump())
        if self._supervisor is not None:
            try:
                await self._supervisor.set_mode(mode)
            except Exception:
                logger.warning("Failed to update backend mode", exc_info=True)

        if isinstance(mode, RemoteMode):
            await self.connect()

    # ------------------------------------------------------------------
    # Backend policy
    # ------------------------------------------------------------------

    async def _on_backend_status(self, previous: BackendStatus, current: BackendStatus) -> None:
        if isinstance(current, (Stopped, BackendError)):
            await self.disconnect()
        elif (
            isinstance(current, Running)
            and self._settings.auto_connect
            and isinstance(self._mode, LocalMode)
        ):
            if self._endpoint is not None and _endpoint_port(self._endpoint) != current.port:
                logger.info("Backend moved to port %d, reconnecting", current.port)
                await self.disconnect()
                await self.connect()
            elif not isinstance(previous, Running):
                if isinstance(self._state, Failed):
                    await self.disconnect()
                await self.connect()
        self._notify()

    # ------------------------------------------------------------------
    # Backend control passthrough
    # ------------------------------------------------------------------

    def _require_supervisor(self) -> Supervisor:
        if self._supervisor is None:
            raise RuntimeError("No backend supervisor configured")
        return self._supervisor

    async def initialize_backend(self) -> None:
        await self._require_supervisor().initialize()

    async def start_backend(self) -> None:
        await self._require_supervisor().start()

    async def stop_backend(self) -> None:
        await self._require_supervisor().stop()

    async def restart_backend(self) -> None:
        await self._require_supervisor().restart()

    async def close(self) -> None:
        self._unsubscribe_tracker()
        await self.disconnect()
