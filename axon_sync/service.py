"""SyncService: wires the engine together.

One instance owns the bus, the backend status tracker, the connection manager,
the chat store and the pending-request store. Construct it with the
supervisor (or None for remote-only use), call :meth:`initialize`, forward
supervisor notifications to :meth:`handle_backend_notification` and call
:meth:`dispose` on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from axon_sync.api_client import AgentClient
from axon_sync.backend_status import BackendStatusTracker, Supervisor
from axon_sync.chat import ChatStore
from axon_sync.config import Settings, settings as default_settings
from axon_sync.connection import ClientFactory, ConnectionManager
from axon_sync.event_bus import EventBus
from axon_sync.models import BackendStatus, RemoteMode, Running, ServiceState
from axon_sync.pending import PendingStore
from axon_sync.preferences import PreferenceStore

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        supervisor: Supervisor | None = None,
        *,
        settings: Settings = default_settings,
        client_factory: ClientFactory = AgentClient,
        preferences: PreferenceStore | None = None,
    ):
        self.settings = settings
        self.preferences = preferences
        self.bus = EventBus()
        self.tracker = BackendStatusTracker(supervisor)
        self.connection = ConnectionManager(
            self.tracker,
            self.bus,
            supervisor,
            settings=settings,
            client_factory=client_factory,
            preferences=preferences,
        )
        self.chat = ChatStore(self.connection, self.bus, settings=settings, preferences=preferences)
        self.pending = PendingStore(self.bus)

        self._was_connected = False
        self._refresh_task: asyncio.Task[None] | None = None
        self._unsubscribe = self.connection.subscribe(self._on_state)

    async def __aenter__(self) -> SyncService:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    def _on_state(self, state: ServiceState) -> None:
        connected = state.is_connected
        if connected and not self._was_connected:
            logger.info("Connected to %s, loading sessions", state.endpoint)
            self._refresh_task = asyncio.get_running_loop().create_task(
                self.chat.refresh_sessions(), name="chat-refresh-sessions"
            )
        self._was_connected = connected

    async def initialize(self) -> None:
        if self.preferences is not None:
            await self.preferences.init()
        mode = await self.connection.load_preferred_mode()
        await self.chat.restore_preferences()
        status = await self.tracker.load_initial()

        if isinstance(mode, RemoteMode) or (
            self.settings.auto_connect and isinstance(status, Running)
        ):
            await self.connection.connect()
        else:
            logger.info("Backend %s, not connecting yet", status.type)

    async def wait_for_sessions(self) -> None:
        """Wait for the session refresh triggered by the last connect."""
        if self._refresh_task is not None:
            await self._refresh_task

    async def handle_backend_notification(self, status: BackendStatus | dict[str, Any]) -> None:
        await self.tracker.update(status)

    def state(self) -> ServiceState:
        return self.connection.snapshot()

    async def reconnect_stream(self) -> None:
        await self.connection.events.reconnect_now()

    async def dispose(self) -> None:
        self._unsubscribe()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            await asyncio.gather(self._refresh_task, return_exceptions=True)
        self.chat.close()
        self.pending.close()
        await self.connection.close()
        await self.bus.close()
        if self.preferences is not None:
            await self.preferences.close()
