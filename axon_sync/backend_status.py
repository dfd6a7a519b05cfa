"""Backend status tracker: passive relay of the process supervisor's reports.

The supervisor (download/start/stop of the agent binary) lives outside this
package and is reached only through the :class:`Supervisor` protocol.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydantic import ValidationError

from axon_sync.models import (
    BackendStatus,
    ServiceMode,
    Uninitialized,
    backend_status_adapter,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[BackendStatus, BackendStatus], Awaitable[None] | None]


class Supervisor(Protocol):
    """What this package needs from the backend process supervisor."""

    async def get_status(self) -> Any: ...

    async def get_endpoint(self) -> str | None: ...

    async def set_mode(self, mode: ServiceMode) -> None: ...

    async def initialize(self) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def restart(self) -> None: ...


def parse_backend_status(payload: Any) -> BackendStatus:
    """Validate a supervisor payload such as ``{"type": "running", "port": 4096}``."""
    try:
        return backend_status_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid backend status: {payload!r}") from exc


class BackendStatusTracker:
    def __init__(self, supervisor: Supervisor | None = None):
        self._supervisor = supervisor
        self._status: BackendStatus = Uninitialized()
        self._listeners: list[StatusListener] = []

    @property
    def status(self) -> BackendStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def load_initial(self) -> BackendStatus:
        """Pull the current status once at startup (no notification)."""
        if self._supervisor is None:
            return self._status
        try:
            self._status = parse_backend_status(await self._supervisor.get_status())
            logger.info("Initial backend status: %s", self._status.type)
        except Exception:
            logger.warning("Failed to get initial backend status", exc_info=True)
        return self._status

    async def update(self, status: BackendStatus | dict[str, Any]) -> None:
        """Record a supervisor notification and notify listeners."""
        if isinstance(status, dict):
            status = parse_backend_status(status)
        previous, self._status = self._status, status
        logger.info("Backend status %s -> %s", previous.type, status.type)

        for listener in list(self._listeners):
            try:
                result = listener(previous, status)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Backend status listener failed")
