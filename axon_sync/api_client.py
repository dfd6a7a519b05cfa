"""HTTP client for the agent backend API.

One :class:`AgentClient` is bound to one base URL. It is created and owned by
the connection manager; everything else borrows it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from axon_sync.errors import AgentApiError
from axon_sync.events import GlobalEvent, heartbeat, parse_frame
from axon_sync.models import HealthResponse, Message, Session, SessionStatusInfo
from axon_sync.sse import parse_sse

logger = logging.getLogger(__name__)

DEFAULT_EVENT_PATH = "/global/event"


class EventStream:
    """A long-lived, open event-stream response.

    Iterate :meth:`frames` to consume it; :meth:`aclose` releases the
    underlying connection and is safe to call more than once.
    """

    def __init__(self, response: httpx.Response):
        self._response = response

    async def frames(self) -> AsyncIterator[GlobalEvent]:
        async for message in parse_sse(self._response.aiter_lines()):
            if message.is_comment:
                yield heartbeat()
                continue
            try:
                data = json.loads(message.data)
            except json.JSONDecodeError:
                logger.debug("Non-JSON event frame: %s", message.data[:200])
                continue
            yield parse_frame(data)

    async def aclose(self) -> None:
        await self._response.aclose()

    @property
    def closed(self) -> bool:
        return self._response.is_closed


class AgentClient:
    """Thin async wrapper over the backend's REST + SSE surface."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        event_path: str = DEFAULT_EVENT_PATH,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.event_path = event_path
        self._timeout = timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def closed(self) -> bool:
        return self._http.is_closed

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        directory: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        query = dict(params or {})
        if directory:
            query["directory"] = directory
        response = await self._http.request(
            method, path, json=json_body, params=query or None
        )
        if response.is_error:
            raise AgentApiError.from_response(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> HealthResponse:
        return HealthResponse.model_validate(await self._request("GET", "/global/health"))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(self, directory: str | None = None) -> list[Session]:
        data = await self._request("GET", "/session", directory=directory)
        return [Session.model_validate(item) for item in data or []]

    async def create_session(
        self,
        *,
        title: str | None = None,
        parent_id: str | None = None,
        directory: str | None = None,
    ) -> Session:
        body: dict[str, Any] = {}
        if title:
            body["title"] = title
        if parent_id:
            body["parentID"] = parent_id
        data = await self._request("POST", "/session", json_body=body, directory=directory)
        return Session.model_validate(data)

    async def get_session(self, session_id: str, directory: str | None = None) -> Session:
        data = await self._request("GET", f"/session/{session_id}", directory=directory)
        return Session.model_validate(data)

    async def update_session(
        self, session_id: str, *, title: str, directory: str | None = None
    ) -> Session:
        data = await self._request(
            "PATCH", f"/session/{session_id}", json_body={"title": title}, directory=directory
        )
        return Session.model_validate(data)

    async def delete_session(self, session_id: str, directory: str | None = None) -> bool:
        data = await self._request("DELETE", f"/session/{session_id}", directory=directory)
        return data is None or bool(data)

    async def abort_session(self, session_id: str, directory: str | None = None) -> bool:
        data = await self._request("POST", f"/session/{session_id}/abort", directory=directory)
        return data is None or bool(data)

    async def session_status(self, directory: str | None = None) -> dict[str, SessionStatusInfo]:
        data = await self._request("GET", "/session/status", directory=directory)
        return {
            sid: SessionStatusInfo.model_validate(status)
            for sid, status in (data or {}).items()
        }

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(
        self, session_id: str, *, limit: int | None = None, directory: str | None = None
    ) -> list[Message]:
        params = {"limit": limit} if limit else None
        data = await self._request(
            "GET", f"/session/{session_id}/message", directory=directory, params=params
        )
        return [Message.model_validate(item) for item in data or []]

    async def prompt_async(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        *,
        model: dict[str, str] | None = None,
        agent: str | None = None,
        variant: str | None = None,
        directory: str | None = None,
    ) -> Any:
        """Send a message without waiting for the reply.

        Returns the decoded body, which may still carry an error envelope; the
        reply itself arrives on the event stream.
        """
        body: dict[str, Any] = {"parts": parts}
        if model:
            body["model"] = model
        if agent:
            body["agent"] = agent
        if variant:
            body["variant"] = variant
        return await self._request(
            "POST", f"/session/{session_id}/prompt_async", json_body=body, directory=directory
        )

    async def command(
        self,
        session_id: str,
        command: str,
        arguments: str = "",
        *,
        model: str | None = None,
        directory: str | None = None,
    ) -> Any:
        body: dict[str, Any] = {"command": command, "arguments": arguments}
        if model:
            body["model"] = model
        return await self._request(
            "POST", f"/session/{session_id}/command", json_body=body, directory=directory
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def open_event_stream(self) -> EventStream:
        """Open the push channel. The read side has no timeout."""
        request = self._http.build_request(
            "GET",
            self.event_path,
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        response = await self._http.send(request, stream=True)
        if response.is_error:
            await response.aread()
            await response.aclose()
            raise AgentApiError.from_response(response)
        return EventStream(response)
