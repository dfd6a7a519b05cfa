"""Shared test fixtures.

The agent backend is faked with a small FastAPI app served through
``httpx.ASGITransport``. The event route is served separately by
:class:`FakeEventSource` so tests can push frames, pings and disconnects into
an open stream one at a time.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sse_starlette.sse import ServerSentEvent

from axon_sync.api_client import AgentClient
from axon_sync.config import Settings
from axon_sync.event_bus import EventBus
from axon_sync.preferences import PreferenceStore

BASE_URL = "http://127.0.0.1:4096"
SESSION_ID = "ses_1"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def session_info(
    session_id: str = SESSION_ID,
    title: str = "New session",
    directory: str = "/work",
    updated: int = 1000,
) -> dict[str, Any]:
    return {
        "id": session_id,
        "title": title,
        "directory": directory,
        "projectID": "proj_1",
        "time": {"created": 1000, "updated": updated},
    }


def user_info(message_id: str, session_id: str = SESSION_ID, created: int = 2000) -> dict[str, Any]:
    return {
        "id": message_id,
        "sessionID": session_id,
        "role": "user",
        "time": {"created": created},
        "model": {"providerID": "anthropic", "modelID": "claude"},
    }


def assistant_info(
    message_id: str,
    parent_id: str,
    session_id: str = SESSION_ID,
    created: int = 2001,
    completed: int | None = None,
    error: dict[str, Any] | None = None,
) -> dict[str, Any]:
    info: dict[str, Any] = {
        "id": message_id,
        "sessionID": session_id,
        "role": "assistant",
        "parentID": parent_id,
        "modelID": "claude",
        "providerID": "anthropic",
        "mode": "build",
        "time": {"created": created},
    }
    if completed is not None:
        info["time"]["completed"] = completed
    if error is not None:
        info["error"] = error
    return info


def text_part(
    part_id: str,
    message_id: str,
    text: str = "",
    session_id: str = SESSION_ID,
    part_type: str = "text",
) -> dict[str, Any]:
    return {
        "id": part_id,
        "sessionID": session_id,
        "messageID": message_id,
        "type": part_type,
        "text": text,
    }


def message_updated(info: dict[str, Any]) -> dict[str, Any]:
    return {"type": "message.updated", "properties": {"info": info}}


def part_updated(part: dict[str, Any], delta: str | None = None) -> dict[str, Any]:
    properties: dict[str, Any] = {"part": part}
    if delta is not None:
        properties["delta"] = delta
    return {"type": "message.part.updated", "properties": properties}


def session_status(session_id: str = SESSION_ID, status: str = "busy") -> dict[str, Any]:
    return {"type": "session.status", "properties": {"sessionID": session_id, "status": {"type": status}}}


def session_idle(session_id: str = SESSION_ID) -> dict[str, Any]:
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


def session_error(
    session_id: str = SESSION_ID, name: str = "APIError", message: str | None = "rate limited"
) -> dict[str, Any]:
    error: dict[str, Any] = {"name": name, "data": {}}
    if message is not None:
        error["data"]["message"] = message
    return {"type": "session.error", "properties": {"sessionID": session_id, "error": error}}


def permission_asked(
    request_id: str, session_id: str = SESSION_ID, permission: str = "edit"
) -> dict[str, Any]:
    return {
        "type": "permission.asked",
        "properties": {"id": request_id, "sessionID": session_id, "permission": permission},
    }


def question_asked(request_id: str, session_id: str = SESSION_ID) -> dict[str, Any]:
    return {
        "type": "question.asked",
        "properties": {"id": request_id, "sessionID": session_id, "questions": [{"question": "Proceed?"}]},
    }


def request_replied(event_type: str, request_id: str, session_id: str = SESSION_ID) -> dict[str, Any]:
    return {"type": event_type, "properties": {"sessionID": session_id, "requestID": request_id}}


def todo_updated(todos: list[dict[str, Any]], session_id: str = SESSION_ID) -> dict[str, Any]:
    return {"type": "todo.updated", "properties": {"sessionID": session_id, "todos": todos}}


def envelope(payload: dict[str, Any], directory: str | None = "/work") -> dict[str, Any]:
    return {"directory": directory, "payload": payload}


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fake agent backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """In-memory agent backend exposing the REST routes the client uses."""

    def __init__(self) -> None:
        self.healthy = True
        self.version = "1.2.3"
        self.sessions: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.statuses: dict[str, dict[str, Any]] = {}
        self.prompts: list[dict[str, Any]] = []
        self.commands: list[dict[str, Any]] = []
        self.aborted: list[str] = []
        self.deleted: list[str] = []
        self.renamed: list[tuple[str, str]] = []
        self.prompt_reply: tuple[int, Any] = (204, None)
        self.health_calls = 0
        self.health_gate: asyncio.Event | None = None
        self.message_calls = 0
        self.messages_gate: asyncio.Event | None = None
        self._counter = 0
        self.app = self._build_app()

    def add_session(self, session_id: str = SESSION_ID, **kwargs: Any) -> dict[str, Any]:
        info = session_info(session_id, **kwargs)
        self.sessions[session_id] = info
        self.messages.setdefault(session_id, [])
        return info

    def _session_or_404(self, session_id: str) -> dict[str, Any]:
        if session_id not in self.sessions:
            raise HTTPException(status_code=404, detail={"message": f"Session not found: {session_id}"})
        return self.sessions[session_id]

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        backend = self

        async def body_of(request: Request) -> dict[str, Any]:
            raw = await request.body()
            return json.loads(raw) if raw else {}

        @app.get("/global/health")
        async def health():
            backend.health_calls += 1
            if backend.health_gate is not None:
                await backend.health_gate.wait()
            return {"healthy": backend.healthy, "version": backend.version}

        @app.get("/session")
        async def list_sessions():
            return list(backend.sessions.values())

        @app.post("/session")
        async def create_session(request: Request):
            body = await body_of(request)
            backend._counter += 1
            session_id = f"ses_new_{backend._counter}"
            directory = request.query_params.get("directory", "/work")
            info = session_info(
                session_id,
                title=body.get("title", "New session"),
                directory=directory,
                updated=5000 + backend._counter,
            )
            backend.sessions[session_id] = info
            backend.messages[session_id] = []
            return info

        @app.get("/session/status")
        async def status():
            return backend.statuses

        @app.get("/session/{session_id}")
        async def get_session(session_id: str):
            return backend._session_or_404(session_id)

        @app.patch("/session/{session_id}")
        async def update_session(session_id: str, request: Request):
            info = backend._session_or_404(session_id)
            body = await body_of(request)
            info["title"] = body["title"]
            backend.renamed.append((session_id, body["title"]))
            return info

        @app.delete("/session/{session_id}")
        async def delete_session(session_id: str):
            backend._session_or_404(session_id)
            del backend.sessions[session_id]
            backend.deleted.append(session_id)
            return True

        @app.post("/session/{session_id}/abort")
        async def abort(session_id: str):
            backend.aborted.append(session_id)
            return True

        @app.get("/session/{session_id}/message")
        async def list_messages(session_id: str):
            backend._session_or_404(session_id)
            backend.message_calls += 1
            if backend.messages_gate is not None:
                await backend.messages_gate.wait()
            return backend.messages.get(session_id, [])

        @app.post("/session/{session_id}/prompt_async")
        async def prompt_async(session_id: str, request: Request):
            body = await body_of(request)
            backend.prompts.append({"session_id": session_id, "query": dict(request.query_params), **body})
            status_code, reply = backend.prompt_reply
            if reply is None:
                return Response(status_code=status_code)
            return JSONResponse(reply, status_code=status_code)

        @app.post("/session/{session_id}/command")
        async def command(session_id: str, request: Request):
            body = await body_of(request)
            backend.commands.append({"session_id": session_id, **body})
            return {"info": {}, "parts": []}

        return app


class SseFeed(httpx.AsyncByteStream):
    """Body of one open event stream; chunks are pushed by the test."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeEventSource:
    """Serves ``/global/event``; each open creates a new :class:`SseFeed`."""

    def __init__(self) -> None:
        self.feeds: list[SseFeed] = []
        self.open_count = 0
        self.fail_opens = 0
        self.always_fail = False

    def open(self) -> httpx.Response:
        self.open_count += 1
        if self.always_fail or self.fail_opens > 0:
            self.fail_opens = max(0, self.fail_opens - 1)
            return httpx.Response(503, json={"error": "event stream unavailable"})
        feed = SseFeed()
        self.feeds.append(feed)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=feed)

    @property
    def current(self) -> SseFeed:
        return self.feeds[-1]

    def send(self, payload: dict[str, Any], directory: str | None = "/work") -> None:
        frame = envelope(payload, directory)
        self.current.queue.put_nowait(ServerSentEvent(data=json.dumps(frame)).encode())

    def send_raw(self, data: str) -> None:
        self.current.queue.put_nowait(ServerSentEvent(data=data).encode())

    def ping(self) -> None:
        self.current.queue.put_nowait(ServerSentEvent(comment="ping").encode())

    def end(self) -> None:
        """Server closes the stream."""
        self.current.queue.put_nowait(None)


class FakeAgentTransport(httpx.AsyncBaseTransport):
    """Routes the event stream to FakeEventSource and the rest to FastAPI."""

    def __init__(self, backend: FakeBackend):
        self.backend = backend
        self.events = FakeEventSource()
        self.unreachable = False
        self._asgi = httpx.ASGITransport(app=backend.app)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/global/event":
            return self.events.open()
        return await self._asgi.handle_async_request(request)

    async def aclose(self) -> None:
        # Shared by every client a test creates
        pass


class LoggedClient(AgentClient):
    def __init__(self, base_url: str, *, log: list[str], **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.log = log
        log.append(f"open {self.base_url}")

    async def aclose(self) -> None:
        if not self.closed:
            self.log.append(f"close {self.base_url}")
        await super().aclose()


class RecordingClientFactory:
    """Client factory that builds real AgentClients over the fake transport."""

    client_class: type[LoggedClient] = LoggedClient

    def __init__(self, transport: FakeAgentTransport):
        self.transport = transport
        self.clients: list[AgentClient] = []
        self.log: list[str] = []

    def __call__(self, base_url: str, **kwargs: Any) -> AgentClient:
        client = self.client_class(base_url, log=self.log, transport=self.transport, **kwargs)
        self.clients.append(client)
        return client

    @property
    def endpoints(self) -> list[str]:
        return [c.base_url for c in self.clients]


class FakeSupervisor:
    """Stands in for the desktop process supervisor."""

    def __init__(self, status: dict[str, Any] | None = None, endpoint: str | None = None):
        self.status = status or {"type": "ready"}
        self.endpoint = endpoint
        self.modes: list[Any] = []
        self.calls: list[str] = []
        self.fail_status = False

    async def get_status(self) -> Any:
        if self.fail_status:
            raise RuntimeError("supervisor unavailable")
        return self.status

    async def get_endpoint(self) -> str | None:
        return self.endpoint

    async def set_mode(self, mode: Any) -> None:
        self.modes.append(mode)

    async def initialize(self) -> None:
        self.calls.append("initialize")

    async def start(self) -> None:
        self.calls.append("start")

    async def stop(self) -> None:
        self.calls.append("stop")

    async def restart(self) -> None:
        self.calls.append("restart")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Fast timings; no .env lookup."""
    return Settings(
        _env_file=None,
        default_port=4096,
        health_check_interval=60.0,
        heartbeat_timeout=45.0,
        heartbeat_check_interval=60.0,
        reconnect_base_delay=0.01,
        reconnect_multiplier=2.0,
        reconnect_max_delay=0.04,
        reconnect_max_attempts=3,
        flush_interval=0.0,
        database_url="sqlite:///:memory:",
    )


@pytest.fixture
def backend() -> FakeBackend:
    fake = FakeBackend()
    fake.add_session()
    return fake


@pytest.fixture
def transport(backend: FakeBackend) -> FakeAgentTransport:
    return FakeAgentTransport(backend)


@pytest.fixture
def client_factory(transport: FakeAgentTransport) -> RecordingClientFactory:
    return RecordingClientFactory(transport)


@pytest.fixture
async def api(transport: FakeAgentTransport) -> AsyncGenerator[AgentClient, None]:
    """An AgentClient bound to the fake backend."""
    client = AgentClient(BASE_URL, transport=transport)
    yield client
    await client.aclose()


@pytest.fixture
async def bus() -> AsyncGenerator[EventBus, None]:
    event_bus = EventBus()
    yield event_bus
    await event_bus.close()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor(status={"type": "running", "port": 4096})


@pytest.fixture
async def preferences(settings: Settings) -> AsyncGenerator[PreferenceStore, None]:
    store = PreferenceStore(settings=settings)
    await store.init()
    yield store
    await store.close()
