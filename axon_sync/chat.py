"""Chat store: sessions, the active transcript and the submit lifecycle.

Consumes events from the bus, applies them to the active session's
:class:`Transcript` and exposes commands (submit, abort, session CRUD) that
go through the connection manager's client. Only events for the active
session touch the transcript.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from axon_sync.api_client import AgentClient
from axon_sync.config import Settings, settings as default_settings
from axon_sync.errors import extract_error_detail, response_has_error
from axon_sync.event_bus import EventBus
from axon_sync.event_stream import ClientSource
from axon_sync.events import (
    GlobalEvent,
    MessagePartRemoved,
    MessagePartUpdated,
    MessageRemoved,
    MessageUpdated,
    SessionCreated,
    SessionDeleted,
    SessionErrorEvent,
    SessionIdle,
    SessionStatusChanged,
    SessionUpdated,
)
from axon_sync.models import (
    AssistantMessageInfo,
    Message,
    MessageInfo,
    ModelRef,
    Session,
)
from axon_sync.preferences import ACTIVE_SESSION_KEY, SELECTED_MODEL_KEY, PreferenceStore
from axon_sync.transcript import (
    PartUpdateBuffer,
    Transcript,
    make_assistant_placeholder,
    make_user_placeholder,
)

logger = logging.getLogger(__name__)

ABORTED_ERROR_NAME = "MessageAbortedError"

# Events that write into the transcript; held back while a reload is in flight
TRANSCRIPT_EVENTS = (MessageUpdated, MessagePartUpdated, MessageRemoved, MessagePartRemoved)

ChatListener = Callable[["ChatSnapshot"], None]


class ChatSnapshot(BaseModel):
    """Read-only copy of the chat state for presentation code."""
    sessions: list[Session] = Field(default_factory=list)
    active_session_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    is_generating: bool = False
    error: str | None = None
    selected_model: ModelRef | None = None


def auto_title(text: str, max_length: int) -> str:
    text = text.strip()
    return text[:max_length] + ("..." if len(text) > max_length else "")


class ChatStore:
    def __init__(
        self,
        connection: ClientSource,
        bus: EventBus,
        *,
        settings: Settings = default_settings,
        preferences: PreferenceStore | None = None,
    ):
        self._connection = connection
        self._settings = settings
        self._preferences = preferences

        self.sessions: list[Session] = []
        self.active_session_id: str | None = None
        self.transcript = Transcript()
        self.generating: set[str] = set()
        self.error: str | None = None
        self.selected_model: ModelRef | None = None

        self._buffer = PartUpdateBuffer()
        self._flush_handle: asyncio.TimerHandle | None = None
        self._holds: list[tuple[str, list[GlobalEvent]]] = []
        self._listeners: list[ChatListener] = []
        self._unsubscribe_bus = bus.subscribe(self.handle_event)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def is_generating(self) -> bool:
        return self.active_session_id is not None and self.active_session_id in self.generating

    @property
    def messages(self) -> list[Message]:
        return self.transcript.messages

    @property
    def active_session(self) -> Session | None:
        return self._find_session(self.active_session_id)

    def snapshot(self) -> ChatSnapshot:
        return ChatSnapshot(
            sessions=self.sessions,
            active_session_id=self.active_session_id,
            messages=self.transcript.messages,
            is_generating=self.is_generating,
            error=self.error,
            selected_model=self.selected_model,
        ).model_copy(deep=True)

    def subscribe(self, listener: ChatListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Chat listener failed")

    def clear_error(self) -> None:
        self.error = None
        self._notify()

    def _find_session(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        return next((s for s in self.sessions if s.id == session_id), None)

    def _directory(self, session_id: str | None = None) -> str | None:
        session = self._find_session(session_id or self.active_session_id)
        if session is None or not session.directory:
            return None
        return session.directory

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_event(self, event: GlobalEvent) -> None:
        payload = event.payload
        if isinstance(payload, (SessionCreated, SessionUpdated, SessionDeleted)):
            self._handle_session_event(payload)
            return

        session_id = event.session_id
        if session_id is None or session_id != self.active_session_id:
            return

        if isinstance(payload, TRANSCRIPT_EVENTS):
            holds = [held for held_id, held in self._holds if held_id == session_id]
            if holds:
                for held in holds:
                    held.append(event)
                return
            self._apply_transcript_event(event)
        elif isinstance(payload, SessionStatusChanged):
            if payload.properties.status.is_busy:
                self.generating.add(session_id)
                self._notify()
            else:
                self._finish_turn(session_id)
        elif isinstance(payload, SessionIdle):
            self._finish_turn(session_id)
        elif isinstance(payload, SessionErrorEvent):
            props = payload.properties
            if props.error_name != ABORTED_ERROR_NAME:
                message = props.error_message
                self.error = f"Session error: {message}" if message else "Session error"
                logger.warning("Session %s error: %s", session_id, props.error)
            self._finish_turn(session_id)

    def _apply_transcript_event(self, event: GlobalEvent, *, replay: bool = False) -> None:
        payload = event.payload
        if isinstance(payload, MessageUpdated):
            self.flush()
            self._apply_message(payload.properties.info)
        elif isinstance(payload, MessagePartUpdated):
            part, delta = payload.properties.part, payload.properties.delta
            if replay and part.text:
                # The loaded snapshot may already contain the delta
                delta = None
            self._buffer.add(part, delta)
            self._schedule_flush()
        elif isinstance(payload, MessageRemoved):
            self.flush()
            if self.transcript.remove_message(payload.properties.message_id):
                self._notify()
        elif isinstance(payload, MessagePartRemoved):
            self.flush()
            props = payload.properties
            if self.transcript.remove_part(props.message_id, props.part_id):
                self._notify()

    def _apply_message(self, info: MessageInfo) -> None:
        self.transcript.apply_message_update(info)
        if isinstance(info, AssistantMessageInfo) and info.is_finished:
            self._finish_turn(info.session_id)
        else:
            self._notify()

    def _finish_turn(self, session_id: str) -> None:
        self._flush()
        self.generating.discard(session_id)
        self.transcript.purge_placeholders()
        self._notify()

    def _handle_session_event(self, payload: SessionCreated | SessionUpdated | SessionDeleted) -> None:
        info = payload.properties.info
        if isinstance(payload, SessionCreated):
            if self._find_session(info.id) is None:
                self.sessions.insert(0, info)
        elif isinstance(payload, SessionUpdated):
            known = self._find_session(info.id)
            if known is None:
                self.sessions.insert(0, info)
            else:
                if known.directory and not info.directory:
                    info = info.model_copy(update={"directory": known.directory})
                self.sessions = [info if s.id == info.id else s for s in self.sessions]
        else:
            self.sessions = [s for s in self.sessions if s.id != info.id]
            self.generating.discard(info.id)
            if info.id == self.active_session_id:
                self._reset_transcript(None)
        self._notify()

    # ------------------------------------------------------------------
    # Part buffering
    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        interval = self._settings.flush_interval
        if interval <= 0:
            self.flush()
            return
        if self._flush_handle is None:
            self._flush_handle = asyncio.get_running_loop().call_later(interval, self.flush)

    def _flush(self) -> bool:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        updates = self._buffer.drain()
        for update in updates:
            self.transcript.apply_part_update(update.part, update.delta)
        return bool(updates)

    def flush(self) -> None:
        """Apply every buffered part update now."""
        if self._flush():
            self._notify()

    def _discard_buffer(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._buffer.clear()

    def _reset_transcript(self, session_id: str | None) -> None:
        self._discard_buffer()
        self.active_session_id = session_id
        self.transcript = Transcript(session_id)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def select_model(self, model: ModelRef | None) -> None:
        self.selected_model = model
        if self._preferences is not None:
            await self._preferences.set(
                SELECTED_MODEL_KEY, model.model_dump(by_alias=True) if model else None
            )
        self._notify()

    async def restore_preferences(self) -> None:
        """Load the last active session id and selected model."""
        if self._preferences is None:
            return
        stored_model = await self._preferences.get(SELECTED_MODEL_KEY)
        if stored_model:
            try:
                self.selected_model = ModelRef.model_validate(stored_model)
            except ValueError:
                logger.warning("Ignoring invalid stored model: %r", stored_model)
        stored_session = await self._preferences.get(ACTIVE_SESSION_KEY)
        if isinstance(stored_session, str) and self.active_session_id is None:
            self.active_session_id = stored_session
            self.transcript = Transcript(stored_session)

    async def submit(
        self,
        text: str,
        model: ModelRef | None = None,
        *,
        agent: str | None = None,
        variant: str | None = None,
    ) -> bool:
        """Send a prompt. Returns True once the backend accepted it."""
        parts: list[dict[str, Any]] = [{"type": "text", "text": text}] if text.strip() else []
        return await self._send(
            display_text=text,
            model=model,
            agent=agent,
            call=lambda client, session_id, model, directory: client.prompt_async(
                session_id,
                parts,
                model=model.model_dump(by_alias=True),
                agent=agent,
                variant=variant,
                directory=directory,
            ),
            title_source=text,
        )

    async def send_command(
        self,
        command: str,
        arguments: str = "",
        model: ModelRef | None = None,
    ) -> bool:
        """Run a slash command with the same optimistic flow as submit."""
        display = f"/{command} {arguments}".rstrip()
        return await self._send(
            display_text=display,
            model=model,
            agent=None,
            call=lambda client, session_id, model, directory: client.command(
                session_id, command, arguments, model=str(model), directory=directory
            ),
            title_source=None,
        )

    async def _send(
        self,
        *,
        display_text: str,
        model: ModelRef | None,
        agent: str | None,
        call: Callable[..., Any],
        title_source: str | None,
    ) -> bool:
        client = self._connection.client
        session_id = self.active_session_id
        if client is None or session_id is None:
            logger.info("Not sending: no client or no active session")
            return False

        model = model or self.selected_model
        if model is None:
            self.error = "Select a model before sending"
            self._notify()
            return False

        if session_id in self.generating:
            return False

        user = make_user_placeholder(session_id, display_text, agent=agent, model=model)
        assistant = make_assistant_placeholder(
            session_id, user.id, created=user.created + 1, model=model
        )
        self.transcript.add_placeholders(user, assistant)
        self.generating.add(session_id)
        self.error = None
        self._notify()

        try:
            response = await call(client, session_id, model, self._directory(session_id))
        except Exception as exc:
            logger.warning("Send to session %s failed: %s", session_id, exc)
            self._rollback(session_id, user.id, assistant.id, extract_error_detail(exc))
            return False

        if response_has_error(response):
            logger.warning("Send to session %s rejected: %s", session_id, response)
            self._rollback(session_id, user.id, assistant.id, extract_error_detail(response))
            return False

        if title_source:
            await self._auto_title(client, session_id, title_source)
        return True

    def _rollback(self, session_id: str, user_id: str, assistant_id: str, detail: str) -> None:
        self.error = f"Failed to send message: {detail}" if detail else "Failed to send message"
        # Only this turn's placeholders
        if self.active_session_id == session_id:
            self.transcript.discard(user_id, assistant_id)
        self.generating.discard(session_id)
        self._notify()

    async def _auto_title(self, client: AgentClient, session_id: str, text: str) -> None:
        session = self._find_session(session_id)
        if session is None or session.title != self._settings.default_session_title:
            return
        title = auto_title(text, self._settings.title_max_length)
        if not title:
            return
        try:
            await client.update_session(session_id, title=title, directory=session.directory or None)
        except Exception as exc:
            logger.info("Auto-title for session %s failed: %s", session_id, exc)
            return
        self.sessions = [
            s.model_copy(update={"title": title}) if s.id == session_id else s
            for s in self.sessions
        ]
        self._notify()

    async def abort(self) -> None:
        client = self._connection.client
        session_id = self.active_session_id
        if client is None or session_id is None:
            return
        try:
            await client.abort_session(session_id, directory=self._directory(session_id))
        except Exception as exc:
            logger.warning("Abort of session %s failed: %s", session_id, exc)
        finally:
            self.generating.discard(session_id)
            self._notify()
        await self.load_messages(session_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def load_messages(self, session_id: str | None = None) -> None:
        client = self._connection.client
        session_id = session_id or self.active_session_id
        if client is None or session_id is None:
            return
        held: list[GlobalEvent] = []
        hold = (session_id, held)
        self._holds.append(hold)
        messages: list[Message] | None = None
        try:
            messages = await client.list_messages(session_id, directory=self._directory(session_id))
        except Exception as exc:
            logger.warning("Failed to load messages for %s: %s", session_id, exc)
            self.error = f"Failed to load messages: {extract_error_detail(exc)}"
        finally:
            self._holds = [h for h in self._holds if h is not hold]

        if session_id != self.active_session_id:
            return
        if messages is not None:
            self._discard_buffer()
            self.transcript.load(messages)
        # A load still in flight holds the same events and replays them itself
        if not any(held_id == session_id for held_id, _ in self._holds):
            for event in held:
                self._apply_transcript_event(event, replay=True)
            self.flush()
        self._notify()

    async def restore_status(self, session_id: str) -> None:
        client = self._connection.client
        if client is None:
            return
        try:
            statuses = await client.session_status(directory=self._directory(session_id))
        except Exception as exc:
            logger.warning("Failed to check session status: %s", exc)
            return
        status = statuses.get(session_id)
        if status is not None and status.is_busy:
            self.generating.add(session_id)
        else:
            self.generating.discard(session_id)
        self._notify()

    async def select_session(self, session_id: str) -> None:
        if session_id == self.active_session_id and len(self.transcript):
            return
        self._reset_transcript(session_id)
        if self._preferences is not None:
            await self._preferences.set(ACTIVE_SESSION_KEY, session_id)
        self._notify()
        await asyncio.gather(self.load_messages(session_id), self.restore_status(session_id))

    async def create_session(self, title: str | None = None, directory: str | None = None) -> Session | None:
        client = self._connection.client
        if client is None:
            self.error = "Service not connected"
            self._notify()
            return None
        try:
            session = await client.create_session(
                title=title or self._settings.default_session_title, directory=directory
            )
        except Exception as exc:
            logger.warning("Failed to create session: %s", exc)
            self.error = f"Failed to create session: {extract_error_detail(exc)}"
            self._notify()
            return None

        self.sessions = [session] + [s for s in self.sessions if s.id != session.id]
        self._reset_transcript(session.id)
        if self._preferences is not None:
            await self._preferences.set(ACTIVE_SESSION_KEY, session.id)
        self._notify()
        return session

    async def delete_session(self, session_id: str) -> None:
        client = self._connection.client
        if client is None:
            return
        directory = self._directory(session_id)
        try:
            await client.delete_session(session_id, directory=directory)
        except Exception as exc:
            logger.warning("Failed to delete session %s: %s", session_id, exc)
            self.error = f"Failed to delete session: {extract_error_detail(exc)}"
            self._notify()
            return

        self.sessions = [s for s in self.sessions if s.id != session_id]
        self.generating.discard(session_id)
        if session_id != self.active_session_id:
            self._notify()
            return
        if self.sessions:
            await self.select_session(self.sessions[0].id)
        else:
            await self.create_session()

    async def refresh_sessions(self) -> None:
        client = self._connection.client
        if client is None:
            return
        try:
            sessions = await client.list_sessions()
        except Exception as exc:
            logger.warning("Failed to list sessions: %s", exc)
            self.error = f"Failed to load sessions: {extract_error_detail(exc)}"
            self._notify()
            return

        self.sessions = sorted(sessions, key=lambda s: s.updated_at, reverse=True)
        active = self._find_session(self.active_session_id)
        if active is not None:
            self._reset_transcript(active.id)
            self._notify()
            await asyncio.gather(self.load_messages(active.id), self.restore_status(active.id))
        elif self.sessions:
            await self.select_session(self.sessions[0].id)
        else:
            await self.create_session()

    async def update_title(self, session_id: str, title: str) -> None:
        client = self._connection.client
        if client is None:
            return
        try:
            session = await client.update_session(
                session_id, title=title, directory=self._directory(session_id)
            )
        except Exception as exc:
            logger.warning("Failed to rename session %s: %s", session_id, exc)
            self.error = f"Failed to update title: {extract_error_detail(exc)}"
            self._notify()
            return
        known = self._find_session(session_id)
        if known is not None and known.directory and not session.directory:
            session = session.model_copy(update={"directory": known.directory})
        self.sessions = [session if s.id == session_id else s for s in self.sessions]
        self._notify()

    def close(self) -> None:
        self._discard_buffer()
        self._unsubscribe_bus()
