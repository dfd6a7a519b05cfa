"""Closed set of event variants pushed by the agent backend.

Every frame on the event stream is an envelope ``{directory?, payload}`` whose
payload is ``{type, properties}``. Known payload types map to a model below;
anything else becomes :class:`UnknownEvent` so handlers can match
exhaustively.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from axon_sync.models import (
    MessageInfo,
    Part,
    Session,
    SessionStatusInfo,
    WireModel,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Server events
# ---------------------------------------------------------------------------

class ServerConnected(BaseModel):
    type: Literal["server.connected"] = "server.connected"
    properties: dict[str, Any] = Field(default_factory=dict)


class ServerHeartbeat(BaseModel):
    type: Literal["server.heartbeat"] = "server.heartbeat"
    properties: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------

class SessionInfoProps(WireModel):
    info: Session


class SessionCreated(BaseModel):
    type: Literal["session.created"] = "session.created"
    properties: SessionInfoProps


class SessionUpdated(BaseModel):
    type: Literal["session.updated"] = "session.updated"
    properties: SessionInfoProps


class SessionDeleted(BaseModel):
    type: Literal["session.deleted"] = "session.deleted"
    properties: SessionInfoProps


class SessionStatusProps(WireModel):
    session_id: str = Field(alias="sessionID")
    status: SessionStatusInfo


class SessionStatusChanged(BaseModel):
    type: Literal["session.status"] = "session.status"
    properties: SessionStatusProps


class SessionIdProps(WireModel):
    session_id: str = Field(alias="sessionID")


class SessionIdle(BaseModel):
    type: Literal["session.idle"] = "session.idle"
    properties: SessionIdProps


class SessionErrorProps(WireModel):
    session_id: str | None = Field(default=None, alias="sessionID")
    error: dict[str, Any] | None = None

    @property
    def error_name(self) -> str | None:
        return (self.error or {}).get("name")

    @property
    def error_message(self) -> str:
        data = (self.error or {}).get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        return ""


class SessionErrorEvent(BaseModel):
    type: Literal["session.error"] = "session.error"
    properties: SessionErrorProps


# ---------------------------------------------------------------------------
# Message events
# ---------------------------------------------------------------------------

class MessageUpdatedProps(WireModel):
    info: MessageInfo


class MessageUpdated(BaseModel):
    type: Literal["message.updated"] = "message.updated"
    properties: MessageUpdatedProps


class MessageRemovedProps(WireModel):
    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")


class MessageRemoved(BaseModel):
    type: Literal["message.removed"] = "message.removed"
    properties: MessageRemovedProps


class MessagePartUpdatedProps(WireModel):
    part: Part
    delta: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _inherit_ids(cls, data: Any) -> Any:
        # Some emitters put sessionID/messageID beside the part instead of in it.
        if isinstance(data, dict) and isinstance(data.get("part"), dict):
            part = dict(data["part"])
            for key in ("sessionID", "messageID"):
                if not part.get(key) and data.get(key):
                    part[key] = data[key]
            data = {**data, "part": part}
        return data


class MessagePartUpdated(BaseModel):
    type: Literal["message.part.updated"] = "message.part.updated"
    properties: MessagePartUpdatedProps


class MessagePartRemovedProps(WireModel):
    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")
    part_id: str = Field(alias="partID")


class MessagePartRemoved(BaseModel):
    type: Literal["message.part.removed"] = "message.part.removed"
    properties: MessagePartRemovedProps


# ---------------------------------------------------------------------------
# Permission, question and todo events
# ---------------------------------------------------------------------------

class PermissionRequest(WireModel):
    """A tool asking the user for permission; ``directory`` comes from the envelope."""
    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str = Field(alias="sessionID")
    permission: str = ""
    directory: str | None = None


class RequestReplyProps(WireModel):
    session_id: str = Field(alias="sessionID")
    request_id: str = Field(alias="requestID")


class PermissionAsked(BaseModel):
    type: Literal["permission.asked"] = "permission.asked"
    properties: PermissionRequest


class PermissionReplied(BaseModel):
    type: Literal["permission.replied"] = "permission.replied"
    properties: RequestReplyProps


class QuestionRequest(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str = Field(alias="sessionID")
    directory: str | None = None


class QuestionAsked(BaseModel):
    type: Literal["question.asked"] = "question.asked"
    properties: QuestionRequest


class QuestionReplied(BaseModel):
    type: Literal["question.replied"] = "question.replied"
    properties: RequestReplyProps


class QuestionRejected(BaseModel):
    type: Literal["question.rejected"] = "question.rejected"
    properties: RequestReplyProps


class TodoItem(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    content: str = ""
    status: str = "pending"
    priority: str = "medium"


class TodoUpdatedProps(WireModel):
    session_id: str = Field(alias="sessionID")
    todos: list[TodoItem] = Field(default_factory=list)


class TodoUpdated(BaseModel):
    type: Literal["todo.updated"] = "todo.updated"
    properties: TodoUpdatedProps


class UnknownEvent(BaseModel):
    """Any payload type this client does not model."""
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


Event = Union[
    ServerConnected,
    ServerHeartbeat,
    SessionCreated,
    SessionUpdated,
    SessionDeleted,
    SessionStatusChanged,
    SessionIdle,
    SessionErrorEvent,
    MessageUpdated,
    MessageRemoved,
    MessagePartUpdated,
    MessagePartRemoved,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    QuestionReplied,
    QuestionRejected,
    TodoUpdated,
    UnknownEvent,
]

EVENT_TYPES: dict[str, type[BaseModel]] = {
    cls.model_fields["type"].default: cls
    for cls in (
        ServerConnected,
        ServerHeartbeat,
        SessionCreated,
        SessionUpdated,
        SessionDeleted,
        SessionStatusChanged,
        SessionIdle,
        SessionErrorEvent,
        MessageUpdated,
        MessageRemoved,
        MessagePartUpdated,
        MessagePartRemoved,
        PermissionAsked,
        PermissionReplied,
        QuestionAsked,
        QuestionReplied,
        QuestionRejected,
        TodoUpdated,
    )
}


class GlobalEvent(WireModel):
    """Envelope around one backend event, tagged with its workspace directory."""
    source_context: str | None = Field(default=None, alias="directory")
    payload: Event

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def is_heartbeat(self) -> bool:
        return isinstance(self.payload, ServerHeartbeat)

    @property
    def session_id(self) -> str | None:
        """The session this event concerns, when it concerns one."""
        payload = self.payload
        if isinstance(payload, MessageUpdated):
            return payload.properties.info.session_id
        if isinstance(payload, MessagePartUpdated):
            return payload.properties.part.session_id or None
        if isinstance(payload, (SessionCreated, SessionUpdated, SessionDeleted)):
            return payload.properties.info.id
        if isinstance(
            payload,
            (
                SessionStatusChanged,
                SessionIdle,
                SessionErrorEvent,
                MessageRemoved,
                MessagePartRemoved,
                PermissionAsked,
                PermissionReplied,
                QuestionAsked,
                QuestionReplied,
                QuestionRejected,
                TodoUpdated,
            ),
        ):
            return payload.properties.session_id
        return None


def parse_event(raw: Any) -> Event:
    """Validate one payload dict into its event variant."""
    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        return UnknownEvent(type="invalid", properties={"raw": raw})

    model = EVENT_TYPES.get(raw["type"])
    if model is None:
        return UnknownEvent(type=raw["type"], properties=raw.get("properties") or {})
    try:
        return model.model_validate(raw)  # type: ignore[return-value]
    except ValidationError as exc:
        logger.warning("Malformed %s event: %s", raw["type"], exc.errors()[:1])
        return UnknownEvent(type=raw["type"], properties=raw.get("properties") or {})


def parse_frame(data: Any) -> GlobalEvent:
    """Parse one decoded frame; bare payloads without an envelope are accepted."""
    if isinstance(data, dict) and "payload" in data:
        directory = data.get("directory")
        return GlobalEvent(
            source_context=directory if isinstance(directory, str) else None,
            payload=parse_event(data["payload"]),
        )
    return GlobalEvent(payload=parse_event(data))


def heartbeat() -> GlobalEvent:
    return GlobalEvent(payload=ServerHeartbeat())
