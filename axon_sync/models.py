"""Pydantic models: the client-side view of the agent backend's contract.

Wire shapes use the backend's camelCase keys (``sessionID``, ``parentID``,
``time.created``); Python attributes are snake_case and populated by alias.
Timestamps are epoch milliseconds, as the backend reports them.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    computed_field,
    model_validator,
)


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


# ---------------------------------------------------------------------------
# Backend process status (reported by the supervisor)
# ---------------------------------------------------------------------------

class _Status(BaseModel):
    model_config = ConfigDict(frozen=True)


class Uninitialized(_Status):
    type: Literal["uninitialized"] = "uninitialized"


class Downloading(_Status):
    type: Literal["downloading"] = "downloading"
    progress: float = 0.0


class Ready(_Status):
    """Binary present, process not started yet."""
    type: Literal["ready"] = "ready"


class Starting(_Status):
    type: Literal["starting"] = "starting"


class Running(_Status):
    type: Literal["running"] = "running"
    port: int


class Stopped(_Status):
    type: Literal["stopped"] = "stopped"


class BackendError(_Status):
    type: Literal["error"] = "error"
    message: str = ""


BackendStatus = Annotated[
    Union[Uninitialized, Downloading, Ready, Starting, Running, Stopped, BackendError],
    Field(discriminator="type"),
]
backend_status_adapter: TypeAdapter[BackendStatus] = TypeAdapter(BackendStatus)


# ---------------------------------------------------------------------------
# Service mode and connection state
# ---------------------------------------------------------------------------

class LocalMode(_Status):
    type: Literal["local"] = "local"


class RemoteMode(_Status):
    type: Literal["remote"] = "remote"
    url: str


ServiceMode = Annotated[Union[LocalMode, RemoteMode], Field(discriminator="type")]
service_mode_adapter: TypeAdapter[ServiceMode] = TypeAdapter(ServiceMode)


class Disconnected(_Status):
    status: Literal["disconnected"] = "disconnected"


class Connecting(_Status):
    status: Literal["connecting"] = "connecting"


class Connected(_Status):
    status: Literal["connected"] = "connected"
    version: str = "unknown"


class Failed(_Status):
    status: Literal["error"] = "error"
    message: str


ConnectionState = Annotated[
    Union[Disconnected, Connecting, Connected, Failed],
    Field(discriminator="status"),
]


class StreamPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    BROKEN = "broken"
    SCHEDULED = "scheduled"
    GAVE_UP = "gave_up"


class StreamHealth(BaseModel):
    """Snapshot of the event stream consumer."""
    phase: StreamPhase = StreamPhase.IDLE
    reconnect_attempts: int = 0
    last_heartbeat_at: float | None = None
    last_error: str | None = None
    next_retry_delay: float | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def active(self) -> bool:
        return self.phase is StreamPhase.ACTIVE

    @property
    def gave_up(self) -> bool:
        return self.phase is StreamPhase.GAVE_UP


class ServiceState(BaseModel):
    """Everything presentation code needs to render connection status."""
    mode: ServiceMode
    backend_status: BackendStatus
    connection_state: ConnectionState
    endpoint: str | None = None
    stream: StreamHealth = Field(default_factory=StreamHealth)

    @property
    def is_connected(self) -> bool:
        return isinstance(self.connection_state, Connected)


# ---------------------------------------------------------------------------
# Agent API shapes
# ---------------------------------------------------------------------------

class HealthResponse(WireModel):
    """GET /global/health response."""
    healthy: bool = False
    version: str | None = None


class Session(WireModel):
    """One conversation thread."""
    id: str
    parent_id: str | None = Field(default=None, alias="parentID")
    title: str = ""
    directory: str = ""
    project_id: str | None = Field(default=None, alias="projectID")
    created_at: int = 0
    updated_at: int = 0

    @model_validator(mode="before")
    @classmethod
    def _flatten_time(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("time"), dict):
            data = dict(data)
            time = data.pop("time")
            data.setdefault("created_at", time.get("created", 0))
            data.setdefault("updated_at", time.get("updated", time.get("created", 0)))
        return data


class SessionStatusInfo(WireModel):
    type: str = "idle"  # "idle" | "busy" | "retry"
    attempt: int | None = None
    message: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.type in ("busy", "retry")


class ModelRef(WireModel):
    provider_id: str = Field(alias="providerID")
    model_id: str = Field(alias="modelID")

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


class MessageTime(WireModel):
    created: int = 0
    completed: int | None = None


class TokenUsage(WireModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: dict[str, int] = Field(default_factory=lambda: {"read": 0, "write": 0})


class UserMessageInfo(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str = Field(alias="sessionID")
    role: Literal["user"] = "user"
    time: MessageTime = Field(default_factory=MessageTime)
    agent: str | None = None
    model: ModelRef | None = None


class AssistantMessageInfo(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str = Field(alias="sessionID")
    role: Literal["assistant"] = "assistant"
    time: MessageTime = Field(default_factory=MessageTime)
    parent_id: str = Field(default="", alias="parentID")
    model_id: str = Field(default="", alias="modelID")
    provider_id: str = Field(default="", alias="providerID")
    mode: str = ""
    agent: str = ""
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    error: dict[str, Any] | None = None
    finish: str | None = None

    @property
    def is_finished(self) -> bool:
        """True once the backend has marked the turn completed or failed."""
        return bool(self.error) or self.time.completed is not None


MessageInfo = Annotated[
    Union[UserMessageInfo, AssistantMessageInfo],
    Field(discriminator="role"),
]


class Part(WireModel):
    """One piece of message content; backend-specific fields are kept as extras."""
    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str = Field(default="", alias="sessionID")
    message_id: str = Field(default="", alias="messageID")
    type: str = "text"
    text: str | None = None


class Message(BaseModel):
    info: MessageInfo
    parts: list[Part] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> str:
        return self.info.role

    @property
    def session_id(self) -> str:
        return self.info.session_id

    @property
    def created(self) -> int:
        return self.info.time.created

    def text(self) -> str:
        return "".join(p.text or "" for p in self.parts if p.type == "text")
