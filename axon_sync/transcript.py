"""Transcript reconciliation.

Keeps the ordered message list of one session consistent while three sources
write into it: optimistic placeholders created on submit, ``message.updated``
metadata and ``message.part.updated`` content (often deltas), which may arrive
in any order.

Id conventions:

* ``temp-*`` - placeholder messages and the assistant's loading marker part.
  Stripped as soon as real content arrives, purged when the turn ends.
* ``local-*`` - the optimistic copy of the user's own text. Replaced by the
  first real part of the same type.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass

from axon_sync.models import (
    AssistantMessageInfo,
    Message,
    MessageInfo,
    MessageTime,
    ModelRef,
    Part,
    UserMessageInfo,
)

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"
LOCAL_PREFIX = "local-"
LOADING_PART_TYPE = "step-start"
TEXT_PART_TYPES = frozenset({"text", "reasoning"})

_ids = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def _new_id(prefix: str, kind: str) -> str:
    return f"{prefix}{kind}-{now_ms()}-{next(_ids)}"


def is_placeholder(message_id: str) -> bool:
    return message_id.startswith(TEMP_PREFIX)


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------

def make_user_placeholder(
    session_id: str,
    text: str,
    *,
    created: int | None = None,
    agent: str | None = None,
    model: ModelRef | None = None,
) -> Message:
    message_id = _new_id(TEMP_PREFIX, "user")
    info = UserMessageInfo(
        id=message_id,
        session_id=session_id,
        time=MessageTime(created=created if created is not None else now_ms()),
        agent=agent,
        model=model,
    )
    part = Part(
        id=_new_id(LOCAL_PREFIX, "text"),
        session_id=session_id,
        message_id=message_id,
        type="text",
        text=text,
    )
    return Message(info=info, parts=[part])


def make_assistant_placeholder(
    session_id: str,
    parent_id: str,
    *,
    created: int | None = None,
    model: ModelRef | None = None,
) -> Message:
    message_id = _new_id(TEMP_PREFIX, "assistant")
    info = AssistantMessageInfo(
        id=message_id,
        session_id=session_id,
        parent_id=parent_id,
        time=MessageTime(created=created if created is not None else now_ms()),
        model_id=model.model_id if model else "",
        provider_id=model.provider_id if model else "",
    )
    marker = Part(
        id=_new_id(TEMP_PREFIX, "loading"),
        session_id=session_id,
        message_id=message_id,
        type=LOADING_PART_TYPE,
    )
    return Message(info=info, parts=[marker])


# ---------------------------------------------------------------------------
# Part update coalescing
# ---------------------------------------------------------------------------

@dataclass
class PartUpdate:
    part: Part
    delta: str | None = None

    @property
    def key(self) -> str:
        return f"{self.part.message_id}:{self.part.id}"

    @property
    def is_delta(self) -> bool:
        return self.delta is not None


def merge_part_updates(earlier: PartUpdate, later: PartUpdate) -> PartUpdate:
    """Combine two pending updates of the same part.

    Applying the result must leave the transcript exactly as applying
    ``earlier`` then ``later`` would.
    """
    if not later.is_delta:
        return later
    if later.part.type not in TEXT_PART_TYPES:
        # Deltas on non-text parts replace the part anyway
        return later
    if earlier.is_delta:
        # Carry the text an unseen part would have after both updates
        seed = (earlier.part.text or earlier.delta or "") + (later.delta or "")
        return PartUpdate(
            later.part.model_copy(update={"text": seed}),
            (earlier.delta or "") + (later.delta or ""),
        )
    text = (earlier.part.text or "") + (later.delta or "")
    return PartUpdate(later.part.model_copy(update={"text": text}))


class PartUpdateBuffer:
    """Pending part updates, coalesced per ``message_id:part_id``."""

    def __init__(self) -> None:
        self._pending: dict[str, PartUpdate] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, part: Part, delta: str | None = None) -> None:
        update = PartUpdate(part, delta)
        existing = self._pending.get(update.key)
        self._pending[update.key] = (
            update if existing is None else merge_part_updates(existing, update)
        )

    def drain(self) -> list[PartUpdate]:
        updates = list(self._pending.values())
        self._pending.clear()
        return updates

    def clear(self) -> None:
        self._pending.clear()


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class Transcript:
    """Ordered messages of the active session, ascending by creation time."""

    def __init__(self, session_id: str | None = None, messages: list[Message] | None = None):
        self.session_id = session_id
        self.messages: list[Message] = []
        if messages:
            self.load(messages)

    def __len__(self) -> int:
        return len(self.messages)

    def load(self, messages: list[Message]) -> None:
        self.messages = sorted(messages, key=lambda m: m.created)

    def clear(self) -> None:
        self.messages = []

    def index_of(self, message_id: str) -> int | None:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    def get(self, message_id: str) -> Message | None:
        i = self.index_of(message_id)
        return self.messages[i] if i is not None else None

    def insert(self, message: Message) -> None:
        """Insert keeping ascending ``created`` order; ties go after."""
        i = len(self.messages)
        while i > 0 and self.messages[i - 1].created > message.created:
            i -= 1
        self.messages.insert(i, message)

    def add_placeholders(self, *messages: Message) -> None:
        self.messages.extend(messages)

    def discard(self, *message_ids: str) -> None:
        ids = set(message_ids)
        self.messages = [m for m in self.messages if m.id not in ids]

    # -- metadata -----------------------------------------------------------

    def _match_placeholder(self, info: MessageInfo) -> int | None:
        candidates = [
            i for i, m in enumerate(self.messages)
            if is_placeholder(m.id) and m.role == info.role and m.session_id == info.session_id
        ]
        if not candidates:
            return None
        if isinstance(info, AssistantMessageInfo) and info.parent_id:
            for i in candidates:
                placeholder = self.messages[i].info
                if getattr(placeholder, "parent_id", None) == info.parent_id:
                    return i
        return candidates[0]

    def apply_message_update(self, info: MessageInfo) -> Message:
        """Upsert message metadata, confirming a placeholder when one matches."""
        i = self.index_of(info.id)
        if i is not None:
            message = Message(info=info, parts=self.messages[i].parts)
            self.messages[i] = message
            return message

        i = self._match_placeholder(info)
        if i is None:
            message = Message(info=info)
            self.insert(message)
            return message

        placeholder_id = self.messages[i].id
        message = self._rekey(i, info)
        logger.debug("Confirmed placeholder %s as %s", placeholder_id, info.id)
        return message

    def _rekey(self, i: int, info: MessageInfo) -> Message:
        """Give the placeholder at ``i`` the real message's id and metadata."""
        placeholder = self.messages[i]
        parts = [p.model_copy(update={"message_id": info.id}) for p in placeholder.parts]
        message = Message(info=info, parts=parts)
        self.messages[i] = message

        if info.role == "user":
            # Assistant placeholders still point at the user placeholder
            for j, other in enumerate(self.messages):
                if (
                    is_placeholder(other.id)
                    and isinstance(other.info, AssistantMessageInfo)
                    and other.info.parent_id == placeholder.id
                ):
                    self.messages[j] = Message(
                        info=other.info.model_copy(update={"parent_id": info.id}),
                        parts=other.parts,
                    )
        return message

    # -- parts --------------------------------------------------------------

    def _owner_for_part(self, part: Part) -> int:
        """Index of the message owning ``part``, adopting or creating one.

        The backend confirms the user message before the assistant produces
        anything, so while a user placeholder is unconfirmed an unknown part
        belongs to it. Otherwise the oldest assistant placeholder adopts it.
        """
        session_id = part.session_id or self.session_id or ""
        candidates = [
            i for i, m in enumerate(self.messages)
            if is_placeholder(m.id) and m.session_id == session_id
        ]
        users = [i for i in candidates if self.messages[i].role == "user"]
        assistants = [i for i in candidates if self.messages[i].role == "assistant"]
        owners = users or assistants
        if owners:
            i = owners[0]
            placeholder = self.messages[i]
            self._rekey(i, placeholder.info.model_copy(update={"id": part.message_id}))
            logger.debug("Part for unknown message %s adopted placeholder %s", part.message_id, placeholder.id)
            return i

        shell = Message(
            info=AssistantMessageInfo(
                id=part.message_id,
                session_id=session_id,
                time=MessageTime(created=now_ms()),
            )
        )
        self.insert(shell)
        return self.messages.index(shell)

    def apply_part_update(self, part: Part, delta: str | None = None) -> None:
        i = self.index_of(part.message_id)
        if i is None:
            i = self._owner_for_part(part)
        message = self.messages[i]
        parts = list(message.parts)

        text_delta = delta is not None and part.type in TEXT_PART_TYPES
        j = next((k for k, p in enumerate(parts) if p.id == part.id), None)
        if j is None:
            # ``text`` already holds everything streamed so far
            parts.append(part.model_copy(update={"text": delta}) if text_delta and not part.text else part)
        elif text_delta:
            parts[j] = part.model_copy(update={"text": (parts[j].text or "") + delta})
        else:
            parts[j] = part

        parts = [
            p for p in parts
            if p.id == part.id
            or not (
                p.id.startswith(TEMP_PREFIX)
                or (p.id.startswith(LOCAL_PREFIX) and p.type == part.type)
            )
        ]
        self.messages[i] = Message(info=message.info, parts=parts)

    def remove_message(self, message_id: str) -> bool:
        before = len(self.messages)
        self.discard(message_id)
        return len(self.messages) != before

    def remove_part(self, message_id: str, part_id: str) -> bool:
        i = self.index_of(message_id)
        if i is None:
            return False
        message = self.messages[i]
        parts = [p for p in message.parts if p.id != part_id]
        if len(parts) == len(message.parts):
            return False
        self.messages[i] = Message(info=message.info, parts=parts)
        return True

    def purge_placeholders(self) -> None:
        """Drop unconfirmed placeholder messages and every ``temp-*`` part."""
        kept = []
        for message in self.messages:
            if is_placeholder(message.id):
                continue
            parts = [p for p in message.parts if not p.id.startswith(TEMP_PREFIX)]
            if len(parts) != len(message.parts):
                message = Message(info=message.info, parts=parts)
            kept.append(message)
        self.messages = kept
