"""Pending permission requests, questions and todo lists, per session.

Fed by the event stream like the chat store. Requests stay pending until the
backend reports a reply (or a rejection, for questions); todo lists are
replaced wholesale on every ``todo.updated``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from axon_sync.event_bus import EventBus
from axon_sync.events import (
    GlobalEvent,
    PermissionAsked,
    PermissionReplied,
    PermissionRequest,
    QuestionAsked,
    QuestionRejected,
    QuestionReplied,
    QuestionRequest,
    SessionDeleted,
    TodoItem,
    TodoUpdated,
)

logger = logging.getLogger(__name__)

PENDING_EVENT_TYPES = frozenset({
    "permission.asked",
    "permission.replied",
    "question.asked",
    "question.replied",
    "question.rejected",
    "todo.updated",
    "session.deleted",
})

TODO_STATUS_ORDER = {"in_progress": 0, "pending": 1, "completed": 2, "cancelled": 3}
TODO_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

PendingListener = Callable[[str], None]


def sort_todos(todos: list[TodoItem]) -> list[TodoItem]:
    """In-progress first, then pending, completed, cancelled; by priority within a status."""
    return sorted(
        todos,
        key=lambda t: (
            TODO_STATUS_ORDER.get(t.status, len(TODO_STATUS_ORDER)),
            TODO_PRIORITY_ORDER.get(t.priority, len(TODO_PRIORITY_ORDER)),
        ),
    )


class PendingStore:
    def __init__(self, bus: EventBus):
        self.permissions: dict[str, list[PermissionRequest]] = {}
        self.questions: dict[str, list[QuestionRequest]] = {}
        self.todos: dict[str, list[TodoItem]] = {}
        self._listeners: list[PendingListener] = []
        self._unsubscribe_bus = bus.subscribe(self.handle_event, event_types=PENDING_EVENT_TYPES)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def permissions_for(self, session_id: str) -> list[PermissionRequest]:
        return list(self.permissions.get(session_id, []))

    def questions_for(self, session_id: str) -> list[QuestionRequest]:
        return list(self.questions.get(session_id, []))

    def todos_for(self, session_id: str) -> list[TodoItem]:
        return list(self.todos.get(session_id, []))

    def first_permission(self, session_id: str) -> PermissionRequest | None:
        requests = self.permissions.get(session_id)
        return requests[0] if requests else None

    def first_question(self, session_id: str) -> QuestionRequest | None:
        requests = self.questions.get(session_id)
        return requests[0] if requests else None

    def subscribe(self, listener: PendingListener) -> Callable[[], None]:
        """``listener`` is called with the id of the session that changed."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, session_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(session_id)
            except Exception:
                logger.exception("Pending listener failed")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_event(self, event: GlobalEvent) -> None:
        payload = event.payload
        if isinstance(payload, PermissionAsked):
            request = payload.properties.model_copy(update={"directory": event.source_context})
            changed = _add(self.permissions, request.session_id, request)
            session_id = request.session_id
        elif isinstance(payload, QuestionAsked):
            request = payload.properties.model_copy(update={"directory": event.source_context})
            changed = _add(self.questions, request.session_id, request)
            session_id = request.session_id
        elif isinstance(payload, PermissionReplied):
            props = payload.properties
            changed = _remove(self.permissions, props.session_id, props.request_id)
            session_id = props.session_id
        elif isinstance(payload, (QuestionReplied, QuestionRejected)):
            props = payload.properties
            changed = _remove(self.questions, props.session_id, props.request_id)
            session_id = props.session_id
        elif isinstance(payload, TodoUpdated):
            session_id = payload.properties.session_id
            self.todos[session_id] = sort_todos(payload.properties.todos)
            changed = True
        elif isinstance(payload, SessionDeleted):
            session_id = payload.properties.info.id
            changed = self.clear_session(session_id, notify=False)
        else:
            return
        if changed:
            self._notify(session_id)

    def clear_session(self, session_id: str, *, notify: bool = True) -> bool:
        changed = False
        for table in (self.permissions, self.questions, self.todos):
            if table.pop(session_id, None) is not None:
                changed = True
        if changed and notify:
            self._notify(session_id)
        return changed

    def close(self) -> None:
        self._unsubscribe_bus()


def _add(table: dict, session_id: str, request: PermissionRequest | QuestionRequest) -> bool:
    requests = table.setdefault(session_id, [])
    if any(r.id == request.id for r in requests):
        return False
    requests.append(request)
    return True


def _remove(table: dict, session_id: str, request_id: str) -> bool:
    requests = table.get(session_id, [])
    kept = [r for r in requests if r.id != request_id]
    if len(kept) == len(requests):
        return False
    table[session_id] = kept
    return True
