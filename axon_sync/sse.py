"""SSE parsing: turns the lines of a text/event-stream body into messages.

Handles multi-line ``data:`` fields, ``event:``/``id:`` fields and comment
lines (``: ping``). Comments are surfaced too: the event stream consumer
counts them as proof of liveness.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass(frozen=True)
class SseMessage:
    data: str = ""
    event: str | None = None
    id: str | None = None
    comment: str | None = None

    @property
    def is_comment(self) -> bool:
        return self.comment is not None


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[SseMessage]:
    """Yield one SseMessage per dispatched event or comment line."""
    event: str | None = None
    event_id: str | None = None
    data: list[str] = []

    async for raw in lines:
        line = raw.rstrip("\r\n")

        if not line:
            # Blank line = dispatch
            if data:
                yield SseMessage(data="\n".join(data), event=event, id=event_id)
            event, event_id, data = None, None, []
            continue

        if line.startswith(":"):
            yield SseMessage(comment=line[1:].strip())
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            data.append(value)
        elif field == "event":
            event = value
        elif field == "id":
            event_id = value
        # "retry" and unknown fields are ignored

    # Handle last event if no trailing blank line
    if data:
        yield SseMessage(data="\n".join(data), event=event, id=event_id)
