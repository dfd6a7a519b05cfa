"""Tests for event parsing: envelopes, known variants and unknown types."""

from __future__ import annotations

from axon_sync.events import (
    MessagePartUpdated,
    MessageUpdated,
    ServerHeartbeat,
    SessionErrorEvent,
    SessionStatusChanged,
    SessionUpdated,
    UnknownEvent,
    heartbeat,
    parse_event,
    parse_frame,
)
from tests.conftest import (
    assistant_info,
    envelope,
    message_updated,
    part_updated,
    session_error,
    session_info,
    session_status,
    text_part,
)


class TestParseFrame:
    def test_envelope_keeps_directory(self):
        event = parse_frame(envelope(session_status(status="busy"), directory="/repo"))
        assert event.source_context == "/repo"
        assert isinstance(event.payload, SessionStatusChanged)
        assert event.payload.properties.status.is_busy
        assert event.session_id == "ses_1"

    def test_bare_payload_accepted(self):
        event = parse_frame(message_updated(assistant_info("a1", "u1")))
        assert event.source_context is None
        assert isinstance(event.payload, MessageUpdated)
        assert event.session_id == "ses_1"

    def test_heartbeat_frame(self):
        event = parse_frame({"payload": {"type": "server.heartbeat", "properties": {}}})
        assert event.is_heartbeat
        assert heartbeat().is_heartbeat
        assert isinstance(heartbeat().payload, ServerHeartbeat)


class TestParseEvent:
    def test_unknown_type_is_preserved(self):
        event = parse_event({"type": "lsp.client.diagnostics", "properties": {"id": "x"}})
        assert isinstance(event, UnknownEvent)
        assert event.type == "lsp.client.diagnostics"
        assert event.properties == {"id": "x"}

    def test_malformed_known_type_becomes_unknown(self):
        event = parse_event({"type": "message.updated", "properties": {"info": {"role": "robot"}}})
        assert isinstance(event, UnknownEvent)
        assert event.type == "message.updated"

    def test_not_a_dict(self):
        event = parse_event(["nope"])
        assert isinstance(event, UnknownEvent)
        assert event.type == "invalid"

    def test_part_with_delta(self):
        event = parse_event(part_updated(text_part("p1", "a1", "He"), delta="He"))
        assert isinstance(event, MessagePartUpdated)
        assert event.properties.delta == "He"
        assert event.properties.part.message_id == "a1"

    def test_part_inherits_ids_from_properties(self):
        event = parse_event({
            "type": "message.part.updated",
            "properties": {
                "sessionID": "ses_9",
                "messageID": "a9",
                "part": {"id": "p1", "type": "text", "text": "x"},
            },
        })
        assert isinstance(event, MessagePartUpdated)
        assert event.properties.part.session_id == "ses_9"
        assert event.properties.part.message_id == "a9"

    def test_session_updated(self):
        event = parse_event({"type": "session.updated", "properties": {"info": session_info(title="T")}})
        assert isinstance(event, SessionUpdated)
        assert event.properties.info.title == "T"

    def test_session_error_fields(self):
        event = parse_event(session_error(message="quota exceeded"))
        assert isinstance(event, SessionErrorEvent)
        assert event.properties.error_name == "APIError"
        assert event.properties.error_message == "quota exceeded"

    def test_session_error_without_message(self):
        event = parse_event(session_error(message=None))
        assert event.properties.error_message == ""
