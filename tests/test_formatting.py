"""Tests for reply chunking and wire models."""

from __future__ import annotations

from arisa.formatting import CHUNK_MARKER, MAX_MESSAGE_LENGTH, chunk_message, split_response
from arisa.models import CoreResponse, IncomingMessage, MessageEnvelope, SendRequest


class TestChunkMessage:
    """Splitting long replies for the chat channel."""

    def test_short_text_is_one_chunk(self) -> None:
        assert chunk_message("hello") == ["hello"]

    def test_every_chunk_fits(self) -> None:
        text = "word " * 3000
        chunks = chunk_message(text)
        assert len(chunks) > 1
        assert all(len(c) <= MAX_MESSAGE_LENGTH for c in chunks)

    def test_prefers_newline_in_second_half(self) -> None:
        text = "a" * 70 + "\n" + "b" * 50
        assert chunk_message(text, limit=100) == ["a" * 70, "b" * 50]

    def test_hard_split_when_newline_too_early(self) -> None:
        text = "a" * 10 + "\n" + "b" * 150
        chunks = chunk_message(text, limit=100)
        assert chunks[0] == "a" * 10 + "\n" + "b" * 89
        assert len(chunks[0]) == 100

    def test_split_response_honours_markers(self) -> None:
        text = f"part one{CHUNK_MARKER}part two"
        assert split_response(text) == ["part one", "part two"]

    def test_split_response_without_markers(self) -> None:
        assert split_response("just text") == ["just text"]


class TestWireModels:
    """camelCase on the wire, snake_case in code."""

    def test_incoming_message_aliases(self) -> None:
        msg = IncomingMessage.model_validate({"chatId": "9", "text": "hi", "messageId": "m"})
        assert msg.chat_id == "9"
        assert msg.message_id == "m"
        assert msg.to_wire() == {"chatId": "9", "sender": "user", "text": "hi",
                                 "messageId": "m", "attachments": []}

    def test_optional_fields_dropped_on_wire(self) -> None:
        wire = MessageEnvelope(message=IncomingMessage(chat_id="1", text="x")).to_wire()
        assert "messageId" not in wire["message"]

    def test_core_response_defaults(self) -> None:
        assert CoreResponse(text="ok").files == []

    def test_send_request_defaults(self) -> None:
        req = SendRequest.model_validate({"text": "hello"})
        assert req.chat_id == ""
