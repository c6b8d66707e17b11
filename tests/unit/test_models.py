"""Tests for wire envelope parsing and event serialization."""

from datetime import datetime, timezone

import pytest

from unsend.models import (
    ChatEvent,
    ChatFrame,
    DownloadedFrame,
    FileEvent,
    PingFrame,
    RecallConfirmedEvent,
    RecallFrame,
    parse_client_frame,
)


class TestParseClientFrame:
    def test_chat(self):
        frame = parse_client_frame('{"kind": "chat", "text": "hi"}')
        assert isinstance(frame, ChatFrame)
        assert frame.text == "hi"

    def test_recall(self):
        frame = parse_client_frame(b'{"kind": "recall", "id": "abc"}')
        assert isinstance(frame, RecallFrame)
        assert frame.id == "abc"

    def test_downloaded_and_ping(self):
        assert isinstance(parse_client_frame('{"kind": "downloaded", "id": "x"}'), DownloadedFrame)
        assert isinstance(parse_client_frame('{"kind": "ping"}'), PingFrame)

    def test_extra_fields_ignored(self):
        frame = parse_client_frame('{"kind": "chat", "text": "hi", "to": "bob"}')
        assert isinstance(frame, ChatFrame)

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "{}",
            "[]",
            '{"kind": "explode"}',
            '{"kind": "chat"}',
            '{"kind": "recall", "id": ""}',
            '{"kind": "chat", "text": 5}',
        ],
    )
    def test_malformed_frames_are_dropped(self, raw):
        assert parse_client_frame(raw) is None


class TestEvents:
    def test_chat_event_uses_from_key(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        event = ChatEvent(id="a1", sender="client-a", text="hi", timestamp=ts).to_event()
        assert event["kind"] == "chat"
        assert event["from"] == "client-a"
        assert "sender" not in event
        assert event["timestamp"].startswith("2026-01-01")

    def test_file_event_camel_case(self):
        ts = datetime.now(timezone.utc)
        event = FileEvent(
            id="f1",
            sender="a",
            name="x.txt",
            size=3,
            mime_type="text/plain",
            protected=True,
            view_only=False,
            timestamp=ts,
        ).to_event()
        assert event["mimeType"] == "text/plain"
        assert event["viewOnly"] is False
        assert event["url"] is None
        assert event["expiresAt"] is None

    def test_recall_confirmed_owner_url(self):
        event = RecallConfirmedEvent(id="f1", reason="manual", owner_url="/files/f1/owner").to_event()
        assert event == {"kind": "recall_confirmed", "id": "f1", "reason": "manual", "ownerUrl": "/files/f1/owner"}
