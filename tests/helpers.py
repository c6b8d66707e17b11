"""Shared test helpers."""

import json

from unsend.rooms import Member

ALICE = "10.0.0.1"
BOB = "10.0.0.2"
CAROL = "10.0.0.3"


def as_(identity: str) -> dict:
    """Headers that make a TestClient request come from ``identity``."""
    return {"x-forwarded-for": identity}


class FakeSocket:
    """Records what a Member's writer task sends."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


def member(room: str, identity: str, client_id: str) -> Member:
    return Member(room=room, identity=identity, client_id=client_id)


def drain(m: Member) -> list[dict]:
    """Pop everything queued for a member that has no writer task."""
    events = []
    while not m.outbox.empty():
        events.append(m.outbox.get_nowait())
    return events


def kinds(events: list[dict]) -> list[str]:
    return [e["kind"] for e in events]
