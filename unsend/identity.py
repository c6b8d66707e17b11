"""Per-connection identity.

A participant is known by two things: the network address the request came
from (stable across reconnects from the same machine) and a random client id
handed out per websocket connection (stable only for that connection).
"""

import re
import secrets

from starlette.requests import HTTPConnection

UNKNOWN_IDENTITY = "unknown"
_ROOM_CHARS = re.compile(r"[^a-z0-9_-]+")
MAX_ROOM_NAME = 64


def resolve_identity(conn: HTTPConnection, *, trust_forwarded_for: bool = False) -> str:
    """Return the network-derived identity for a request or websocket."""
    if trust_forwarded_for:
        forwarded = conn.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if conn.client and conn.client.host:
        return conn.client.host
    return UNKNOWN_IDENTITY


def new_client_id() -> str:
    return secrets.token_urlsafe(12)


def normalize_room(raw: str | None, default: str) -> str:
    """Lower-case the room name and strip anything outside [a-z0-9_-].

    Empty or absent names map to ``default``.
    """
    name = _ROOM_CHARS.sub("-", (raw or "").strip().lower()).strip("-")
    return name[:MAX_ROOM_NAME] or default
