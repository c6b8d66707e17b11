"""Room membership: at most two live websocket connections per room."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from unsend.errors import RoomFullError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Member:
    """One live websocket connection.

    Outgoing events are queued and written by a per-connection writer task, so
    fan-out never waits on a slow or dead socket.
    """

    room: str
    identity: str
    client_id: str
    websocket: Any = None
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    closed: bool = False
    _writer: Optional[asyncio.Task] = field(default=None, repr=False)

    def deliver(self, event: dict) -> None:
        if not self.closed:
            self.outbox.put_nowait(event)

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"writer-{self.client_id}")

    async def _write_loop(self) -> None:
        while True:
            event = await self.outbox.get()
            if event is None:
                return
            try:
                await self.websocket.send_text(json.dumps(event))
            except Exception as e:
                logger.info("Send to %s failed, dropping writer: %s", self.client_id, e)
                self.closed = True
                return

    async def close(self) -> None:
        """Flush queued events, then stop the writer."""
        if self.closed and self._writer is None:
            return
        self.outbox.put_nowait(None)
        self.closed = True
        if self._writer is not None:
            try:
                await asyncio.wait_for(self._writer, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._writer.cancel()
            self._writer = None

    def info(self) -> dict:
        return {"clientId": self.client_id, "identity": self.identity}


class RoomRegistry:
    """Maps a room name to its ordered member list."""

    def __init__(self, capacity: int = 2):
        self.capacity = capacity
        self._rooms: dict[str, list[Member]] = {}
        self._lock = asyncio.Lock()

    async def join(self, member: Member) -> list[Member]:
        """Admit ``member`` or raise RoomFullError without touching state."""
        async with self._lock:
            members = self._rooms.get(member.room, [])
            if len(members) >= self.capacity:
                raise RoomFullError(f"room {member.room!r} is full")
            members = members + [member]
            self._rooms[member.room] = members
            logger.info("%s joined room %s (%d/%d)", member.client_id, member.room, len(members), self.capacity)
            return list(members)

    async def leave(self, member: Member) -> list[Member]:
        """Remove ``member``; returns the remaining members (empty: room deleted)."""
        async with self._lock:
            members = self._rooms.get(member.room)
            if not members or member not in members:
                return list(members or [])
            remaining = [m for m in members if m is not member]
            if remaining:
                self._rooms[member.room] = remaining
            else:
                del self._rooms[member.room]
                logger.info("Room %s is empty, released", member.room)
            return remaining

    def members(self, room: str) -> list[Member]:
        return list(self._rooms.get(room, []))

    def find(self, room: str, client_id: str) -> Optional[Member]:
        for m in self._rooms.get(room, []):
            if m.client_id == client_id:
                return m
        return None

    def has_room(self, room: str) -> bool:
        return room in self._rooms

    def snapshot(self) -> dict[str, list[str]]:
        return {room: [m.client_id for m in members] for room, members in self._rooms.items()}
